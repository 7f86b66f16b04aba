#!/usr/bin/env python3
"""
TCP Relay Packet Source

Sits between the analyzer (device) and the LIS (host): the device connects to
the relay, the relay opens a connection to the host and forwards bytes in
both directions. Every chunk read from either side is emitted as a Packet
with its source and destination addresses, then forwarded unchanged.

    device ──▶ relay (listen_host:listen_port) ──▶ host (upstream_host:upstream_port)
           ◀──                                 ◀──
"""

import logging
import socket
import threading
from typing import List, Optional, Tuple

from .interfaces.packet_source import ControllablePacketSource, Packet

logger = logging.getLogger(__name__)

RECV_SIZE = 8192
ACCEPT_POLL_SEC = 1.0
CONNECT_TIMEOUT_SEC = 10.0


class _RelayConnection:
    """One device connection and its upstream counterpart"""

    def __init__(self, device_sock: socket.socket, device_addr: Tuple[str, int],
                 host_sock: socket.socket):
        self.device_sock = device_sock
        self.host_sock = host_sock
        self.device_ip = device_addr[0]
        self.host_ip = host_sock.getpeername()[0]
        self.threads: List[threading.Thread] = []
        self._closed = False
        self._lock = threading.Lock()

    @property
    def is_closed(self) -> bool:
        return self._closed

    def close(self):
        with self._lock:
            if self._closed:
                return
            self._closed = True
        for sock in (self.device_sock, self.host_sock):
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            sock.close()


class TcpRelaySource(ControllablePacketSource):
    """
    Controllable packet source relaying one or more device connections.

    Example:
        source = TcpRelaySource('0.0.0.0', 2575, '10.0.0.9', 2575)
        manager.start_capture(markers, source)   # starts the relay
    """

    def __init__(self, listen_host: str, listen_port: int,
                 upstream_host: str, upstream_port: int):
        super().__init__()
        self.listen_host = listen_host
        self.listen_port = listen_port
        self.upstream_host = upstream_host
        self.upstream_port = upstream_port

        self.running = False
        self.socket: Optional[socket.socket] = None
        self.thread: Optional[threading.Thread] = None
        self.connections: List[_RelayConnection] = []
        self._connections_lock = threading.Lock()

    @property
    def bound_port(self) -> Optional[int]:
        """Actual listening port (useful when listen_port is 0)"""
        if self.socket is None:
            return None
        return self.socket.getsockname()[1]

    def is_running(self) -> bool:
        return self.running

    def start(self):
        """
        Open the listening socket and start accepting device connections.

        Raises:
            OSError if the socket cannot be bound
        """
        if self.running:
            logger.warning("TCP relay already running")
            return

        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((self.listen_host, self.listen_port))
            sock.listen(5)
        except OSError:
            sock.close()
            raise
        sock.settimeout(ACCEPT_POLL_SEC)
        self.socket = sock

        self.running = True
        self.thread = threading.Thread(target=self._accept_loop, name='hl7-relay-accept',
                                       daemon=True)
        self.thread.start()

        logger.info(f"TCP relay listening on {self.listen_host}:{self.bound_port} "
                    f"-> {self.upstream_host}:{self.upstream_port}")
        self._emit_log(f"Relay listening on {self.listen_host}:{self.bound_port}")
        self._emit_start()

    def stop(self):
        """Close all sockets and wait for relay threads"""
        if not self.running:
            return

        self.running = False
        if self.thread:
            self.thread.join(timeout=2)
            self.thread = None
        if self.socket:
            self.socket.close()
            self.socket = None

        with self._connections_lock:
            connections = list(self.connections)
            self.connections.clear()
        for conn in connections:
            conn.close()
            for t in conn.threads:
                t.join(timeout=2)

        logger.info("TCP relay stopped")
        self._emit_stop()

    def _accept_loop(self):
        while self.running:
            try:
                device_sock, device_addr = self.socket.accept()
            except socket.timeout:
                continue
            except OSError as e:
                if self.running:
                    logger.error(f"Relay accept failed: {e}")
                    self._emit_error(e)
                break

            self._open_connection(device_sock, device_addr)

    def _open_connection(self, device_sock: socket.socket, device_addr: Tuple[str, int]):
        logger.info(f"Device connected from {device_addr[0]}:{device_addr[1]}")

        try:
            host_sock = socket.create_connection((self.upstream_host, self.upstream_port),
                                                 timeout=CONNECT_TIMEOUT_SEC)
            host_sock.settimeout(None)
        except OSError as e:
            logger.error(f"Cannot reach upstream {self.upstream_host}:{self.upstream_port}: {e}")
            self._emit_error(e)
            device_sock.close()
            return

        device_sock.settimeout(None)
        conn = _RelayConnection(device_sock, device_addr, host_sock)
        with self._connections_lock:
            self.connections.append(conn)

        self._emit_log(f"Relaying {conn.device_ip} <-> {conn.host_ip}")

        conn.threads = [
            threading.Thread(target=self._pump, daemon=True, name='hl7-relay-d2h',
                             args=(conn, conn.device_sock, conn.host_sock,
                                   conn.device_ip, conn.host_ip)),
            threading.Thread(target=self._pump, daemon=True, name='hl7-relay-h2d',
                             args=(conn, conn.host_sock, conn.device_sock,
                                   conn.host_ip, conn.device_ip)),
        ]
        for t in conn.threads:
            t.start()

    def _pump(self, conn: _RelayConnection, src: socket.socket, dst: socket.socket,
              src_ip: str, dst_ip: str):
        """Forward src -> dst until either side closes"""
        try:
            while self.running:
                data = src.recv(RECV_SIZE)
                if not data:
                    break
                self._emit_packet(Packet(data=data, source_address=src_ip, dest_address=dst_ip))
                dst.sendall(data)
        except OSError as e:
            if self.running and not conn.is_closed:
                logger.warning(f"Relay connection {src_ip} -> {dst_ip} failed: {e}")
                self._emit_error(e)
        finally:
            conn.close()
            with self._connections_lock:
                if conn in self.connections:
                    self.connections.remove(conn)
            logger.debug(f"Relay leg {src_ip} -> {dst_ip} closed")
