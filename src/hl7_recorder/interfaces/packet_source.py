"""
Packet Source Interface

Defines the contract between whatever acquires bytes from the device link
(a relay socket, an external capture process, a test harness) and the
capture manager.

Two variants exist:
- PassivePacketSource: emits packets pushed into it, has no lifecycle
- ControllablePacketSource: owns its acquisition and must implement
  start(), stop() and is_running()

The capture manager checks the variant with isinstance(), never by probing
for optional methods.
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Packet:
    """One chunk of TCP payload with optional endpoint addresses"""
    data: bytes
    source_address: Optional[str] = None
    dest_address: Optional[str] = None


class PacketSourceListener:
    """
    Receiver for packet source events.

    All methods default to no-ops so listeners override only what they need.
    Methods are called on the source's own thread.
    """

    def on_packet(self, packet: Packet) -> None:
        pass

    def on_start(self) -> None:
        pass

    def on_stop(self) -> None:
        pass

    def on_error(self, error: Exception) -> None:
        pass

    def on_log(self, message: str) -> None:
        pass


class PacketSource(ABC):
    """Base class holding listener registration and event fan-out"""

    def __init__(self):
        self._listeners: List[PacketSourceListener] = []
        self._listeners_lock = threading.Lock()

    def add_listener(self, listener: PacketSourceListener) -> None:
        with self._listeners_lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def remove_listener(self, listener: PacketSourceListener) -> None:
        with self._listeners_lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    @property
    def listener_count(self) -> int:
        with self._listeners_lock:
            return len(self._listeners)

    def _snapshot(self) -> List[PacketSourceListener]:
        with self._listeners_lock:
            return list(self._listeners)

    def _emit_packet(self, packet: Packet) -> None:
        for listener in self._snapshot():
            try:
                listener.on_packet(packet)
            except Exception as e:
                logger.error(f"Packet listener failed: {e}", exc_info=True)

    def _emit_start(self) -> None:
        for listener in self._snapshot():
            try:
                listener.on_start()
            except Exception as e:
                logger.error(f"Start listener failed: {e}")

    def _emit_stop(self) -> None:
        for listener in self._snapshot():
            try:
                listener.on_stop()
            except Exception as e:
                logger.error(f"Stop listener failed: {e}")

    def _emit_error(self, error: Exception) -> None:
        for listener in self._snapshot():
            try:
                listener.on_error(error)
            except Exception as e:
                logger.error(f"Error listener failed: {e}")

    def _emit_log(self, message: str) -> None:
        for listener in self._snapshot():
            try:
                listener.on_log(message)
            except Exception as e:
                logger.error(f"Log listener failed: {e}")


class PassivePacketSource(PacketSource):
    """
    Source without a lifecycle of its own.

    Used when packets are acquired elsewhere (an external capture process,
    a replay, a unit test) and pushed in.

    Example:
        source = PassivePacketSource()
        manager.start_capture(markers, source)
        source.push(b'\\x05', source_address='10.0.0.5', dest_address='10.0.0.9')
    """

    def push(self, data: bytes, source_address: Optional[str] = None,
             dest_address: Optional[str] = None) -> None:
        self._emit_packet(Packet(data=data, source_address=source_address,
                                 dest_address=dest_address))

    def report_error(self, error: Exception) -> None:
        self._emit_error(error)

    def report_log(self, message: str) -> None:
        self._emit_log(message)


class ControllablePacketSource(PacketSource):
    """Source that acquires packets itself and can be started and stopped"""

    @abstractmethod
    def start(self) -> None:
        """
        Begin acquiring packets.

        Raises:
            OSError (or another exception) if the source cannot be opened.
            The capture manager propagates this to its caller.
        """
        pass

    @abstractmethod
    def stop(self) -> None:
        """Stop acquiring packets. May raise; callers treat failures as non-fatal."""
        pass

    @abstractmethod
    def is_running(self) -> bool:
        pass
