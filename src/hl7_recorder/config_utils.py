"""
Configuration utilities

Provides:
- Marker configuration and validation (start/ack/end control bytes)
- Application settings with range clamping
- Capture filter construction for external capture tools
- Centralized path resolution with environment variable expansion
"""

import ipaddress
import os
import re
import logging
from dataclasses import dataclass, field
from pathlib import Path
from string import Template
from typing import Any, Dict, List, Optional, Union

logger = logging.getLogger(__name__)

_HEX_BYTE_RE = re.compile(r'^[0-9a-f]{1,2}$')


class _PathTemplate(Template):
    """Template accepting dotted names such as ${paths.base_dir}"""
    idpattern = r'[_a-z][_a-z0-9]*(?:\.[_a-z][_a-z0-9]*)*'


# =============================================================================
# Marker configuration
# =============================================================================

def normalize_hex_marker(text: str) -> Optional[str]:
    """
    Normalize a hex byte string to 0xNN form.

    Accepts "05", "0x05", "5" -> "0x05". Returns None for anything that is
    not one or two hex digits.
    """
    trimmed = text.strip()
    if not trimmed:
        return None

    hex_digits = trimmed.lower()
    if hex_digits.startswith('0x'):
        hex_digits = hex_digits[2:]

    if not _HEX_BYTE_RE.match(hex_digits):
        return None

    return '0x' + hex_digits.zfill(2)


def hex_string_to_number(text: str) -> Optional[int]:
    """Convert "05" / "0x05" / "5" to 5, or None if invalid"""
    normalized = normalize_hex_marker(text)
    if normalized is None:
        return None
    return int(normalized, 16)


def is_valid_ipv4(address: str) -> bool:
    if not isinstance(address, str):
        return False
    try:
        ipaddress.IPv4Address(address)
    except ValueError:
        return False
    return True


MarkerValue = Union[int, str]


@dataclass
class MarkerConfig:
    """Control bytes delimiting a session plus optional capture filter addresses"""
    start_marker: MarkerValue = 0x05
    ack_marker: MarkerValue = 0x06
    end_marker: MarkerValue = 0x04
    device_address: str = ""
    host_address: str = ""
    host_port: Optional[int] = None

    @classmethod
    def from_toml(cls, section: Dict[str, Any]) -> 'MarkerConfig':
        """
        Build from the [markers] section.

        Marker values may be integers or hex strings; strings are normalized
        here and left unchanged when invalid so validation can report them.
        """
        def marker(key: str, default: int) -> MarkerValue:
            value = section.get(key, default)
            if isinstance(value, str):
                number = hex_string_to_number(value)
                return number if number is not None else value
            return value

        port = section.get('host_port')
        return cls(
            start_marker=marker('start', 0x05),
            ack_marker=marker('ack', 0x06),
            end_marker=marker('end', 0x04),
            device_address=section.get('device_address', ''),
            host_address=section.get('host_address', ''),
            host_port=int(port) if port else None,
        )

    def marker_bytes(self) -> Dict[str, int]:
        """Marker values as ints; call only on a validated config"""
        return {
            'start': _coerce_marker(self.start_marker),
            'ack': _coerce_marker(self.ack_marker),
            'end': _coerce_marker(self.end_marker),
        }


@dataclass
class ValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)


def _coerce_marker(value: MarkerValue) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        return hex_string_to_number(value)
    return None


def validate_marker_config(config: MarkerConfig) -> ValidationResult:
    """
    Validate marker bytes and filter addresses.

    Returns:
        ValidationResult with one message per problem found
    """
    errors: List[str] = []

    labels = (('Start', config.start_marker),
              ('Acknowledge', config.ack_marker),
              ('End', config.end_marker))
    values: Dict[str, Optional[int]] = {}

    for label, raw in labels:
        value = _coerce_marker(raw)
        if value is None:
            errors.append(f"{label} marker must be a valid hex byte (0x00-0xFF)")
        elif value < 0 or value > 0xFF:
            errors.append(f"{label} marker must be in range 0x00-0xFF")
            value = None
        values[label] = value

    for first, second in (('Start', 'Acknowledge'), ('Start', 'End'), ('Acknowledge', 'End')):
        if values[first] is not None and values[first] == values[second]:
            errors.append(f"{first} and {second} markers must be different")

    if config.device_address and not is_valid_ipv4(config.device_address):
        errors.append("Device address must be a valid IPv4 address")

    if config.host_address and not is_valid_ipv4(config.host_address):
        errors.append("Host address must be a valid IPv4 address")

    if config.host_port is not None and not (1 <= config.host_port <= 65535):
        errors.append("Host port must be in range 1-65535")

    return ValidationResult(valid=not errors, errors=errors)


def build_capture_filter(config: MarkerConfig) -> str:
    """
    Build a BPF filter for an external capture tool (dumpcap, tcpdump).

    Example:
        >>> build_capture_filter(MarkerConfig(device_address='10.0.0.5', host_port=2575))
        'tcp and host 10.0.0.5 and port 2575'
    """
    parts = ['tcp']
    if config.device_address:
        parts.append(f"host {config.device_address}")
    if config.host_address:
        parts.append(f"host {config.host_address}")
    if config.host_port:
        parts.append(f"port {config.host_port}")
    return ' and '.join(parts)


@dataclass
class RelayConfig:
    """TCP relay placement: devices connect to listen_*, traffic goes to upstream_*"""
    listen_host: str = '0.0.0.0'
    listen_port: int = 2575
    upstream_host: str = ""
    upstream_port: Optional[int] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.upstream_host) and bool(self.upstream_port)

    @classmethod
    def from_toml(cls, config: Dict[str, Any]) -> 'RelayConfig':
        """
        Build from the [relay] section.

        Upstream defaults to [markers] host_address / host_port.
        """
        relay = config.get('relay', {})
        markers = config.get('markers', {})
        upstream_port = relay.get('upstream_port', markers.get('host_port'))
        return cls(
            listen_host=relay.get('listen_host', '0.0.0.0'),
            listen_port=int(relay.get('listen_port', 2575)),
            upstream_host=relay.get('upstream_host', markers.get('host_address', '')),
            upstream_port=int(upstream_port) if upstream_port else None,
        )


# =============================================================================
# Application settings
# =============================================================================

def clamp(name: str, value: Any, minimum: int, maximum: int, default: int) -> int:
    """Clamp a numeric setting into range, logging any adjustment"""
    try:
        number = int(value)
    except (TypeError, ValueError):
        logger.warning(f"Invalid {name}={value!r}, using default {default}")
        return default

    clamped = max(minimum, min(maximum, number))
    if clamped != number:
        logger.warning(f"{name}={number} out of range [{minimum}, {maximum}], using {clamped}")
    return clamped


@dataclass
class AppConfig:
    """Runtime settings for persistence, cleanup and submission"""
    enable_persistence: bool = True
    retention_days: int = 30
    cleanup_interval_hours: int = 24
    dry_run_mode: bool = False
    submission_endpoint: str = ""
    submission_auth_header: str = ""
    submission_concurrency: int = 2
    submission_max_retries: int = 3
    submission_interval_minutes: int = 1
    max_sessions: int = 100
    extract_all_messages: bool = False
    auto_start_capture: bool = False
    log_level: str = "info"

    def __post_init__(self):
        self.retention_days = clamp('retention_days', self.retention_days, 1, 365, 30)
        self.cleanup_interval_hours = clamp(
            'cleanup_interval_hours', self.cleanup_interval_hours, 1, 168, 24)
        self.submission_concurrency = clamp(
            'submission_concurrency', self.submission_concurrency, 1, 10, 2)
        self.submission_max_retries = clamp(
            'submission_max_retries', self.submission_max_retries, 1, 10, 3)
        self.submission_interval_minutes = clamp(
            'submission_interval_minutes', self.submission_interval_minutes, 1, 60, 1)
        if self.max_sessions < 1:
            logger.warning(f"max_sessions={self.max_sessions} too small, using 1")
            self.max_sessions = 1

    @classmethod
    def from_toml(cls, config: Dict[str, Any]) -> 'AppConfig':
        """Build from a parsed TOML document"""
        capture = config.get('capture', {})
        persistence = config.get('persistence', {})
        cleanup = config.get('cleanup', {})
        submission = config.get('submission', {})
        logging_cfg = config.get('logging', {})

        return cls(
            enable_persistence=persistence.get('enabled', True),
            retention_days=persistence.get('retention_days', 30),
            cleanup_interval_hours=cleanup.get('interval_hours', 24),
            dry_run_mode=cleanup.get('dry_run', False),
            submission_endpoint=submission.get('endpoint', ''),
            submission_auth_header=submission.get('auth_header', ''),
            submission_concurrency=submission.get('concurrency', 2),
            submission_max_retries=submission.get('max_retries', 3),
            submission_interval_minutes=submission.get('interval_minutes', 1),
            max_sessions=int(capture.get('max_sessions', 100)),
            extract_all_messages=capture.get('extract_all_messages', False),
            auto_start_capture=capture.get('auto_start', False),
            log_level=logging_cfg.get('level', 'info'),
        )


# =============================================================================
# Paths
# =============================================================================

class PathResolver:
    """
    Resolves configuration paths with support for:
    - Environment variable expansion
    - Template variable substitution (${paths.xyz})
    - Fallback defaults for systemd deployment
    """

    # Default paths for systemd deployment (FHS compliant)
    DEFAULTS = {
        'base_dir': '/var/lib/hl7-recorder',
        'sessions_dir': '/var/lib/hl7-recorder/sessions',
        'trash_dir': '/var/lib/hl7-recorder/trash',
        'config_dir': '/etc/hl7-recorder',
        'log_dir': '/var/log/hl7-recorder',
    }

    # Development fallbacks (if running without installation)
    DEV_DEFAULTS = {
        'base_dir': './data',
        'sessions_dir': './data/sessions',
        'trash_dir': './data/trash',
        'config_dir': './config',
        'log_dir': './logs',
    }

    def __init__(self, config: Dict, development_mode: bool = False):
        """
        Initialize path resolver

        Args:
            config: Parsed TOML configuration
            development_mode: Use development paths instead of system paths
        """
        self.config = config
        self.development_mode = development_mode
        self._resolved_paths: Dict[str, str] = {}

        if development_mode or not self._is_production_environment():
            self.defaults = self.DEV_DEFAULTS
            logger.info("Using development path defaults")
        else:
            self.defaults = self.DEFAULTS
            logger.info("Using production path defaults (FHS compliant)")

    def _is_production_environment(self) -> bool:
        """Check if we're running in a production environment"""
        if os.getenv('INVOCATION_ID'):  # Set by systemd
            return True
        if os.getenv('USER') == 'hl7-recorder':
            return True
        if Path('/etc/hl7-recorder').exists():
            return True
        return False

    def get_paths_config(self) -> Dict[str, str]:
        """
        Get the paths configuration section with defaults

        Returns:
            Dictionary of path name -> resolved path
        """
        if self._resolved_paths:
            return self._resolved_paths

        paths = self.defaults.copy()

        for key, value in self.config.get('paths', {}).items():
            if value:
                paths[key] = str(value)

        for key in paths:
            paths[key] = os.path.expanduser(os.path.expandvars(paths[key]))

        # Multiple passes handle nested references
        for _ in range(3):
            for key in paths:
                paths[key] = _PathTemplate(paths[key]).safe_substitute(
                    {f"paths.{k}": v for k, v in paths.items()})

        self._resolved_paths = paths
        return paths

    def get_path(self, key: str, create: bool = True) -> Path:
        """
        Get a resolved path by key

        Args:
            key: Path key (e.g., 'sessions_dir', 'trash_dir')
            create: Create directory if it doesn't exist
        """
        paths = self.get_paths_config()
        path = Path(paths.get(key, self.defaults.get(key, './data')))

        if create and not path.exists():
            try:
                path.mkdir(parents=True, exist_ok=True)
                logger.info(f"Created directory: {path}")
            except OSError as e:
                logger.error(f"Failed to create directory {path}: {e}")

        return path

    def get_sessions_dir(self) -> Path:
        return self.get_path('sessions_dir')

    def get_trash_dir(self) -> Path:
        return self.get_path('trash_dir')

    def get_log_dir(self) -> Path:
        logging_config = self.config.get('logging', {})
        if logging_config.get('log_dir'):
            return Path(os.path.expanduser(logging_config['log_dir']))
        return self.get_path('log_dir')

    def ensure_directories(self):
        """Create all directories the recorder writes to"""
        for key in ('base_dir', 'sessions_dir', 'trash_dir'):
            self.get_path(key, create=True)
        self.get_log_dir().mkdir(parents=True, exist_ok=True)

    def print_summary(self):
        """Print a summary of resolved paths"""
        paths = self.get_paths_config()

        print("\n" + "=" * 70)
        print("HL7 RECORDER PATH CONFIGURATION")
        print("=" * 70)
        print(f"Mode: {'Development' if self.development_mode else 'Production'}")
        print()
        print(f"  Base Directory:       {paths['base_dir']}")
        print(f"  Sessions:             {paths['sessions_dir']}")
        print(f"  Trash:                {paths['trash_dir']}")
        print(f"  Configuration:        {paths.get('config_dir')}")
        print(f"  Logs:                 {self.get_log_dir()}")
        print("=" * 70 + "\n")


def load_config(config_file: Path) -> Dict:
    """Parse a TOML configuration file"""
    import toml

    with open(config_file, 'r') as f:
        return toml.load(f)


def load_config_with_paths(config_file: Path, development_mode: bool = False) -> tuple[Dict, PathResolver]:
    """
    Load configuration and create path resolver

    Args:
        config_file: Path to TOML configuration file
        development_mode: Use development paths

    Returns:
        Tuple of (config dict, PathResolver)
    """
    config = load_config(config_file)

    resolver = PathResolver(config, development_mode=development_mode)
    resolver.ensure_directories()

    return config, resolver
