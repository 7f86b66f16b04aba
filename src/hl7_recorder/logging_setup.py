"""
Logging configuration for hl7-recorder

Console output always; a daily-rotating log file when a log directory is
configured. Safe to call more than once (e.g. CLI start-up, then --debug).
"""

import logging
import logging.handlers
from pathlib import Path
from typing import Optional

LOG_FORMAT = '%(asctime)s %(levelname)s %(name)s: %(message)s'
LOG_FILENAME = 'hl7-recorder.log'
LOG_BACKUP_COUNT = 14

_LEVELS = {
    'error': logging.ERROR,
    'warning': logging.WARNING,
    'warn': logging.WARNING,
    'info': logging.INFO,
    'debug': logging.DEBUG,
}


def parse_level(level: Optional[str]) -> int:
    """Map a level name to a logging constant; unknown names mean INFO"""
    if not level:
        return logging.INFO
    return _LEVELS.get(str(level).strip().lower(), logging.INFO)


def setup_logging(level: Optional[str] = 'info', log_dir: Optional[Path] = None) -> logging.Logger:
    """
    Configure the root logger.

    Args:
        level: error | warning | info | debug
        log_dir: Directory for hl7-recorder.log (rotated at midnight)

    Returns:
        The root logger
    """
    numeric_level = parse_level(level)
    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    formatter = logging.Formatter(LOG_FORMAT)

    # Console handler (only one, even across repeated calls)
    console = next((h for h in root_logger.handlers
                    if getattr(h, '_hl7_console', False)), None)
    if console is None:
        console = logging.StreamHandler()
        console._hl7_console = True
        console.setFormatter(formatter)
        root_logger.addHandler(console)
    console.setLevel(numeric_level)

    if log_dir is not None:
        log_file = (Path(log_dir) / LOG_FILENAME).resolve()
        existing = next((h for h in root_logger.handlers
                         if isinstance(h, logging.handlers.TimedRotatingFileHandler)
                         and Path(h.baseFilename) == log_file), None)
        if existing is None:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.handlers.TimedRotatingFileHandler(
                log_file, when='midnight', backupCount=LOG_BACKUP_COUNT, encoding='utf-8')
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)
            existing = file_handler
        existing.setLevel(numeric_level)

    return root_logger
