# relay/core/logging_config.py
"""
Logging configuration for Relay.
Console output plus rotating log files, with a dedicated file for the
real-time (WebSocket) subsystem.
"""
import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Optional

from relay.core.config import LOG_DIR

REALTIME_LOGGER = "relay.ws"


class ColoredFormatter(logging.Formatter):
    """Colored console formatter for better readability"""

    COLORS = {
        'DEBUG': '\033[36m',      # Cyan
        'INFO': '\033[32m',       # Green
        'WARNING': '\033[33m',    # Yellow
        'ERROR': '\033[31m',      # Red
        'CRITICAL': '\033[35m',   # Magenta
        'RESET': '\033[0m'
    }

    def format(self, record):
        # Work on a copy so file handlers keep the plain level name
        record = logging.makeLogRecord(record.__dict__)
        log_color = self.COLORS.get(record.levelname, self.COLORS['RESET'])
        record.levelname = f"{log_color}{record.levelname}{self.COLORS['RESET']}"
        return super().format(record)


def _rotating_handler(path: Path, level: int, fmt: str, max_mb: int) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path,
        maxBytes=max_mb * 1024 * 1024,
        backupCount=5,
        encoding='utf-8'
    )
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt, datefmt='%Y-%m-%d %H:%M:%S'))
    return handler


def setup_logging(app_name: str = "relay", level: str = "INFO", log_dir: Optional[str] = None):
    """
    Setup logging with console and file handlers.

    Creates three log files:
    - error.log: Only ERROR and CRITICAL messages
    - debug.log: All DEBUG and above messages
    - realtime.log: Connection, membership and fan-out events (relay.ws.*)
    """
    logs_dir = Path(log_dir or LOG_DIR)
    logs_dir.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    # ═══════════════════════════════════════════════════════════
    # Console Handler - with colors
    # ═══════════════════════════════════════════════════════════
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(getattr(logging, level.upper(), logging.INFO))
    console_handler.setFormatter(ColoredFormatter('%(levelname)s | %(name)s | %(message)s'))
    root_logger.addHandler(console_handler)

    # ═══════════════════════════════════════════════════════════
    # ERROR / DEBUG Log Files - Rotating
    # ═══════════════════════════════════════════════════════════
    root_logger.addHandler(_rotating_handler(
        logs_dir / "error.log",
        logging.ERROR,
        '%(asctime)s | %(levelname)s | %(name)s | %(filename)s:%(lineno)d | %(message)s',
        max_mb=10,
    ))
    root_logger.addHandler(_rotating_handler(
        logs_dir / "debug.log",
        logging.DEBUG,
        '%(asctime)s | %(levelname)-8s | %(name)-30s | %(filename)s:%(lineno)d | %(message)s',
        max_mb=20,
    ))

    # ═══════════════════════════════════════════════════════════
    # Realtime Log File - only the WebSocket subsystem
    # ═══════════════════════════════════════════════════════════
    realtime_logger = logging.getLogger(REALTIME_LOGGER)
    for handler in realtime_logger.handlers[:]:
        realtime_logger.removeHandler(handler)
    realtime_logger.addHandler(_rotating_handler(
        logs_dir / "realtime.log",
        logging.DEBUG,
        '%(asctime)s | %(levelname)-8s | %(name)s | %(message)s',
        max_mb=20,
    ))
    realtime_logger.setLevel(logging.DEBUG)
    realtime_logger.propagate = True  # Also send to root handlers

    logger = logging.getLogger("relay.logging")
    logger.info("=" * 60)
    logger.info("Logging initialized for %s", app_name)
    logger.info("Log directory: %s", logs_dir)
    logger.info("=" * 60)

    return root_logger


def get_realtime_logger(name: str = "") -> logging.Logger:
    """Get a logger under the real-time subsystem namespace"""
    return logging.getLogger(f"{REALTIME_LOGGER}.{name}" if name else REALTIME_LOGGER)
