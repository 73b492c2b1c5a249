"""Logging configuration for the sitemirror engine."""

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Dict, Optional

from .config import get_config_manager


# ANSI color codes for console output
class Colors:
    RESET = '\033[0m'
    BOLD = '\033[1m'
    RED = '\033[31m'
    GREEN = '\033[32m'
    YELLOW = '\033[33m'
    BLUE = '\033[34m'
    CYAN = '\033[36m'
    WHITE = '\033[37m'
    BRIGHT_RED = '\033[91m'


class ColorFormatter(logging.Formatter):
    """Formatter that adds colors to log levels."""

    LEVEL_COLORS = {
        logging.DEBUG: Colors.CYAN,
        logging.INFO: Colors.GREEN,
        logging.WARNING: Colors.YELLOW,
        logging.ERROR: Colors.RED,
        logging.CRITICAL: Colors.BRIGHT_RED + Colors.BOLD,
    }

    def __init__(self, fmt: Optional[str] = None, use_colors: bool = True):
        if fmt is None:
            fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
        super().__init__(fmt)
        self.use_colors = use_colors and hasattr(sys.stderr, 'isatty') and sys.stderr.isatty()

    def format(self, record: logging.LogRecord) -> str:
        if not self.use_colors:
            return super().format(record)

        # Colour a copy so file handlers sharing the record stay plain
        record = logging.makeLogRecord(record.__dict__)
        color = self.LEVEL_COLORS.get(record.levelno, Colors.WHITE)
        record.levelname = f"{color}{record.levelname}{Colors.RESET}"
        if record.name.startswith('sitemirror'):
            record.name = f"{Colors.BLUE}{record.name}{Colors.RESET}"
        return super().format(record)


class MirrorLogger:
    """Process-wide logger setup for sitemirror."""

    EXTERNAL_LEVELS = {
        'httpx': logging.WARNING,
        'httpcore': logging.WARNING,
        'asyncio': logging.WARNING,
        'sqlalchemy': logging.WARNING,
        'aiosqlite': logging.WARNING,
        'crawl4ai': logging.WARNING,
        'PIL': logging.WARNING,
        'filelock': logging.WARNING,
    }

    def __init__(self):
        self._loggers: Dict[str, logging.Logger] = {}
        self._configured = False

    def _configure_external_loggers(self) -> None:
        """Reduce verbosity of external libraries."""
        for name, level in self.EXTERNAL_LEVELS.items():
            logging.getLogger(name).setLevel(level)

    def setup_logging(
        self,
        level: str = "INFO",
        log_file: Optional[str] = None,
        use_colors: bool = True
    ) -> None:
        """Set up logging configuration.

        Args:
            level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
            log_file: Optional log file path
            use_colors: Whether to use colors in console output
        """
        log_level = getattr(logging, level.upper(), logging.INFO)

        root_logger = logging.getLogger()
        root_logger.setLevel(log_level)
        root_logger.handlers.clear()

        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(ColorFormatter(use_colors=use_colors))
        console_handler.setLevel(log_level)
        root_logger.addHandler(console_handler)

        if log_file:
            log_path = Path(log_file).expanduser()
            log_path.parent.mkdir(parents=True, exist_ok=True)

            file_handler = logging.handlers.RotatingFileHandler(
                log_path,
                maxBytes=10 * 1024 * 1024,  # 10MB
                backupCount=5
            )
            file_handler.setFormatter(logging.Formatter(
                '%(asctime)s [%(levelname)s] %(name)s: %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            ))
            file_handler.setLevel(log_level)
            root_logger.addHandler(file_handler)

        self._configure_external_loggers()
        self._configured = True

    @property
    def configured(self) -> bool:
        return self._configured

    def get_logger(self, name: str) -> logging.Logger:
        """Get a logger with the specified name."""
        if name not in self._loggers:
            self._loggers[name] = logging.getLogger(name)
        return self._loggers[name]


# Global logger instance
_mirror_logger: Optional[MirrorLogger] = None


def get_mirror_logger() -> MirrorLogger:
    """Get the global MirrorLogger instance."""
    global _mirror_logger
    if _mirror_logger is None:
        _mirror_logger = MirrorLogger()
    return _mirror_logger


def setup_logging(
    level: Optional[str] = None,
    log_file: Optional[str] = None,
    use_colors: bool = True
) -> None:
    """Set up logging using the config manager for unspecified values.

    Args:
        level: Override log level from config
        log_file: Override log file from config
        use_colors: Whether to colour console output
    """
    config_manager = get_config_manager()

    if level is None:
        level = config_manager.get_setting("global.log_level", "WARNING")
    if log_file is None:
        log_file = config_manager.get_setting("global.log_file")

    get_mirror_logger().setup_logging(level=level, log_file=log_file, use_colors=use_colors)


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the specified name.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Logger instance
    """
    return get_mirror_logger().get_logger(name)
