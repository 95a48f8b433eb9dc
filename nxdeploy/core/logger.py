# nxdeploy/core/logger.py
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from rich.logging import RichHandler

DEFAULT_LOG_FORMAT = "%(asctime)s [%(levelname)-8s] %(name)-24s: %(message)s"
DEFAULT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
DEFAULT_LOG_DIRECTORY = "~/.local/state/nxdeploy/logs"
LOG_FILE_NAME = "nxdeploy.log"


class LoggerProxy:
    """
    Lazy logger accessor.
    Usage: log = LoggerProxy(__name__)
    """

    def __init__(self, name: str):
        self._name = name
        self._logger: logging.Logger | None = None

    def _get_logger(self) -> logging.Logger:
        if self._logger is None:
            self._logger = logging.getLogger(self._name)
        return self._logger

    def __getattr__(self, item: str) -> Any:
        return getattr(self._get_logger(), item)


def setup_logging(config: dict[str, Any], verbose: bool = False) -> None:
    """
    Sets up logging with rich console output and a rotating log file.

    Args:
        config: The application configuration.
        verbose: Whether to enable DEBUG logging regardless of config.
    """
    logging_config = config.get("logging", {})

    level_str = "DEBUG" if verbose else str(logging_config.get("level", "INFO")).upper()
    level = getattr(logging, level_str, logging.INFO)

    log_format = logging_config.get("format", DEFAULT_LOG_FORMAT)
    date_format = logging_config.get("date_format", DEFAULT_DATE_FORMAT)

    handlers: list[logging.Handler] = [
        RichHandler(
            rich_tracebacks=True,
            markup=False,
            show_time=False,
            show_path=False,
        )
    ]

    log_to_file = logging_config.get("log_to_file", True)
    if log_to_file:
        log_dir = Path(logging_config.get("log_file_directory", DEFAULT_LOG_DIRECTORY))
        log_dir = log_dir.expanduser().resolve()
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                log_dir / LOG_FILE_NAME, maxBytes=5 * 1024 * 1024, backupCount=5
            )
            file_handler.setFormatter(logging.Formatter(log_format, date_format))
            handlers.append(file_handler)
        except OSError as e:
            print(f"ERROR: Could not set up file logging at {log_dir}: {e}", file=sys.stderr)

    root_logger = logging.getLogger()
    if root_logger.hasHandlers():
        root_logger.handlers.clear()

    logging.basicConfig(level=level, format=log_format, datefmt=date_format, handlers=handlers)

    LoggerProxy(__name__).debug(
        f"Logging initialized. Level: {level_str}. File logging: {log_to_file}"
    )
