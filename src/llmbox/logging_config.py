# src/llmbox/logging_config.py
"""
Logging setup for processes embedding the sandbox manager.

Library modules only ever call ``logging.getLogger(__name__)``; this
module is for the application that owns the manager. It installs:

- a console handler gated by DisplayFilter, so only records logged with
  ``extra={"display": True}`` reach the console unless it is enabled
- an optional file handler, per-run or a single rotating file
- per-component levels that keep SDK chatter (docker, kubernetes, urllib3,
  httpx, redis) quiet

The configuration dictionary is the ``[llmbox.logging]`` section of the
manager configuration (see llmbox.config).

Usage:
    from llmbox.config import load_manager_config
    from llmbox.logging_config import configure_logging, log_display

    config = load_manager_config()
    configure_logging(config.logging)

    logger = logging.getLogger("myapp")
    log_display(logger, logging.INFO, "Warmed %d sandboxes", count)
"""

import logging
import os
import sys
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

DEFAULT_LOGGING_CONFIG: dict[str, Any] = {
    "console_enabled": False,
    "console_level": "WARNING",
    "console_format": "%(levelname)s - %(message)s",
    "file_enabled": False,
    "file_level": "DEBUG",
    "file_directory": "~/.local/share/llmbox/logs",
    "file_mode": "single",
    "file_name_pattern": "{app}_{timestamp:%Y%m%d_%H%M%S}.log",
    "file_single_name": "{app}.log",
    "file_format": "%(asctime)s [%(levelname)-8s] %(name)-30s - %(message)s (%(filename)s:%(lineno)d)",
    "rotation_max_bytes": 10 * 1024 * 1024,  # 10 MB
    "rotation_backup_count": 5,
    "display_min_level": "INFO",
    "components": {
        "llmbox": "INFO",
        "docker": "WARNING",
        "kubernetes": "WARNING",
        "urllib3": "WARNING",
        "httpx": "WARNING",
        "httpcore": "WARNING",
        "redis": "WARNING",
    },
}

# Handlers installed by the last configure_logging() call
_installed_handlers: list[logging.Handler] = []


class DisplayFilter(logging.Filter):
    """Controls which log records pass through to the console handler.

    When the console is globally enabled everything passes and the
    handler's own level does the filtering. Otherwise only records with
    ``record.display = True`` at or above ``display_min_level`` pass.
    """

    def __init__(
        self,
        console_globally_enabled: bool = False,
        display_min_level: int = logging.INFO,
    ) -> None:
        super().__init__()
        self.console_globally_enabled = console_globally_enabled
        self.display_min_level = display_min_level

    def filter(self, record: logging.LogRecord) -> bool:
        if self.console_globally_enabled:
            return True

        if getattr(record, "display", False):
            return record.levelno >= self.display_min_level

        return False


def _level(value: str | int, default: int) -> int:
    if isinstance(value, int):
        return value
    level = logging.getLevelName(str(value).upper())
    return level if isinstance(level, int) else default


def _create_console_handler(config: dict[str, Any]) -> logging.Handler:
    handler = logging.StreamHandler(sys.stderr)
    if config.get("console_enabled", False):
        handler.setLevel(_level(config.get("console_level", "WARNING"), logging.WARNING))
    else:
        # The filter is the sole gate: display=True passes, the rest is blocked
        handler.setLevel(logging.DEBUG)
    handler.setFormatter(
        logging.Formatter(config.get("console_format", DEFAULT_LOGGING_CONFIG["console_format"]))
    )
    handler.addFilter(
        DisplayFilter(
            console_globally_enabled=config.get("console_enabled", False),
            display_min_level=_level(config.get("display_min_level", "INFO"), logging.INFO),
        )
    )
    return handler


def _create_file_handler(
    config: dict[str, Any], app_name: str
) -> tuple[logging.Handler | None, Path | None]:
    """Create the file handler.

    ``file_mode="single"`` uses a RotatingFileHandler on one persistent
    file; ``"per_run"`` creates a new timestamped file.
    """
    log_dir = Path(os.path.expanduser(config.get("file_directory", "")))
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        sys.stderr.write(f"Warning: Cannot create log directory {log_dir}: {e}\n")
        return None, None

    try:
        if config.get("file_mode", "single") == "single":
            log_file_path = log_dir / config.get("file_single_name", "{app}.log").format(
                app=app_name
            )
            handler: logging.Handler = RotatingFileHandler(
                log_file_path,
                maxBytes=config.get("rotation_max_bytes", 10 * 1024 * 1024),
                backupCount=config.get("rotation_backup_count", 5),
                encoding="utf-8",
            )
        else:
            pattern = config.get("file_name_pattern", DEFAULT_LOGGING_CONFIG["file_name_pattern"])
            log_file_path = log_dir / pattern.format(app=app_name, timestamp=datetime.now())
            handler = logging.FileHandler(log_file_path, encoding="utf-8")
    except OSError as e:
        sys.stderr.write(f"Warning: Cannot create log file in {log_dir}: {e}\n")
        return None, None

    handler.setLevel(_level(config.get("file_level", "DEBUG"), logging.DEBUG))
    handler.setFormatter(
        logging.Formatter(config.get("file_format", DEFAULT_LOGGING_CONFIG["file_format"]))
    )
    return handler, log_file_path


def configure_logging(
    config: dict[str, Any] | None = None, app_name: str = "llmbox"
) -> Path | None:
    """
    Install console and file handlers on the root logger.

    Calling it again replaces the handlers installed by the previous call
    and leaves handlers installed by others alone.

    Args:
        config: Logging section; missing keys fall back to DEFAULT_LOGGING_CONFIG
        app_name: Used in the log file name

    Returns:
        Path to the log file, or None when file logging is off
    """
    log_config = {**DEFAULT_LOGGING_CONFIG, **(config or {})}
    root_logger = logging.getLogger()

    for handler in _installed_handlers:
        root_logger.removeHandler(handler)
        handler.close()
    _installed_handlers.clear()

    root_logger.setLevel(logging.DEBUG)

    console_handler = _create_console_handler(log_config)
    root_logger.addHandler(console_handler)
    _installed_handlers.append(console_handler)

    log_file_path = None
    if log_config.get("file_enabled", False):
        file_handler, log_file_path = _create_file_handler(log_config, app_name)
        if file_handler is not None:
            root_logger.addHandler(file_handler)
            _installed_handlers.append(file_handler)

    components = {**DEFAULT_LOGGING_CONFIG["components"], **log_config.get("components", {})}
    for component_name, level_str in components.items():
        logging.getLogger(component_name).setLevel(_level(level_str, logging.INFO))

    if log_file_path:
        logging.getLogger(__name__).debug(f"Logging configured. Log file: {log_file_path}")
    return log_file_path


def log_display(logger: logging.Logger, level: int, msg: str, *args, **kwargs) -> None:
    """Log a record that reaches the console even when the console is disabled."""
    extra = kwargs.pop("extra", {}) or {}
    extra["display"] = True
    logger.log(level, msg, *args, extra=extra, **kwargs)
