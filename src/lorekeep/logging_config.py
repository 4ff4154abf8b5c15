"""
Logging configuration for lorekeep.

Console output goes through rich; a rotating file per context (cli, watch)
is written to the XDG state directory.
"""

import json
import logging
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Optional

from rich.logging import RichHandler

from lorekeep.config import settings

STANDARD_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"

# Third-party loggers that are too chatty at INFO
NOISY_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine", "watchdog", "openai", "anthropic")


class JSONFormatter(logging.Formatter):
    """Render records as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload)


def _build_formatter() -> logging.Formatter:
    if settings.log_format == "json":
        return JSONFormatter()
    return logging.Formatter(STANDARD_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")


def setup_logging(context: str = "cli", log_level: Optional[str] = None) -> None:
    """
    Configure root logging for a process.

    Args:
        context: Name of the running surface; selects the log file name
        log_level: Override for settings.log_level

    Raises:
        PermissionError: If the log directory cannot be created
    """
    level = getattr(logging, (log_level or settings.log_level).upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    if settings.log_console_enabled:
        console_handler = RichHandler(rich_tracebacks=True, show_path=False)
        console_handler.setLevel(level)
        root.addHandler(console_handler)

    if settings.log_file_enabled:
        log_dir = settings.log_directory
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            str(log_dir / f"{context}.log"),
            maxBytes=settings.log_max_bytes,
            backupCount=settings.log_backup_count,
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(_build_formatter())
        root.addHandler(file_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).debug(
        f"Logging configured for context={context} level={logging.getLevelName(level)}"
    )
