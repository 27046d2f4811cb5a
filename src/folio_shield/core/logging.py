"""Structured logging setup.

Records are written as one JSON object per line to size-rotated files: an
error-only stream and a combined stream. Outside production the same records
are mirrored to the console in a plain readable format.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from folio_shield.core.settings import Settings

ROOT_LOGGER_NAME = "folio_shield"
SECURITY_LOGGER_NAME = "folio_shield.security"

# Attributes every LogRecord carries; anything else was passed through ``extra``.
_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys() | {"message", "asctime"}
)


class JsonFormatter(logging.Formatter):
    """Render a log record as a single-line JSON document."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith("_"):
                payload[key] = value
        if record.exc_info:
            payload["stack"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def setup_logging(config: Settings) -> logging.Logger:
    """Configure the service logger tree from settings.

    Safe to call more than once; existing handlers are replaced.
    """
    root_logger = logging.getLogger(ROOT_LOGGER_NAME)
    root_logger.setLevel(getattr(logging, config.log_level.upper(), logging.INFO))
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    log_dir = Path(config.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    json_formatter = JsonFormatter()

    error_handler = RotatingFileHandler(
        log_dir / "error.log",
        maxBytes=config.log_max_bytes,
        backupCount=config.log_backup_count,
        encoding="utf-8",
    )
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(json_formatter)
    root_logger.addHandler(error_handler)

    combined_handler = RotatingFileHandler(
        log_dir / "combined.log",
        maxBytes=config.log_max_bytes,
        backupCount=config.log_backup_count,
        encoding="utf-8",
    )
    combined_handler.setFormatter(json_formatter)
    root_logger.addHandler(combined_handler)

    if config.log_to_console or not config.is_production:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        root_logger.addHandler(console_handler)

    root_logger.info("Logging initialized (level=%s, dir=%s)", config.log_level, log_dir)
    return root_logger


def log_security_event(reason: str, ip: str, path: str, **extra: Any) -> None:
    """Emit the single structured WARNING record for a security rejection."""
    logging.getLogger(SECURITY_LOGGER_NAME).warning(
        "Security rejection: %s (ip=%s path=%s)",
        reason,
        ip,
        path,
        extra={"reason": reason, "ip": ip, "path": path, **extra},
    )
