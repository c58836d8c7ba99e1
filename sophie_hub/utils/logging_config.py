# sophie_hub/utils/logging_config.py
"""
Application logging setup.

Handlers are rebuilt on every call so tests can re-run ``setup_logging`` after
changing ``LOG_LEVEL`` or ``LOG_FORMAT``. Fields passed through
``logger.info(..., extra={...})`` end up as top-level keys in JSON output.
"""

import json
import logging
import os
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler

# Attributes every LogRecord carries; anything else came in through ``extra``.
_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None)).keys()
) | {"message", "asctime"}

_HANDLER_MARKER = "_sophie_hub_handler"


class JSONFormatter(logging.Formatter):
    """Render records as one JSON object per line."""

    def __init__(self, app_name="Sophie Hub", app_version=None):
        super().__init__()
        self.app_name = app_name
        self.app_version = app_version

    def format(self, record):
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "line": record.lineno,
            "app": self.app_name,
        }
        if self.app_version:
            payload["version"] = self.app_version
        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS or key.startswith("_"):
                continue
            payload[key] = value
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable lines with ``extra`` fields appended as key=value pairs."""

    def __init__(self):
        super().__init__("%(asctime)s %(levelname)s [%(name)s] %(message)s")

    def format(self, record):
        line = super().format(record)
        extras = [
            f"{key}={value}"
            for key, value in record.__dict__.items()
            if key not in _RESERVED_ATTRS and not key.startswith("_")
        ]
        if extras:
            line = f"{line} | {' '.join(extras)}"
        return line


def _build_formatter(app):
    if str(app.config.get("LOG_FORMAT", "json")).lower() == "json":
        return JSONFormatter(app.config.get("APP_NAME", "Sophie Hub"), app.config.get("APP_VERSION"))
    return TextFormatter()


def _mark(handler):
    setattr(handler, _HANDLER_MARKER, True)
    return handler


def setup_logging(app):
    """Configure ``app.logger`` from the monitoring config values."""
    level = logging.getLevelName(str(app.config.get("LOG_LEVEL", "INFO")).upper())
    if not isinstance(level, int):
        level = logging.INFO

    logger = app.logger
    for handler in list(logger.handlers):
        if getattr(handler, _HANDLER_MARKER, False):
            logger.removeHandler(handler)
            handler.close()

    formatter = _build_formatter(app)

    if app.config.get("ENABLE_CONSOLE_LOGGING", True):
        console = _mark(logging.StreamHandler())
        console.setFormatter(formatter)
        console.setLevel(level)
        logger.addHandler(console)

    if app.config.get("ENABLE_FILE_LOGGING", False):
        log_dir = app.config.get("LOG_DIR", "logs")
        os.makedirs(log_dir, exist_ok=True)
        file_handler = _mark(
            RotatingFileHandler(
                os.path.join(log_dir, app.config.get("LOG_FILE_NAME", "sophie_hub.log")),
                maxBytes=int(app.config.get("LOG_FILE_MAX_BYTES", 10485760)),
                backupCount=int(app.config.get("LOG_FILE_BACKUP_COUNT", 10)),
                encoding="utf-8",
            )
        )
        file_handler.setFormatter(formatter)
        file_handler.setLevel(level)
        logger.addHandler(file_handler)

    logger.setLevel(level)
    # Celery and the Google client are chatty at INFO.
    logging.getLogger("googleapiclient.discovery_cache").setLevel(logging.ERROR)
    logging.getLogger("celery").setLevel(max(level, logging.WARNING))
    return logger
