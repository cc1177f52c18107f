# identity_app/utils/logging_config.py
"""
Logging setup for the identity sync service.

``LOG_FORMAT=json`` emits one JSON object per line, including every ``extra=``
attribute passed at the call site (``sync_run_id``, ``sync_external_id``...).
``text`` keeps the classic single-line format for local development.
"""

import json
import logging
import os
from datetime import date, datetime, timezone
from logging.handlers import RotatingFileHandler

TEXT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

# Attributes every LogRecord carries; anything else came from ``extra=``.
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("x", logging.INFO, __file__, 0, "", None, None)).keys()
) | {"message", "asctime"}


def _json_default(value):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if hasattr(value, "value"):
        return value.value
    return str(value)


class JsonFormatter(logging.Formatter):
    """Serialize a record (and its extra attributes) as a JSON line."""

    def __init__(self, *, app_name=None, environment=None):
        super().__init__()
        self.app_name = app_name
        self.environment = environment

    def format(self, record):
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if self.app_name:
            payload["app"] = self.app_name
        if self.environment:
            payload["env"] = self.environment
        for key, value in record.__dict__.items():
            if key not in _RECORD_ATTRS and not key.startswith("_"):
                payload[key] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=_json_default)


def _build_formatter(app):
    if str(app.config.get("LOG_FORMAT", "json")).lower() == "json":
        return JsonFormatter(app_name=app.config.get("APP_NAME"), environment=app.config.get("SYNC_METRICS_ENV"))
    return logging.Formatter(TEXT_FORMAT)


def setup_logging(app):
    """
    Attach console and rotating-file handlers to the app logger and the
    ``identity_app`` package logger according to the monitoring config.
    """
    level = getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO)
    formatter = _build_formatter(app)

    handlers = []
    if app.config.get("ENABLE_CONSOLE_LOGGING", True):
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        handlers.append(console)

    if app.config.get("ENABLE_FILE_LOGGING", False):
        log_dir = app.config.get("LOG_DIR", "logs")
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, app.config.get("LOG_FILE_NAME", "identity_sync.log")),
            maxBytes=int(app.config.get("LOG_FILE_MAX_BYTES", 10 * 1024 * 1024)),
            backupCount=int(app.config.get("LOG_FILE_BACKUP_COUNT", 10)),
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    for logger in (app.logger, logging.getLogger("identity_app")):
        for handler in list(logger.handlers):
            if getattr(handler, "_identity_sync_handler", False):
                logger.removeHandler(handler)
        for handler in handlers:
            handler._identity_sync_handler = True
            logger.addHandler(handler)
        logger.setLevel(level)

    app.logger.debug("Logging configured", extra={"log_format": app.config.get("LOG_FORMAT"), "log_level": level})
    return app.logger
