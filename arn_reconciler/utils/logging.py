"""
Log setup shared by the reconciler CLI and its worker threads.

Every event line carries a bracketed tag (`[RUN START]`, `[BATCH COMPLETE]`, ...)
and the identifiers it concerns passed through `extra=`. On a terminal the
console format shows the worker thread so concurrent record checks can be told
apart; with LOG_JSON=true each record becomes one JSON object whose `extra=`
fields sit at the top level, ready for a log pipeline to index by run id.

    configure_logging(level="INFO", json_logs=settings.log_json)
    log = get_logger(__name__)
    log.info("[CHUNK 2] Fetched 5000 records", extra={"run_id": run_id, "after": 5000})
"""

from __future__ import annotations

import json
import logging
import logging.config
from typing import Any, Dict, Optional

CONSOLE_FORMAT = "%(asctime)s | %(levelname)s | %(threadName)s | %(name)s | %(message)s"
CONSOLE_DATEFMT = "%Y-%m-%d %H:%M:%S"

# botocore logs every request at DEBUG/INFO.
QUIET_LOGGERS = ("botocore", "boto3", "urllib3", "s3transfer")

# Attributes every LogRecord carries; anything else arrived through `extra=`.
_STANDARD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None)).keys()
) | {"message", "asctime", "taskName"}


def _json_formatter(record: logging.LogRecord) -> str:
    """Serialize a record, lifting its `extra=` fields beside level/logger/message."""
    payload: Dict[str, Any] = {
        "level": record.levelname,
        "logger": record.name,
        "message": record.getMessage(),
    }
    payload.update(
        (key, value)
        for key, value in record.__dict__.items()
        if key not in _STANDARD_ATTRS and key != "extra"
    )
    # Callers may also pass extra={"extra": {...}}.
    nested = getattr(record, "extra", None)
    if isinstance(nested, dict):
        payload.update(nested)
    if record.exc_info:
        payload["exc_info"] = logging.Formatter().formatException(record.exc_info)
    if record.stack_info:
        payload["stack_info"] = record.stack_info
    return json.dumps(payload, default=str)


class JsonFormatter(logging.Formatter):
    """One JSON object per log line."""

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        return _json_formatter(record)


def _logging_config(level: str, formatter: str) -> Dict[str, Any]:
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "console": {"format": CONSOLE_FORMAT, "datefmt": CONSOLE_DATEFMT},
            "json": {"()": JsonFormatter},
        },
        "handlers": {
            "stderr": {
                "class": "logging.StreamHandler",
                "formatter": formatter,
                "level": level,
            }
        },
        "root": {"handlers": ["stderr"], "level": level},
        "loggers": {name: {"level": "WARNING"} for name in QUIET_LOGGERS},
    }


def configure_logging(
    level: str = "INFO",
    json_logs: bool = False,
    force: bool = True,
) -> None:
    """
    Install the reconciler's handlers on the root logger.

    Parameters
    ----------
    level : str
        Root level name, usually LOG_LEVEL from settings.
    json_logs : bool
        Emit JSON objects instead of console lines.
    force : bool
        Replace handlers that are already installed. With False an existing
        setup, such as one made by an embedding application, is left alone.
    """
    if not force and logging.getLogger().handlers:
        return
    logging.config.dictConfig(_logging_config(level.upper(), "json" if json_logs else "console"))


def get_logger(name: Optional[str] = None) -> logging.Logger:
    return logging.getLogger(name)


__all__ = ["configure_logging", "get_logger", "JsonFormatter"]
