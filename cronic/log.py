"""
Logging setup for cronic.

Every record may carry structured fields (``record.fields``) that identify the
job, the iteration and the output channel it belongs to. Components receive a
``JobLogger`` explicitly instead of reaching for a module-level logger.
"""

from __future__ import annotations

import json
import logging
import sys
from typing import Any, Dict, Mapping, MutableMapping, Optional, Tuple

LOGGER_NAME = "cronic"
TEXT_FORMAT = "%(asctime)s %(levelname)s %(message)s"


def _format_value(value: Any) -> str:
    text = str(value)
    if not text or any(ch in text for ch in ' ="\t\n'):
        return json.dumps(text)
    return text


class TextFormatter(logging.Formatter):
    """Plain text lines with ``key=value`` fields appended."""

    def formatMessage(self, record: logging.LogRecord) -> str:
        message = super().formatMessage(record)
        fields: Dict[str, Any] = getattr(record, "fields", None) or {}
        if not fields:
            return message
        rendered = " ".join(f"{key}={_format_value(value)}" for key, value in fields.items())
        return f"{message} {rendered}"


class JsonFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "time": self.formatTime(record),
            "level": record.levelname.lower(),
            "msg": record.getMessage(),
        }
        payload.update(getattr(record, "fields", None) or {})
        if record.exc_info:
            payload["error"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class JobLogger(logging.LoggerAdapter):
    """Logger adapter carrying structured fields onto every record."""

    def __init__(self, logger: logging.Logger, fields: Optional[Mapping[str, Any]] = None):
        super().__init__(logger, dict(fields or {}))

    @property
    def fields(self) -> Dict[str, Any]:
        return dict(self.extra)

    def with_fields(self, fields: Mapping[str, Any]) -> "JobLogger":
        merged = dict(self.extra)
        merged.update(fields)
        return JobLogger(self.logger, merged)

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        extra = dict(kwargs.get("extra") or {})
        extra["fields"] = dict(self.extra)
        kwargs["extra"] = extra
        return msg, kwargs


def setup_logging(
    debug: bool = False,
    json_output: bool = False,
    log_file: Optional[str] = None,
) -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.DEBUG if debug else logging.INFO)
    formatter: logging.Formatter = JsonFormatter() if json_output else TextFormatter(TEXT_FORMAT)
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)
    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    return logger
