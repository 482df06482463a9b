"""Structured logging for the data layer.

Library modules log event names (``session_factory_built``,
``transaction_rollback``) with their fields under ``structured_data``.
Nothing is printed unless the host calls :func:`configure_logging`, which
writes JSON lines for the ``plugindb`` logger tree only and leaves the
root logger to the host.
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, MutableMapping, TextIO
from uuid import uuid4

LIBRARY_LOGGER = "plugindb"

_CORRELATION_ID: ContextVar[str | None] = ContextVar("plugindb_correlation_id", default=None)

logging.getLogger(LIBRARY_LOGGER).addHandler(logging.NullHandler())


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        correlation_id = _CORRELATION_ID.get()
        if correlation_id:
            payload["correlation_id"] = correlation_id
        payload.update(getattr(record, "structured_data", None) or {})
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class StructuredAdapter(logging.LoggerAdapter):
    """Adds the adapter's fixed fields to each call's ``structured_data``."""

    def process(self, msg: str, kwargs: MutableMapping[str, Any]) -> tuple[str, MutableMapping[str, Any]]:
        extra = dict(kwargs.get("extra") or {})
        extra["structured_data"] = {**(self.extra or {}), **(extra.get("structured_data") or {})}
        kwargs["extra"] = extra
        return msg, kwargs


def configure_logging(
    *,
    level: int | str = logging.INFO,
    environment: str = "dev",
    stream: TextIO | None = None,
) -> logging.Handler:
    """Attach one JSON handler to the ``plugindb`` logger and return it.

    Repeated calls return the handler installed first. ``prod`` never logs
    below INFO.
    """
    library_logger = logging.getLogger(LIBRARY_LOGGER)
    for handler in library_logger.handlers:
        if isinstance(handler.formatter, JsonFormatter):
            return handler

    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        level = resolved if isinstance(resolved, int) else logging.INFO
    if environment == "prod":
        level = max(level, logging.INFO)

    handler = logging.StreamHandler(stream)
    handler.setFormatter(JsonFormatter())
    library_logger.addHandler(handler)
    library_logger.setLevel(level)
    library_logger.propagate = False
    return handler


def get_logger(name: str, **defaults: Any) -> StructuredAdapter:
    return StructuredAdapter(logging.getLogger(name), defaults)


def get_correlation_id() -> str | None:
    return _CORRELATION_ID.get()


@contextmanager
def correlation_context(correlation_id: str | None = None) -> Iterator[str]:
    """Tag every record logged inside the block, and error payloads, with one id."""

    cid = correlation_id or uuid4().hex
    token = _CORRELATION_ID.set(cid)
    try:
        yield cid
    finally:
        _CORRELATION_ID.reset(token)


__all__ = [
    "LIBRARY_LOGGER",
    "JsonFormatter",
    "StructuredAdapter",
    "configure_logging",
    "correlation_context",
    "get_correlation_id",
    "get_logger",
]
