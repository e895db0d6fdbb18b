"""Structured logging for the flood guard.

Records go to stdout as one JSON object per line, or as a readable line with
``LOG_FORMAT=plain``. Log calls pass structured fields through ``extra``; a
handler filter attaches the request id bound by the middleware and masks any
field that could carry a client secret before a formatter sees the record.
Client keys and addresses are logged as short digests (``hash_identifier``).
"""

from __future__ import annotations

import hashlib
import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping

from floodguard.core.config import LogSettings, settings

REDACTED = "[REDACTED]"

# Field names whose values never reach a handler in clear.
SENSITIVE_KEYS: frozenset[str] = frozenset(
    {
        "authorization",
        "cookie",
        "set-cookie",
        "password",
        "secret",
        "token",
        "session_id",
        "session_key",
        "client_key",
        "database_url",
    }
)

# Attributes every LogRecord has; anything else arrived through ``extra``.
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}

_PLAIN_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(request_id)s] %(message)s"

_NO_REQUEST_ID = "-"

_request_id: ContextVar[str | None] = ContextVar("request_id", default=None)


def set_request_id(request_id: str | None) -> None:
    _request_id.set(request_id)


def get_request_id() -> str | None:
    return _request_id.get()


def clear_request_id() -> None:
    _request_id.set(None)


def hash_identifier(value: str) -> str:
    """Short SHA-256 digest of a client key or address, safe to log."""

    return hashlib.sha256(value.encode()).hexdigest()[:16]


def extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    """Return the fields a log call attached through ``extra``."""

    return {
        key: value
        for key, value in vars(record).items()
        if key not in _RECORD_ATTRS and not key.startswith("_")
    }


def _mask(value: Any, sensitive_keys: frozenset[str]) -> Any:
    if isinstance(value, Mapping):
        return {
            key: REDACTED if str(key).lower() in sensitive_keys else _mask(item, sensitive_keys)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [_mask(item, sensitive_keys) for item in value]
    return value


class ContextFilter(logging.Filter):
    """Attach the current request id and mask sensitive extra fields.

    Masking happens in place on the record, so every formatter on the
    handler (JSON or plain) sees the same scrubbed values. Nested mappings
    are masked by key as well.
    """

    def __init__(self, sensitive_keys: Iterable[str] = SENSITIVE_KEYS) -> None:
        super().__init__()
        self.sensitive_keys = frozenset(key.lower() for key in sensitive_keys)

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: D401
        if getattr(record, "request_id", None) is None:
            record.request_id = get_request_id() or _NO_REQUEST_ID

        for key, value in extra_fields(record).items():
            if key.lower() in self.sensitive_keys:
                setattr(record, key, REDACTED)
            else:
                setattr(record, key, _mask(value, self.sensitive_keys))
        return True


class JsonFormatter(logging.Formatter):
    """Render a record as ``{"ts", "level", "logger", "event", **extra}``."""

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "event": record.getMessage(),
        }
        payload.update(extra_fields(record))
        if payload.get("request_id") in (None, _NO_REQUEST_ID):
            payload.pop("request_id", None)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_logging(log_settings: LogSettings | None = None) -> None:
    """Send every record to stdout through the context filter.

    Replaces the root logger's handlers. uvicorn's access logger is disabled
    because the request middleware writes its own access record.

    Args:
        log_settings: Log options; defaults to the global settings.
    """

    cfg = log_settings or settings.log

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(ContextFilter())
    if cfg.format.lower() == "plain":
        handler.setFormatter(logging.Formatter(_PLAIN_FORMAT))
    else:
        handler.setFormatter(JsonFormatter())

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(getattr(logging, cfg.level.upper(), logging.INFO))

    logging.getLogger("uvicorn.access").disabled = True
