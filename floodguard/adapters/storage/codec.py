"""Versioned JSON encoding of client records.

Payloads carry an explicit ``version`` so rows written today stay readable by
later releases. Unknown extra fields are ignored on read.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from floodguard.adapters.storage.base import ClientRecord
from floodguard.core.errors import StorageError

RECORD_SCHEMA_VERSION = 1
SUPPORTED_VERSIONS = frozenset({1})


class RecordPayload(BaseModel):
    """Wire shape of a stored client record (the key lives in its own column)."""

    model_config = ConfigDict(extra="ignore")

    version: int = RECORD_SCHEMA_VERSION
    ip_address: str
    request_uri: str
    request_method: str
    timestamp: float
    request_count: int = Field(ge=1)
    blocked_at: float | None = None


def encode_record(record: ClientRecord) -> str:
    """Encode ``record`` as a versioned JSON document."""
    payload = RecordPayload(
        ip_address=record.ip_address,
        request_uri=record.request_uri,
        request_method=record.request_method,
        timestamp=record.timestamp,
        request_count=record.request_count,
        blocked_at=record.blocked_at,
    )
    return payload.model_dump_json()


def decode_record(key: str, data: str | bytes) -> ClientRecord:
    """Decode a stored payload back into a ClientRecord.

    Args:
        key: Client key the payload was stored under.
        data: JSON document produced by :func:`encode_record`.

    Raises:
        StorageError: If the payload is malformed or of an unsupported version.
    """
    try:
        payload = RecordPayload.model_validate_json(data)
    except ValidationError as exc:
        raise StorageError(
            code="storage_decode_error",
            message="Stored client record could not be decoded",
            details={"hint": str(exc.errors(include_url=False)[:1])},
        ) from exc

    if payload.version not in SUPPORTED_VERSIONS:
        raise StorageError(
            code="storage_decode_error",
            message=f"Unsupported client record version: {payload.version}",
            details={"value": payload.version},
        )

    return ClientRecord(
        key=key,
        ip_address=payload.ip_address,
        request_uri=payload.request_uri,
        request_method=payload.request_method,
        timestamp=payload.timestamp,
        request_count=payload.request_count,
        blocked_at=payload.blocked_at,
    )
