"""Line framing and the ``{type, id, payload}`` envelope codec."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, ValidationError, field_validator

from .const import ERROR_TYPE, HANDSHAKE_TYPE, RECORD_DELIMITER
from .exception import McpError

RequestId = Union[str, int, float, bool, None]


class Envelope(BaseModel):
    """Wire unit exchanged in both directions."""

    type: str = Field(..., min_length=1, description="Dotted operation name")
    id: RequestId = Field(None, description="Opaque request correlator")
    payload: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, v: Any) -> Any:
        """Envelope types are matched case-insensitively."""
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @field_validator("payload", mode="before")
    @classmethod
    def default_payload(cls, v: Any) -> Any:
        """Treat a missing or null payload as empty."""
        if v is None:
            return {}
        return v


class LineFramer:
    """Split a byte stream into newline-terminated records.

    Bytes after the last delimiter are held until the next ``feed`` call, so a
    record split over several reads (including a multi-byte UTF-8 sequence) is
    reassembled before it is decoded.
    """

    def __init__(self) -> None:
        """Start with an empty partial-record buffer."""
        self._buffer = bytearray()

    @property
    def pending(self) -> int:
        """Number of buffered bytes not yet terminated by a newline."""
        return len(self._buffer)

    def feed(self, data: bytes) -> List[str]:
        """Append ``data`` and return every complete, non-blank record."""
        self._buffer.extend(data)
        records: List[str] = []
        while True:
            idx = self._buffer.find(RECORD_DELIMITER)
            if idx < 0:
                break
            raw = bytes(self._buffer[:idx])
            del self._buffer[: idx + 1]
            line = raw.decode("utf-8", errors="replace").strip()
            if line:
                records.append(line)
        return records


def decode_record(record: str) -> Envelope:
    """Decode one text record; raise ``McpError('invalid_json')`` on failure."""
    try:
        data = json.loads(record)
    except ValueError as exc:
        raise McpError("invalid_json") from exc
    if not isinstance(data, dict):
        raise McpError("invalid_json")
    try:
        return Envelope.model_validate(data)
    except ValidationError as exc:
        raise McpError("invalid_json") from exc


def _json_default(value: Any) -> Any:
    """Serialize values json cannot handle natively."""
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def encode_envelope(envelope: Envelope) -> bytes:
    """Serialize ``envelope`` as one compact JSON line."""
    body = json.dumps(
        envelope.model_dump(),
        separators=(",", ":"),
        default=_json_default,
        ensure_ascii=False,
    )
    return body.encode("utf-8") + RECORD_DELIMITER


def make_envelope(
    type_: str,
    payload: Optional[Dict[str, Any]] = None,
    request_id: RequestId = None,
) -> Envelope:
    """Build an outgoing envelope without re-running input normalisation."""
    return Envelope.model_construct(
        type=type_, id=request_id, payload=payload or {}
    )


def error_envelope(code: str, request_id: RequestId = None) -> Envelope:
    """Return the ``mcp/error`` envelope for ``code``."""
    return make_envelope(ERROR_TYPE, {"code": code}, request_id)


def handshake_envelope(server: str, version: str) -> Envelope:
    """Return the unsolicited greeting sent to every new connection."""
    return make_envelope(HANDSHAKE_TYPE, {"server": server, "version": version})


def utc_timestamp() -> str:
    """ISO-8601 UTC timestamp used on pushed events."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
