from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# ---------------------------------------------------------------------------
# Envelope model & helpers (transport layer)
# ---------------------------------------------------------------------------

class Envelope(BaseModel):
    """JSON envelope carried over WebSockets, one per text frame."""

    type: str
    from_: str = Field(default="", alias="from")
    to: str = "*"
    ts: int = 0
    payload: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("ts")
    @classmethod
    def _ts_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("timestamp must be non-negative")
        return value


# client -> server
USER_JOIN = "USER_JOIN"
MSG_PUBLIC = "MSG_PUBLIC"
MSG_PRIVATE = "MSG_PRIVATE"
HEARTBEAT = "HEARTBEAT"

# server -> client
CHAT_HISTORY = "CHAT_HISTORY"
PUBLIC_DELIVER = "PUBLIC_DELIVER"
PRIVATE_DELIVER = "PRIVATE_DELIVER"
ERROR = "ERROR"

ERROR_CODES = {
    "UNKNOWN_TYPE",
    "BAD_ENVELOPE",
    "BAD_IDENTITY",
    "EMPTY_TEXT",
    "BAD_MESSAGE",
    "NOT_JOINED",
}

SYSTEM_SENDER = "System"


class ProtocolError(Exception):
    """Rejected client input; reported back to the sending connection only."""

    def __init__(self, code: str, detail: str) -> None:
        if code not in ERROR_CODES:
            raise ValueError(f"unknown error code {code}")
        super().__init__(f"{code}: {detail}")
        self.code = code
        self.detail = detail


# ---------------------------------------------------------------------------
# Chat message model
# ---------------------------------------------------------------------------

class Message(BaseModel):
    """A chat message. Immutable once the store has stamped it."""

    sender_id: str = Field(alias="senderId")
    text: str
    type: Literal["public", "private"]
    recipient_id: Optional[str] = Field(default=None, alias="recipientId")
    timestamp: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @model_validator(mode="after")
    def _recipient_iff_private(self) -> "Message":
        if self.type == "private" and not self.recipient_id:
            raise ValueError("private message requires recipientId")
        if self.type == "public" and self.recipient_id is not None:
            raise ValueError("public message must not carry recipientId")
        return self

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# Utility helpers
# ---------------------------------------------------------------------------

def now_ms() -> int:
    """Milliseconds since the Unix epoch."""

    return int(time.time() * 1000)


def now_iso() -> str:
    """UTC timestamp in the ``2024-01-01T12:00:00.000Z`` form."""

    stamp = datetime.now(timezone.utc).isoformat(timespec="milliseconds")
    return stamp.replace("+00:00", "Z")


def build_frame(
    type: str,
    from_: str,
    to: str,
    payload: Dict[str, Any],
    *,
    ts: int | None = None,
) -> Dict[str, Any]:
    """Create an envelope dict ready for ``json.dumps``."""

    return {
        "type": type,
        "from": from_,
        "to": to,
        "ts": now_ms() if ts is None else ts,
        "payload": payload,
    }


def parse_envelope(data: Any) -> Envelope:
    """Validate a decoded JSON object, raising ProtocolError on bad shape."""

    if not isinstance(data, dict):
        raise ProtocolError("BAD_ENVELOPE", "envelope must be a JSON object")
    try:
        return Envelope.model_validate(data)
    except ValueError as exc:
        raise ProtocolError("BAD_ENVELOPE", str(exc)) from exc


__all__ = [
    "Envelope",
    "Message",
    "ProtocolError",
    "ERROR_CODES",
    "SYSTEM_SENDER",
    "USER_JOIN",
    "MSG_PUBLIC",
    "MSG_PRIVATE",
    "HEARTBEAT",
    "CHAT_HISTORY",
    "PUBLIC_DELIVER",
    "PRIVATE_DELIVER",
    "ERROR",
    "now_ms",
    "now_iso",
    "build_frame",
    "parse_envelope",
]
