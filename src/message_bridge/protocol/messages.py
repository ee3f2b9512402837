"""Application messages carried inside envelope ``data``.

Example:
    {"type": "log", "payload": {"level": 2, "message": "ready"}, "meta": {...}}
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from enum import IntEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError

from ..errors import ProtocolError

MESSAGE_KEYS = frozenset({"type", "payload", "meta"})

# Pattern for entries of a declared message type allow-list
MESSAGE_TYPE_PATTERN = re.compile(r"[a-zA-Z_]+")

LOG_MESSAGE_TYPE = "log"


class Message(BaseModel):
    """A typed application message."""

    model_config = ConfigDict(extra="forbid", strict=True, frozen=True)

    type: str
    payload: Any = None
    meta: Any = None

    def to_wire(self) -> dict[str, Any]:
        """Return the JSON-compatible dict, keeping only supplied keys."""
        wire: dict[str, Any] = {"type": self.type}
        if "payload" in self.model_fields_set:
            wire["payload"] = self.payload
        if "meta" in self.model_fields_set:
            wire["meta"] = self.meta
        return wire


def validate_message(obj: Any) -> Message:
    """Return ``obj`` as a Message or raise ProtocolError."""
    if isinstance(obj, Message):
        return obj
    if not isinstance(obj, Mapping):
        raise ProtocolError(f"invalid message: expected a mapping, got {type(obj).__name__}")

    unknown = [key for key in obj if key not in MESSAGE_KEYS]
    if unknown:
        raise ProtocolError(f"invalid message: illegal keys {sorted(map(str, unknown))}")
    if not isinstance(obj.get("type"), str):
        raise ProtocolError("invalid message: 'type' must be a string")

    try:
        return Message.model_validate(dict(obj))
    except ValidationError as e:
        raise ProtocolError(f"invalid message: {e}") from e


def is_message(obj: Any) -> bool:
    """True if ``obj`` has the application message shape."""
    try:
        validate_message(obj)
    except ProtocolError:
        return False
    return True


def is_valid_message_type_list(obj: Any) -> bool:
    """True for a list/tuple of unique, non-empty ``[a-zA-Z_]+`` strings."""
    if not isinstance(obj, list | tuple):
        return False
    if not all(isinstance(v, str) for v in obj):
        return False
    if len(set(obj)) != len(obj):
        return False
    return all(MESSAGE_TYPE_PATTERN.fullmatch(v) for v in obj)


def is_valid_handler_collection(obj: Any) -> bool:
    """True for a mapping of message type to a callable or None."""
    return isinstance(obj, Mapping) and all(
        isinstance(key, str) and (value is None or callable(value))
        for key, value in obj.items()
    )


# =============================================================================
# Log messages
# =============================================================================


class LogLevel(IntEnum):
    """Severity carried by log messages."""

    TRACE = 0
    DEBUG = 1
    INFO = 2
    WARN = 3
    ERROR = 4


class LogPayload(BaseModel):
    """Payload of a ``log`` message."""

    model_config = ConfigDict(extra="forbid")

    level: LogLevel | None = None
    message: str | None = None


def log_message(message: str, level: LogLevel = LogLevel.INFO) -> Message:
    """Build a ``log`` application message."""
    payload = LogPayload(level=level, message=message)
    return Message(type=LOG_MESSAGE_TYPE, payload=payload.model_dump(mode="json"))
