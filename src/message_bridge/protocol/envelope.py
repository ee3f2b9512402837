"""Wire envelope: model, validator and default codec.

An envelope is the unit that crosses the transport:

    {"data": ..., "requestId": 3}                    request / event
    {"data": ..., "referenceId": 3}                  response
    {"data": "boom", "isError": true, "referenceId": 3}  error response

Exactly these four keys are legal. Absence of ``referenceId`` marks a
request (or a fire-and-forget event when ``requestId`` is absent too).
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..errors import ProtocolError

ENVELOPE_KEYS = frozenset({"data", "requestId", "referenceId", "isError"})
OPTIONAL_KEYS = ("requestId", "referenceId", "isError")


class Envelope(BaseModel):
    """A single transmitted unit.

    Field names are snake_case in Python and camelCase on the wire.
    """

    model_config = ConfigDict(extra="forbid", strict=True, frozen=True, populate_by_name=True)

    data: Any
    request_id: int | None = Field(default=None, alias="requestId")
    reference_id: int | None = Field(default=None, alias="referenceId")
    is_error: bool | None = Field(default=None, alias="isError")

    @property
    def is_response(self) -> bool:
        """True when this envelope answers a request."""
        return self.reference_id is not None

    @property
    def expects_response(self) -> bool:
        """True when the sender is waiting for an answer."""
        return self.reference_id is None and self.request_id is not None

    def to_wire(self) -> dict[str, Any]:
        """Return the JSON-compatible dict, omitting unset optional keys."""
        wire: dict[str, Any] = {"data": self.data}
        if self.request_id is not None:
            wire["requestId"] = self.request_id
        if self.reference_id is not None:
            wire["referenceId"] = self.reference_id
        if self.is_error is not None:
            wire["isError"] = self.is_error
        return wire


def validate_envelope(obj: Any) -> Envelope:
    """Return ``obj`` as an Envelope or raise ProtocolError.

    Accepts an Envelope instance or a wire mapping with exactly the legal keys.
    """
    if isinstance(obj, Envelope):
        return obj
    if not isinstance(obj, Mapping):
        raise ProtocolError(
            f"envelope must be a mapping, got {type(obj).__name__}"
        )

    unknown = [key for key in obj if key not in ENVELOPE_KEYS]
    if unknown:
        raise ProtocolError(f"envelope has illegal keys: {sorted(map(str, unknown))}")
    if "data" not in obj:
        raise ProtocolError("envelope is missing 'data'")
    nulls = [key for key in OPTIONAL_KEYS if key in obj and obj[key] is None]
    if nulls:
        raise ProtocolError(f"envelope keys must be omitted rather than null: {nulls}")

    try:
        return Envelope.model_validate(dict(obj))
    except ValidationError as e:
        raise ProtocolError(f"invalid envelope: {e}") from e


def is_envelope(obj: Any) -> bool:
    """True if ``obj`` is a legal wire envelope."""
    try:
        validate_envelope(obj)
    except ProtocolError:
        return False
    return True


def encode_envelope(wire: Mapping[str, Any]) -> str:
    """Default encoder: compact JSON."""
    return json.dumps(wire, separators=(",", ":"), ensure_ascii=False)


def decode_envelope(raw: str | bytes) -> Any:
    """Default decoder: JSON text to Python objects."""
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    if not isinstance(raw, str):
        raise ProtocolError(f"encoded envelope must be text, got {type(raw).__name__}")
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"Invalid JSON: {e}") from e
