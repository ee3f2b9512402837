"""Capability checks for bridges and transport adapters.

The router accepts anything shaped like a Bridge, and the Bridge accepts any
transport adapter. These checks run at construction time and report every
missing capability instead of a bare boolean.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

BRIDGE_PROPERTIES = ("is_connected", "is_connecting")
BRIDGE_METHODS = ("connect", "disconnect", "send")
TRANSPORT_METHODS = ("connect", "disconnect", "send", "bind")


@dataclass
class ValidationResult:
    """Outcome of a capability check."""

    errors: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    def __bool__(self) -> bool:
        return self.valid

    def describe(self) -> str:
        return "; ".join(self.errors)


@runtime_checkable
class BridgeLike(Protocol):
    """What the router needs from a bridge."""

    @property
    def is_connected(self) -> bool: ...

    @property
    def is_connecting(self) -> bool: ...

    def connect(
        self,
        handler: Callable[[Any], Any],
        await_connection: bool = False,
        attempts: int = 1,
    ) -> Awaitable[None]: ...

    def disconnect(self) -> Awaitable[None]: ...

    def send(self, envelope: Any) -> None: ...

    def request(self, data: Any, timeout: float | None = None) -> Awaitable[Any]: ...


def _check_methods(obj: Any, names: tuple[str, ...], result: ValidationResult) -> None:
    for name in names:
        if not callable(getattr(obj, name, None)):
            result.errors.append(f"'{name}' must be callable")


def check_bridge(obj: Any) -> ValidationResult:
    """Check that ``obj`` offers the bridge capabilities the router uses."""
    result = ValidationResult()
    if obj is None:
        result.errors.append("bridge is None")
        return result

    for name in BRIDGE_PROPERTIES:
        if not hasattr(obj, name):
            result.errors.append(f"missing property '{name}'")
        elif callable(getattr(obj, name)):
            result.errors.append(f"'{name}' must be a property, not a method")
    _check_methods(obj, BRIDGE_METHODS, result)
    return result


def check_transport(obj: Any) -> ValidationResult:
    """Check that ``obj`` satisfies the transport adapter contract."""
    result = ValidationResult()
    if obj is None:
        result.errors.append("transport is None")
        return result

    _check_methods(obj, TRANSPORT_METHODS, result)
    return result
