"""Bridge configuration.

Options can be passed explicitly or loaded from MESSAGE_BRIDGE_* environment
variables:

    export MESSAGE_BRIDGE_TIMEOUT=2.5      # default request deadline (seconds)
    export MESSAGE_BRIDGE_RETRY_DELAY=0.2  # pause between connect attempts
"""

from __future__ import annotations

import dataclasses
import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from .errors import InvalidArgumentError

# Sentinel timeout value that disables the per-request timer
NO_TIMEOUT: float = -1

DEFAULT_TIMEOUT: float = 1.0

ENV_TIMEOUT = "MESSAGE_BRIDGE_TIMEOUT"
ENV_RETRY_DELAY = "MESSAGE_BRIDGE_RETRY_DELAY"

Encoder = Callable[[dict[str, Any]], str]
Decoder = Callable[[str], Any]
ErrorCallback = Callable[[BaseException], None]


def is_valid_timeout(value: Any) -> bool:
    """True for a positive number of seconds or the NO_TIMEOUT sentinel."""
    if isinstance(value, bool) or not isinstance(value, int | float):
        return False
    return value > 0 or value == NO_TIMEOUT


@dataclass
class BridgeOptions:
    """Options for a Bridge instance.

    Attributes:
        timeout: Default request deadline in seconds, or NO_TIMEOUT
        retry_delay: Seconds to wait between failed connect attempts
        encode: Optional wire encoder, receives the envelope as a dict
        decode: Optional wire decoder, must return the envelope mapping
        on_error: Called with errors raised by one-way event handlers
    """

    timeout: float = DEFAULT_TIMEOUT
    retry_delay: float = 0.0
    encode: Encoder | None = None
    decode: Decoder | None = None
    on_error: ErrorCallback | None = None

    def __post_init__(self) -> None:
        if not is_valid_timeout(self.timeout):
            raise InvalidArgumentError(
                f"invalid argument options: timeout must be > 0 or {NO_TIMEOUT}, "
                f"got {self.timeout!r}"
            )
        if (
            isinstance(self.retry_delay, bool)
            or not isinstance(self.retry_delay, int | float)
            or self.retry_delay < 0
        ):
            raise InvalidArgumentError(
                f"invalid argument options: retry_delay must be >= 0, got {self.retry_delay!r}"
            )
        for name in ("encode", "decode", "on_error"):
            value = getattr(self, name)
            if value is not None and not callable(value):
                raise InvalidArgumentError(f"invalid argument options: {name} is not callable")

    def with_overrides(self, **changes: Any) -> BridgeOptions:
        """Return a validated copy with the given fields replaced."""
        try:
            return dataclasses.replace(self, **changes)
        except TypeError as e:
            raise InvalidArgumentError(f"invalid argument options: {e}") from e

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str] | None = None,
        **kwargs: Any,
    ) -> BridgeOptions:
        """Build options from MESSAGE_BRIDGE_* variables.

        Explicit keyword arguments take precedence over the environment.
        """
        env = os.environ if environ is None else environ
        values: dict[str, Any] = {}
        for key, field_name in ((ENV_TIMEOUT, "timeout"), (ENV_RETRY_DELAY, "retry_delay")):
            raw = env.get(key)
            if raw is None or raw.strip() == "":
                continue
            try:
                values[field_name] = float(raw)
            except ValueError as e:
                raise InvalidArgumentError(f"{key} must be a number, got {raw!r}") from e
        values.update(kwargs)
        return cls(**values)
