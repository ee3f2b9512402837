"""Wire-level protocol types.

Two layers:
- Envelopes: what crosses the transport (data + request/response correlation)
- Messages: typed application messages carried inside envelope data
"""

from .envelope import (
    ENVELOPE_KEYS,
    Envelope,
    decode_envelope,
    encode_envelope,
    is_envelope,
    validate_envelope,
)
from .messages import (
    LOG_MESSAGE_TYPE,
    MESSAGE_KEYS,
    LogLevel,
    LogPayload,
    Message,
    is_message,
    is_valid_handler_collection,
    is_valid_message_type_list,
    log_message,
    validate_message,
)

__all__ = [
    # Envelopes
    "ENVELOPE_KEYS",
    "Envelope",
    "decode_envelope",
    "encode_envelope",
    "is_envelope",
    "validate_envelope",
    # Messages
    "LOG_MESSAGE_TYPE",
    "MESSAGE_KEYS",
    "LogLevel",
    "LogPayload",
    "Message",
    "is_message",
    "is_valid_handler_collection",
    "is_valid_message_type_list",
    "log_message",
    "validate_message",
]
