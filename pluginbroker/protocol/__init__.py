"""Plugin wire protocol: envelopes, codec and errors."""

from .envelope import (
    Envelope,
    Notification,
    Request,
    Response,
    decode_envelope,
    encode_envelope,
    make_notification,
    make_response,
)
from .errors import (
    BrokerError,
    CompletionError,
    EndpointError,
    EnvelopeDecodeError,
    ErrorCode,
    ErrorValue,
    OriginMismatch,
    RegistryInconsistency,
    TransportClosed,
    TransportError,
)

__all__ = [
    "Envelope",
    "Notification",
    "Request",
    "Response",
    "decode_envelope",
    "encode_envelope",
    "make_notification",
    "make_response",
    "BrokerError",
    "CompletionError",
    "EndpointError",
    "EnvelopeDecodeError",
    "ErrorCode",
    "ErrorValue",
    "OriginMismatch",
    "RegistryInconsistency",
    "TransportClosed",
    "TransportError",
]
