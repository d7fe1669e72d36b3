"""Protocol error values and broker exceptions."""

import traceback
from enum import IntEnum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict


class ErrorCode(IntEnum):
    """Error codes used by the broker itself.

    Handlers may use any integer code; these are the ones the broker emits.
    """
    BAD_REQUEST = 400
    FORBIDDEN = 403
    NOT_FOUND = 404
    INTERNAL = 500


class ErrorValue(BaseModel):
    """Error carried in a response envelope.

    Unknown fields sent by a handler are kept so the error reaches the plugin
    unchanged.
    """

    model_config = ConfigDict(extra="allow")

    code: int
    msg: Optional[str] = None
    data: Any = None
    stack: Optional[str] = None

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", exclude_none=True)

    @classmethod
    def from_exception(cls, exc: BaseException) -> "ErrorValue":
        """Build an internal error value from an unexpected exception."""
        if isinstance(exc, EndpointError):
            return exc.to_error_value()
        return cls(
            code=ErrorCode.INTERNAL,
            msg=str(exc) or exc.__class__.__name__,
            stack="".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
        )

    @classmethod
    def coerce(cls, error: Any) -> Optional["ErrorValue"]:
        """Normalize whatever a handler reported into an error value."""
        if error is None:
            return None
        if isinstance(error, ErrorValue):
            return error
        if isinstance(error, BaseException):
            return cls.from_exception(error)
        if isinstance(error, dict) and "code" in error:
            return cls.model_validate(error)
        if isinstance(error, dict):
            return cls(code=ErrorCode.INTERNAL, data=error)
        return cls(code=ErrorCode.INTERNAL, msg=str(error))


class BrokerError(Exception):
    """Base class for broker errors."""


class EnvelopeDecodeError(BrokerError):
    """Raised when an inbound payload is not a valid envelope."""


class EndpointError(BrokerError):
    """Raised by endpoint handlers to report an error to the calling plugin."""

    def __init__(self, code: int, msg: Optional[str] = None, data: Any = None):
        super().__init__(msg or f"endpoint error {code}")
        self.code = code
        self.msg = msg
        self.data = data

    def to_error_value(self) -> ErrorValue:
        return ErrorValue(code=self.code, msg=self.msg, data=self.data)


class CompletionError(BrokerError):
    """Raised when a request completion is fulfilled more than once."""


class RegistryInconsistency(BrokerError):
    """Raised when the title and origin mappings disagree."""


class TransportError(BrokerError):
    """Base class for delivery failures."""


class OriginMismatch(TransportError):
    """Raised when a send targets an origin other than the transport's own."""


class TransportClosed(TransportError):
    """Raised when sending on a closed transport."""
