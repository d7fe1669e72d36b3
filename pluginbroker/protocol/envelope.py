"""Wire envelopes exchanged between the broker and plugins.

Three shapes share the ``action`` tag::

    {"id": 1, "action": "request",  "key": "config", "type": "getConfig", "value": ["f.txt"]}
    {"id": 1, "action": "response", "key": "config", "type": "getConfig", "value": ["..."], "error": null}
    {"action": "notification", "key": "app", "type": "focus", "value": []}

A response always carries a one-element ``value`` list and ``error`` is
``null`` on success.
"""

import json
from typing import Any, Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr, TypeAdapter, ValidationError
from pydantic_core import PydanticSerializationError

from .errors import EnvelopeDecodeError, ErrorValue

MAX_REQUEST_ID = 2 ** 64 - 1


class _EnvelopeBase(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    key: StrictStr = Field(min_length=1)
    type: StrictStr = Field(min_length=1)
    value: List[Any] = Field(default_factory=list)

    @property
    def endpoint(self) -> str:
        return f"{self.key}/{self.type}"

    def to_wire(self) -> dict:
        return self.model_dump(mode="json")


class Request(_EnvelopeBase):
    """A call from a plugin to a host endpoint."""

    action: Literal["request"] = "request"
    id: StrictInt = Field(ge=0, le=MAX_REQUEST_ID)


class Notification(_EnvelopeBase):
    """An unsolicited message; never answered."""

    action: Literal["notification"] = "notification"


class Response(_EnvelopeBase):
    """The single answer to a request, echoing its id, key and type."""

    action: Literal["response"] = "response"
    id: StrictInt = Field(ge=0, le=MAX_REQUEST_ID)
    error: Optional[ErrorValue] = None

    @property
    def result(self) -> Any:
        return self.value[0] if self.value else None

    def to_wire(self) -> dict:
        data = self.model_dump(mode="json", exclude={"error"})
        data["error"] = self.error.to_wire() if self.error is not None else None
        return data


Envelope = Annotated[Union[Request, Notification, Response], Field(discriminator="action")]

_envelope_adapter: TypeAdapter = TypeAdapter(Envelope)


def make_notification(key: str, type: str, *values: Any) -> Notification:
    """Build a notification envelope."""
    return Notification(key=key, type=type, value=list(values))


def make_response(request: Request, result: Any = None, error: Any = None) -> Response:
    """Build the response to ``request``.

    ``error`` may be an :class:`ErrorValue`, an exception, a dict with a
    ``code`` or a plain message; anything else than ``None`` marks failure.
    """
    return Response(
        id=request.id,
        key=request.key,
        type=request.type,
        value=[result],
        error=ErrorValue.coerce(error),
    )


def decode_envelope(raw: Union[str, bytes, dict], max_bytes: Optional[int] = None):
    """Decode an inbound payload into a :class:`Request`, :class:`Response`
    or :class:`Notification`.

    Raises:
        EnvelopeDecodeError: if the payload is too large, is not JSON, or
            does not have the shape of an envelope.
    """
    if isinstance(raw, (str, bytes, bytearray)):
        if max_bytes is not None:
            size = len(raw.encode("utf-8", errors="surrogatepass")) if isinstance(raw, str) else len(raw)
            if size > max_bytes:
                raise EnvelopeDecodeError(f"payload exceeds {max_bytes} bytes")
        try:
            data = json.loads(raw)
        except (ValueError, UnicodeDecodeError) as e:
            raise EnvelopeDecodeError(f"invalid JSON: {e}") from e
    elif isinstance(raw, dict):
        data = raw
    else:
        raise EnvelopeDecodeError(f"unsupported payload type {type(raw).__name__}")

    if not isinstance(data, dict):
        raise EnvelopeDecodeError("envelope must be a JSON object")

    try:
        return _envelope_adapter.validate_python(data)
    except ValidationError as e:
        raise EnvelopeDecodeError(f"invalid envelope: {e.error_count()} error(s)") from e


def encode_envelope(envelope: Union[Request, Response, Notification]) -> str:
    """Serialize an envelope to its JSON wire form.

    Raises:
        ValueError: if a value inside the envelope is not JSON-serializable.
    """
    try:
        return json.dumps(envelope.to_wire(), separators=(",", ":"))
    except (PydanticSerializationError, TypeError) as e:
        raise ValueError(f"envelope {envelope.endpoint} is not serializable: {e}") from e
