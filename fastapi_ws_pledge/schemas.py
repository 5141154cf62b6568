from __future__ import annotations

from enum import Enum
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictStr, ValidationError

from .utils import pydantic_parse, pydantic_serialize

# An absent id is omitted from the serialized envelope rather than sent as null
_ABSENT_ID: dict[str, Any] = {}


class ErrorReason(str, Enum):
    """
    Reasons carried by the ``message`` field of an error envelope.

    Each value is sent verbatim on the wire.

    Attributes
    ----------
    MALFORMED_JSON : str
        The frame could not be decoded as JSON.
    INVALID_METHOD : str
        The frame has no ``method`` field, or it is not a non-empty string.
    METHOD_NOT_FOUND : str
        No handler is registered under the requested method name.
    HANDLER_ERROR : str
        The handler (or its reply callback) raised while handling the frame.
    """

    MALFORMED_JSON = "Malformed JSON"
    INVALID_METHOD = "Missing or invalid method"
    METHOD_NOT_FOUND = "Method not found"
    HANDLER_ERROR = "Method handler error"


class RequestEnvelope(BaseModel):
    """
    Request sent by the client: ``{"id": ..., "method": ..., "payload": ...}``.

    Attributes:
        id: Correlation token generated by the client. Echoed verbatim by the
            server, whatever its JSON type.
        method: Name of the handler to invoke. Must be a non-empty string.
        payload: Arbitrary JSON value handed to the handler. Absent and null
            payloads both arrive as None.
    """

    model_config = ConfigDict(extra="ignore")

    id: Optional[Any] = None
    method: StrictStr = Field(min_length=1)
    payload: Optional[Any] = None

    @staticmethod
    def correlation(frame: Any) -> dict[str, Any]:
        """Return the id of a decoded frame as envelope kwargs.

        The result is empty when the frame carries no id, so replies built from
        it leave the id out of the wire form.
        """
        if isinstance(frame, dict) and "id" in frame:
            return {"id": frame["id"]}
        return _ABSENT_ID


class ReplyEnvelope(BaseModel):
    """
    Success reply sent by the server: ``{"id": ..., "data": ...}``.
    """

    id: Optional[Any] = None
    data: Optional[Any] = None


class ErrorEnvelope(BaseModel):
    """
    Error reply sent by the server: ``{"error": true, "message": ..., "id": ...}``.

    Examples
    --------
    >>> envelope = ErrorEnvelope.for_reason(ErrorReason.METHOD_NOT_FOUND, {"id": "a1"})
    >>> to_wire(envelope)
    '{"error":true,"message":"Method not found","id":"a1"}'
    """

    error: Literal[True] = True
    message: str
    id: Optional[Any] = None

    @classmethod
    def for_reason(
        cls, reason: ErrorReason, correlation: dict[str, Any] | None = None
    ) -> ErrorEnvelope:
        return cls(error=True, message=reason.value, **(correlation or _ABSENT_ID))


def to_wire(envelope: Union[RequestEnvelope, ReplyEnvelope, ErrorEnvelope]) -> str:
    """Serialize an envelope to JSON text, omitting an unset id."""
    return pydantic_serialize(envelope, exclude_unset=True)


def parse_reply_frame(frame: Any) -> Union[ReplyEnvelope, ErrorEnvelope, None]:
    """
    Classify a decoded inbound frame on the client side.

    Parameters
    ----------
    frame : Any
        A JSON-decoded frame received from the server.

    Returns
    -------
    ReplyEnvelope | ErrorEnvelope | None
        The error envelope when ``error`` is true, the success envelope when
        the frame carries an id, otherwise None (the frame is not a reply
        this client can correlate).
    """
    if not isinstance(frame, dict):
        return None
    try:
        if frame.get("error") is True:
            return pydantic_parse(ErrorEnvelope, frame)
        if "id" in frame:
            return pydantic_parse(ReplyEnvelope, frame)
    except ValidationError:
        return None
    return None


class WebSocketFrameType(str, Enum):
    """
    WebSocket frame type used by the server when writing replies.

    Inbound frames are accepted in both forms regardless of this setting.

    Attributes
    ----------
    Text : str
        Text frame type ("text"). Replies are sent as UTF-8 text.
    Binary : str
        Binary frame type ("binary"). Replies are sent as UTF-8 encoded bytes.
    """

    Text = "text"
    Binary = "binary"


class ConnectionState(str, Enum):
    """
    Lifecycle state of a client connection.

    At most one connection attempt is in flight at a time. ``OPEN`` and
    ``CONNECTING`` fall back to ``DISCONNECTED`` on close or error, and a new
    attempt starts after the reconnect delay unless the client was closed.
    """

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
