"""
Simple wrappers for websocket objects to provide a common interface.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel
from websockets.protocol import State

from .logger import get_logger
from .schemas import to_wire

logger = get_logger(__name__)


class SimpleWebSocket(ABC):
    """
    Abstract base class for WebSocket wrapper implementations.

    This class defines the minimal interface required for WebSocket objects
    used by the client and the endpoint. Implementations adapt a specific
    WebSocket library's API to these methods.

    Notes
    -----
    Subclasses must implement send(), recv(), and close() methods.
    The closed property has a default implementation but can be overridden.

    See Also
    --------
    JsonSerializingWebSocket : Concrete implementation with JSON serialization.
    """

    @property
    def closed(self) -> bool:
        """
        Check if the WebSocket connection is closed.

        Returns
        -------
        bool
            True if the socket is closed, False otherwise.
            Default implementation always returns False.
        """
        return False

    @abstractmethod
    async def send(self, message: Any) -> None:
        """
        Send a message over the WebSocket.

        Parameters
        ----------
        message : Any
            The message to send. Type depends on the implementation.
        """
        ...

    @abstractmethod
    async def recv(self) -> Any:
        """
        Receive a message from the WebSocket.

        Returns
        -------
        Any
            The received message. Type depends on the implementation.
            This method blocks until a message is available.
        """
        ...

    @abstractmethod
    async def close(self, code: int = 1000) -> None:
        """
        Close the WebSocket connection.

        Parameters
        ----------
        code : int, optional
            WebSocket close code (default is 1000 for normal closure).
        """
        ...


class JsonSerializingWebSocket(SimpleWebSocket):
    """
    WebSocket wrapper with automatic JSON serialization/deserialization.

    Used by the client on top of a ``websockets`` connection: envelopes go out
    as JSON text, inbound text or binary frames come back decoded.

    Parameters
    ----------
    websocket : Any
        A WebSocket object with async send/recv/close methods, typically the
        connection returned by ``websockets.connect``.

    Examples
    --------
    >>> import websockets
    >>> async with websockets.connect(uri) as ws:
    ...     json_ws = JsonSerializingWebSocket(ws)
    ...     await json_ws.send(RequestEnvelope(id="1", method="echo", payload=1))
    ...     reply = await json_ws.recv()
    """

    def __init__(self, websocket: Any) -> None:
        self._websocket = websocket

    @property
    def closed(self) -> bool:
        return self._websocket.state is State.CLOSED

    def _serialize(self, message: Any) -> str:
        if isinstance(message, BaseModel):
            return to_wire(message)
        return json.dumps(message)

    def _deserialize(self, buffer: str | bytes) -> Any:
        """
        Deserialize a JSON message to a Python object.

        Raises
        ------
        ValueError
            If the buffer is not valid UTF-8 or not valid JSON.
        """
        if isinstance(buffer, bytes):
            buffer = buffer.decode("utf-8")

        logger.debug(f"Deserializing message: {buffer}")
        try:
            return json.loads(buffer)
        except RecursionError as e:
            raise ValueError("JSON nested too deeply") from e

    async def send(self, message: Any) -> None:
        await self._websocket.send(self._serialize(message))

    async def recv(self) -> Any:
        """
        Receive and deserialize a message from the WebSocket.

        Raises
        ------
        ValueError
            If the frame cannot be decoded. The connection itself is still
            usable; callers may skip the frame and keep reading.
        """
        message = await self._websocket.recv()
        return self._deserialize(message)

    async def close(self, code: int = 1000) -> None:
        await self._websocket.close(code)
