"""
Protocol definitions for breaking circular dependencies.

These protocols let the endpoint, the per-connection session and the tests
depend on interfaces rather than on concrete socket or handler classes.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class SocketProtocol(Protocol):
    """
    Protocol defining the interface for WebSocket-like objects.

    This protocol defines the minimal interface required for WebSocket objects
    used by the endpoint and the client. It ensures consistent behavior across
    different WebSocket implementations (websockets library, FastAPI WebSocket
    wrapped by the endpoint, in-memory fakes in tests).

    The protocol is runtime-checkable, allowing isinstance() checks for validation.

    Examples
    --------
    >>> async def handle_socket(socket: SocketProtocol) -> None:
    ...     message = await socket.recv()
    ...     await socket.send(message)
    ...     await socket.close()

    See Also
    --------
    SimpleWebSocket : Abstract base class that implements this protocol.
    """

    async def send(self, message: Any) -> None:
        """
        Send a message over the socket.

        Notes
        -----
        If the socket is closed, this should raise an appropriate exception.
        """
        ...

    async def recv(self) -> Any:
        """
        Receive a message from the socket.

        Blocks until a message is available.
        """
        ...

    async def close(self, code: int = 1000) -> None:
        """
        Close the socket connection.

        Parameters
        ----------
        code : int, optional
            WebSocket close code (default is 1000 for normal closure).
        """
        ...

    @property
    def closed(self) -> bool:
        """True after close() was called or the peer went away."""
        ...


class ReplyFn(Protocol):
    """
    Reply callback handed to method handlers.

    Each call sends one ``{"id": ..., "data": ...}`` frame correlated to the
    request being handled. It may be called any number of times, including
    after the handler has returned.
    """

    def __call__(self, data: Any = None) -> None: ...


class MethodHandler(Protocol):
    """
    Signature of a method registered on the endpoint.

    Example:
        ```python
        def echo(payload: Any, reply: ReplyFn) -> None:
            reply(payload)

        async def ticker(payload: Any, reply: ReplyFn) -> None:
            for tick in range(payload["count"]):
                reply(tick)
                await asyncio.sleep(payload["every"])
        ```
    """

    def __call__(self, payload: Any, reply: ReplyFn) -> Any: ...
