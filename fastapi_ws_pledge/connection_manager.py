from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from fastapi import WebSocket

    from .rpc_connection import RpcConnection


class ConnectionManager:
    """
    Tracks the WebSocket connections accepted by an endpoint.

    Each accepted socket is mapped to its RpcConnection session once the
    endpoint has created one, so the sessions can be looked up, counted and
    closed together (e.g. on application shutdown).

    Attributes
    ----------
    active_connections : dict[WebSocket, RpcConnection | None]
        Accepted sockets and their sessions. The session is None between
        accept() and the endpoint attaching it.

    Notes
    -----
    Tracking is in-memory and per process. For multi-process deployments each
    worker has its own manager and its own count.

    See Also
    --------
    WebSocketRpcEndpoint : Server endpoint that uses this manager.

    Examples
    --------
    >>> manager = ConnectionManager()
    >>> endpoint = WebSocketRpcEndpoint(manager=manager)
    >>> endpoint.register_route(app, path="/ws")
    >>> # Later, check active connections
    >>> print(f"Active connections: {manager.get_connection_count()}")
    """

    def __init__(self) -> None:
        self.active_connections: dict[WebSocket, RpcConnection | None] = {}

    async def connect(
        self, websocket: WebSocket, subprotocol: str | None = None
    ) -> None:
        """
        Accept and register a new WebSocket connection.

        Parameters
        ----------
        websocket : WebSocket
            The WebSocket connection to accept and register.
        subprotocol : str | None, optional
            WebSocket subprotocol to accept the handshake with. If None, no
            subprotocol is selected.
        """
        if subprotocol:
            await websocket.accept(subprotocol=subprotocol)
        else:
            await websocket.accept()
        self.active_connections[websocket] = None

    def attach(self, websocket: WebSocket, connection: RpcConnection) -> None:
        """Associate the session serving an accepted socket."""
        self.active_connections[websocket] = connection

    def get_connection(self, websocket: WebSocket) -> RpcConnection | None:
        return self.active_connections.get(websocket)

    def disconnect(self, websocket: WebSocket) -> None:
        """
        Unregister a WebSocket connection from active tracking.

        This does NOT close the socket. Safe to call several times, or for a
        socket that was never registered.
        """
        self.active_connections.pop(websocket, None)

    def is_connected(self, websocket: WebSocket) -> bool:
        return websocket in self.active_connections

    def get_connection_count(self) -> int:
        """
        Get the number of currently active connections.

        Examples
        --------
        >>> @app.get("/health")
        >>> async def health():
        ...     return {"active_connections": manager.get_connection_count()}
        """
        return len(self.active_connections)

    async def close_all(self, code: int = 1001) -> None:
        """
        Close every tracked session (1001 "going away" by default).
        """
        sessions = [
            connection
            for connection in self.active_connections.values()
            if connection is not None
        ]
        self.active_connections.clear()
        await asyncio.gather(
            *(connection.close(code) for connection in sessions),
            return_exceptions=True,
        )
