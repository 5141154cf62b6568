from __future__ import annotations

import asyncio
import inspect
import json
import time
from collections.abc import Callable
from typing import Any

from fastapi import WebSocket, WebSocketDisconnect
from fastapi.websockets import WebSocketState
from pydantic import ValidationError

from ._internal.protocols import MethodHandler, ReplyFn
from .config import RpcEndpointConfig
from .connection_manager import ConnectionManager
from .logger import get_logger
from .rpc_connection import RpcConnection
from .schemas import (
    ErrorEnvelope,
    ErrorReason,
    ReplyEnvelope,
    RequestEnvelope,
    WebSocketFrameType,
    to_wire,
)
from .simplewebsocket import SimpleWebSocket
from .utils import pydantic_parse, run_callbacks

logger = get_logger(__name__)

ConnectionCallback = Callable[[RpcConnection], Any]


class WebSocketSimplifier(SimpleWebSocket):
    """
    Simple wrapper over FastAPI WebSocket to ensure unified interface for send/recv

    Inbound frames are returned as they arrive (text or bytes); outbound text is
    written as a text frame, or UTF-8 encoded into a binary frame when the
    endpoint is configured for binary replies.
    """

    def __init__(
        self,
        websocket: WebSocket,
        frame_type: WebSocketFrameType = WebSocketFrameType.Text,
    ) -> None:
        self.websocket = websocket
        self.frame_type = frame_type

    @property
    def closed(self) -> bool:
        return (
            self.websocket.client_state == WebSocketState.DISCONNECTED
            or self.websocket.application_state == WebSocketState.DISCONNECTED
        )

    async def send(self, message: str | bytes) -> None:
        if self.frame_type == WebSocketFrameType.Binary:
            if isinstance(message, str):
                message = message.encode("utf-8")
            await self.websocket.send_bytes(message)
        else:
            if isinstance(message, bytes):
                message = message.decode("utf-8")
            await self.websocket.send_text(message)

    async def recv(self) -> str | bytes:
        message = await self.websocket.receive()
        if message["type"] == "websocket.disconnect":
            raise WebSocketDisconnect(message.get("code", 1000), message.get("reason"))
        if message.get("text") is not None:
            return message["text"]
        return message.get("bytes") or b""

    async def close(self, code: int = 1000) -> None:
        await self.websocket.close(code)


class WebSocketRpcEndpoint:
    """
    A websocket RPC server endpoint, dispatching frames to registered methods.

    Every inbound frame is expected to be ``{"id": ..., "method": ..., "payload": ...}``.
    The handler registered under ``method`` is called with the payload and a
    reply callback; each call of the callback sends ``{"id": ..., "data": ...}``
    back on the same connection. Protocol failures are answered with
    ``{"error": true, "message": ..., "id": ...}`` and never end the connection.

    Parameters
    ----------
    methods : dict[str, MethodHandler] | None, optional
        Initial method table. Further methods are added with on().
    manager : ConnectionManager | None, optional
        Connection tracking object. If None, creates new ConnectionManager.
    on_connect : list[ConnectionCallback] | None, optional
        Callbacks to execute on client connection. Server spins these as
        new tasks without waiting.
    on_disconnect : list[ConnectionCallback] | None, optional
        Callbacks to execute on client disconnection.
    config : RpcEndpointConfig | None, optional
        Reply frame type, idle timeout and subprotocol. Defaults to text
        frames, no idle timeout and no subprotocol.

    Examples
    --------
    >>> endpoint = WebSocketRpcEndpoint()
    >>> @endpoint.on("echo")
    ... def echo(payload, reply):
    ...     reply(payload)
    >>> endpoint.register_route(app, "/ws")
    """

    def __init__(
        self,
        methods: dict[str, MethodHandler] | None = None,
        manager: ConnectionManager | None = None,
        on_connect: list[ConnectionCallback] | None = None,
        on_disconnect: list[ConnectionCallback] | None = None,
        config: RpcEndpointConfig | None = None,
    ) -> None:
        self.manager = manager if manager is not None else ConnectionManager()
        self.methods: dict[str, MethodHandler] = dict(methods or {})
        # Event handlers
        self._on_connect = on_connect
        self._on_disconnect = on_disconnect
        self.config = config if config is not None else RpcEndpointConfig()
        self.config.validate()

    def on(
        self, method: str, handler: MethodHandler | None = None
    ) -> Any:
        """
        Register ``handler(payload, reply)`` under ``method``.

        A later registration under the same name replaces the earlier one.
        Without ``handler`` this returns a decorator.

        Args:
            method: Name clients put in the ``method`` field
            handler: Sync function, or coroutine function run as a task

        Returns:
            The handler (or a decorator registering it)
        """
        if handler is None:

            def decorator(func: MethodHandler) -> MethodHandler:
                self.on(method, func)
                return func

            return decorator

        if method in self.methods:
            logger.debug(f"Replacing handler for method {method!r}")
        self.methods[method] = handler
        return handler

    def _encode(self, frame: str) -> str | bytes:
        if self.config.frame_type == WebSocketFrameType.Binary:
            return frame.encode("utf-8")
        return frame

    def _send_error(
        self,
        connection: RpcConnection,
        reason: ErrorReason,
        correlation: dict[str, Any] | None = None,
    ) -> None:
        envelope = ErrorEnvelope.for_reason(reason, correlation)
        connection.enqueue(self._encode(to_wire(envelope)))

    def _make_reply(
        self, connection: RpcConnection, correlation: dict[str, Any]
    ) -> ReplyFn:
        def reply(data: Any = None) -> None:
            # serializing here lets unserializable data fail inside the handler
            frame = to_wire(ReplyEnvelope(data=data, **correlation))
            connection.enqueue(self._encode(frame))

        return reply

    async def handle_message(
        self, connection: RpcConnection, message: str | bytes
    ) -> None:
        """
        Route one inbound frame.

        Checks run in order and stop at the first failure: the frame must be
        JSON, must carry a non-empty string ``method``, the method must be
        registered, and the handler must not raise.

        Args:
            connection: Session the frame arrived on; replies go back to it
            message: Raw frame, text or UTF-8 bytes
        """
        logger.debug(f"Processing received message: {message!r}")
        try:
            if isinstance(message, (bytes, bytearray)):
                message = bytes(message).decode("utf-8")
            frame = json.loads(message)
        except (ValueError, RecursionError):
            # RecursionError: nesting too deep for the decoder
            logger.warning(f"Malformed frame on connection {connection.id}")
            self._send_error(connection, ErrorReason.MALFORMED_JSON)
            return

        correlation = RequestEnvelope.correlation(frame)
        try:
            request = pydantic_parse(RequestEnvelope, frame)
        except ValidationError:
            logger.warning(f"Frame without a valid method on connection {connection.id}")
            self._send_error(connection, ErrorReason.INVALID_METHOD, correlation)
            return

        handler = self.methods.get(request.method)
        if handler is None:
            logger.warning(f"Unknown method {request.method!r}")
            self._send_error(connection, ErrorReason.METHOD_NOT_FOUND, correlation)
            return

        reply = self._make_reply(connection, correlation)
        try:
            result = handler(request.payload, reply)
        except Exception:
            logger.exception(f"Handler for {request.method!r} failed")
            self._send_error(connection, ErrorReason.HANDLER_ERROR, correlation)
            return

        if inspect.isawaitable(result):

            def on_error(exc: BaseException) -> None:
                logger.error(
                    f"Handler for {request.method!r} failed", exc_info=exc
                )
                self._send_error(connection, ErrorReason.HANDLER_ERROR, correlation)

            connection.spawn(result, on_error=on_error)

    async def main_loop(self, websocket: WebSocket, **kwargs: Any) -> None:
        """
        Main loop for receiving and processing WebSocket messages.

        Implements true idle timeout semantics where the connection is closed only
        if NO messages are received within the idle_timeout period. The idle timer
        resets whenever any message is received.

        Parameters
        ----------
        websocket : WebSocket
            FastAPI WebSocket connection.
        **kwargs : Any
            Additional keyword arguments stored in the connection context.
        """
        try:
            subprotocols = self.config.websocket.subprotocols
            subprotocol = subprotocols[0] if subprotocols else None
            await self.manager.connect(websocket, subprotocol=subprotocol)
            logger.info(
                "Client connected (subprotocol: %s) - %s",
                subprotocol,
                websocket.client,
            )
            simple_websocket = WebSocketSimplifier(
                websocket, frame_type=self.config.frame_type
            )
            connection = RpcConnection(
                simple_websocket, subprotocol=subprotocol, **kwargs
            )
            self.manager.attach(websocket, connection)
            connection.start()
            await self.on_connect(connection)
            try:
                # Initialize idle timeout tracking
                last_message_time = time.time()
                idle_timeout = self.config.idle_timeout

                while True:
                    recv_timeout: float | None = None
                    if idle_timeout is not None:
                        remaining_time = idle_timeout - (time.time() - last_message_time)
                        if remaining_time <= 0:
                            logger.info(
                                "Connection idle timeout: no messages received for %.1fs "
                                "- %s",
                                idle_timeout,
                                connection.id,
                            )
                            await self.handle_disconnect(websocket, connection)
                            break
                        recv_timeout = remaining_time

                    try:
                        if recv_timeout is not None:
                            data = await asyncio.wait_for(
                                simple_websocket.recv(), timeout=recv_timeout
                            )
                        else:
                            data = await simple_websocket.recv()
                    except asyncio.TimeoutError:
                        logger.info(
                            "Connection idle timeout reached - %s", connection.id
                        )
                        await self.handle_disconnect(websocket, connection)
                        break

                    # Message received - reset idle timer
                    last_message_time = time.time()
                    await self.handle_message(connection, data)

            except WebSocketDisconnect:
                client_port = websocket.client.port if websocket.client else "unknown"
                logger.info(f"Client disconnected - {client_port} :: {connection.id}")
                await self.handle_disconnect(websocket, connection, close_socket=False)
            except (
                RuntimeError,
                ConnectionError,
                OSError,
                asyncio.CancelledError,
            ) as e:
                # Cover cases like RuntimeError('Cannot call "send" once a close
                # message has been sent.') and various connection failures
                client_port = websocket.client.port if websocket.client else "unknown"
                logger.info(
                    f"Client connection failed - {client_port} :: {connection.id}: "
                    f"{type(e).__name__}: {e}"
                )
                await self.handle_disconnect(websocket, connection, close_socket=False)
        except (RuntimeError, ConnectionError, OSError, ValueError, TypeError) as e:
            # Handle initialization and connection setup failures
            client_port = websocket.client.port if websocket.client else "unknown"
            logger.exception(f"Failed to serve - {client_port}: {type(e).__name__}")
            self.manager.disconnect(websocket)

    async def handle_disconnect(
        self,
        websocket: WebSocket,
        connection: RpcConnection,
        close_socket: bool = True,
    ) -> None:
        self.manager.disconnect(websocket)
        await connection.close(close_socket=close_socket)
        if self._on_disconnect is not None:
            await run_callbacks(self._on_disconnect, connection)

    async def on_connect(self, connection: RpcConnection) -> None:
        """
        Called upon new client connection
        """
        if self._on_connect is not None:
            asyncio.create_task(run_callbacks(self._on_connect, connection))

    def register_route(self, router: Any, path: str = "/ws") -> None:
        """
        Register this endpoint as a default websocket route on the given router
        Args:
            router: FastAPI router to load route onto
            path (str, optional): the route path. Defaults to "/ws".
        """

        @router.websocket(path)  # type: ignore[misc]
        async def websocket_endpoint(websocket: WebSocket) -> None:
            await self.main_loop(websocket)
