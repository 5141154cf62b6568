"""
WebSocketRpcClient module provides a client that connects to a WebSocketRpcEndpoint
via websocket, survives disconnects and issues correlated requests and
subscriptions.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from contextlib import suppress
from typing import Any

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from ._internal.listener_registry import (
    CorrelatedListener,
    ListenerRegistry,
    MessageListener,
)
from ._internal.rpc_reconnect import RpcReconnectPolicy
from .config import WebSocketRpcClientConfig
from .exceptions import RpcChannelClosedError, RpcTransportError
from .logger import get_logger
from .pledge import Pledge
from .schemas import ConnectionState, RequestEnvelope
from .simplewebsocket import JsonSerializingWebSocket
from .utils import gen_uid, run_callbacks

logger = get_logger(__name__)

ClientCallback = Callable[["WebSocketRpcClient"], Any]

# Errors raised by websockets.connect() for a failed attempt
CONNECT_ERRORS = (OSError, WebSocketException, asyncio.TimeoutError)


class Subscription:
    """
    Handle returned by WebSocketRpcClient.subscribe().

    Calling the handle (or cancel()) stops delivery to the callback. Only the
    local listener is removed; the server is not told. Cancelling twice is a
    no-op.

    Attributes
    ----------
    id : str
        Correlation id of the subscription request.
    """

    def __init__(
        self, call_id: str, listener: CorrelatedListener, registry: ListenerRegistry
    ) -> None:
        self.id = call_id
        self._listener = listener
        self._registry = registry

    def __repr__(self) -> str:
        state = "active" if self.active else "stopped"
        return f"<Subscription {self.id} ({state})>"

    def __call__(self) -> None:
        self.cancel()

    @property
    def active(self) -> bool:
        return self._listener in self._registry

    def cancel(self) -> None:
        self._registry.remove(self._listener)


class WebSocketRpcClient:
    """
    RPC client for connecting to a WebSocketRpcEndpoint server.

    The client owns one logical connection. It starts connecting as soon as
    it is created (inside a running event loop), reconnects after a fixed
    delay whenever the connection drops, and matches replies to requests by
    correlation id, so any number of requests can be in flight at once.

    Configuration is provided through the WebSocketRpcClientConfig object,
    which provides a clean, validated interface for all client settings.
    """

    def __init__(
        self,
        uri: str,
        reconnect: bool | None = None,
        config: WebSocketRpcClientConfig | None = None,
        on_connect: list[ClientCallback] | None = None,
        on_disconnect: list[ClientCallback] | None = None,
    ) -> None:
        """Initialize the WebSocketRpcClient.

        Parameters
        ----------
        uri : str
            Server URI to connect to (e.g., 'ws://localhost:8080/ws').
        reconnect : bool | None, optional
            Reconnect automatically after the connection is lost. Overrides
            ``config.connection.auto_reconnect`` when given (default True).
        config : WebSocketRpcClientConfig | None, optional
            Configuration object for all client behavior. If None, uses
            default configuration. Use WebSocketRpcClientConfig.production_defaults()
            or .development_defaults() for common presets.
        on_connect : list[ClientCallback] | None, optional
            Callbacks executed with the client each time a connection opens.
        on_disconnect : list[ClientCallback] | None, optional
            Callbacks executed with the client each time an open connection
            is lost (not when close() is called).

        Examples
        --------
        Using default config::

            async with WebSocketRpcClient("ws://localhost:8080/ws") as client:
                answer = await client.request("echo", {"text": "Hello World!"})

        Streaming replies::

            subscription = await client.subscribe("ticker", {"every": 1}, print)
            ...
            subscription()  # stop
        """
        self.uri = uri
        self.config = config if config is not None else WebSocketRpcClientConfig()
        self.config.validate()
        connection_config = self.config.connection
        self.reconnect = (
            connection_config.auto_reconnect if reconnect is None else reconnect
        )

        # Current socket (None while not open) and its lifecycle state
        self.ws: JsonSerializingWebSocket | None = None
        self._state = ConnectionState.DISCONNECTED
        self._listeners = ListenerRegistry()
        # Resolved when the current attempt opens, rejected when it fails
        self._opened = Pledge()
        self._supervisor: asyncio.Task[None] | None = None
        self._reader: asyncio.Future[None] | None = None
        self._closing = False
        self._close_code: int | None = None
        self._close_reason: str | None = None

        self._connect_callbacks: list[ClientCallback] = list(on_connect or [])
        self._disconnect_callbacks: list[ClientCallback] = list(on_disconnect or [])

        self._reconnect_policy = RpcReconnectPolicy(
            delay=connection_config.reconnect_delay,
            max_attempts=connection_config.max_reconnect_attempts,
            should_retry=lambda exc: self.reconnect and not self._closing,
        )

        try:
            self.connect()
        except RuntimeError:
            logger.debug("No running event loop, connecting on first open()")

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    def connect(self) -> asyncio.Task[None]:
        """
        Start connecting, unless an attempt is already underway.

        Returns
        -------
        asyncio.Task[None]
            The connection supervisor task. It keeps the connection alive
            (reconnecting as configured) until close() is called.

        Raises
        ------
        RpcChannelClosedError
            If the client was closed.
        RuntimeError
            If called without a running event loop.
        """
        if self._closing:
            raise RpcChannelClosedError("Client was closed")
        if self._supervisor is not None and not self._supervisor.done():
            logger.debug("Connection attempt already in progress")
            return self._supervisor
        self._supervisor = asyncio.get_running_loop().create_task(self._supervise())
        return self._supervisor

    async def _supervise(self) -> None:
        self._reconnect_policy.reset()
        try:
            async for attempt in self._reconnect_policy.retrying():
                with attempt:
                    await self._run_connection()
        except RpcTransportError as e:
            logger.info(f"Not reconnecting to {self.uri}: {e}")
        finally:
            self._state = ConnectionState.DISCONNECTED
            self._opened.reject(RpcChannelClosedError("Client is no longer connecting"))

    def _detach_socket(self) -> None:
        # The reader of the previous socket ended with its attempt
        old, self.ws = self.ws, None
        if old is not None and not old.closed:
            logger.debug("Dropping previous socket")
            asyncio.ensure_future(old.close())

    async def _run_connection(self) -> None:
        """
        Run one connection attempt: connect, read until the socket ends.

        Returns normally only when the client was closed locally. Any other
        ending raises RpcTransportError, which the reconnect policy retries.
        """
        self._detach_socket()
        self._state = ConnectionState.CONNECTING
        logger.info(f"Connecting to {self.uri}...")
        try:
            raw_ws = await websockets.connect(
                self.uri, **self.config.connect_kwargs()
            )
        except CONNECT_ERRORS as e:
            self._state = ConnectionState.DISCONNECTED
            self._reconnect_policy.record_failure()
            error = RpcTransportError(f"Failed to connect to {self.uri}: {e}")
            self._reset_open(error)
            raise error from e

        ws = JsonSerializingWebSocket(raw_ws)
        self.ws = ws
        self._state = ConnectionState.OPEN
        self._reconnect_policy.reset()
        self._close_code = self._close_reason = None
        logger.info(f"Connected to {self.uri}")
        self._opened.resolve(self)

        # Frames are delivered while connect callbacks run, so a callback
        # can wait on the reply to its own request
        reader = self._reader = asyncio.ensure_future(self._serve(ws))
        try:
            await run_callbacks(self._connect_callbacks, self)
            await reader
        finally:
            reader.cancel()

    async def _serve(self, ws: JsonSerializingWebSocket) -> None:
        """
        Read from an open socket until it ends.

        Returns normally only when the client was closed locally. A lost
        connection fails pending calls and raises RpcTransportError.
        """
        try:
            await self._read_loop(ws)
        except (ConnectionClosed, OSError) as e:
            if self._closing:
                return
            self._record_close(e)
            error = RpcTransportError(f"Connection to {self.uri} lost: {e}")
            await self._handle_connection_lost(error)
            raise error from e

    async def _read_loop(self, ws: JsonSerializingWebSocket) -> None:
        while True:
            try:
                frame = await ws.recv()
            except ValueError as e:
                logger.warning(f"Skipping undecodable frame: {e}")
                continue
            logger.debug(f"Received frame: {frame}")
            await self._listeners.dispatch(frame)

    def _record_close(self, exc: BaseException) -> None:
        close_info = getattr(exc, "rcvd", None)
        if close_info is not None:
            self._close_code = getattr(close_info, "code", None)
            self._close_reason = getattr(close_info, "reason", None)
        if self._close_code is not None:
            logger.info(
                "Connection was terminated. Close code: %d, reason: %s",
                self._close_code,
                self._close_reason or "(no reason provided)",
            )
        else:
            logger.info("Connection was terminated.")

    async def _handle_connection_lost(self, error: RpcTransportError) -> None:
        self._state = ConnectionState.DISCONNECTED
        self.ws = None
        self._listeners.fail_pending(error)
        self._reset_open(error)
        await run_callbacks(self._disconnect_callbacks, self)

    def _reset_open(self, error: BaseException) -> None:
        # Waiters of the failed attempt get the error, later ones wait for the next
        self._opened.reject(error)
        self._opened = Pledge()

    async def open(self) -> WebSocketRpcClient:
        """
        Wait until the connection is open.

        Returns
        -------
        WebSocketRpcClient
            This client.

        Raises
        ------
        RpcTransportError
            If the attempt being waited on fails.
        RpcChannelClosedError
            If the client was closed, or the connection ended and no further
            attempt will be made.
        """
        if self._state is ConnectionState.OPEN:
            return self
        if self._closing:
            raise RpcChannelClosedError("Client was closed")
        if self._supervisor is None:
            self.connect()
        elif self._supervisor.done():
            raise RpcChannelClosedError(f"Not connected to {self.uri}")
        await self._opened.get()
        return self

    async def close(self) -> None:
        """
        Close the connection and stop reconnecting.

        Requests still waiting for a reply are left pending; use a timeout to
        bound them. This method is idempotent.
        """
        if self._closing:
            logger.debug("Client already closed/closing, skipping")
            return
        self._closing = True
        self.reconnect = False
        logger.info(f"Closing connection to {self.uri}...")

        ws, self.ws = self.ws, None
        if ws is not None:
            with suppress(ConnectionClosed, OSError, RuntimeError):
                await ws.close()

        supervisor = self._supervisor
        if supervisor is not None and not supervisor.done():
            supervisor.cancel()
            # close() may run inside a connect or disconnect callback
            if asyncio.current_task() not in (supervisor, self._reader):
                with suppress(asyncio.CancelledError):
                    await supervisor

        self._state = ConnectionState.DISCONNECTED
        self._opened.reject(RpcChannelClosedError("Client was closed"))
        logger.info("RPC client closed")

    async def __aenter__(self) -> WebSocketRpcClient:
        return await self.open()

    async def __aexit__(self, *args: Any, **kwargs: Any) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Messaging
    # ------------------------------------------------------------------

    async def _send(self, envelope: RequestEnvelope) -> None:
        ws = self.ws
        if ws is None or self._state is not ConnectionState.OPEN:
            raise RpcTransportError(f"Not connected to {self.uri}")
        logger.debug(f"Sending {envelope.method!r} request {envelope.id}")
        try:
            await ws.send(envelope)
        except (ConnectionClosed, OSError) as e:
            raise RpcTransportError(f"Failed to send to {self.uri}: {e}") from e

    async def request(
        self, method: str, payload: Any = None, timeout: float | None = None
    ) -> Any:
        """
        Call ``method`` on the server and wait for its first reply.

        Parameters
        ----------
        method : str
            Method name registered on the endpoint.
        payload : Any, optional
            JSON-serializable value passed to the handler.
        timeout : float | None, optional
            Seconds to wait for the reply. Falls back to
            ``config.connection.default_response_timeout``; None waits
            indefinitely.

        Returns
        -------
        Any
            The ``data`` of the correlated reply.

        Raises
        ------
        RemoteError
            If the server answered with an error envelope
            (UnknownMethodError for an unregistered method).
        RpcTransportError
            If the connection failed before the reply arrived.
        RpcTimeoutError
            If the timeout expired first.
        """
        await self.open()
        call_id = gen_uid()
        pledge = Pledge()
        listener = CorrelatedListener(
            call_id, pledge.resolve, pledge.reject, self._listeners.remove, once=True
        )
        # registered before sending so an immediate reply is not missed
        self._listeners.add(listener)
        try:
            await self._send(
                RequestEnvelope(id=call_id, method=method, payload=payload)
            )
            if timeout is None:
                timeout = self.config.connection.default_response_timeout
            if timeout is not None:
                return await pledge.race_with_timeout(timeout)
            return await pledge.get()
        finally:
            self._listeners.remove(listener)

    async def subscribe(
        self,
        method: str,
        payload: Any,
        callback: Callable[[Any], Any],
        on_error: Callable[[BaseException], Any] | None = None,
    ) -> Subscription:
        """
        Call ``method`` and receive every reply it produces.

        Parameters
        ----------
        method : str
            Method name registered on the endpoint.
        payload : Any
            JSON-serializable value passed to the handler.
        callback : Callable[[Any], Any]
            Called with the ``data`` of each correlated reply, sync or async.
        on_error : Callable[[BaseException], Any] | None, optional
            Called once if the subscription ends because of an error envelope
            or a lost connection. Errors are logged when omitted.

        Returns
        -------
        Subscription
            Callable handle stopping delivery.
        """
        await self.open()
        call_id = gen_uid()

        def _on_error(exc: BaseException) -> Any:
            if on_error is not None:
                return on_error(exc)
            logger.warning(f"Subscription {call_id} to {method!r} ended: {exc}")
            return None

        listener = CorrelatedListener(
            call_id, callback, _on_error, self._listeners.remove, once=False
        )
        subscription = Subscription(call_id, listener, self._listeners)
        self._listeners.add(listener)
        try:
            await self._send(
                RequestEnvelope(id=call_id, method=method, payload=payload)
            )
        except BaseException:
            subscription.cancel()
            raise
        return subscription

    def add_listener(self, listener: MessageListener) -> MessageListener:
        """
        Observe every decoded inbound frame.

        Returns the listener, so this can be used as a decorator.
        """
        return self._listeners.add(listener)

    def remove_listener(self, listener: MessageListener) -> None:
        self._listeners.remove(listener)

    def add_connect_callback(self, callback: ClientCallback) -> None:
        """Add a callback to be called each time the connection opens."""
        self._connect_callbacks.append(callback)

    def add_disconnect_callback(self, callback: ClientCallback) -> None:
        """Add a callback to be called each time an open connection is lost."""
        self._disconnect_callbacks.append(callback)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_open(self) -> bool:
        """True while the connection is open and usable."""
        return self._state is ConnectionState.OPEN and self.ws is not None

    @property
    def pending_count(self) -> int:
        """Number of requests and subscriptions waiting on the connection."""
        return self._listeners.get_pending_count()

    @property
    def close_code(self) -> int | None:
        """WebSocket close code from the last connection loss.

        Returns
        -------
        int | None
            The close code if available, None otherwise.
            Common codes include:

            - 1000: Normal closure
            - 1001: Going away
            - 1006: Abnormal closure (no close frame received)
            - 1012: Service restart (server restarting, reconnection recommended)
        """
        return self._close_code

    @property
    def close_reason(self) -> str | None:
        """WebSocket close reason from the last connection loss."""
        return self._close_reason
