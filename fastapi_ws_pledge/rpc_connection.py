"""
Server-side session for one accepted WebSocket connection.

Each session owns an ordered outbound queue drained by a single writer task,
so replies produced by synchronous handlers (and by handlers that reply
several times) reach the socket in the order they were produced.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Coroutine
from contextlib import suppress
from typing import Any

from ._internal.protocols import SocketProtocol
from .logger import get_logger
from .utils import gen_uid

logger = get_logger(__name__)

OnTaskError = Callable[[BaseException], None]


class RpcConnection:
    """
    Per-connection state on the endpoint side.

    Nothing here is shared between connections: every session has its own
    queue, writer and set of running handler tasks.

    Parameters
    ----------
    socket : SocketProtocol
        Socket with async send/recv/close, already accepted.
    connection_id : str | None, optional
        Identifier used in logs. A random one is generated when None.
    subprotocol : str | None, optional
        Negotiated WebSocket subprotocol, kept for handlers and logs.
    **kwargs : Any
        Additional context data accessible through ``connection.context``.
    """

    def __init__(
        self,
        socket: SocketProtocol,
        connection_id: str | None = None,
        subprotocol: str | None = None,
        **kwargs: Any,
    ) -> None:
        if not isinstance(socket, SocketProtocol):
            raise TypeError(
                f"socket must provide send/recv/close/closed, got {type(socket).__name__}"
            )
        self.socket = socket
        self.id = connection_id if connection_id is not None else gen_uid()
        self.subprotocol = subprotocol
        self._context: dict[str, Any] = kwargs or {}

        self._outbox: asyncio.Queue[str | bytes] = asyncio.Queue()
        self._writer: asyncio.Task[None] | None = None
        self._tasks: set[asyncio.Task[Any]] = set()
        self._closing = False
        self._close_lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f"<RpcConnection {self.id}>"

    @property
    def context(self) -> dict[str, Any]:
        return self._context

    def is_closed(self) -> bool:
        return self._closing

    def start(self) -> None:
        """Start the writer task. Called once the socket is accepted."""
        if self._writer is None:
            self._writer = asyncio.create_task(self._write_loop())

    def enqueue(self, frame: str | bytes) -> None:
        """
        Queue a serialized frame for sending.

        Frames queued after the connection closed are dropped.
        """
        if self._closing:
            logger.debug(f"Connection {self.id} closed, dropping frame: {frame!r}")
            return
        self.start()
        self._outbox.put_nowait(frame)

    def spawn(
        self,
        coro: Coroutine[Any, Any, Any] | Awaitable[Any],
        on_error: OnTaskError | None = None,
    ) -> asyncio.Task[Any]:
        """
        Run an awaitable as a task owned by this connection.

        Args:
            coro: Handler coroutine (or any awaitable) to run
            on_error: Called with the exception if the task fails

        Returns:
            The created task; it is cancelled when the connection closes.
        """
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)

        def _done(finished: asyncio.Task[Any]) -> None:
            self._tasks.discard(finished)
            if finished.cancelled():
                return
            exc = finished.exception()
            if exc is not None and on_error is not None:
                on_error(exc)

        task.add_done_callback(_done)
        return task

    async def _write_loop(self) -> None:
        while True:
            frame = await self._outbox.get()
            try:
                await self.socket.send(frame)
            except Exception as e:
                logger.warning(f"Connection {self.id} failed to send frame: {e}")
                self._outbox.task_done()
                self._drain()
                return
            self._outbox.task_done()

    def _drain(self) -> None:
        while not self._outbox.empty():
            self._outbox.get_nowait()
            self._outbox.task_done()

    async def join(self) -> None:
        """
        Wait until every handler task finished and every queued frame was sent.
        """
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        if self._writer is not None and not self._writer.done():
            await self._outbox.join()

    async def close(self, code: int = 1000, close_socket: bool = True) -> None:
        """
        Tear the session down: cancel handler tasks, stop the writer and
        optionally close the socket.

        This method is idempotent and can be safely called multiple times.

        Args:
            code: WebSocket close code used when closing the socket
            close_socket: False when the peer already went away
        """
        async with self._close_lock:
            if self._closing:
                logger.debug(f"Connection {self.id} already closed/closing, skipping")
                return
            self._closing = True

        logger.debug(f"Closing connection {self.id}...")
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if self._writer is not None:
            self._writer.cancel()
            with suppress(asyncio.CancelledError):
                await self._writer
            self._writer = None
        self._drain()

        if close_socket and not self.socket.closed:
            # the peer may have vanished between the check and the call
            with suppress(RuntimeError, ConnectionError):
                await self.socket.close(code)
        logger.debug(f"Connection {self.id} closed")
