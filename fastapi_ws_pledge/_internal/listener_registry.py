"""
Listener registry for matching inbound frames to pending calls.

This module holds the client's per-connection message observers: raw
listeners registered by users, and correlated listeners created by request()
and subscribe() that react only to replies carrying their own id.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Callable
from contextlib import suppress
from typing import Any

from ..exceptions import RemoteError, UnknownMethodError
from ..logger import get_logger
from ..schemas import ErrorEnvelope, ErrorReason, parse_reply_frame

logger = get_logger(__name__)

MessageListener = Callable[[Any], Any]


def remote_error_from(envelope: ErrorEnvelope) -> RemoteError:
    """Map an error envelope to the exception raised on the calling side."""
    if envelope.message == ErrorReason.METHOD_NOT_FOUND.value:
        return UnknownMethodError(envelope.message, envelope.id)
    return RemoteError(envelope.message, envelope.id)


class CorrelatedListener:
    """
    Listener bound to a single correlation id.

    Frames whose id differs are ignored. A one-shot listener detaches itself on
    the first matching frame (request); a persistent one keeps receiving until
    it is removed or fails (subscription). Error envelopes and transport
    failures always detach the listener.
    """

    def __init__(
        self,
        call_id: str,
        on_data: Callable[[Any], Any],
        on_error: Callable[[BaseException], Any],
        detach: Callable[[CorrelatedListener], None],
        once: bool = True,
    ) -> None:
        self.call_id = call_id
        self.once = once
        self._on_data = on_data
        self._on_error = on_error
        self._detach = detach

    def __repr__(self) -> str:
        kind = "once" if self.once else "stream"
        return f"<CorrelatedListener {self.call_id} ({kind})>"

    def __call__(self, frame: Any) -> Any:
        envelope = parse_reply_frame(frame)
        if envelope is None or envelope.id != self.call_id:
            return None

        if isinstance(envelope, ErrorEnvelope):
            self._detach(self)
            logger.debug(f"Call {self.call_id} answered with error: {envelope.message}")
            return self._on_error(remote_error_from(envelope))

        if self.once:
            self._detach(self)
        return self._on_data(envelope.data)

    def fail(self, exc: BaseException) -> Any:
        self._detach(self)
        return self._on_error(exc)


class ListenerRegistry:
    """
    Ordered collection of frame observers for one client connection.

    Every inbound frame is offered to every listener in registration order.
    A failing listener is logged and skipped so the remaining listeners
    still see the frame.
    """

    def __init__(self) -> None:
        self._listeners: list[MessageListener] = []
        # running coroutines returned by listeners
        self._tasks: set[asyncio.Future[Any]] = set()

    def __len__(self) -> int:
        return len(self._listeners)

    def __contains__(self, listener: object) -> bool:
        return listener in self._listeners

    def add(self, listener: MessageListener) -> MessageListener:
        self._listeners.append(listener)
        return listener

    def remove(self, listener: MessageListener) -> None:
        # Removing twice, or removing an unknown listener, is fine
        with suppress(ValueError):
            self._listeners.remove(listener)

    def clear(self) -> None:
        self._listeners.clear()

    def get_pending_count(self) -> int:
        """
        Get the number of correlated listeners still waiting for replies.
        """
        return sum(
            1 for listener in self._listeners if isinstance(listener, CorrelatedListener)
        )

    async def dispatch(self, frame: Any) -> None:
        """
        Offer a decoded frame to every registered listener.

        Listeners may be plain callables or return awaitables. Awaitables run
        as tasks, so a listener may itself wait on a reply that a later frame
        delivers.
        """
        for listener in list(self._listeners):
            # skip listeners removed by an earlier listener during this dispatch
            if listener not in self._listeners:
                continue
            try:
                result = listener(frame)
                if inspect.isawaitable(result):
                    self._schedule(result, listener)
            except Exception:
                logger.exception(f"Message listener {listener!r} failed")

    def fail_pending(self, exc: BaseException) -> int:
        """
        Fail and detach every correlated listener.

        Raw listeners stay registered; they are not tied to a single call.

        Returns:
            Number of correlated listeners that were failed
        """
        pending = [
            listener
            for listener in list(self._listeners)
            if isinstance(listener, CorrelatedListener)
        ]
        for listener in pending:
            try:
                result = listener.fail(exc)
                if inspect.isawaitable(result):
                    # error callbacks of subscriptions may be coroutines
                    self._schedule(result, listener)
            except Exception:
                logger.exception(f"Failing listener {listener!r} raised")
        if pending:
            logger.info(f"Failed {len(pending)} pending call(s): {exc}")
        return len(pending)

    def get_running_count(self) -> int:
        return len(self._tasks)

    def _schedule(self, awaitable: Any, listener: MessageListener) -> None:
        task = asyncio.ensure_future(awaitable)
        self._tasks.add(task)

        def on_done(done: asyncio.Future[Any]) -> None:
            self._tasks.discard(done)
            if done.cancelled():
                return
            exc = done.exception()
            if exc is not None:
                logger.error(f"Message listener {listener!r} failed", exc_info=exc)

        task.add_done_callback(on_done)
