"""
Pledge - a manually completed, awaitable single-assignment value.

A pledge bridges callback-style code into coroutines: whoever owns the
callback calls resolve()/reject(), whoever needs the outcome awaits get().

Usage:

    pledge = Pledge()

    def on_done(error, data):
        if error:
            pledge.reject(error)
        else:
            pledge.resolve(data)

    some_callback_api(on_done)
    response = await pledge.race_with_timeout(5.0)
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Callable, Iterable
from typing import Any

from .exceptions import RpcError, RpcTimeoutError
from .logger import get_logger

logger = get_logger(__name__)


class Pledge:
    """
    Event wrapper holding the outcome of one eventual operation.

    The first call to resolve() or reject() completes the pledge; any later
    call is silently ignored. Completion can be observed any number of times.
    """

    def __init__(self) -> None:
        # event used to wake up everyone waiting on the outcome
        self._event = asyncio.Event()
        self._value: Any = None
        self._exception: BaseException | None = None
        self._callbacks: list[Callable[[Any], Any]] = []

    def __repr__(self) -> str:
        if not self.done():
            state = "pending"
        elif self._exception is not None:
            state = f"rejected {self._exception!r}"
        else:
            state = f"resolved {self._value!r}"
        return f"<Pledge {state}>"

    def __await__(self) -> Any:
        return self.get().__await__()

    def done(self) -> bool:
        return self._event.is_set()

    def resolve(self, value: Any = None) -> None:
        if self.done():
            return
        self._value = value
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            self._run_callback(callback)

    def reject(self, reason: Any) -> None:
        if self.done():
            return
        if not isinstance(reason, BaseException):
            reason = RpcError(reason)
        self._exception = reason
        self._callbacks.clear()
        self._event.set()

    async def get(self) -> Any:
        """
        Wait for completion.

        Returns:
            The resolved value.

        Raises:
            The rejection reason, if the pledge was rejected.
        """
        await self._event.wait()
        return self._outcome()

    async def race_with_timeout(self, duration: float) -> Any:
        """
        Wait for completion, but no longer than ``duration`` seconds.

        The deadline only ends this wait: the pledge itself stays pending and a
        later resolution is still visible through get().

        Args:
            duration: Seconds to wait before giving up.

        Returns:
            The resolved value, if the pledge completes first.

        Raises:
            RpcTimeoutError: If the deadline passes first ("Request Timeout").
            The rejection reason, if the pledge is rejected first.
        """
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait([waiter], timeout=duration)
        finally:
            # also reached when the caller is cancelled
            if not waiter.done():
                waiter.cancel()
        if not done:
            raise RpcTimeoutError("Request Timeout")
        return self._outcome()

    def chain(self, callback: Callable[[Any], Any]) -> Pledge:
        """
        Call ``callback(value)`` once the pledge resolves.

        The callback never runs on rejection. If the pledge already resolved it
        runs right away. Coroutine results are scheduled as tasks.

        Returns:
            This pledge, so calls can be chained.
        """
        if self.done():
            if self._exception is None:
                self._run_callback(callback)
        else:
            self._callbacks.append(callback)
        return self

    @staticmethod
    async def all(items: Iterable[Any]) -> list[Any]:
        """
        Wait on a mix of pledges, awaitables and plain values.

        Args:
            items: Pledges and awaitables are waited on; anything else is
                passed through unchanged.

        Returns:
            The values in input order (not completion order).

        Raises:
            The first failure to occur among the items.
        """
        results = list(items)
        waiters: dict[int, asyncio.Future[Any]] = {}
        owned: list[asyncio.Future[Any]] = []
        for index, item in enumerate(results):
            if isinstance(item, Pledge):
                waiter = asyncio.ensure_future(item.get())
                owned.append(waiter)
            elif inspect.isawaitable(item):
                waiter = asyncio.ensure_future(item)
            else:
                continue
            waiters[index] = waiter

        try:
            values = await asyncio.gather(*waiters.values())
        except BaseException:
            # waiters on pledges that will never settle would otherwise linger
            for waiter in owned:
                waiter.cancel()
            raise

        for index, value in zip(waiters, values):
            results[index] = value
        return results

    def _outcome(self) -> Any:
        if self._exception is not None:
            raise self._exception
        return self._value

    def _run_callback(self, callback: Callable[[Any], Any]) -> None:
        try:
            result = callback(self._value)
            if inspect.isawaitable(result):
                asyncio.ensure_future(result)
        except Exception:
            logger.exception("Pledge callback failed")
