"""
Reconnect policy for the WebSocket pledge client.

This module provides RpcReconnectPolicy, which builds the tenacity retry loop
used by the client's connection supervisor: a fixed pause between attempts,
an optional cap on consecutive failed attempts, and exception filtering.
"""

from __future__ import annotations

from collections.abc import Callable

import tenacity
from tenacity import AsyncRetrying, stop_never, wait_fixed
from tenacity.retry import retry_if_exception
from websockets.exceptions import InvalidStatus

from ..logger import get_logger

logger = get_logger(__name__)


def is_not_forbidden(value: BaseException) -> bool:
    """
    Check if the exception is not an authorization-related status code.

    Retrying a handshake rejected with 401 (Unauthorized) or 403 (Forbidden)
    won't help, the credentials are not going to change between attempts.
    """
    return not (
        isinstance(value, InvalidStatus)
        and getattr(value.response, "status_code", None) in (401, 403)
    )


def _log_reconnect(retry_state: tenacity.RetryCallState) -> None:
    outcome = retry_state.outcome
    delay = retry_state.next_action.sleep if retry_state.next_action else 0
    if outcome is not None:
        logger.info(
            f"Connection lost ({outcome.exception()!r}), reconnecting in {delay:.1f}s"
        )


class RpcReconnectPolicy:
    """
    Builds the retry loop that keeps a client connected.

    Parameters
    ----------
    delay : float
        Fixed pause in seconds before every reconnection attempt.
    max_attempts : int | None
        Stop after this many consecutive failed attempts. Attempts that reach
        the open state reset the count. None retries forever.
    should_retry : Callable[[BaseException], bool]
        Extra predicate consulted on every failure, e.g. to stop once the
        client has been closed.

    Usage
    -----
    ```python
    policy = RpcReconnectPolicy(delay=1.0, should_retry=lambda exc: not closing)
    async for attempt in policy.retrying():
        with attempt:
            await run_one_connection()
    ```
    """

    def __init__(
        self,
        delay: float,
        max_attempts: int | None = None,
        should_retry: Callable[[BaseException], bool] | None = None,
    ) -> None:
        self.delay = delay
        self.max_attempts = max_attempts
        self._should_retry = should_retry
        self._failures = 0

    @property
    def failures(self) -> int:
        """Number of consecutive attempts that failed before opening."""
        return self._failures

    def record_failure(self) -> None:
        self._failures += 1

    def reset(self) -> None:
        self._failures = 0

    def _retry_predicate(self, exc: BaseException) -> bool:
        if not isinstance(exc, Exception):
            # CancelledError and friends always end the loop
            return False
        # transport errors wrap the handshake failure
        cause = exc.__cause__ if exc.__cause__ is not None else exc
        if not is_not_forbidden(cause):
            logger.warning(f"Handshake rejected, not reconnecting: {exc}")
            return False
        return self._should_retry(exc) if self._should_retry is not None else True

    def _stop(self, retry_state: tenacity.RetryCallState) -> bool:
        if self.max_attempts is None:
            return stop_never(retry_state)
        if self._failures >= self.max_attempts:
            logger.error(
                f"Giving up after {self._failures} failed connection attempt(s)"
            )
            return True
        return False

    def retrying(self) -> AsyncRetrying:
        """
        Create the tenacity loop driving connection attempts.

        The last exception is re-raised once the loop stops retrying.
        """
        return AsyncRetrying(
            wait=wait_fixed(self.delay),
            stop=self._stop,
            retry=retry_if_exception(self._retry_predicate),
            before_sleep=_log_reconnect,
            reraise=True,
        )
