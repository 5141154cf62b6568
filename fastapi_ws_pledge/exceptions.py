"""
Exception classes for fastapi_ws_pledge.

This module defines all custom exceptions raised by the library.
All exceptions inherit from RpcError, which inherits from Exception.
"""

from __future__ import annotations

from typing import Any


class RpcError(Exception):
    """
    Base exception for all RPC-related errors.

    Catching this exception will catch all library-specific errors. A pledge
    rejected with a value that is not an exception wraps that value in an
    RpcError.
    """


class RpcChannelClosedError(RpcError):
    """
    Raised when the client can no longer reach an open connection.

    This happens after close() was called, or when the connection ended and
    automatic reconnection is disabled.
    """


class RpcTransportError(RpcError):
    """
    Raised when the underlying WebSocket fails or drops.

    Pending requests and active subscriptions are failed with this error when
    the connection is lost before their reply arrives. The original exception
    is available as ``__cause__``.
    """


class RpcTimeoutError(RpcError, TimeoutError):
    """
    Raised when a pledge is not completed before its deadline.

    Subclasses the builtin TimeoutError so callers can catch either.
    The wait is abandoned but the pending work itself is not cancelled.
    """

    def __init__(self, message: str = "Request Timeout") -> None:
        super().__init__(message)


class RemoteError(RpcError):
    """
    Raised when the server answers a request with an error envelope.

    Attributes
    ----------
    reason : str
        The error message sent by the server, one of the ErrorReason values.
    call_id : Any
        The correlation id echoed by the server.
    """

    def __init__(self, reason: str, call_id: Any = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.call_id = call_id


class UnknownMethodError(RemoteError):
    """
    Raised when the server has no handler registered for the requested method.
    """
