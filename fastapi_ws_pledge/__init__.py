"""
fastapi_ws_pledge - correlated request/response and streaming over WebSockets

A FastAPI endpoint dispatching ``{"id", "method", "payload"}`` frames to
registered handlers, a reconnecting client issuing correlated requests and
subscriptions, and Pledge, the awaitable deferred value both are built on.
"""

# Protocol definitions
from fastapi_ws_pledge._internal.protocols import MethodHandler, ReplyFn, SocketProtocol

# Configuration classes
from fastapi_ws_pledge.config import (
    RpcConnectionConfig,
    RpcEndpointConfig,
    WebSocketConnectionConfig,
    WebSocketRpcClientConfig,
)
from fastapi_ws_pledge.connection_manager import ConnectionManager

# Exceptions
from fastapi_ws_pledge.exceptions import (
    RemoteError,
    RpcChannelClosedError,
    RpcError,
    RpcTimeoutError,
    RpcTransportError,
    UnknownMethodError,
)

# Logging utilities
from fastapi_ws_pledge.logger import LoggingModes, get_logger, logging_config
from fastapi_ws_pledge.pledge import Pledge
from fastapi_ws_pledge.rpc_connection import RpcConnection

# Wire envelopes
from fastapi_ws_pledge.schemas import (
    ConnectionState,
    ErrorEnvelope,
    ErrorReason,
    ReplyEnvelope,
    RequestEnvelope,
    WebSocketFrameType,
)

# WebSocket abstractions (for advanced usage)
from fastapi_ws_pledge.simplewebsocket import JsonSerializingWebSocket, SimpleWebSocket

# Utility functions
from fastapi_ws_pledge.utils import gen_uid
from fastapi_ws_pledge.websocket_rpc_client import Subscription, WebSocketRpcClient
from fastapi_ws_pledge.websocket_rpc_endpoint import WebSocketRpcEndpoint

__version__ = "0.1.0"

__all__ = [
    "ConnectionManager",
    "ConnectionState",
    "ErrorEnvelope",
    "ErrorReason",
    "JsonSerializingWebSocket",
    "LoggingModes",
    "MethodHandler",
    "Pledge",
    "RemoteError",
    "ReplyEnvelope",
    "ReplyFn",
    "RequestEnvelope",
    "RpcChannelClosedError",
    "RpcConnection",
    "RpcConnectionConfig",
    "RpcEndpointConfig",
    "RpcError",
    "RpcTimeoutError",
    "RpcTransportError",
    "SimpleWebSocket",
    "SocketProtocol",
    "Subscription",
    "UnknownMethodError",
    "WebSocketConnectionConfig",
    "WebSocketFrameType",
    "WebSocketRpcClient",
    "WebSocketRpcClientConfig",
    "WebSocketRpcEndpoint",
    "gen_uid",
    "get_logger",
    "logging_config",
]
