"""Configuration dataclasses for the WebSocket pledge client and endpoint.

This module provides immutable, validated configuration objects for the
connection lifecycle (reconnection, open timeout), WebSocket protocol settings
and the server endpoint.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .schemas import WebSocketFrameType

# Default maximum message size: 10MB
DEFAULT_MAX_MESSAGE_SIZE = 10 * 1024 * 1024

# Fixed pause between reconnection attempts
DEFAULT_RECONNECT_DELAY = 1.0


@dataclass(frozen=True)
class WebSocketConnectionConfig:
    """Configuration for WebSocket-specific connection settings.

    Controls WebSocket protocol-level features like subprotocol negotiation,
    message compression and the maximum accepted frame size.

    Parameters
    ----------
    subprotocols : list[str] | None, default None
        WebSocket subprotocols to negotiate. None (or an empty list) disables
        negotiation. The server accepts with the first entry.
    compression : str | None, default None
        Compression extension to offer ("deflate"), or None to disable it.
    ping_timeout : float | None, default None
        Seconds to wait for a protocol-level pong before dropping the
        connection. None keeps the websockets library default.
    max_message_size : int | None, default 10MB
        Largest inbound message accepted by the client, in bytes. None means
        no limit.

    Examples
    --------
    >>> config = WebSocketConnectionConfig(subprotocols=["pledge.v1"])
    >>> config.validate()
    """

    subprotocols: list[str] | None = None
    compression: str | None = None
    ping_timeout: float | None = None
    max_message_size: int | None = DEFAULT_MAX_MESSAGE_SIZE

    def __post_init__(self) -> None:
        """Validate configuration after initialization.

        Raises
        ------
        ValueError
            If a subprotocol is empty, the compression value is unknown or a
            numeric limit is out of range.
        """
        if self.subprotocols is not None:
            for protocol in self.subprotocols:
                if not isinstance(protocol, str) or not protocol:
                    raise ValueError(
                        f"subprotocols must be non-empty strings, got {protocol!r}"
                    )

        if self.compression is not None and self.compression != "deflate":
            raise ValueError(
                f"compression must be 'deflate' or None, got {self.compression!r}"
            )

        if self.ping_timeout is not None and self.ping_timeout < 0:
            raise ValueError(
                f"ping_timeout must be non-negative, got {self.ping_timeout}"
            )

        if self.max_message_size is not None and self.max_message_size <= 0:
            raise ValueError(
                f"max_message_size must be positive, got {self.max_message_size}"
            )

    def validate(self) -> None:
        """Explicitly validate the configuration.

        Validation is automatically performed in __post_init__, so this is
        typically not needed.
        """


@dataclass(frozen=True)
class RpcConnectionConfig:
    """Configuration for the client connection lifecycle.

    Parameters
    ----------
    auto_reconnect : bool, default True
        Reconnect automatically after the connection errors or closes, unless
        the client itself was closed.
    reconnect_delay : float, default 1.0
        Fixed delay in seconds before each reconnection attempt.
    max_reconnect_attempts : int | None, default None
        Give up after this many consecutive failed attempts. None retries
        forever.
    open_timeout : float | None, default 10.0
        Seconds allowed for the opening handshake of each attempt.
    default_response_timeout : float | None, default None
        Timeout applied to request() when the caller gives none. None waits
        indefinitely.
    websocket : WebSocketConnectionConfig, default WebSocketConnectionConfig()
        WebSocket protocol settings.

    Examples
    --------
    >>> # Fail fast, no reconnection
    >>> config = RpcConnectionConfig(auto_reconnect=False, open_timeout=2.0)
    >>> config.validate()
    """

    auto_reconnect: bool = True
    reconnect_delay: float = DEFAULT_RECONNECT_DELAY
    max_reconnect_attempts: int | None = None
    open_timeout: float | None = 10.0
    default_response_timeout: float | None = None
    websocket: WebSocketConnectionConfig = field(
        default_factory=WebSocketConnectionConfig
    )

    def __post_init__(self) -> None:
        """Validate configuration after initialization.

        Raises
        ------
        ValueError
            If any delay or timeout is negative, or if max_reconnect_attempts
            is less than 1.
        """
        if self.reconnect_delay < 0:
            raise ValueError(
                f"reconnect_delay must be non-negative, got {self.reconnect_delay}"
            )

        if self.max_reconnect_attempts is not None and self.max_reconnect_attempts < 1:
            raise ValueError(
                f"max_reconnect_attempts must be at least 1, got {self.max_reconnect_attempts}"
            )

        if self.open_timeout is not None and self.open_timeout <= 0:
            raise ValueError(f"open_timeout must be positive, got {self.open_timeout}")

        if (
            self.default_response_timeout is not None
            and self.default_response_timeout <= 0
        ):
            raise ValueError(
                f"default_response_timeout must be positive, got {self.default_response_timeout}"
            )

    def validate(self) -> None:
        """Explicitly validate the configuration, including nested configs."""
        self.websocket.validate()


@dataclass(frozen=True)
class WebSocketRpcClientConfig:
    """Complete configuration for WebSocketRpcClient.

    Parameters
    ----------
    connection : RpcConnectionConfig, default RpcConnectionConfig()
        Reconnection and timeout settings.
    websocket_kwargs : dict[str, Any], default {}
        Extra keyword arguments for ``websockets.connect`` (headers, proxy...).
        Values here win over the ones derived from ``connection.websocket``.

    Examples
    --------
    >>> config = WebSocketRpcClientConfig(
    ...     connection=RpcConnectionConfig(reconnect_delay=0.5),
    ...     websocket_kwargs={"additional_headers": {"x-client": "probe"}},
    ... )
    >>> config.validate()
    """

    connection: RpcConnectionConfig = field(default_factory=RpcConnectionConfig)
    websocket_kwargs: dict[str, Any] = field(default_factory=dict)

    def validate(self) -> None:
        self.connection.validate()

    def connect_kwargs(self) -> dict[str, Any]:
        """Build the keyword arguments passed to ``websockets.connect``."""
        websocket = self.connection.websocket
        kwargs: dict[str, Any] = {
            "open_timeout": self.connection.open_timeout,
            "max_size": websocket.max_message_size,
            "compression": websocket.compression,
        }
        if websocket.subprotocols:
            kwargs["subprotocols"] = websocket.subprotocols
        if websocket.ping_timeout is not None:
            kwargs["ping_timeout"] = websocket.ping_timeout
        kwargs.update(self.websocket_kwargs)
        return kwargs

    @classmethod
    def production_defaults(cls) -> WebSocketRpcClientConfig:
        """Create configuration with production-ready defaults.

        - Reconnect every second, forever
        - 30-second default response timeout
        - permessage-deflate compression and a 60-second ping timeout

        Examples
        --------
        >>> config = WebSocketRpcClientConfig.production_defaults()
        >>> assert config.connection.default_response_timeout == 30.0
        """
        return cls(
            connection=RpcConnectionConfig(
                auto_reconnect=True,
                reconnect_delay=DEFAULT_RECONNECT_DELAY,
                default_response_timeout=30.0,
                websocket=WebSocketConnectionConfig(
                    compression="deflate",
                    ping_timeout=60.0,
                ),
            ),
        )

    @classmethod
    def development_defaults(cls) -> WebSocketRpcClientConfig:
        """Create configuration with development-friendly defaults.

        No response timeout (so breakpoints don't fail calls) and no
        compression (so frames are readable in traffic captures).

        Examples
        --------
        >>> config = WebSocketRpcClientConfig.development_defaults()
        >>> assert config.connection.default_response_timeout is None
        """
        return cls(
            connection=RpcConnectionConfig(
                default_response_timeout=None,
                websocket=WebSocketConnectionConfig(compression=None),
            ),
        )


@dataclass(frozen=True)
class RpcEndpointConfig:
    """Configuration for WebSocketRpcEndpoint.

    Parameters
    ----------
    frame_type : WebSocketFrameType, default WebSocketFrameType.Text
        Frame type used for outgoing replies.
    idle_timeout : float | None, default None
        Close a connection when no frame was received for this many seconds.
        The timer resets on every frame. None keeps idle connections open.
    websocket : WebSocketConnectionConfig, default WebSocketConnectionConfig()
        Subprotocol offered when accepting connections.

    Examples
    --------
    >>> config = RpcEndpointConfig(idle_timeout=300.0)
    >>> config.validate()
    """

    frame_type: WebSocketFrameType = WebSocketFrameType.Text
    idle_timeout: float | None = None
    websocket: WebSocketConnectionConfig = field(
        default_factory=WebSocketConnectionConfig
    )

    def __post_init__(self) -> None:
        if self.idle_timeout is not None and self.idle_timeout <= 0:
            raise ValueError(f"idle_timeout must be positive, got {self.idle_timeout}")

    def validate(self) -> None:
        self.websocket.validate()
