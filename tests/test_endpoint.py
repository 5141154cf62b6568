"""
Tests for WebSocketRpcEndpoint frame dispatch.

This test module covers:
- Routing a frame to its handler and echoing the correlation id
- Each protocol error envelope (malformed JSON, invalid method,
  unknown method, handler error) and the order they are checked in
- Handler registration (replacement, decorator form)
- Payload shapes (absent, null, object) and binary frames
- Async handlers and handlers replying several times
- Independent connections
- The receive loop over a FastAPI-style socket (disconnect, idle timeout)
- ConnectionManager tracking and shutdown
"""

from __future__ import annotations

import asyncio
import json
from typing import Any
from unittest.mock import MagicMock

import pytest
import pytest_asyncio
from fastapi.websockets import WebSocketState

from fastapi_ws_pledge.config import RpcEndpointConfig, WebSocketConnectionConfig
from fastapi_ws_pledge.connection_manager import ConnectionManager
from fastapi_ws_pledge.rpc_connection import RpcConnection
from fastapi_ws_pledge.schemas import WebSocketFrameType
from fastapi_ws_pledge.websocket_rpc_endpoint import WebSocketRpcEndpoint

# ============================================================================
# Fakes and Fixtures
# ============================================================================


class FakeSocket:
    """In-memory socket recording what the session sends."""

    def __init__(self) -> None:
        self.sent: list[str | bytes] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, message: str | bytes) -> None:
        self.sent.append(message)

    async def recv(self) -> Any:
        await asyncio.Event().wait()

    async def close(self, code: int = 1000) -> None:
        self._closed = True

    def frames(self) -> list[Any]:
        return [json.loads(message) for message in self.sent]


class FakeFastApiWebSocket:
    """Stand-in for a FastAPI WebSocket replaying scripted receive() messages."""

    def __init__(self, messages: list[dict[str, Any]], hang: bool = False) -> None:
        self.messages = list(messages)
        self.hang = hang
        self.client = None
        self.client_state = WebSocketState.CONNECTED
        self.application_state = WebSocketState.CONNECTED
        self.accepted_with: str | None = "not accepted"
        self.sent_text: list[str] = []
        self.sent_bytes: list[bytes] = []
        self.close_code: int | None = None

    async def accept(self, subprotocol: str | None = None) -> None:
        self.accepted_with = subprotocol

    async def receive(self) -> dict[str, Any]:
        # give the writer task a chance to flush between frames
        await asyncio.sleep(0.01)
        if self.messages:
            return self.messages.pop(0)
        if self.hang:
            await asyncio.Event().wait()
        self.client_state = WebSocketState.DISCONNECTED
        return {"type": "websocket.disconnect", "code": 1000}

    async def send_text(self, data: str) -> None:
        self.sent_text.append(data)

    async def send_bytes(self, data: bytes) -> None:
        self.sent_bytes.append(data)

    async def close(self, code: int = 1000) -> None:
        self.close_code = code
        self.application_state = WebSocketState.DISCONNECTED


def text(frame: Any) -> dict[str, Any]:
    return {"type": "websocket.receive", "text": json.dumps(frame)}


@pytest.fixture
def endpoint() -> WebSocketRpcEndpoint:
    endpoint = WebSocketRpcEndpoint()
    endpoint.on("echo", lambda payload, reply: reply(payload))
    return endpoint


@pytest_asyncio.fixture
async def connection() -> RpcConnection:
    connection = RpcConnection(FakeSocket())
    connection.start()
    yield connection
    await connection.close()


async def dispatch(
    endpoint: WebSocketRpcEndpoint, connection: RpcConnection, message: str | bytes
) -> list[Any]:
    await endpoint.handle_message(connection, message)
    await connection.join()
    return connection.socket.frames()


# ============================================================================
# Routing
# ============================================================================


class TestRouting:
    """Test delivery of well-formed frames to handlers."""

    @pytest.mark.asyncio
    async def test_handler_reply_echoes_id(
        self, endpoint: WebSocketRpcEndpoint, connection: RpcConnection
    ) -> None:
        """
        Test a plain request.

        Verifies that:
        - the handler gets the payload
        - the reply carries the numeric id unchanged
        """
        endpoint.on("wrap", lambda payload, reply: reply({"echoed": payload}))

        frames = await dispatch(
            endpoint, connection, json.dumps({"method": "wrap", "payload": "hi", "id": 1})
        )

        assert frames == [{"id": 1, "data": {"echoed": "hi"}}]

    @pytest.mark.asyncio
    async def test_reply_wire_format(
        self, endpoint: WebSocketRpcEndpoint, connection: RpcConnection
    ) -> None:
        await dispatch(
            endpoint, connection, json.dumps({"method": "echo", "payload": "x", "id": "a"})
        )

        assert connection.socket.sent == ['{"id":"a","data":"x"}']

    @pytest.mark.asyncio
    async def test_registering_twice_replaces_handler(
        self, endpoint: WebSocketRpcEndpoint, connection: RpcConnection
    ) -> None:
        first = MagicMock(side_effect=lambda payload, reply: reply("first"))
        second = MagicMock(side_effect=lambda payload, reply: reply("second"))
        endpoint.on("dup", first)
        endpoint.on("dup", second)

        frames = await dispatch(
            endpoint, connection, json.dumps({"method": "dup", "payload": "x", "id": 10})
        )

        first.assert_not_called()
        second.assert_called_once()
        assert frames == [{"id": 10, "data": "second"}]

    @pytest.mark.asyncio
    async def test_decorator_registration(
        self, endpoint: WebSocketRpcEndpoint, connection: RpcConnection
    ) -> None:
        @endpoint.on("double")
        def double(payload, reply) -> None:
            reply(payload * 2)

        assert endpoint.methods["double"] is double
        frames = await dispatch(
            endpoint, connection, json.dumps({"method": "double", "payload": 21, "id": 5})
        )

        assert frames == [{"id": 5, "data": 42}]

    @pytest.mark.asyncio
    async def test_payload_shapes(
        self, endpoint: WebSocketRpcEndpoint, connection: RpcConnection
    ) -> None:
        """
        Test absent, null and object payloads.

        Verifies that absent and null payloads both reach the handler as None.
        """
        endpoint.on(
            "payload",
            lambda payload, reply: reply({"type": type(payload).__name__, "value": payload}),
        )

        await endpoint.handle_message(connection, json.dumps({"method": "payload", "id": 12}))
        await endpoint.handle_message(
            connection, json.dumps({"method": "payload", "payload": None, "id": 13})
        )
        await endpoint.handle_message(
            connection, json.dumps({"method": "payload", "payload": {"foo": "bar"}, "id": 14})
        )
        await connection.join()

        assert connection.socket.frames() == [
            {"id": 12, "data": {"type": "NoneType", "value": None}},
            {"id": 13, "data": {"type": "NoneType", "value": None}},
            {"id": 14, "data": {"type": "dict", "value": {"foo": "bar"}}},
        ]

    @pytest.mark.asyncio
    async def test_binary_frame_routed_like_text(
        self, endpoint: WebSocketRpcEndpoint, connection: RpcConnection
    ) -> None:
        message = json.dumps({"method": "echo", "payload": "bin", "id": 18}).encode()

        frames = await dispatch(endpoint, connection, message)

        assert frames == [{"id": 18, "data": "bin"}]

    @pytest.mark.asyncio
    async def test_reply_without_id_omits_it(
        self, endpoint: WebSocketRpcEndpoint, connection: RpcConnection
    ) -> None:
        frames = await dispatch(
            endpoint, connection, json.dumps({"method": "echo", "payload": 1})
        )

        assert frames == [{"data": 1}]

    @pytest.mark.asyncio
    async def test_unknown_keys_are_ignored(
        self, endpoint: WebSocketRpcEndpoint, connection: RpcConnection
    ) -> None:
        frames = await dispatch(
            endpoint,
            connection,
            json.dumps({"method": "echo", "payload": 1, "id": 2, "extra": True}),
        )

        assert frames == [{"id": 2, "data": 1}]


# ============================================================================
# Protocol Errors
# ============================================================================


class TestProtocolErrors:
    """Test the error envelopes, in the order they are checked."""

    @pytest.mark.asyncio
    async def test_malformed_json(
        self, endpoint: WebSocketRpcEndpoint, connection: RpcConnection
    ) -> None:
        frames = await dispatch(endpoint, connection, "not json")

        assert frames == [{"error": True, "message": "Malformed JSON"}]

    @pytest.mark.asyncio
    async def test_invalid_utf8_counts_as_malformed(
        self, endpoint: WebSocketRpcEndpoint, connection: RpcConnection
    ) -> None:
        frames = await dispatch(endpoint, connection, b"\xff\xfe{")

        assert frames == [{"error": True, "message": "Malformed JSON"}]

    @pytest.mark.asyncio
    async def test_too_deeply_nested_counts_as_malformed(
        self, endpoint: WebSocketRpcEndpoint, connection: RpcConnection
    ) -> None:
        """
        Test a frame nested deeper than the JSON decoder can follow.

        Verifies that it is answered like any malformed frame and the next
        request on the same connection is still served.
        """
        nested = "[" * 200000 + "]" * 200000
        frames = await dispatch(endpoint, connection, nested)

        assert frames == [{"error": True, "message": "Malformed JSON"}]

        frames = await dispatch(
            endpoint, connection, json.dumps({"method": "echo", "payload": 1, "id": 9})
        )

        assert frames[-1] == {"id": 9, "data": 1}

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "frame",
        [
            {"payload": "hi", "id": 2},
            {"method": 123, "payload": "hi", "id": 2},
            {"method": "", "payload": "hi", "id": 2},
            {"method": None, "id": 2},
        ],
    )
    async def test_missing_or_invalid_method(
        self,
        endpoint: WebSocketRpcEndpoint,
        connection: RpcConnection,
        frame: dict[str, Any],
    ) -> None:
        frames = await dispatch(endpoint, connection, json.dumps(frame))

        assert frames == [{"error": True, "message": "Missing or invalid method", "id": 2}]

    @pytest.mark.asyncio
    async def test_json_that_is_not_an_object(
        self, endpoint: WebSocketRpcEndpoint, connection: RpcConnection
    ) -> None:
        frames = await dispatch(endpoint, connection, "42")

        assert frames == [{"error": True, "message": "Missing or invalid method"}]

    @pytest.mark.asyncio
    async def test_unknown_method(
        self, endpoint: WebSocketRpcEndpoint, connection: RpcConnection
    ) -> None:
        frames = await dispatch(
            endpoint, connection, json.dumps({"method": "notfound", "payload": "hi", "id": 3})
        )

        assert frames == [{"error": True, "message": "Method not found", "id": 3}]

    @pytest.mark.asyncio
    async def test_handler_exception(
        self, endpoint: WebSocketRpcEndpoint, connection: RpcConnection
    ) -> None:
        def fail(payload, reply) -> None:
            raise RuntimeError("fail")

        endpoint.on("fail", fail)

        frames = await dispatch(
            endpoint, connection, json.dumps({"method": "fail", "payload": "hi", "id": 4})
        )

        assert frames == [{"error": True, "message": "Method handler error", "id": 4}]

    @pytest.mark.asyncio
    async def test_unserializable_reply_is_handler_error(
        self, endpoint: WebSocketRpcEndpoint, connection: RpcConnection
    ) -> None:
        endpoint.on("bad", lambda payload, reply: reply(object()))

        frames = await dispatch(
            endpoint, connection, json.dumps({"method": "bad", "id": 15})
        )

        assert frames == [{"error": True, "message": "Method handler error", "id": 15}]

    @pytest.mark.asyncio
    async def test_connection_survives_errors(
        self, endpoint: WebSocketRpcEndpoint, connection: RpcConnection
    ) -> None:
        await endpoint.handle_message(connection, "not json")
        await endpoint.handle_message(connection, json.dumps({"method": "nope", "id": 1}))

        frames = await dispatch(
            endpoint, connection, json.dumps({"method": "echo", "payload": "ok", "id": 2})
        )

        assert frames[-1] == {"id": 2, "data": "ok"}
        assert len(frames) == 3


# ============================================================================
# Async and Streaming Handlers
# ============================================================================


class TestAsyncHandlers:
    """Test coroutine handlers and repeated replies."""

    @pytest.mark.asyncio
    async def test_async_handler_reply(
        self, endpoint: WebSocketRpcEndpoint, connection: RpcConnection
    ) -> None:
        @endpoint.on("slow")
        async def slow(payload, reply) -> None:
            await asyncio.sleep(0.01)
            reply(payload + 1)

        frames = await dispatch(
            endpoint, connection, json.dumps({"method": "slow", "payload": 1, "id": "s"})
        )

        assert frames == [{"id": "s", "data": 2}]

    @pytest.mark.asyncio
    async def test_async_handler_exception(
        self, endpoint: WebSocketRpcEndpoint, connection: RpcConnection
    ) -> None:
        @endpoint.on("broken")
        async def broken(payload, reply) -> None:
            await asyncio.sleep(0)
            raise ValueError("late failure")

        frames = await dispatch(
            endpoint, connection, json.dumps({"method": "broken", "id": 7})
        )

        assert frames == [{"error": True, "message": "Method handler error", "id": 7}]

    @pytest.mark.asyncio
    async def test_multiple_replies_keep_order(
        self, endpoint: WebSocketRpcEndpoint, connection: RpcConnection
    ) -> None:
        @endpoint.on("stream")
        async def stream(payload, reply) -> None:
            for tick in payload:
                reply(tick)
                await asyncio.sleep(0)

        frames = await dispatch(
            endpoint,
            connection,
            json.dumps({"method": "stream", "payload": ["a", "b", "c"], "id": 9}),
        )

        assert frames == [
            {"id": 9, "data": "a"},
            {"id": 9, "data": "b"},
            {"id": 9, "data": "c"},
        ]

    @pytest.mark.asyncio
    async def test_handler_tasks_cancelled_on_close(
        self, endpoint: WebSocketRpcEndpoint
    ) -> None:
        started = asyncio.Event()
        cancelled = asyncio.Event()

        @endpoint.on("forever")
        async def forever(payload, reply) -> None:
            started.set()
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                cancelled.set()
                raise

        connection = RpcConnection(FakeSocket())
        await endpoint.handle_message(connection, json.dumps({"method": "forever", "id": 1}))
        await started.wait()

        await connection.close()

        assert cancelled.is_set()
        assert connection.socket.closed
        # replies after close are dropped
        connection.enqueue("late")
        assert connection.socket.sent == []


# ============================================================================
# Connection Isolation
# ============================================================================


class TestConnections:
    """Test that connections are independent."""

    @pytest.mark.asyncio
    async def test_multiple_connections_independent(
        self, endpoint: WebSocketRpcEndpoint
    ) -> None:
        first = RpcConnection(FakeSocket())
        second = RpcConnection(FakeSocket())
        try:
            await endpoint.handle_message(
                first, json.dumps({"method": "echo", "payload": "a", "id": 16})
            )
            await endpoint.handle_message(
                second, json.dumps({"method": "echo", "payload": "b", "id": 17})
            )
            await first.join()
            await second.join()

            assert first.socket.frames() == [{"id": 16, "data": "a"}]
            assert second.socket.frames() == [{"id": 17, "data": "b"}]
        finally:
            await first.close()
            await second.close()

    def test_connection_rejects_non_socket(self) -> None:
        with pytest.raises(TypeError):
            RpcConnection(object())


# ============================================================================
# Receive Loop
# ============================================================================


class TestMainLoop:
    """Test main_loop() over a FastAPI-style socket."""

    @pytest.mark.asyncio
    async def test_serves_until_disconnect(self, endpoint: WebSocketRpcEndpoint) -> None:
        """
        Test a full session.

        Verifies that:
        - the socket is accepted without a subprotocol by default
        - text and binary frames are both answered as text
        - disconnect callbacks run and the manager forgets the socket
        """
        disconnected = MagicMock()
        manager = ConnectionManager()
        endpoint = WebSocketRpcEndpoint(
            methods=endpoint.methods, manager=manager, on_disconnect=[disconnected]
        )
        websocket = FakeFastApiWebSocket(
            [
                text({"method": "echo", "payload": 1, "id": 1}),
                {
                    "type": "websocket.receive",
                    "bytes": json.dumps({"method": "echo", "payload": 2, "id": 2}).encode(),
                },
            ]
        )

        await endpoint.main_loop(websocket)

        assert websocket.accepted_with is None
        assert [json.loads(t) for t in websocket.sent_text] == [
            {"id": 1, "data": 1},
            {"id": 2, "data": 2},
        ]
        disconnected.assert_called_once()
        assert isinstance(disconnected.call_args.args[0], RpcConnection)
        assert manager.get_connection_count() == 0

    @pytest.mark.asyncio
    async def test_binary_replies_and_subprotocol(self) -> None:
        config = RpcEndpointConfig(
            frame_type=WebSocketFrameType.Binary,
            websocket=WebSocketConnectionConfig(subprotocols=["pledge.v1"]),
        )
        endpoint = WebSocketRpcEndpoint(config=config)
        endpoint.on("echo", lambda payload, reply: reply(payload))
        websocket = FakeFastApiWebSocket([text({"method": "echo", "payload": "b", "id": 1})])

        await endpoint.main_loop(websocket)

        assert websocket.accepted_with == "pledge.v1"
        assert websocket.sent_text == []
        assert [json.loads(b) for b in websocket.sent_bytes] == [{"id": 1, "data": "b"}]

    @pytest.mark.asyncio
    async def test_idle_timeout_closes_connection(self) -> None:
        endpoint = WebSocketRpcEndpoint(config=RpcEndpointConfig(idle_timeout=0.05))
        websocket = FakeFastApiWebSocket([], hang=True)

        await asyncio.wait_for(endpoint.main_loop(websocket), timeout=2.0)

        assert websocket.close_code == 1000
        assert endpoint.manager.get_connection_count() == 0

    @pytest.mark.asyncio
    async def test_connect_callbacks_receive_connection(self) -> None:
        connected = asyncio.Event()
        seen: list[RpcConnection] = []

        async def on_connect(connection: RpcConnection) -> None:
            seen.append(connection)
            connected.set()

        endpoint = WebSocketRpcEndpoint(on_connect=[on_connect])
        websocket = FakeFastApiWebSocket([text({"method": "nope", "id": 1})])

        await endpoint.main_loop(websocket)
        await asyncio.wait_for(connected.wait(), timeout=1.0)

        assert len(seen) == 1
        assert json.loads(websocket.sent_text[0]) == {
            "error": True,
            "message": "Method not found",
            "id": 1,
        }


# ============================================================================
# Connection Manager
# ============================================================================


class TestConnectionManager:
    """Test tracking of accepted sockets."""

    @pytest.mark.asyncio
    async def test_tracks_and_forgets_sockets(self) -> None:
        manager = ConnectionManager()
        websocket = FakeFastApiWebSocket([])

        await manager.connect(websocket, subprotocol="pledge.v1")

        assert websocket.accepted_with == "pledge.v1"
        assert manager.is_connected(websocket)
        assert manager.get_connection(websocket) is None
        assert manager.get_connection_count() == 1

        manager.disconnect(websocket)
        manager.disconnect(websocket)

        assert not manager.is_connected(websocket)
        assert manager.get_connection_count() == 0

    @pytest.mark.asyncio
    async def test_close_all_closes_sessions(self) -> None:
        manager = ConnectionManager()
        sockets = [FakeSocket(), FakeSocket()]
        for index, socket in enumerate(sockets):
            websocket = FakeFastApiWebSocket([])
            await manager.connect(websocket)
            connection = RpcConnection(socket, connection_id=f"c{index}")
            manager.attach(websocket, connection)
            assert manager.get_connection(websocket) is connection

        await manager.close_all()

        assert manager.get_connection_count() == 0
        assert all(socket.closed for socket in sockets)
