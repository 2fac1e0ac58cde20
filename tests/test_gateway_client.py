"""
Gateway 客户端测试
使用进程内的假 Gateway (websockets.serve) 走完整的握手和请求流程
"""
import asyncio
import json
import socket
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import pytest
import websockets
from websockets.exceptions import ConnectionClosed

from bridge.dispatcher import THINKING_PLACEHOLDER, Bridge
from gateway.client import GatewayClient
from gateway.errors import AgentError, GatewayConnectionError, GatewayTimeout, HandshakeError


def agent_event(stream: str, data: Optional[Dict[str, Any]], run_id: str = "run-1") -> Dict[str, Any]:
    return {"type": "event", "event": "agent", "payload": {"runId": run_id, "stream": stream, "data": data}}


def lifecycle_end(run_id: str = "run-1") -> Dict[str, Any]:
    return agent_event("lifecycle", {"phase": "end"}, run_id)


def accepted(run_id: str = "run-1") -> Dict[str, Any]:
    return {"type": "res", "id": "agent", "ok": True, "payload": {"runId": run_id, "status": "accepted"}}


class FakeGateway:
    """脚本化的 Gateway 服务端"""

    def __init__(
        self,
        agent_frames: Optional[List[Any]] = None,
        connect_error: Optional[Any] = None,
        reset_error: Optional[str] = None,
        send_challenge: bool = True,
    ):
        self.agent_frames = agent_frames or []
        self.connect_error = connect_error
        self.reset_error = reset_error
        self.send_challenge = send_challenge
        self.requests: List[Dict[str, Any]] = []
        self.connections = 0

    async def handler(self, ws):
        self.connections += 1
        try:
            await self._serve(ws)
        except ConnectionClosed:
            pass

    async def _serve(self, ws):
        if not self.send_challenge:
            return
        await ws.send(json.dumps({"type": "event", "event": "connect.challenge", "payload": {"nonce": "n-1"}}))
        async for raw in ws:
            request = json.loads(raw)
            self.requests.append(request)
            method = request.get("method")

            if method == "connect":
                if self.connect_error is not None:
                    await ws.send(json.dumps({"type": "res", "id": "connect", "ok": False, "error": self.connect_error}))
                else:
                    await ws.send(json.dumps({"type": "res", "id": "connect", "ok": True, "payload": {"protocol": 3}}))
            elif method == "agent":
                for frame in self.agent_frames:
                    if isinstance(frame, asyncio.Event):
                        await frame.wait()
                    elif isinstance(frame, str):
                        await ws.send(frame)
                    else:
                        await ws.send(json.dumps(frame))
            elif method == "sessions.reset":
                if self.reset_error:
                    await ws.send(json.dumps({"type": "res", "id": "reset", "ok": False, "error": {"message": self.reset_error}}))
                else:
                    await ws.send(json.dumps({"type": "res", "id": "reset", "ok": True, "payload": {}}))

    def request(self, method: str) -> Dict[str, Any]:
        return next(r for r in self.requests if r["method"] == method)


@asynccontextmanager
async def running(gateway: FakeGateway, **client_kwargs):
    async with websockets.serve(gateway.handler, "127.0.0.1", 0) as server:
        port = server.sockets[0].getsockname()[1]
        client_kwargs.setdefault("ask_timeout", 5)
        client_kwargs.setdefault("reset_timeout", 5)
        yield GatewayClient(port=port, token="secret", **client_kwargs)


def free_port() -> int:
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


class TestAskAgent:
    """agent 调用"""

    @pytest.mark.asyncio
    async def test_handshake_and_request(self):
        """握手请求和 agent 请求的字段"""
        gateway = FakeGateway([accepted(), agent_event("assistant", {"delta": "hi"}), lifecycle_end()])
        async with running(gateway, agent_id="helper") as client:
            reply = await client.ask_agent("你好", "feishu:oc_1")

        assert reply == "hi"
        connect = gateway.request("connect")
        assert connect["id"] == "connect"
        assert connect["params"]["auth"]["token"] == "secret"
        assert connect["params"]["minProtocol"] == 3
        agent = gateway.request("agent")
        assert agent["id"] == "agent"
        assert agent["params"]["message"] == "你好"
        assert agent["params"]["agentId"] == "helper"
        assert agent["params"]["sessionKey"] == "feishu:oc_1"
        assert agent["params"]["idempotencyKey"]
        assert [r["method"] for r in gateway.requests] == ["connect", "agent"]

    @pytest.mark.asyncio
    async def test_deltas_accumulate(self):
        gateway = FakeGateway([
            accepted(),
            agent_event("assistant", {"delta": "A"}),
            agent_event("assistant", {"delta": "B"}),
            agent_event("assistant", {"delta": "C"}),
            lifecycle_end(),
        ])
        async with running(gateway) as client:
            assert await client.ask_agent("x", "k") == "ABC"

    @pytest.mark.asyncio
    async def test_text_replaces_buffer(self):
        gateway = FakeGateway([
            accepted(),
            agent_event("assistant", {"delta": "草稿"}),
            agent_event("assistant", {"text": "定稿"}),
            lifecycle_end(),
        ])
        async with running(gateway) as client:
            assert await client.ask_agent("x", "k") == "定稿"

    @pytest.mark.asyncio
    async def test_empty_reply(self):
        gateway = FakeGateway([accepted(), lifecycle_end()])
        async with running(gateway) as client:
            assert await client.ask_agent("x", "k") == ""

    @pytest.mark.asyncio
    async def test_other_runs_ignored(self):
        """runId 已知后, 其他 run 的事件被忽略"""
        gateway = FakeGateway([
            accepted("run-1"),
            agent_event("assistant", {"delta": "X"}, run_id="run-2"),
            lifecycle_end("run-2"),
            agent_event("assistant", {"delta": "mine"}, run_id="run-1"),
            lifecycle_end("run-1"),
        ])
        async with running(gateway) as client:
            assert await client.ask_agent("x", "k") == "mine"

    @pytest.mark.asyncio
    async def test_events_before_acceptance_are_kept(self):
        gateway = FakeGateway([
            agent_event("assistant", {"delta": "early"}, run_id="run-9"),
            lifecycle_end("run-9"),
        ])
        async with running(gateway) as client:
            assert await client.ask_agent("x", "k") == "early"

    @pytest.mark.asyncio
    async def test_malformed_frames_skipped(self):
        gateway = FakeGateway([
            "not json",
            "[]",
            json.dumps({"type": "event", "event": "agent", "payload": {"stream": "assistant", "data": "bad"}}),
            {"type": "event", "event": "tick", "payload": {}},
            accepted(),
            agent_event("assistant", {"delta": "ok"}),
            agent_event("assistant", None),
            lifecycle_end(),
        ])
        async with running(gateway) as client:
            assert await client.ask_agent("x", "k") == "ok"

    @pytest.mark.asyncio
    async def test_handshake_rejected(self):
        gateway = FakeGateway(connect_error={"message": "bad token"})
        async with running(gateway) as client:
            with pytest.raises(HandshakeError, match="bad token"):
                await client.ask_agent("x", "k")

        assert [r["method"] for r in gateway.requests] == ["connect"]

    @pytest.mark.asyncio
    async def test_handshake_rejected_without_message(self):
        gateway = FakeGateway(connect_error={})
        async with running(gateway) as client:
            with pytest.raises(HandshakeError, match="connect failed"):
                await client.ask_agent("x", "k")

    @pytest.mark.asyncio
    async def test_agent_rejected(self):
        gateway = FakeGateway([{"type": "res", "id": "agent", "ok": False, "error": {"message": "quota exceeded"}}])
        async with running(gateway) as client:
            with pytest.raises(AgentError) as exc_info:
                await client.ask_agent("x", "k")

        assert str(exc_info.value) == "quota exceeded"

    @pytest.mark.asyncio
    async def test_lifecycle_error(self):
        gateway = FakeGateway([
            accepted(),
            agent_event("assistant", {"delta": "partial"}),
            agent_event("lifecycle", {"phase": "error", "message": "model crashed"}),
        ])
        async with running(gateway) as client:
            with pytest.raises(AgentError, match="model crashed"):
                await client.ask_agent("x", "k")

    @pytest.mark.asyncio
    async def test_timeout(self):
        gateway = FakeGateway([accepted(), agent_event("assistant", {"delta": "..."})])
        async with running(gateway, ask_timeout=0.2) as client:
            with pytest.raises(GatewayTimeout, match="timeout waiting for response"):
                await client.ask_agent("x", "k")

    @pytest.mark.asyncio
    async def test_no_challenge_times_out(self):
        gateway = FakeGateway(send_challenge=False)

        async def hold(ws):
            await ws.wait_closed()

        gateway.handler = hold
        async with running(gateway, ask_timeout=0.2) as client:
            with pytest.raises((GatewayTimeout, GatewayConnectionError)):
                await client.ask_agent("x", "k")

    @pytest.mark.asyncio
    async def test_connection_closed_before_reply(self):
        gateway = FakeGateway([accepted()])

        async def close_after_request(ws):
            await ws.send(json.dumps({"type": "event", "event": "connect.challenge", "payload": {}}))
            await ws.recv()
            await ws.send(json.dumps({"type": "res", "id": "connect", "ok": True}))
            await ws.recv()
            await ws.close()

        gateway.handler = close_after_request
        async with running(gateway) as client:
            with pytest.raises(GatewayConnectionError):
                await client.ask_agent("x", "k")

    @pytest.mark.asyncio
    async def test_unreachable_gateway(self):
        client = GatewayClient(port=free_port(), token="t", ask_timeout=5)
        with pytest.raises(GatewayConnectionError):
            await client.ask_agent("x", "k")

    @pytest.mark.asyncio
    async def test_calls_are_serialized(self):
        """同一个客户端上的调用不会并发拨号"""
        gateway = FakeGateway([accepted(), agent_event("assistant", {"delta": "ok"}), lifecycle_end()])
        async with running(gateway) as client:
            replies = await asyncio.gather(*(client.ask_agent(f"q{i}", "k") for i in range(3)))

        assert replies == ["ok", "ok", "ok"]
        assert gateway.connections == 3
        assert [r["method"] for r in gateway.requests] == ["connect", "agent"] * 3
        assert [r["params"]["message"] for r in gateway.requests if r["method"] == "agent"] == ["q0", "q1", "q2"]


class TestProgress:
    """进度回调"""

    @pytest.mark.asyncio
    async def test_progress_in_order(self):
        """assistant 与 thought/tool 帧按到达顺序回调"""
        all_seen = asyncio.Event()
        seen = []

        def on_progress(stream, data):
            seen.append((stream, data))
            if len(seen) == 4:
                all_seen.set()

        gateway = FakeGateway([
            accepted(),
            agent_event("thought", {"text": "hmm"}),
            agent_event("tool_call", {"tool": "search"}),
            agent_event("tool_result", {"tool": "search"}),
            agent_event("assistant", {"delta": "A"}),
            all_seen,
            lifecycle_end(),
        ])
        async with running(gateway) as client:
            reply = await client.ask_agent("x", "k", on_progress)

        assert reply == "A"
        assert [s for s, _ in seen] == ["thought", "tool_call", "tool_result", "assistant"]
        assert seen[1][1] == {"tool": "search"}
        assert seen[3][1] == {"delta": "A"}

    @pytest.mark.asyncio
    async def test_async_callback(self):
        all_seen = asyncio.Event()
        seen = []

        async def on_progress(stream, data):
            await asyncio.sleep(0)
            seen.append(data.get("delta"))
            if len(seen) == 2:
                all_seen.set()

        gateway = FakeGateway([
            accepted(),
            agent_event("assistant", {"delta": "A"}),
            agent_event("assistant", {"delta": "B"}),
            all_seen,
            lifecycle_end(),
        ])
        async with running(gateway) as client:
            assert await client.ask_agent("x", "k", on_progress) == "AB"

        assert seen == ["A", "B"]

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_break_call(self):
        delivered = asyncio.Event()

        def on_progress(stream, data):
            delivered.set()
            raise RuntimeError("callback bug")

        gateway = FakeGateway([
            accepted(),
            agent_event("assistant", {"delta": "A"}),
            delivered,
            lifecycle_end(),
        ])
        async with running(gateway) as client:
            assert await client.ask_agent("x", "k", on_progress) == "A"

    @pytest.mark.asyncio
    async def test_slow_callback_does_not_block_reader(self):
        """回调阻塞时读取循环照常结束"""
        release = asyncio.Event()

        async def on_progress(stream, data):
            await release.wait()

        gateway = FakeGateway([
            accepted(),
            agent_event("assistant", {"delta": "A"}),
            agent_event("assistant", {"delta": "B"}),
            lifecycle_end(),
        ])
        async with running(gateway, progress_grace=0.05) as client:
            reply = await asyncio.wait_for(client.ask_agent("x", "k", on_progress), timeout=3)

        assert reply == "AB"


class TestResetSession:

    @pytest.mark.asyncio
    async def test_reset_ok(self):
        gateway = FakeGateway()
        async with running(gateway) as client:
            await client.reset_session("feishu:oc_1")

        reset = gateway.request("sessions.reset")
        assert reset["id"] == "reset"
        assert reset["params"] == {"key": "feishu:oc_1"}

    @pytest.mark.asyncio
    async def test_reset_rejected(self):
        gateway = FakeGateway(reset_error="unknown session")
        async with running(gateway) as client:
            with pytest.raises(AgentError, match="unknown session"):
                await client.reset_session("feishu:oc_1")


class TestConfig:

    def test_from_config(self):
        from config import GatewayConfig

        cfg = GatewayConfig(port=19001, token="tok", agent_id="ops", ask_timeout_s=30, client_platform="darwin")
        client = GatewayClient.from_config(cfg)

        assert client.url == "ws://127.0.0.1:19001"
        assert client.token == "tok"
        assert client.agent_id == "ops"
        assert client.ask_timeout == 30
        assert client.platform == "darwin"


class TestBridgeOverGateway:
    """消息桥经真实客户端与假 Gateway 交互"""

    @pytest.mark.asyncio
    async def test_streamed_reply_edits_thinking_placeholder(self, fake_chat, message_factory):
        """回复只以 assistant 事件到达时, 占位被就地编辑成回复"""
        placeholder_shown = asyncio.Event()
        gateway = FakeGateway([
            accepted(),
            placeholder_shown,
            agent_event("assistant", {"text": "完成"}),
            lifecycle_end(),
        ])
        async with running(gateway) as client:
            bridge = Bridge(fake_chat, client, thinking_threshold_ms=20, animation_interval_ms=0)
            await bridge.handle_message(message_factory("hi"))
            for _ in range(200):
                if fake_chat.ops:
                    break
                await asyncio.sleep(0.01)
            placeholder_shown.set()
            await asyncio.wait_for(bridge.wait_idle(), timeout=5)
            await bridge.shutdown()

        assert fake_chat.ops == [
            ("send", "om_1", THINKING_PLACEHOLDER),
            ("update", "om_1", "完成"),
        ]
