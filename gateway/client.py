"""
Gateway client - one-shot calls against the ClawdBot Gateway.

Every call dials its own WebSocket connection, answers the
``connect.challenge`` handshake, sends exactly one request and reads the
connection until a terminal outcome. Calls on one client are serialized.
"""
from __future__ import annotations

import asyncio
import inspect
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Optional, Union

import websockets
from loguru import logger
from websockets.exceptions import ConnectionClosed, WebSocketException

from .errors import (
    AgentError,
    GatewayConnectionError,
    GatewayError,
    GatewayTimeout,
    HandshakeError,
    ProtocolError,
)
from .protocol import (
    AGENT_REQUEST_ID,
    CONNECT_REQUEST_ID,
    RESET_REQUEST_ID,
    AgentAccepted,
    AgentEvent,
    AssistantData,
    Envelope,
    EventName,
    GatewayProtocol,
    LifecycleData,
    LifecyclePhase,
    RequestMessage,
    StreamKind,
)

if TYPE_CHECKING:
    from config import GatewayConfig

ASK_TIMEOUT_S = 15 * 60
RESET_TIMEOUT_S = 10.0

ProgressCallback = Callable[[str, Dict[str, Any]], Union[None, Awaitable[None]]]

_FORWARDED_STREAMS = {
    StreamKind.THOUGHT.value,
    StreamKind.TOOL_CALL.value,
    StreamKind.TOOL_RESULT.value,
}


class CallState(str, Enum):
    CONNECTING = "connecting"
    AWAITING_CHALLENGE = "awaiting_challenge"
    CONNECTED = "connected"
    PENDING = "pending"
    STREAMING = "streaming"
    DONE = "done"
    FAILED = "failed"


class _ProgressPump:
    """Delivers progress notifications in order, off the read loop."""

    def __init__(self, callback: Optional[ProgressCallback]):
        self._callback = callback
        self._queue: "asyncio.Queue[Optional[tuple]]" = asyncio.Queue()
        self._closed = False
        self._task: Optional[asyncio.Task] = None
        if callback is not None:
            self._task = asyncio.create_task(self._run())

    def notify(self, stream: str, data: Dict[str, Any]) -> None:
        if self._task is None or self._closed:
            return
        self._queue.put_nowait((stream, data))

    async def _run(self) -> None:
        while True:
            item = await self._queue.get()
            if item is None:
                return
            if self._closed:
                continue
            stream, data = item
            try:
                result = self._callback(stream, data)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(f"[Gateway] progress callback failed for {stream}: {e}")

    async def aclose(self, grace: float) -> None:
        """Drop queued notifications and let the running one finish."""
        if self._task is None:
            return
        self._closed = True
        self._queue.put_nowait(None)
        done, _ = await asyncio.wait({self._task}, timeout=grace)
        if not done:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass


class _GatewayCall:
    """One request/response cycle on one dedicated connection."""

    request_id = ""

    def __init__(self) -> None:
        self.state = CallState.CONNECTING
        self.result: Any = None

    def build_request(self) -> RequestMessage:
        raise NotImplementedError

    def handle(self, envelope: Envelope) -> bool:
        """Consume a post-handshake frame; True once the call is resolved."""
        raise NotImplementedError

    def finish(self, result: Any) -> bool:
        self.result = result
        self.state = CallState.DONE
        return True


class _AgentCall(_GatewayCall):
    request_id = AGENT_REQUEST_ID

    def __init__(self, text: str, agent_id: str, session_key: str, pump: _ProgressPump):
        super().__init__()
        self.text = text
        self.agent_id = agent_id
        self.session_key = session_key
        self.pump = pump
        self.run_id: Optional[str] = None
        self.buffer = ""

    def build_request(self) -> RequestMessage:
        return GatewayProtocol.create_agent_request(self.text, self.agent_id, self.session_key)

    def handle(self, envelope: Envelope) -> bool:
        if envelope.is_response(AGENT_REQUEST_ID):
            if not envelope.succeeded:
                raise AgentError(envelope.error_message("agent error"))
            try:
                accepted = GatewayProtocol.parse_payload(envelope.payload, AgentAccepted)
            except ProtocolError:
                return False
            if accepted.run_id:
                self.run_id = accepted.run_id
                logger.debug(f"[Gateway] agent run accepted: {self.run_id}")
            return False

        if not envelope.is_event(EventName.AGENT):
            return False

        frame = GatewayProtocol.parse_payload(envelope.payload, AgentEvent)
        if self.run_id and frame.run_id != self.run_id:
            return False
        self.state = CallState.STREAMING

        if frame.stream == StreamKind.ASSISTANT.value:
            try:
                chunk = GatewayProtocol.parse_payload(frame.data, AssistantData)
                self.buffer = chunk.apply(self.buffer)
            except ProtocolError as e:
                logger.debug(f"[Gateway] bad assistant chunk: {e}")
            self.pump.notify(frame.stream, frame.data)
        elif frame.stream in _FORWARDED_STREAMS:
            self.pump.notify(frame.stream, frame.data)
        elif frame.stream == StreamKind.LIFECYCLE.value:
            lifecycle = GatewayProtocol.parse_payload(frame.data, LifecycleData)
            if lifecycle.phase == LifecyclePhase.END.value:
                return self.finish(self.buffer)
            if lifecycle.phase == LifecyclePhase.ERROR.value:
                raise AgentError(lifecycle.message or "agent error")
        return False


class _ResetCall(_GatewayCall):
    request_id = RESET_REQUEST_ID

    def __init__(self, session_key: str):
        super().__init__()
        self.session_key = session_key

    def build_request(self) -> RequestMessage:
        return GatewayProtocol.create_reset_request(self.session_key)

    def handle(self, envelope: Envelope) -> bool:
        if not envelope.is_response(RESET_REQUEST_ID):
            return False
        if not envelope.succeeded:
            raise AgentError(envelope.error_message("reset failed"))
        return self.finish(None)


class GatewayClient:
    """
    ClawdBot Gateway client.

    At most one call is in flight per instance: a call waits for the
    previous one to finish before dialing. Build several instances if more
    concurrency is ever needed; a single connection never multiplexes calls.
    """

    def __init__(
        self,
        port: int,
        token: str,
        agent_id: str = "main",
        host: str = "127.0.0.1",
        ask_timeout: float = ASK_TIMEOUT_S,
        reset_timeout: float = RESET_TIMEOUT_S,
        platform: str = "linux",
        progress_grace: float = 5.0,
    ):
        self.port = port
        self.token = token
        self.agent_id = agent_id
        self.host = host
        self.ask_timeout = ask_timeout
        self.reset_timeout = reset_timeout
        self.platform = platform
        self.progress_grace = progress_grace
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(cls, cfg: "GatewayConfig") -> "GatewayClient":
        return cls(
            port=cfg.port,
            token=cfg.token,
            agent_id=cfg.agent_id,
            host=cfg.host,
            ask_timeout=cfg.ask_timeout_s,
            reset_timeout=cfg.reset_timeout_s,
            platform=cfg.client_platform,
        )

    @property
    def url(self) -> str:
        return f"ws://{self.host}:{self.port}"

    async def ask_agent(
        self,
        text: str,
        session_key: str,
        on_progress: Optional[ProgressCallback] = None,
    ) -> str:
        """Send ``text`` to the agent and return its final reply.

        ``on_progress(stream, data)`` receives assistant chunks as well as
        thought/tool frames, in arrival order, without ever blocking the
        reader. Raises a :class:`GatewayError` subclass on failure.
        """
        async with self._lock:
            pump = _ProgressPump(on_progress)
            call = _AgentCall(text, self.agent_id, session_key, pump)
            try:
                return await self._run(call, self.ask_timeout, "timeout waiting for response")
            finally:
                await pump.aclose(self.progress_grace)

    async def reset_session(self, session_key: str) -> None:
        """Ask the Gateway to drop the memory of ``session_key``."""
        async with self._lock:
            await self._run(_ResetCall(session_key), self.reset_timeout, "timeout waiting for reset")

    async def _run(self, call: _GatewayCall, timeout: float, timeout_message: str) -> Any:
        try:
            return await asyncio.wait_for(self._execute(call), timeout=timeout)
        except asyncio.TimeoutError:
            call.state = CallState.FAILED
            logger.warning(f"[Gateway] {call.request_id} call timed out after {timeout}s")
            raise GatewayTimeout(timeout_message) from None
        except GatewayError:
            call.state = CallState.FAILED
            raise

    async def _execute(self, call: _GatewayCall) -> Any:
        call.state = CallState.CONNECTING
        try:
            ws = await websockets.connect(self.url, max_size=None)
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            raise GatewayConnectionError(f"failed to connect to gateway: {e}") from e

        try:
            call.state = CallState.AWAITING_CHALLENGE
            return await self._read_loop(ws, call)
        finally:
            await ws.close()

    async def _read_loop(self, ws, call: _GatewayCall) -> Any:
        try:
            async for raw in ws:
                try:
                    envelope = GatewayProtocol.parse_envelope(raw)
                except ProtocolError as e:
                    logger.debug(f"[Gateway] skipping malformed frame: {e}")
                    continue
                logger.debug(
                    f"[Gateway] received type={envelope.type.value} "
                    f"event={envelope.event} id={envelope.id}"
                )

                if envelope.is_event(EventName.CONNECT_CHALLENGE):
                    request = GatewayProtocol.create_connect_request(self.token, platform=self.platform)
                    await self._send(ws, request, "connect")
                    continue

                if envelope.is_response(CONNECT_REQUEST_ID):
                    if not envelope.succeeded:
                        raise HandshakeError(envelope.error_message("connect failed"))
                    call.state = CallState.CONNECTED
                    await self._send(ws, call.build_request(), call.request_id)
                    call.state = CallState.PENDING
                    continue

                try:
                    if call.handle(envelope):
                        return call.result
                except ProtocolError as e:
                    logger.debug(f"[Gateway] skipping undecodable payload: {e}")
        except ConnectionClosed as e:
            raise GatewayConnectionError(f"gateway connection closed: {e}") from e
        raise GatewayConnectionError("gateway closed the connection before replying")

    @staticmethod
    async def _send(ws, request: RequestMessage, label: str) -> None:
        try:
            await ws.send(request.to_json())
        except ConnectionClosed as e:
            raise GatewayConnectionError(f"failed to send {label} request: {e}") from e
