"""
消息桥 - 把飞书消息转成 Gateway 调用, 并把流式输出渲染成占位/编辑/最终回复
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Sequence, Set

from loguru import logger

from channels.base import BaseChannel, ChatType, InboundMessage
from gateway.client import GatewayClient
from gateway.errors import GatewayError, ProtocolError
from gateway.protocol import AssistantData, GatewayProtocol, StreamKind

from .dedup import DedupCache
from .trigger import remove_mentions, should_respond_in_group

if TYPE_CHECKING:
    from config import BridgeConfig

NO_REPLY = "NO_REPLY"
THINKING_STATUS = "正在思考"
THINKING_PLACEHOLDER = "正在思考…"
ERROR_PREFIX = "（系统出错）"
RESET_COMMANDS = ("重置", "/reset")


@dataclass
class PlaceholderState:
    """单次调用的占位状态, 只属于处理这条消息的任务"""
    thinking_message_id: str = ""
    response_message_id: str = ""
    done: bool = False
    buffer: str = ""
    status: str = THINKING_STATUS
    last_update: float = 0.0
    last_rendered: str = ""
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    thinking_task: Optional[asyncio.Task] = None


def describe_status(stream: str, data: Dict[str, Any]) -> str:
    """非 assistant 流的状态描述; 无法描述时返回空串"""
    if stream == StreamKind.THOUGHT.value:
        return THINKING_STATUS
    if stream not in (StreamKind.TOOL_CALL.value, StreamKind.TOOL_RESULT.value):
        return ""

    name = data.get("tool") or data.get("name")
    function = data.get("function")
    if not isinstance(name, str) and isinstance(function, dict):
        name = function.get("name")
    if not isinstance(name, str):
        name = ""

    if stream == StreamKind.TOOL_CALL.value:
        return f"正在使用工具: {name}" if name else "正在调用工具"
    return f"工具 {name} 调用完成，正在分析" if name else "工具调用完成，正在分析"


class Bridge:
    """飞书 ⇄ ClawdBot 消息桥"""

    def __init__(
        self,
        chat_client: BaseChannel,
        gateway_client: GatewayClient,
        thinking_threshold_ms: int = 0,
        session_key: Optional[str] = None,
        dedup_cache: Optional[DedupCache] = None,
        platform: str = "feishu",
        edit_interval_ms: int = 300,
        animation_interval_ms: int = 500,
        reset_command: Optional[Sequence[str]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.chat = chat_client
        self.gateway = gateway_client
        self.thinking_threshold = thinking_threshold_ms / 1000
        self.session_key = session_key or None
        # 未注入的缓存由 Bridge 自己启动和停止清扫
        self._owns_dedup = dedup_cache is None
        self.dedup = DedupCache() if dedup_cache is None else dedup_cache
        self.platform = platform
        self.edit_interval = edit_interval_ms / 1000
        self.animation_interval = animation_interval_ms / 1000
        self.reset_command: Optional[List[str]] = list(reset_command) if reset_command else None
        self._clock = clock
        self._tasks: Set[asyncio.Task] = set()
        self._closing = False

    @classmethod
    def from_config(
        cls,
        cfg: "BridgeConfig",
        chat_client: BaseChannel,
        gateway_client: GatewayClient,
        dedup_cache: Optional[DedupCache] = None,
    ) -> "Bridge":
        settings = cfg.bridge
        return cls(
            chat_client,
            gateway_client,
            thinking_threshold_ms=settings.thinking_threshold_ms,
            session_key=cfg.gateway.session_key,
            dedup_cache=dedup_cache,
            platform=settings.platform,
            edit_interval_ms=settings.edit_interval_ms,
            animation_interval_ms=settings.animation_interval_ms,
            reset_command=settings.restart_command if settings.restart_gateway_on_reset else None,
        )

    def session_key_for(self, chat_id: str) -> str:
        return self.session_key or f"{self.platform}:{chat_id}"

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    # ============ 入站 ============

    async def handle_message(self, msg: InboundMessage) -> None:
        """过滤一条入站消息, 需要回复时派生独立任务处理"""
        if self._closing:
            logger.warning(f"[Bridge] Shutting down, dropping message {msg.message_id}")
            return

        if self._owns_dedup:
            self.dedup.start()
        if msg.message_id and await self.dedup.check_and_add(msg.message_id):
            logger.info(f"[Bridge] Skipping duplicate message: {msg.message_id}")
            return

        text = remove_mentions(msg.content).strip()
        if not text:
            return

        if msg.chat_type == ChatType.GROUP and not should_respond_in_group(text, msg.mentions):
            logger.info(f"[Bridge] Skipping group message (no trigger): {text}")
            return

        logger.info(f"[Bridge] Processing message from {msg.chat_id}: {text}")

        if text in RESET_COMMANDS:
            self._spawn(self._reset_session(msg.chat_id))
        else:
            self._spawn(self._process_message(msg.chat_id, text))

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.opt(exception=exc).error(f"[Bridge] Message task crashed: {exc}")

    async def wait_idle(self) -> None:
        """等待当前所有在途消息处理完毕"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self, timeout: float = 10.0) -> None:
        """停止接收新消息, 在 timeout 内等待在途任务, 超时则取消"""
        self._closing = True
        if self._tasks:
            await self._drain(timeout)
        if self._owns_dedup:
            await self.dedup.stop()

    async def _drain(self, timeout: float) -> None:
        logger.info(f"[Bridge] Waiting for {len(self._tasks)} in-flight message(s)...")
        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning(f"[Bridge] Cancelled {len(pending)} unfinished message(s)")
            await asyncio.gather(*pending, return_exceptions=True)

    # ============ 单条消息处理 ============

    async def _process_message(self, chat_id: str, text: str) -> None:
        state = PlaceholderState()
        log = logger.bind(chat_id=chat_id)

        if self.thinking_threshold > 0:
            state.thinking_task = asyncio.create_task(self._show_thinking(chat_id, state))

        async def on_progress(stream: str, data: Dict[str, Any]) -> None:
            await self._on_progress(chat_id, state, stream, data)

        session_key = self.session_key_for(chat_id)
        try:
            reply = await self.gateway.ask_agent(text, session_key, on_progress)
        except GatewayError as e:
            log.error(f"[Bridge] Error from ClawdBot: {e}")
            reply = f"{ERROR_PREFIX}{e}"
        except Exception as e:
            log.exception(f"[Bridge] Unexpected error asking ClawdBot: {e}")
            reply = f"{ERROR_PREFIX}{e}"
        finally:
            # waits out an in-flight placeholder send so its id is not lost
            async with state.lock:
                state.done = True
            await self._stop_thinking(state)

        reply = reply.strip()
        log.debug(f"[Bridge] ClawdBot raw reply: {reply!r}")

        async with state.lock:
            await self._finalize(chat_id, state, reply)

    async def _finalize(self, chat_id: str, state: PlaceholderState, reply: str) -> None:
        if not reply or reply == NO_REPLY:
            logger.info(f"[Bridge] No reply for {chat_id}, cleaning up placeholders")
            for message_id in (state.response_message_id, state.thinking_message_id):
                if message_id:
                    await self._safe_delete(message_id)
            return

        # 最终回复就地编辑已有占位 (流式回复或"正在思考")
        placeholder = state.response_message_id or state.thinking_message_id
        if placeholder:
            if state.response_message_id and reply == state.last_rendered:
                return
            if await self._safe_update(placeholder, reply):
                logger.info(f"[Bridge] Updated message in {chat_id}")
                return
            logger.warning("[Bridge] Failed to update message, sending new")
            if placeholder == state.thinking_message_id:
                await self._safe_delete(placeholder)

        if await self._safe_send(chat_id, reply):
            logger.info(f"[Bridge] Sent message to {chat_id}")

    # ============ 思考中占位 ============

    async def _show_thinking(self, chat_id: str, state: PlaceholderState) -> None:
        await asyncio.sleep(self.thinking_threshold)
        async with state.lock:
            if state.done or state.response_message_id or state.thinking_message_id:
                return
            message_id = await self._safe_send(chat_id, THINKING_PLACEHOLDER)
            if not message_id:
                return
            state.thinking_message_id = message_id
            state.last_update = self._clock()

        if self.animation_interval > 0:
            await self._animate(state)

    async def _animate(self, state: PlaceholderState) -> None:
        dots = 0
        while True:
            await asyncio.sleep(self.animation_interval)
            async with state.lock:
                if state.done or state.response_message_id or not state.thinking_message_id:
                    return
                dots = dots % 3 + 1
                await self._safe_update(state.thinking_message_id, state.status + "." * dots)

    @staticmethod
    async def _stop_thinking(state: PlaceholderState) -> None:
        task = state.thinking_task
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    # ============ 流式进度 ============

    async def _on_progress(self, chat_id: str, state: PlaceholderState, stream: str, data: Dict[str, Any]) -> None:
        async with state.lock:
            if state.done:
                return

            if stream == StreamKind.ASSISTANT.value:
                try:
                    chunk = GatewayProtocol.parse_payload(data, AssistantData)
                except ProtocolError as e:
                    logger.warning(f"[Bridge] Failed to decode stream data: {e}. Data: {data}")
                    return
                state.buffer = chunk.apply(state.buffer)
                if not state.buffer:
                    return
                if not state.response_message_id:
                    await self._open_response(chat_id, state)
                else:
                    await self._stream_edit(state)
                return

            status = describe_status(stream, data)
            if not status or state.response_message_id or not state.thinking_message_id:
                return
            state.status = status
            if self._throttled(state):
                return
            state.last_update = self._clock()
            await self._safe_update(state.thinking_message_id, status + "…")

    async def _open_response(self, chat_id: str, state: PlaceholderState) -> None:
        text = state.buffer
        if state.thinking_message_id:
            # 首个片段就地编辑"正在思考"占位, 编辑失败再撤回重发
            if await self._safe_update(state.thinking_message_id, text):
                message_id, state.thinking_message_id = state.thinking_message_id, ""
                self._adopt_response(state, message_id, text)
                return
            await self._safe_delete(state.thinking_message_id)
            state.thinking_message_id = ""

        # 回调可能在发送途中被取消, 发送本身不随之中断
        send = asyncio.ensure_future(self._safe_send(chat_id, text))
        try:
            message_id = await asyncio.shield(send)
        except asyncio.CancelledError:
            message_id = await send
            if message_id:
                self._adopt_response(state, message_id, text)
            raise
        if message_id:
            self._adopt_response(state, message_id, text)

    def _adopt_response(self, state: PlaceholderState, message_id: str, text: str) -> None:
        state.response_message_id = message_id
        state.last_rendered = text
        state.last_update = self._clock()

    async def _stream_edit(self, state: PlaceholderState) -> None:
        if state.buffer == state.last_rendered or self._throttled(state):
            return
        state.last_update = self._clock()
        if await self._safe_update(state.response_message_id, state.buffer):
            state.last_rendered = state.buffer

    def _throttled(self, state: PlaceholderState) -> bool:
        return self._clock() - state.last_update < self.edit_interval

    # ============ 重置会话 ============

    async def _reset_session(self, chat_id: str) -> None:
        session_key = self.session_key_for(chat_id)
        reset_error: Optional[GatewayError] = None
        try:
            await self.gateway.reset_session(session_key)
            logger.info(f"[Bridge] Session {session_key} reset")
        except GatewayError as e:
            reset_error = e
            logger.error(f"[Bridge] Failed to reset session: {e}")

        if not self.reset_command:
            if reset_error:
                text = f"会话重置失败: {reset_error}"
            else:
                text = "会话已重置。您可以重新开始对话。"
            await self._safe_send(chat_id, text)
            return

        restart_error = await self._restart_gateway()
        if restart_error:
            text = f"会话重置失败 (Gateway重启错误): {restart_error}"
        elif reset_error:
            text = f"Gateway已重启，但会话清除失败: {reset_error}。请再试一次。"
        else:
            text = "会话已重置，Gateway已重启。您可以重新开始对话。"
        await self._safe_send(chat_id, text)

    async def _restart_gateway(self) -> Optional[str]:
        """执行重启命令; 成功返回 None, 否则返回错误描述"""
        logger.info(f"[Bridge] Restarting Clawdbot Gateway: {' '.join(self.reset_command)}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.reset_command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
            output, _ = await proc.communicate()
        except OSError as e:
            logger.error(f"[Bridge] Failed to restart gateway: {e}")
            return str(e)

        if proc.returncode != 0:
            logger.error(
                f"[Bridge] Failed to restart gateway: exit status {proc.returncode}, "
                f"Output: {output.decode(errors='replace')}"
            )
            return f"exit status {proc.returncode}"
        logger.info("[Bridge] Gateway restarted successfully")
        return None

    # ============ 平台调用 (失败只记录, 不重试) ============

    async def _safe_send(self, chat_id: str, text: str) -> Optional[str]:
        try:
            return await self.chat.send_message(chat_id, text)
        except Exception as e:
            logger.error(f"[Bridge] Failed to send message to {chat_id}: {e}")
            return None

    async def _safe_update(self, message_id: str, text: str) -> bool:
        try:
            await self.chat.update_message(message_id, text)
            return True
        except Exception as e:
            logger.warning(f"[Bridge] Failed to update message {message_id}: {e}")
            return False

    async def _safe_delete(self, message_id: str) -> bool:
        try:
            await self.chat.delete_message(message_id)
            return True
        except Exception as e:
            logger.warning(f"[Bridge] Failed to delete message {message_id}: {e}")
            return False
