"""
测试配置和共享 fixtures
"""
import asyncio
import os
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

# 添加项目根目录到路径
project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

import pytest

from channels.base import BaseChannel, ChannelError, ChannelType, ChatType, InboundMessage, Mention


class FakeChat(BaseChannel):
    """记录所有发送/编辑/撤回操作的聊天客户端"""

    def __init__(self):
        super().__init__("fake", ChannelType.FEISHU)
        self.ops: List[Tuple[str, str, str]] = []
        self.fail_update = False
        self.fail_send = False
        self.send_delay = 0.0
        self._counter = 0

    async def connect(self) -> bool:
        return True

    async def disconnect(self) -> bool:
        return True

    async def send_message(self, chat_id: str, text: str) -> str:
        if self.send_delay:
            await asyncio.sleep(self.send_delay)
        if self.fail_send:
            raise ChannelError("send failed")
        self._counter += 1
        message_id = f"om_{self._counter}"
        self.ops.append(("send", message_id, text))
        return message_id

    async def update_message(self, message_id: str, text: str) -> None:
        if self.fail_update:
            raise ChannelError("update failed")
        self.ops.append(("update", message_id, text))

    async def delete_message(self, message_id: str) -> None:
        self.ops.append(("delete", message_id, ""))

    def sent_texts(self) -> List[str]:
        return [text for op, _, text in self.ops if op == "send"]


Script = Callable[[str, str, Optional[Callable]], Awaitable[str]]


class FakeGateway:
    """按脚本回复的 Gateway 客户端替身"""

    def __init__(self):
        self.calls: List[Tuple[str, str]] = []
        self.resets: List[str] = []
        self.reset_error: Optional[Exception] = None
        self.script: Script = self._echo

    @staticmethod
    async def _echo(text: str, session_key: str, on_progress) -> str:
        return f"echo: {text}"

    async def ask_agent(self, text: str, session_key: str, on_progress=None) -> str:
        self.calls.append((text, session_key))
        return await self.script(text, session_key, on_progress)

    async def reset_session(self, session_key: str) -> None:
        self.resets.append(session_key)
        if self.reset_error is not None:
            raise self.reset_error


def make_message(
    content: str,
    chat_id: str = "oc_1",
    message_id: str = "om_in_1",
    chat_type: ChatType = ChatType.DIRECT,
    mentions: Optional[List[Dict[str, Any]]] = None,
) -> InboundMessage:
    return InboundMessage(
        chat_id=chat_id,
        chat_type=chat_type,
        message_id=message_id,
        content=content,
        mentions=[Mention(**m) for m in mentions or []],
    )


@pytest.fixture
def project_root_path():
    """项目根目录路径"""
    return Path(__file__).resolve().parent.parent


@pytest.fixture
def fake_chat():
    return FakeChat()


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture
def message_factory():
    return make_message


@pytest.fixture(autouse=True)
def reset_environment(monkeypatch):
    """每个测试前清掉 BRIDGE_* 环境变量"""
    original_env = os.environ.copy()

    for key in list(os.environ):
        if key.startswith("BRIDGE_"):
            monkeypatch.delenv(key, raising=False)

    yield

    os.environ.clear()
    os.environ.update(original_env)
