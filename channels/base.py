"""
通道基类 - 聊天平台客户端的统一抽象接口
"""
import inspect
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Callable, Dict, List

from loguru import logger
from pydantic import BaseModel, Field


class ChannelType(str, Enum):
    """通道类型"""
    FEISHU = "feishu"        # 飞书


class ChatType(str, Enum):
    """会话类型"""
    DIRECT = "direct"        # 单聊
    GROUP = "group"          # 群聊


class Mention(BaseModel):
    """消息中的 @ 提及"""
    key: str = ""            # 正文中的占位符, 如 @_user_1
    id: str = ""
    name: str = ""


class InboundMessage(BaseModel):
    """平台推送的入站消息"""
    chat_id: str
    chat_type: ChatType = ChatType.DIRECT
    message_id: str = ""
    content: str = ""
    mentions: List[Mention] = Field(default_factory=list)


class ChannelError(Exception):
    """聊天平台调用失败"""


class BaseChannel(ABC):
    """通道基类"""

    def __init__(self, channel_name: str, channel_type: ChannelType):
        self.channel_name = channel_name
        self.channel_type = channel_type
        self.is_connected = False
        self.is_running = False

        self.logger = logger.bind(channel=self.channel_name)

        # 消息处理回调
        self._on_message_callbacks: List[Callable] = []

    # ============ 抽象方法 ============

    @abstractmethod
    async def connect(self) -> bool:
        """连接到通道"""

    @abstractmethod
    async def disconnect(self) -> bool:
        """断开通道连接"""

    @abstractmethod
    async def send_message(self, chat_id: str, text: str) -> str:
        """发送文本消息, 返回消息ID"""

    @abstractmethod
    async def update_message(self, message_id: str, text: str) -> None:
        """编辑已发送的文本消息"""

    @abstractmethod
    async def delete_message(self, message_id: str) -> None:
        """撤回消息"""

    # ============ 生命周期 ============

    async def start(self) -> bool:
        """连接平台; 已在运行时直接返回"""
        if self.is_running:
            return True

        try:
            connected = await self.connect()
        except Exception as e:
            self.logger.opt(exception=e).error(f"Channel {self.channel_name} failed to connect: {e}")
            connected = False

        self.is_running = self.is_connected = connected
        if connected:
            self.logger.info(f"Channel {self.channel_name} started")
        return connected

    async def stop(self) -> bool:
        if not self.is_running:
            return True

        try:
            await self.disconnect()
        except Exception as e:
            self.logger.error(f"Channel {self.channel_name} failed to disconnect cleanly: {e}")
            return False
        finally:
            self.is_running = self.is_connected = False
        self.logger.info(f"Channel {self.channel_name} stopped")
        return True

    # ============ 入站消息 ============

    def on_message(self, callback: Callable[[InboundMessage], Any]):
        """注册入站消息回调 (同步或异步均可)"""
        if callback not in self._on_message_callbacks:
            self._on_message_callbacks.append(callback)

    async def _emit_message(self, message: InboundMessage):
        for callback in self._on_message_callbacks:
            try:
                result = callback(message)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self.logger.opt(exception=e).error(
                    f"Message callback failed for {message.message_id}: {e}"
                )

    def get_status(self) -> Dict[str, Any]:
        return {
            "channel_name": self.channel_name,
            "channel_type": self.channel_type.value,
            "is_connected": self.is_connected,
            "is_running": self.is_running,
        }

    async def validate_config(self) -> bool:
        """验证配置"""
        return True  # 子类可以覆盖
