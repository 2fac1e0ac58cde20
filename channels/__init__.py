"""
通道系统 - 聊天平台客户端
"""
from .base import BaseChannel, ChannelError, ChannelType, ChatType, InboundMessage, Mention
from .feishu_channel import FeishuChannel, parse_event

__all__ = [
    "BaseChannel",
    "ChannelError",
    "ChannelType",
    "ChatType",
    "InboundMessage",
    "Mention",
    "FeishuChannel",
    "parse_event",
]
