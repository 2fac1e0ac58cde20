"""
飞书 ⇄ ClawdBot 消息桥
"""
from .dedup import DedupCache
from .dispatcher import NO_REPLY, Bridge, PlaceholderState
from .trigger import remove_mentions, should_respond_in_group

__all__ = [
    "Bridge",
    "PlaceholderState",
    "DedupCache",
    "NO_REPLY",
    "should_respond_in_group",
    "remove_mentions",
]
