"""
群聊触发策略 - 判断一条群消息是否值得回复
"""
import re
from typing import Sequence

QUESTION_WORDS = ("why", "how", "what", "when", "where", "who", "help")

ACTION_VERBS = (
    "帮", "麻烦", "请", "能否", "可以", "解释", "看看",
    "排查", "分析", "总结", "写", "改", "修", "查", "对比", "翻译",
)

BOT_TRIGGERS = ("alen", "clawdbot", "bot", "助手", "智能体")

_QUESTION_RE = re.compile(r"\b(?:" + "|".join(QUESTION_WORDS) + r")\b", re.ASCII)
_BOT_TRIGGER_RE = re.compile(r"^(?:" + "|".join(map(re.escape, BOT_TRIGGERS)) + r")[\s,:，：]")
_MENTION_RE = re.compile(r"@_user_\d+\s*")


def should_respond_in_group(text: str, mentions: Sequence) -> bool:
    """First matching rule wins: mention, question mark, question word, action verb, bot name."""
    if mentions:
        return True

    if text.endswith("?") or text.endswith("？"):
        return True

    lower_text = text.lower()
    if _QUESTION_RE.search(lower_text):
        return True

    if any(verb in text for verb in ACTION_VERBS):
        return True

    return bool(_BOT_TRIGGER_RE.match(lower_text))


def remove_mentions(text: str) -> str:
    """去掉飞书正文里的 @_user_N 占位符"""
    return _MENTION_RE.sub("", text)
