"""
飞书通道 - 基于飞书开放平台 IM 接口的消息收发
"""
import json
import time
from typing import Any, Dict, Optional

import aiohttp

from .base import BaseChannel, ChannelError, ChannelType, ChatType, InboundMessage, Mention

MESSAGE_RECEIVE_EVENT = "im.message.receive_v1"


class FeishuChannel(BaseChannel):
    """飞书自建应用: tenant_access_token + IM v1 消息接口"""

    def __init__(
        self,
        app_id: str,
        app_secret: str,
        api_base: str = "https://open.feishu.cn/open-apis",
        request_timeout: float = 30.0,
    ):
        super().__init__("feishu", ChannelType.FEISHU)

        self.app_id = app_id
        self.app_secret = app_secret
        self.api_base = api_base.rstrip("/")
        self.request_timeout = request_timeout

        self.tenant_access_token: Optional[str] = None
        self.token_expires_at = 0.0

        self.session: Optional[aiohttp.ClientSession] = None

    async def connect(self) -> bool:
        try:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.request_timeout)
            )
            await self._refresh_access_token()
        except (aiohttp.ClientError, ChannelError) as e:
            self.logger.error(f"Failed to connect Feishu: {e}")
            return False

        self.is_connected = True
        self.logger.info("Feishu channel connected")
        return True

    async def disconnect(self) -> bool:
        if self.session:
            await self.session.close()
            self.session = None

        self.is_connected = False
        self.logger.info("Feishu channel disconnected")
        return True

    async def _refresh_access_token(self):
        url = f"{self.api_base}/auth/v3/tenant_access_token/internal"
        payload = {
            "app_id": self.app_id,
            "app_secret": self.app_secret
        }

        try:
            async with self._session().post(url, json=payload) as response:
                data = await response.json(content_type=None)
        except (aiohttp.ClientError, ValueError) as e:
            raise ChannelError(f"Failed to get access token: {e}") from e

        if not isinstance(data, dict):
            raise ChannelError(f"Failed to get access token: unexpected response {data!r}")
        if data.get("code") != 0:
            raise ChannelError(f"Failed to get access token: {data.get('msg') or data}")
        self.tenant_access_token = data.get("tenant_access_token")
        # 提前 5 分钟刷新
        self.token_expires_at = time.time() + data.get("expire", 7200) - 300
        self.logger.info("Feishu access token refreshed")

    async def _ensure_token(self):
        if not self.tenant_access_token or time.time() >= self.token_expires_at:
            await self._refresh_access_token()

    def _session(self) -> aiohttp.ClientSession:
        if self.session is None:
            raise ChannelError("Feishu channel is not connected")
        return self.session

    async def _call_api(
        self,
        method: str,
        path: str,
        payload: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        await self._ensure_token()
        headers = {
            "Authorization": f"Bearer {self.tenant_access_token}",
            "Content-Type": "application/json; charset=utf-8"
        }
        url = f"{self.api_base}{path}"
        try:
            async with self._session().request(
                method, url, headers=headers, params=params, json=payload
            ) as response:
                result = await response.json(content_type=None)
        except (aiohttp.ClientError, ValueError) as e:
            raise ChannelError(f"{method} {path} failed: {e}") from e

        if not isinstance(result, dict):
            raise ChannelError(f"{method} {path} failed: unexpected response {result!r}")
        if result.get("code") != 0:
            raise ChannelError(f"{method} {path} failed: code={result.get('code')} msg={result.get('msg')}")
        return result.get("data") or {}

    @staticmethod
    def _text_content(text: str) -> str:
        return json.dumps({"text": text}, ensure_ascii=False)

    async def send_message(self, chat_id: str, text: str) -> str:
        data = await self._call_api(
            "POST",
            "/im/v1/messages",
            payload={
                "receive_id": chat_id,
                "msg_type": "text",
                "content": self._text_content(text),
            },
            params={"receive_id_type": "chat_id"},
        )
        message_id = data.get("message_id")
        if not message_id:
            raise ChannelError("Feishu did not return a message_id")
        return message_id

    async def update_message(self, message_id: str, text: str) -> None:
        await self._call_api(
            "PUT",
            f"/im/v1/messages/{message_id}",
            payload={"msg_type": "text", "content": self._text_content(text)},
        )

    async def delete_message(self, message_id: str) -> None:
        await self._call_api("DELETE", f"/im/v1/messages/{message_id}")

    async def dispatch_event(self, body: Dict[str, Any]) -> Optional[InboundMessage]:
        """把事件回调转换成入站消息并交给已注册的回调"""
        message = parse_event(body)
        if message is not None:
            await self._emit_message(message)
        return message

    async def validate_config(self) -> bool:
        if not (self.app_id and self.app_secret):
            self.logger.error("Feishu config missing: need app_id + app_secret")
            return False
        return True


def parse_event(body: Dict[str, Any]) -> Optional[InboundMessage]:
    """解析 im.message.receive_v1 事件; 其他事件或非文本消息返回 None"""
    header = body.get("header") or {}
    if header.get("event_type") != MESSAGE_RECEIVE_EVENT:
        return None

    message = (body.get("event") or {}).get("message") or {}
    if message.get("message_type", "text") != "text":
        return None

    try:
        content = json.loads(message.get("content") or "{}")
    except ValueError:
        return None
    text = content.get("text", "") if isinstance(content, dict) else ""

    mentions = []
    for item in message.get("mentions") or []:
        ids = item.get("id") or {}
        mentions.append(Mention(
            key=item.get("key", ""),
            id=ids.get("open_id", "") if isinstance(ids, dict) else str(ids),
            name=item.get("name", ""),
        ))

    chat_type = ChatType.GROUP if message.get("chat_type") == "group" else ChatType.DIRECT
    return InboundMessage(
        chat_id=message.get("chat_id", ""),
        chat_type=chat_type,
        message_id=message.get("message_id", ""),
        content=text,
        mentions=mentions,
    )
