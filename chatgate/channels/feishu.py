"""飞书 / Lark 渠道。

事件订阅的验签与解密由宿主完成；这里接收 ``im.message.receive_v1`` 的 event 部分。
"""

import json
import re
import time
from datetime import datetime, timezone
from typing import Any

import httpx
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from chatgate.bus.events import DeliveryReceipt, InboundMessage, ProviderContext
from chatgate.channels.base import BaseProvider
from chatgate.config.schema import Config, FeishuConfig
from chatgate.errors import NormalizationError
from chatgate.utils.helpers import parse_timestamp

# 飞书在 text 消息里用 @_user_1 这样的占位符表示 mention
_MENTION_KEY = re.compile(r"@_user_\d+")


class _FeishuModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class FeishuUserId(_FeishuModel):
    open_id: str | None = None
    user_id: str | None = None
    union_id: str | None = None


class FeishuSender(_FeishuModel):
    sender_id: FeishuUserId = Field(default_factory=FeishuUserId)
    sender_type: str | None = None


class FeishuMention(_FeishuModel):
    key: str = ""
    id: FeishuUserId = Field(default_factory=FeishuUserId)
    name: str | None = None
    tenant_key: str | None = None


class FeishuMessage(_FeishuModel):
    message_id: str = ""
    root_id: str | None = None
    parent_id: str | None = None
    chat_id: str | None = None
    chat_type: str | None = None  # "p2p" | "group"
    message_type: str = "text"
    content: str = ""
    create_time: str | None = None
    mentions: list[FeishuMention] = Field(default_factory=list)


class FeishuMessageEvent(_FeishuModel):
    sender: FeishuSender = Field(default_factory=FeishuSender)
    message: FeishuMessage


def parse_text_content(content: str) -> str:
    try:
        parsed = json.loads(content)
    except (TypeError, ValueError):
        return content
    if isinstance(parsed, dict):
        text = parsed.get("text")
        return text if isinstance(text, str) else ""
    return content


class FeishuProvider(BaseProvider):
    name = "feishu"
    label = "Feishu"
    text_hard_limit = 4000

    def normalize(self, raw_event: Any, ctx: ProviderContext) -> InboundMessage:
        event: FeishuMessageEvent = self.parse_event(FeishuMessageEvent, raw_event)
        message = event.message

        sender_id = event.sender.sender_id.open_id or event.sender.sender_id.user_id
        if not sender_id:
            raise NormalizationError("feishu: event without sender open_id")
        if not message.chat_id:
            raise NormalizationError("feishu: event without chat_id")

        text = parse_text_content(message.content) if message.message_type == "text" else ""
        # 整体匹配占位符，@_user_1 不能吃掉 @_user_10 的前缀
        text = _MENTION_KEY.sub("", text).strip()

        return InboundMessage(
            provider=self.name,
            id=message.message_id,
            surface_kind="group" if message.chat_type == "group" else "dm",
            conversation_id=message.chat_id,
            sender_id=sender_id,
            sender_name=sender_id,
            text=text,
            mentioned_ids=frozenset(m.id.open_id for m in message.mentions if m.id.open_id),
            timestamp=parse_timestamp(message.create_time) or datetime.now(timezone.utc),
            recipient_id=ctx.bot_id,
            conversation_type=message.chat_type or "p2p",
            raw_text=message.content,
            raw=event,
            reply_handle=ctx.reply_handle,
        )

    def mention_scopes(self, msg: InboundMessage, section: FeishuConfig) -> list[bool | None]:
        group_cfg = section.groups.get(msg.conversation_id)
        return [group_cfg.require_mention if group_cfg else None]

    def owner_ids(self, config: Config) -> list[str]:
        return config.channels.feishu.owner_open_ids

    def reply_target(self, msg: InboundMessage) -> str:
        # 私聊也回到 chat_id，与用户看到的会话一致
        return f"chat:{msg.conversation_id}"


class FeishuDeliverer:
    """飞书开放平台 HTTP 投递。"""

    def __init__(
        self,
        app_id: str,
        app_secret: str,
        domain: str = "https://open.feishu.cn",
        client: httpx.AsyncClient | None = None,
    ):
        self.app_id = app_id
        self.app_secret = app_secret
        self.domain = domain.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=10.0)
        self._token: str | None = None
        self._token_expires_at = 0.0

    @classmethod
    def from_config(cls, config: FeishuConfig) -> "FeishuDeliverer":
        return cls(config.app_id, config.app_secret, config.domain)

    async def _tenant_token(self) -> str:
        # 提前 60 秒刷新
        if self._token and time.monotonic() < self._token_expires_at - 60:
            return self._token
        resp = await self._client.post(
            f"{self.domain}/open-apis/auth/v3/tenant_access_token/internal",
            json={"app_id": self.app_id, "app_secret": self.app_secret},
        )
        resp.raise_for_status()
        data = resp.json()
        if data.get("code", 0) != 0:
            raise RuntimeError(f"feishu token error {data.get('code')}: {data.get('msg')}")
        self._token = data["tenant_access_token"]
        self._token_expires_at = time.monotonic() + float(data.get("expire", 7200))
        return self._token

    @staticmethod
    def _receive_id(target: str) -> tuple[str, str]:
        kind, _, value = target.partition(":")
        if not value:
            return "chat_id", target
        if kind == "user":
            return "open_id", value
        return "chat_id", value

    async def send(self, target: str, content: str) -> DeliveryReceipt | None:
        receive_id_type, receive_id = self._receive_id(target)
        token = await self._tenant_token()
        resp = await self._client.post(
            f"{self.domain}/open-apis/im/v1/messages",
            params={"receive_id_type": receive_id_type},
            headers={"Authorization": f"Bearer {token}"},
            json={
                "receive_id": receive_id,
                "msg_type": "text",
                "content": json.dumps({"text": content}, ensure_ascii=False),
            },
        )
        resp.raise_for_status()
        data = resp.json()
        if data.get("code", 0) != 0:
            raise RuntimeError(f"feishu send error {data.get('code')}: {data.get('msg')}")
        body = data.get("data") or {}
        return DeliveryReceipt(message_id=body.get("message_id"), conversation_id=body.get("chat_id"))

    async def send_typing(self, target: str) -> None:
        # 飞书没有"正在输入"接口
        logger.debug(f"feishu: typing not supported for {target}")

    async def aclose(self) -> None:
        await self._client.aclose()
