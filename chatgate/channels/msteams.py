"""Microsoft Teams 渠道。

HTTP 服务与 JWT 校验由宿主负责；宿主把 activity（Bot Framework JSON）作为事件、
把 TurnContext 作为 ``ProviderContext.reply_handle`` 投递进来。
"""

import re
from datetime import datetime, timezone
from typing import Any

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from chatgate.bus.events import DeliveryReceipt, InboundMessage, ProviderContext
from chatgate.errors import NormalizationError
from chatgate.channels.base import BaseProvider
from chatgate.config.schema import MSTeamsConfig
from chatgate.utils.helpers import parse_timestamp

_MENTION_TAG = re.compile(r"<at>.*?</at>", re.IGNORECASE | re.DOTALL)


class _TeamsModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class TeamsAccount(_TeamsModel):
    id: str | None = None
    name: str | None = None
    aad_object_id: str | None = None


class TeamsConversation(_TeamsModel):
    id: str | None = None
    conversation_type: str | None = None
    tenant_id: str | None = None
    is_group: bool | None = None


class TeamsEntity(_TeamsModel):
    type: str | None = None
    mentioned: TeamsAccount | None = None


class TeamsRef(_TeamsModel):
    id: str | None = None
    name: str | None = None


class TeamsChannelData(_TeamsModel):
    team: TeamsRef | None = None
    channel: TeamsRef | None = None
    tenant: TeamsRef | None = None


class TeamsActivity(_TeamsModel):
    id: str | None = None
    type: str | None = None
    timestamp: str | datetime | None = None
    text: str | None = None
    from_: TeamsAccount | None = Field(default=None, alias="from")
    recipient: TeamsAccount | None = None
    conversation: TeamsConversation | None = None
    channel_id: str | None = None
    service_url: str | None = None
    entities: list[TeamsEntity] = Field(default_factory=list)
    channel_data: TeamsChannelData | None = None


def strip_mention_tags(text: str) -> str:
    """Teams 用 <at>…</at> 包裹 mention。"""
    return _MENTION_TAG.sub("", text).strip()


class MSTeamsProvider(BaseProvider):
    name = "msteams"
    label = "Teams"
    text_hard_limit = 4000

    def normalize(self, raw_event: Any, ctx: ProviderContext) -> InboundMessage:
        activity: TeamsActivity = self.parse_event(TeamsActivity, raw_event)

        sender = activity.from_
        if sender is None or not sender.id:
            raise NormalizationError("msteams: activity without from.id")
        conversation = activity.conversation or TeamsConversation()
        if not conversation.id:
            raise NormalizationError("msteams: activity without conversation.id")

        # conversation.id 可能带 ";messageid=..." 后缀
        conversation_id = conversation.id.split(";", 1)[0]
        conversation_type = conversation.conversation_type or "personal"
        if conversation_type == "channel":
            surface = "channel"
        elif conversation_type == "groupChat" or conversation.is_group:
            surface = "group"
        else:
            surface = "dm"

        mentioned = frozenset(
            e.mentioned.id
            for e in activity.entities
            if e.type == "mention" and e.mentioned and e.mentioned.id
        )
        raw_text = (activity.text or "").strip()
        team = activity.channel_data.team if activity.channel_data else None

        return InboundMessage(
            provider=self.name,
            id=activity.id or "",
            surface_kind=surface,
            conversation_id=conversation_id,
            sender_id=sender.aad_object_id or sender.id,
            sender_name=sender.name or sender.id,
            text=strip_mention_tags(raw_text),
            mentioned_ids=mentioned,
            timestamp=parse_timestamp(activity.timestamp) or datetime.now(timezone.utc),
            recipient_id=(activity.recipient.id if activity.recipient else None) or ctx.bot_id,
            team_id=team.id if team else None,
            conversation_type=conversation_type,
            raw_text=raw_text,
            raw=activity,
            reply_handle=ctx.reply_handle,
        )

    def mention_scopes(self, msg: InboundMessage, section: MSTeamsConfig) -> list[bool | None]:
        team_cfg = section.teams.get(msg.team_id) if msg.team_id else None
        if team_cfg is None:
            return []
        channel_cfg = team_cfg.channels.get(msg.conversation_id)
        return [channel_cfg.require_mention if channel_cfg else None, team_cfg.require_mention]

    def deliverer_for(self, msg: InboundMessage):
        if msg.reply_handle is not None:
            return TurnContextDeliverer(msg.reply_handle)
        return self.outbound

    def conversation_reference(self, msg: InboundMessage) -> dict[str, Any] | None:
        activity: TeamsActivity = msg.raw
        if activity is None or activity.from_ is None:
            return None
        recipient = activity.recipient
        conversation = activity.conversation or TeamsConversation()
        return {
            "activity_id": activity.id,
            "user": {
                "id": activity.from_.id,
                "name": activity.from_.name,
                "aad_object_id": activity.from_.aad_object_id,
            },
            "bot": {"id": recipient.id, "name": recipient.name} if recipient else None,
            "conversation": {
                "id": msg.conversation_id,
                "conversation_type": msg.conversation_type,
                "tenant_id": conversation.tenant_id,
            },
            "channel_id": activity.channel_id,
            "service_url": activity.service_url,
        }


class TurnContextDeliverer:
    """通过 Bot Framework TurnContext 回复当前会话；target 仅用于日志。"""

    def __init__(self, context: Any):
        self.context = context

    async def send(self, target: str, content: str) -> DeliveryReceipt | None:
        response = await self.context.send_activity(content)
        message_id = getattr(response, "id", None)
        return DeliveryReceipt(message_id=message_id)

    async def send_typing(self, target: str) -> None:
        # 用入站 activity 的类型构造 typing activity，SDK 不接受普通 dict
        inbound = getattr(self.context, "activity", None)
        if inbound is None:
            logger.debug(f"msteams: turn context for {target} has no activity, cannot send typing")
            return
        await self.context.send_activity(type(inbound)(type="typing"))
