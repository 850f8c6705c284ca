"""入站/出站事件类型。"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

SurfaceKind = Literal["dm", "group", "channel"]
ReplyKind = Literal["interim", "final"]


@dataclass(frozen=True)
class InboundMessage:
    """规范化后的入站消息，构造后不可变。

    下游只依赖这个类型；``raw`` 与 ``reply_handle`` 仅用于委托给具体渠道的回复能力，
    核心逻辑不读取其中字段。
    """

    provider: str  # 渠道类型：msteams、feishu、telegram
    id: str  # 渠道消息 ID，用于 context key
    surface_kind: SurfaceKind
    conversation_id: str  # 已去掉渠道附加后缀
    sender_id: str
    sender_name: str
    text: str  # 已去除 mention 标记并 trim
    mentioned_ids: frozenset[str] = frozenset()
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    recipient_id: str | None = None  # 机器人自身 ID
    team_id: str | None = None  # 频道所属团队（如 Teams team）
    conversation_type: str = ""  # 渠道原始会话类型，仅用于展示
    raw_text: str = ""  # 渠道原始正文（未解析、未去除 mention）
    raw: Any = field(default=None, repr=False, compare=False)
    reply_handle: Any = field(default=None, repr=False, compare=False)

    @property
    def is_direct(self) -> bool:
        return self.surface_kind == "dm"

    @property
    def was_mentioned(self) -> bool:
        """机器人是否在本条消息中被 @。"""
        return bool(self.recipient_id) and self.recipient_id in self.mentioned_ids

    @property
    def peer_id(self) -> str:
        """路由用的对端 ID：私聊为发送者，群/频道为会话。"""
        return self.sender_id if self.is_direct else self.conversation_id


@dataclass
class ProviderContext:
    """传给 normalize 的渠道上下文。"""

    bot_id: str | None = None  # 无法从事件本身得到机器人 ID 时由宿主提供
    account_id: str | None = None  # 宿主托管多个账号时标明来源账号；绑定或渠道配置里的账号优先
    reply_handle: Any = None  # SDK 回调对象，例如 Bot Framework 的 TurnContext


@dataclass
class InboundEnvelope:
    """传输层投递到总线上的原始事件。"""

    provider: str
    event: Any
    context: ProviderContext = field(default_factory=ProviderContext)
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class ReplyPayload:
    """Agent 产出的一条回复。"""

    text: str | None = None
    media_urls: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.text or "").strip() and not self.media_urls


@dataclass
class DeliveryReceipt:
    """Deliverer.send 的返回值。"""

    message_id: str | None = None
    conversation_id: str | None = None
