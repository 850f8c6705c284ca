"""访问策略闸门。

在任何 agent 工作开始前决定消息能否放行：

- 私聊按 dm_policy：disabled 丢弃；open 放行；pairing（默认）只放行白名单内的发送者，
  否则签发（或复用）配对码并返回 pairing_challenge。
- 群/频道按 mention-required：取 频道 > 团队/群 > 全局 > 默认 True 中第一个非 None 值；
  需要 @ 而机器人未被 @ 时丢弃。
"""

from dataclasses import dataclass, field
from typing import Literal

from loguru import logger

from chatgate.bus.events import InboundMessage
from chatgate.config.schema import DmPolicy
from chatgate.gateway.ports import PairingStore

WILDCARD = "*"

Outcome = Literal["allow", "pairing_challenge", "drop"]


@dataclass(frozen=True)
class AccessDecision:
    outcome: Outcome
    reason: str = ""
    code: str | None = None
    created: bool = False

    @classmethod
    def allow(cls, reason: str = "") -> "AccessDecision":
        return cls("allow", reason)

    @classmethod
    def drop(cls, reason: str) -> "AccessDecision":
        return cls("drop", reason)

    @classmethod
    def challenge(cls, code: str, created: bool) -> "AccessDecision":
        return cls("pairing_challenge", "sender not in allow-list", code=code, created=created)

    @property
    def allowed(self) -> bool:
        return self.outcome == "allow"


@dataclass(frozen=True)
class SurfacePolicy:
    """某条消息所在表面的已解析策略。"""

    dm_policy: DmPolicy = "pairing"
    allow_from: tuple[str, ...] = field(default_factory=tuple)
    require_mention: bool = True


def resolve_require_mention(*scopes: bool | None, default: bool = True) -> bool:
    """按从窄到宽的顺序取第一个显式值。"""
    for value in scopes:
        if value is not None:
            return value
    return default


def is_sender_allowed(sender_id: str, entries: list[str] | tuple[str, ...]) -> bool:
    """大小写不敏感匹配；出现 "*" 时直接放行。"""
    normalized = {str(e).strip().lower() for e in entries if str(e).strip()}
    if WILDCARD in normalized:
        return True
    return sender_id.lower() in normalized


class AccessGate:
    """唯一的外部副作用：pairing 策略下为陌生私聊发送者签发配对码。"""

    def __init__(self, pairing_store: PairingStore):
        self.pairing_store = pairing_store

    async def evaluate(self, msg: InboundMessage, policy: SurfacePolicy) -> AccessDecision:
        if msg.is_direct:
            return await self._evaluate_dm(msg, policy)

        if policy.require_mention and not msg.was_mentioned:
            return AccessDecision.drop("mention required")
        return AccessDecision.allow("mention satisfied" if policy.require_mention else "mention not required")

    async def _evaluate_dm(self, msg: InboundMessage, policy: SurfacePolicy) -> AccessDecision:
        if policy.dm_policy == "disabled":
            return AccessDecision.drop("dms disabled")
        if policy.dm_policy == "open":
            return AccessDecision.allow("dm policy open")

        # 静态白名单可以直接命中，省掉一次存储读取
        if is_sender_allowed(msg.sender_id, policy.allow_from):
            return AccessDecision.allow("configured allow-list")

        stored = await self.pairing_store.read_allow_from(msg.provider)
        if is_sender_allowed(msg.sender_id, stored):
            return AccessDecision.allow("paired allow-list")

        request = await self.pairing_store.upsert_request(
            msg.provider, msg.sender_id, {"name": msg.sender_name}
        )
        logger.info(
            f"Pairing challenge for {msg.provider}:{msg.sender_id} "
            f"(code={request.code}, created={request.created})"
        )
        return AccessDecision.challenge(request.code, request.created)


def pairing_reply_text(sender_name: str, code: str, created: bool) -> str:
    if created:
        return (
            f"👋 Hi {sender_name}! To chat with me, please share this pairing code "
            f"with my owner: **{code}**"
        )
    return f"🔑 Your pairing code is: **{code}** — please share it with my owner to get access."
