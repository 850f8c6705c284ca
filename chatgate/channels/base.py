"""渠道抽象。

每个渠道提供两部分：

- ``BaseProvider``：把渠道原始事件规范化为 InboundMessage，解析该表面的访问策略，
  并给出回复所用的 Deliverer。网关核心只通过它接触渠道差异。
- ``BaseTransport``：连接渠道 SDK（轮询、webhook），把原始事件投到总线。
"""

from abc import ABC, abstractmethod
from typing import Any

from loguru import logger
from pydantic import BaseModel, ValidationError

from chatgate.bus.events import InboundEnvelope, InboundMessage, ProviderContext
from chatgate.bus.queue import MessageBus
from chatgate.config.schema import Config, ProviderConfigBase
from chatgate.errors import NormalizationError
from chatgate.gateway.policy import SurfacePolicy, resolve_require_mention
from chatgate.gateway.ports import Deliverer


class BaseProvider(ABC):
    name: str = "base"
    label: str = "Base"  # envelope 与系统事件里展示的渠道名
    text_hard_limit: int = 4000

    def __init__(self, outbound: Deliverer | None = None):
        # 主动发送（群主提醒等）用的 Deliverer；回复通常走 deliverer_for(msg)
        self.outbound = outbound

    @abstractmethod
    def normalize(self, raw_event: Any, ctx: ProviderContext) -> InboundMessage:
        """原始事件 -> InboundMessage。缺少发送者或会话 ID 时抛 NormalizationError。"""

    @abstractmethod
    def mention_scopes(self, msg: InboundMessage, section: Any) -> list[bool | None]:
        """从窄到宽列出 require_mention 覆盖值（不含全局）。"""

    def measure_text(self, text: str) -> int:
        """按渠道计长度规则度量文本，分块上限用同一单位。"""
        return len(text)

    def section(self, config: Config) -> ProviderConfigBase:
        section = config.provider_section(self.name)
        if section is None:
            raise KeyError(f"No config section for provider {self.name}")
        return section

    def surface_policy(self, msg: InboundMessage, config: Config) -> SurfacePolicy:
        section = self.section(config)
        require_mention = resolve_require_mention(
            *self.mention_scopes(msg, section), section.require_mention
        )
        return SurfacePolicy(
            dm_policy=section.dm_policy,
            allow_from=tuple(section.allow_from),
            require_mention=require_mention,
        )

    def owner_ids(self, config: Config) -> list[str]:
        return []

    def deliverer_for(self, msg: InboundMessage) -> Deliverer | None:
        return self.outbound

    def reply_target(self, msg: InboundMessage) -> str:
        if msg.is_direct:
            return f"user:{msg.sender_id}"
        return f"conversation:{msg.conversation_id}"

    def conversation_reference(self, msg: InboundMessage) -> dict[str, Any] | None:
        """用于主动消息的会话引用；不支持的渠道返回 None。"""
        return None

    def parse_event(self, model: type[BaseModel], raw_event: Any) -> Any:
        if isinstance(raw_event, model):
            return raw_event
        try:
            if isinstance(raw_event, (str, bytes)):
                return model.model_validate_json(raw_event)
            return model.model_validate(raw_event)
        except ValidationError as e:
            raise NormalizationError(f"{self.name}: invalid event: {e.error_count()} validation errors") from e


class BaseTransport(ABC):
    """渠道接入：负责连接与收消息，不做任何策略判断。"""

    name: str = "base"

    def __init__(self, bus: MessageBus):
        self.bus = bus
        self._running = False

    @abstractmethod
    async def start(self) -> None:
        pass

    @abstractmethod
    async def stop(self) -> None:
        pass

    async def _publish(self, event: Any, ctx: ProviderContext | None = None) -> None:
        await self.bus.publish_inbound(
            InboundEnvelope(provider=self.name, event=event, context=ctx or ProviderContext())
        )
        logger.debug(f"{self.name}: event queued (inbound size {self.bus.inbound_size})")

    @property
    def is_running(self) -> bool:
        return self._running
