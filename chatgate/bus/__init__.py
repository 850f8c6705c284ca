"""消息总线与事件类型。"""

from chatgate.bus.events import (
    DeliveryReceipt,
    InboundEnvelope,
    InboundMessage,
    ProviderContext,
    ReplyPayload,
)
from chatgate.bus.jobs import JobQueue
from chatgate.bus.queue import MessageBus
from chatgate.bus.system_events import SystemEventQueue

__all__ = [
    "DeliveryReceipt",
    "InboundEnvelope",
    "InboundMessage",
    "JobQueue",
    "MessageBus",
    "ProviderContext",
    "ReplyPayload",
    "SystemEventQueue",
]
