"""传输层与网关主循环之间的入站队列。"""

import asyncio

from loguru import logger

from chatgate.bus.events import InboundEnvelope


class MessageBus:
    """入站事件总线。

    传输层（webhook、轮询）只负责把原始事件放进队列，立即返回；
    规范化、策略判断与回复投递全部在 GatewayLoop 中进行。
    """

    def __init__(self, maxsize: int = 0):
        self.inbound: asyncio.Queue[InboundEnvelope] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    async def publish_inbound(self, envelope: InboundEnvelope) -> None:
        if self._closed:
            logger.warning(f"Bus closed, dropping {envelope.provider} event")
            return
        await self.inbound.put(envelope)

    async def consume_inbound(self) -> InboundEnvelope:
        return await self.inbound.get()

    def close(self) -> None:
        """拒绝后续发布；已入队的事件仍可被消费。"""
        self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def inbound_size(self) -> int:
        return self.inbound.qsize()
