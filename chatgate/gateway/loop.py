"""网关主循环。

从总线消费原始事件，每个事件交给一个独立任务处理，事件之间互不阻塞。
``stop()`` 置位取消信号：进行中的投递会完成，但不再排入新的分块。
"""

import asyncio
from typing import Any

from loguru import logger

from chatgate.bus.events import InboundEnvelope
from chatgate.bus.queue import MessageBus
from chatgate.config.schema import Config
from chatgate.gateway.pipeline import InboundPipeline, PipelineResult


class GatewayLoop:
    def __init__(self, bus: MessageBus, pipeline: InboundPipeline, config: Config):
        self.bus = bus
        self.pipeline = pipeline
        self.config = config
        self._cancel = asyncio.Event()
        self._tasks: set[asyncio.Task[Any]] = set()
        self._running = False

    def reload(self, config: Config) -> None:
        """替换配置快照；只影响之后到达的事件。"""
        self.config = config
        logger.info("Gateway config reloaded")

    async def run(self) -> None:
        self._running = True
        self._cancel.clear()
        logger.info("Gateway loop started")

        while self._running:
            try:
                # 短超时，便于及时响应 stop()
                envelope = await asyncio.wait_for(self.bus.consume_inbound(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
            self.submit(envelope)

    def submit(self, envelope: InboundEnvelope) -> asyncio.Task[PipelineResult | None]:
        task = asyncio.create_task(self._handle(envelope, self.config))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _handle(self, envelope: InboundEnvelope, config: Config) -> PipelineResult | None:
        try:
            return await self.pipeline.handle(envelope, config, cancel_event=self._cancel)
        except Exception as e:
            logger.error(f"Error handling {envelope.provider} event: {e}")
            return None

    def stop(self) -> None:
        self._running = False
        self._cancel.set()
        self.bus.close()
        logger.info("Gateway loop stopping")

    async def shutdown(self, timeout: float = 10.0) -> None:
        """停止并等待进行中的事件与后台任务收尾；超时仍未结束的事件任务会被取消。"""
        self.stop()
        if self._tasks:
            _, pending = await asyncio.wait(list(self._tasks), timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
                logger.warning(f"Cancelled {len(pending)} unfinished events")
        await self.pipeline.jobs.drain(timeout=timeout)

    @property
    def in_flight(self) -> int:
        return len(self._tasks)
