"""按配置组装网关。"""

import asyncio
from dataclasses import dataclass, field
from pathlib import Path

from loguru import logger

from chatgate.bus.jobs import JobQueue
from chatgate.bus.queue import MessageBus
from chatgate.bus.system_events import SystemEventQueue
from chatgate.channels.base import BaseProvider, BaseTransport
from chatgate.channels.feishu import FeishuDeliverer, FeishuProvider
from chatgate.channels.msteams import MSTeamsProvider
from chatgate.channels.telegram import TelegramDeliverer, TelegramProvider, TelegramTransport
from chatgate.config.schema import Config
from chatgate.gateway.loop import GatewayLoop
from chatgate.gateway.pipeline import InboundPipeline
from chatgate.gateway.ports import AgentInvoker
from chatgate.stores.conversations import JsonConversationStore
from chatgate.stores.pairing import JsonPairingStore


@dataclass
class Gateway:
    bus: MessageBus
    loop: GatewayLoop
    pipeline: InboundPipeline
    system_events: SystemEventQueue
    transports: list[BaseTransport] = field(default_factory=list)

    async def run(self) -> None:
        """启动主循环与所有传输层，直到被取消。"""
        tasks = [asyncio.create_task(self.loop.run())]
        tasks += [asyncio.create_task(t.start()) for t in self.transports]
        try:
            await asyncio.gather(*tasks)
        finally:
            for transport in self.transports:
                try:
                    await transport.stop()
                except Exception as e:
                    logger.error(f"Error stopping {transport.name}: {e}")
            await self.loop.shutdown()


def build_providers(config: Config) -> list[BaseProvider]:
    channels = config.channels
    providers: list[BaseProvider] = []
    if channels.msteams.enabled:
        providers.append(MSTeamsProvider())
    if channels.feishu.enabled:
        outbound = FeishuDeliverer.from_config(channels.feishu) if channels.feishu.app_id else None
        providers.append(FeishuProvider(outbound=outbound))
    if channels.telegram.enabled:
        outbound = TelegramDeliverer.from_config(channels.telegram) if channels.telegram.token else None
        providers.append(TelegramProvider(outbound=outbound))
    return providers


def create_gateway(config: Config, agent: AgentInvoker, data_dir: Path | None = None) -> Gateway:
    bus = MessageBus()
    system_events = SystemEventQueue()
    pipeline = InboundPipeline(
        build_providers(config),
        JsonPairingStore(data_dir / "credentials" if data_dir else None),
        agent,
        system_events,
        conversation_store=JsonConversationStore(data_dir / "conversations.json" if data_dir else None),
        jobs=JobQueue(),
    )
    transports: list[BaseTransport] = []
    if config.channels.telegram.enabled and config.channels.telegram.token:
        transports.append(TelegramTransport(config.channels.telegram, bus))

    logger.info(f"Gateway providers: {', '.join(pipeline.providers) or 'none'}")
    return Gateway(
        bus=bus,
        loop=GatewayLoop(bus, pipeline, config),
        pipeline=pipeline,
        system_events=system_events,
        transports=transports,
    )
