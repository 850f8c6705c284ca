"""入站处理管道。

一条原始事件的完整处理流程：

1. 渠道规范化为 InboundMessage；失败或去掉 mention 后为空则直接结束。
2. 解析表面策略，后台提交群主提醒与会话引用保存（不等待）。
3. 解析会话路由，写入系统事件摘要。
4. 访问闸门：丢弃、回复配对码，或放行。
5. 组装 agent 上下文，调用 agent，回复经 ReplyDispatcher 分块投递。
6. agent 在产出任何回复前失败时，尽力发送一条失败提示。

``handle`` 从不抛异常：每个环节的失败都在本环节记录日志。
"""

import asyncio
import time
from dataclasses import dataclass, field, replace
from typing import Any, Literal

from loguru import logger

from chatgate.bus.events import InboundEnvelope, InboundMessage
from chatgate.bus.jobs import JobQueue
from chatgate.channels.base import BaseProvider
from chatgate.config.schema import Config
from chatgate.errors import DispatchFailure, NormalizationError
from chatgate.gateway.chunking import resolve_text_chunk_limit
from chatgate.gateway.dispatcher import DispatchSession, ReplyDispatcher
from chatgate.gateway.notifier import OwnerNotifier
from chatgate.gateway.policy import AccessDecision, AccessGate, SurfacePolicy, pairing_reply_text
from chatgate.gateway.ports import (
    AgentInvoker,
    ConversationStore,
    Deliverer,
    ErrorHook,
    PairingStore,
    ResolvedRoute,
    RouteResolver,
    SystemEventSink,
)
from chatgate.gateway.routing import DEFAULT_ACCOUNT_ID, ConfigRouteResolver
from chatgate.utils.helpers import format_envelope_timestamp, preview_text, truncate_string

Outcome = Literal[
    "unknown_provider", "invalid", "empty", "error", "dropped", "pairing", "no_deliverer", "dispatched", "failed"
]

_CHAT_TYPES = {"dm": "direct", "group": "group", "channel": "room"}


@dataclass
class PipelineResult:
    outcome: Outcome
    message: InboundMessage | None = None
    route: ResolvedRoute | None = None
    decision: AccessDecision | None = None
    dispatch: DispatchSession | None = None
    jobs: list[asyncio.Task[Any]] = field(default_factory=list)


def format_agent_envelope(label: str, sender: str, msg: InboundMessage) -> str:
    return f"[{label} {sender} {format_envelope_timestamp(msg.timestamp)}] {msg.text}"


def build_context_payload(provider: BaseProvider, msg: InboundMessage, route: ResolvedRoute) -> dict[str, Any]:
    name = provider.name
    if msg.is_direct:
        from_ = f"{name}:{msg.sender_id}"
        to = f"user:{msg.sender_id}"
    else:
        from_ = f"{name}:{msg.surface_kind}:{msg.conversation_id}"
        to = f"conversation:{msg.conversation_id}"

    payload: dict[str, Any] = {
        "Body": format_agent_envelope(provider.label, msg.sender_name, msg),
        "From": from_,
        "To": to,
        "SessionKey": route.session_key,
        "AccountId": route.account_id,
        "ChatType": _CHAT_TYPES[msg.surface_kind],
        "SenderName": msg.sender_name,
        "SenderId": msg.sender_id,
        "Provider": name,
        "Surface": name,
        "MessageSid": msg.id,
        "Timestamp": int(msg.timestamp.timestamp() * 1000),
        "WasMentioned": msg.is_direct or msg.was_mentioned,
        "CommandAuthorized": True,
        "OriginatingChannel": name,
        "OriginatingTo": to,
    }
    if not msg.is_direct:
        payload["GroupSubject"] = msg.conversation_type
    return payload


def inbound_summary(label: str, msg: InboundMessage) -> str:
    preview = preview_text(msg.text)
    if msg.is_direct:
        return f"{label} DM from {msg.sender_name}: {preview}"
    return f"{label} message in {msg.conversation_type} from {msg.sender_name}: {preview}"


class InboundPipeline:
    def __init__(
        self,
        providers: list[BaseProvider],
        pairing_store: PairingStore,
        agent: AgentInvoker,
        system_events: SystemEventSink,
        *,
        route_resolver: RouteResolver | None = None,
        conversation_store: ConversationStore | None = None,
        jobs: JobQueue | None = None,
        on_error: ErrorHook | None = None,
    ):
        self.providers = {p.name: p for p in providers}
        self.gate = AccessGate(pairing_store)
        self.agent = agent
        self.system_events = system_events
        self.route_resolver = route_resolver
        self.conversation_store = conversation_store
        self.jobs = jobs or JobQueue()
        self.on_error = on_error

    async def handle(
        self,
        envelope: InboundEnvelope,
        config: Config,
        cancel_event: asyncio.Event | None = None,
    ) -> PipelineResult:
        provider = self.providers.get(envelope.provider)
        if provider is None:
            logger.warning(f"No provider registered for {envelope.provider}, dropping event")
            return PipelineResult("unknown_provider")

        try:
            msg = provider.normalize(envelope.event, envelope.context)
        except NormalizationError as e:
            logger.warning(f"Dropping {provider.name} event: {e}")
            return PipelineResult("invalid")

        logger.info(
            f"{provider.name}: received message {msg.id} from {msg.sender_id} "
            f"in {msg.surface_kind}:{msg.conversation_id} text={truncate_string(msg.text, 50)!r}"
        )
        if not msg.text:
            logger.debug(f"{provider.name}: skipping empty message after stripping mentions")
            return PipelineResult("empty", message=msg)

        try:
            policy = provider.surface_policy(msg, config)
            route = self._resolver(config).resolve(provider.name, msg.surface_kind, msg.peer_id)
            # 配置未指定账号时，用事件所属的账号（多租户渠道）
            if envelope.context.account_id and route.account_id == DEFAULT_ACCOUNT_ID:
                route = replace(route, account_id=envelope.context.account_id)
        except Exception as e:
            logger.error(f"{provider.name}: failed to resolve policy/route for {msg.id}: {e}")
            return PipelineResult("error", message=msg)

        jobs = self._submit_side_jobs(provider, msg, policy, config)

        try:
            self.system_events.enqueue(
                inbound_summary(provider.label, msg),
                session_key=route.session_key,
                context_key=f"{provider.name}:message:{msg.conversation_id}:{msg.id or 'unknown'}",
            )
        except Exception as e:
            logger.error(f"{provider.name}: failed to enqueue system event: {e}")

        try:
            decision = await self.gate.evaluate(msg, policy)
        except Exception as e:
            logger.error(f"{provider.name}: access check failed for {msg.sender_id}: {e}")
            return PipelineResult("error", message=msg, route=route, jobs=jobs)

        result = PipelineResult("dropped", message=msg, route=route, decision=decision, jobs=jobs)
        if decision.outcome == "pairing_challenge":
            await self._send_pairing_reply(provider, msg, decision)
            result.outcome = "pairing"
            return result
        if decision.outcome == "drop":
            logger.debug(f"{provider.name}: dropping message {msg.id} ({decision.reason})")
            return result

        deliverer = provider.deliverer_for(msg)
        if deliverer is None:
            logger.warning(f"{provider.name}: no deliverer for {msg.conversation_id}, skipping dispatch")
            result.outcome = "no_deliverer"
            return result

        return await self._dispatch(provider, msg, route, deliverer, config, cancel_event, result)

    def _resolver(self, config: Config) -> RouteResolver:
        return self.route_resolver or ConfigRouteResolver(config)

    def _submit_side_jobs(
        self, provider: BaseProvider, msg: InboundMessage, policy: SurfacePolicy, config: Config
    ) -> list[asyncio.Task[Any]]:
        jobs: list[asyncio.Task[Any]] = []

        owner_ids = provider.owner_ids(config)
        if owner_ids:
            notifier = OwnerNotifier(provider.outbound)
            jobs.append(self.jobs.submit(
                notifier.notify_if_owner_mentioned(msg, owner_ids, msg.recipient_id, policy.require_mention),
                name=f"{provider.name}-owner-notify",
            ))

        if self.conversation_store is not None:
            reference = provider.conversation_reference(msg)
            if reference is not None:
                jobs.append(self.jobs.submit(
                    self._save_reference(msg.conversation_id, reference),
                    name=f"{provider.name}-conversation-save",
                ))
        return jobs

    async def _save_reference(self, conversation_id: str, reference: dict[str, Any]) -> None:
        try:
            await self.conversation_store.save(conversation_id, reference)
        except Exception as e:
            logger.debug(f"Failed to save conversation reference for {conversation_id}: {e}")

    async def _send_pairing_reply(
        self, provider: BaseProvider, msg: InboundMessage, decision: AccessDecision
    ) -> None:
        deliverer = provider.deliverer_for(msg)
        if deliverer is None:
            logger.warning(f"{provider.name}: cannot send pairing code to {msg.sender_id}, no deliverer")
            return
        text = pairing_reply_text(msg.sender_name, decision.code or "", decision.created)
        try:
            await deliverer.send(provider.reply_target(msg), text)
            logger.info(f"{provider.name}: sent pairing code to {msg.sender_id}")
        except Exception as e:
            logger.error(f"{provider.name}: failed to send pairing code to {msg.sender_id}: {e}")

    async def _dispatch(
        self,
        provider: BaseProvider,
        msg: InboundMessage,
        route: ResolvedRoute,
        deliverer: Deliverer,
        config: Config,
        cancel_event: asyncio.Event | None,
        result: PipelineResult,
    ) -> PipelineResult:
        target = provider.reply_target(msg)
        dispatcher = ReplyDispatcher(
            deliverer,
            target,
            resolve_text_chunk_limit(config, provider.name, provider.text_hard_limit),
            response_prefix=config.messages.response_prefix,
            on_error=self.on_error,
            cancel_event=cancel_event,
            typing_interval=config.messages.typing_interval,
            text_length=provider.measure_text,
        )
        result.dispatch = dispatcher.session
        ctx_payload = build_context_payload(provider, msg, route)

        logger.info(f"{provider.name}: dispatching to agent (session {route.session_key})")
        started = time.monotonic()
        try:
            await self.agent.dispatch(ctx_payload, dispatcher.enqueue)
        except asyncio.CancelledError:
            logger.warning(f"{provider.name}: dispatch for {route.session_key} cancelled")
            await dispatcher.abort()
            raise
        except Exception as e:
            failure = DispatchFailure(route.session_key, e)
            logger.error(f"{provider.name}: {failure}")
            await dispatcher.mark_dispatch_idle()
            result.outcome = "failed"
            if not dispatcher.session.started:
                await self._send_failure_notice(deliverer, target, e)
            return result

        await dispatcher.mark_dispatch_idle()
        session = dispatcher.session
        logger.info(
            f"{provider.name}: dispatch complete in {time.monotonic() - started:.2f}s "
            f"(queued_final={session.queued_final}, counts={session.counts})"
        )
        if session.queued_final:
            final_count = session.counts["final"]
            logger.debug(f"{provider.name}: delivered {final_count} final chunk(s) to {target}")
        result.outcome = "dispatched"
        return result

    async def _send_failure_notice(self, deliverer: Deliverer, target: str, err: BaseException) -> None:
        try:
            await deliverer.send(target, f"⚠️ Agent failed: {err}")
        except Exception as e:
            logger.debug(f"Failed to send failure notice to {target}: {e}")
