"""外部协作方接口。

网关核心只依赖这些协议；持久化、agent 执行与渠道 SDK 都由宿主注入。
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Literal, Protocol

from chatgate.bus.events import DeliveryReceipt, ReplyKind, ReplyPayload

PeerKind = Literal["dm", "group", "channel"]


@dataclass(frozen=True)
class PairingRequest:
    code: str
    created: bool


@dataclass(frozen=True)
class ResolvedRoute:
    session_key: str
    account_id: str
    agent_id: str = "main"


class PairingStore(Protocol):
    """配对码与动态白名单存储。

    ``upsert_request`` 必须是原子的 get-or-create：同一 ``(provider, id)``
    最多只有一个有效配对码，重复请求返回已有的码。
    """

    async def upsert_request(
        self, provider: str, id: str, meta: dict[str, str] | None = None
    ) -> PairingRequest: ...

    async def read_allow_from(self, provider: str) -> list[str]: ...


class RouteResolver(Protocol):
    """相同 ``(provider, peer_kind, peer_id)`` 在配置不变时必须得到相同的 session_key。"""

    def resolve(self, provider: str, peer_kind: PeerKind, peer_id: str) -> ResolvedRoute: ...


class Deliverer(Protocol):
    """渠道投递。target 使用渠道无关的寻址：``user:<id>``、``chat:<id>``、``conversation:<id>``。"""

    async def send(self, target: str, content: str) -> DeliveryReceipt | None: ...

    async def send_typing(self, target: str) -> None: ...


ReplyCallback = Callable[[ReplyPayload, ReplyKind], bool]


class AgentInvoker(Protocol):
    """执行一次 agent 回合，通过 ``reply`` 回调逐条产出回复。"""

    async def dispatch(self, ctx_payload: dict[str, Any], reply: ReplyCallback) -> Any: ...


class ConversationStore(Protocol):
    async def save(self, conversation_id: str, reference: dict[str, Any]) -> None: ...


class SystemEventSink(Protocol):
    def enqueue(self, text: str, *, session_key: str, context_key: str | None = None) -> None: ...


ErrorHook = Callable[[BaseException, dict[str, Any]], Awaitable[None] | None]
