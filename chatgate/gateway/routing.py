"""会话路由。

会话键格式：
- 私聊，dm_scope=main：``agent:<agentId>:main``（同一 agent 的所有私聊共享主会话）
- 私聊，dm_scope=per-peer：``agent:<agentId>:<provider>:dm:<peerId>``
- 群/频道：``agent:<agentId>:<provider>:<peerKind>:<peerId>``

只依赖配置快照，没有可变状态，因此同一输入总是得到同一会话键。
"""

from chatgate.config.schema import Config, RouteBinding
from chatgate.gateway.ports import PeerKind, ResolvedRoute

DEFAULT_ACCOUNT_ID = "default"


def build_session_key(agent_id: str, provider: str, peer_kind: PeerKind, peer_id: str, dm_scope: str) -> str:
    agent = agent_id.strip().lower() or "main"
    if peer_kind == "dm" and dm_scope == "main":
        return f"agent:{agent}:main"
    return f"agent:{agent}:{provider.lower()}:{peer_kind}:{peer_id.strip()}"


class ConfigRouteResolver:
    """按 routing.bindings 解析；精确 peer_id 绑定优先于仅按类型的绑定。"""

    def __init__(self, config: Config):
        self.config = config

    def _match(self, provider: str, peer_kind: PeerKind, peer_id: str) -> RouteBinding | None:
        fallback: RouteBinding | None = None
        for binding in self.config.routing.bindings:
            if binding.provider.lower() != provider.lower():
                continue
            if binding.peer_kind is not None and binding.peer_kind != peer_kind:
                continue
            if binding.peer_id:
                if binding.peer_id == peer_id:
                    return binding
                continue
            if fallback is None:
                fallback = binding
        return fallback

    def resolve(self, provider: str, peer_kind: PeerKind, peer_id: str) -> ResolvedRoute:
        routing = self.config.routing
        binding = self._match(provider, peer_kind, peer_id)
        agent_id = binding.agent_id if binding else routing.default_agent

        section = self.config.provider_section(provider)
        account_id = (
            (binding.account_id if binding else None)
            or (section.account_id if section else None)
            or DEFAULT_ACCOUNT_ID
        )
        return ResolvedRoute(
            session_key=build_session_key(agent_id, provider, peer_kind, peer_id, routing.dm_scope),
            account_id=account_id,
            agent_id=agent_id,
        )
