"""配置模型。"""

from typing import Literal

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DmPolicy = Literal["open", "pairing", "disabled"]


class ProviderConfigBase(BaseModel):
    """各渠道共享的访问策略字段。"""
    enabled: bool = False
    dm_policy: DmPolicy = "pairing"
    allow_from: list[str] = Field(default_factory=list)  # 静态白名单，"*" 表示全部放行
    require_mention: bool | None = None  # 群/频道是否必须 @ 机器人；None 交给下一级
    text_chunk_limit: int | None = None
    account_id: str | None = None

    @field_validator("allow_from", mode="before")
    @classmethod
    def _stringify_allow_from(cls, value):
        if value is None:
            return []
        return [str(v) for v in value]


class MentionScopeConfig(BaseModel):
    """单个群或频道的覆盖配置。"""
    require_mention: bool | None = None


class TeamConfig(BaseModel):
    """Teams team 级配置，可再按频道覆盖。"""
    require_mention: bool | None = None
    channels: dict[str, MentionScopeConfig] = Field(default_factory=dict)


class WebhookConfig(BaseModel):
    port: int = 3978
    path: str = "/api/messages"


class MSTeamsConfig(ProviderConfigBase):
    app_id: str = ""
    app_password: str = ""
    tenant_id: str = ""
    webhook: WebhookConfig = Field(default_factory=WebhookConfig)
    teams: dict[str, TeamConfig] = Field(default_factory=dict)


class FeishuConfig(ProviderConfigBase):
    app_id: str = ""  # App ID from Feishu Open Platform
    app_secret: str = ""
    domain: str = "https://open.feishu.cn"  # Lark 国际版用 https://open.larksuite.com
    owner_open_id: str | list[str] | None = None  # 群内被 @ 时私信提醒的主人
    groups: dict[str, MentionScopeConfig] = Field(default_factory=dict)

    @property
    def owner_open_ids(self) -> list[str]:
        if not self.owner_open_id:
            return []
        if isinstance(self.owner_open_id, str):
            return [self.owner_open_id]
        return [o for o in self.owner_open_id if o]


class TelegramConfig(ProviderConfigBase):
    token: str = ""  # Bot token from @BotFather
    proxy: str | None = None  # e.g. "http://127.0.0.1:7890" or "socks5://127.0.0.1:1080"
    groups: dict[str, MentionScopeConfig] = Field(default_factory=dict)


class ChannelsConfig(BaseModel):
    msteams: MSTeamsConfig = Field(default_factory=MSTeamsConfig)
    feishu: FeishuConfig = Field(default_factory=FeishuConfig)
    telegram: TelegramConfig = Field(default_factory=TelegramConfig)


class MessagesConfig(BaseModel):
    text_chunk_limit: int = 4000
    response_prefix: str | None = None
    typing_interval: float = 6.0  # 秒


class RouteBinding(BaseModel):
    """把某个对端固定路由到指定 agent/账号。peer_id 为空表示匹配该类型全部对端。"""
    provider: str
    peer_kind: Literal["dm", "group", "channel"] | None = None
    peer_id: str | None = None
    agent_id: str
    account_id: str | None = None


class RoutingConfig(BaseModel):
    default_agent: str = "main"
    dm_scope: Literal["main", "per-peer"] = "main"
    bindings: list[RouteBinding] = Field(default_factory=list)


class Config(BaseSettings):
    """根配置。一次加载即一个快照，按调用传入管道。"""

    model_config = SettingsConfigDict(env_prefix="CHATGATE_", env_nested_delimiter="__")

    channels: ChannelsConfig = Field(default_factory=ChannelsConfig)
    messages: MessagesConfig = Field(default_factory=MessagesConfig)
    routing: RoutingConfig = Field(default_factory=RoutingConfig)

    def provider_section(self, provider: str) -> ProviderConfigBase | None:
        """按渠道名取对应配置段。"""
        return getattr(self.channels, provider, None)
