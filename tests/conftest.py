"""共享测试替身。"""

import json

import pytest

from chatgate.bus.events import DeliveryReceipt, ReplyPayload
from chatgate.gateway.ports import PairingRequest


class RecordingDeliverer:
    """记录每次投递；fail_on 中的内容会抛异常。"""

    def __init__(self, fail_on: set[str] | None = None, fail_typing: bool = False):
        self.sent: list[tuple[str, str]] = []
        self.typing: list[str] = []
        self.fail_on = fail_on or set()
        self.fail_typing = fail_typing

    async def send(self, target: str, content: str) -> DeliveryReceipt:
        if content in self.fail_on:
            raise RuntimeError(f"boom: {content}")
        self.sent.append((target, content))
        return DeliveryReceipt(message_id=str(len(self.sent)))

    async def send_typing(self, target: str) -> None:
        if self.fail_typing:
            raise RuntimeError("typing down")
        self.typing.append(target)

    @property
    def contents(self) -> list[str]:
        return [c for _, c in self.sent]


class MemoryPairingStore:
    def __init__(self, allow_from: dict[str, list[str]] | None = None):
        self.allow_from = allow_from or {}
        self.codes: dict[tuple[str, str], str] = {}
        self.upserts = 0

    async def upsert_request(self, provider, id, meta=None):
        self.upserts += 1
        key = (provider, id)
        if key in self.codes:
            return PairingRequest(code=self.codes[key], created=False)
        code = f"CODE{len(self.codes) + 1:04d}"
        self.codes[key] = code
        return PairingRequest(code=code, created=True)

    async def read_allow_from(self, provider):
        return list(self.allow_from.get(provider, []))


class ScriptedAgent:
    """按顺序交出预设回复；error 不为空时在交完回复后抛出。"""

    def __init__(self, replies: list[ReplyPayload] | None = None, error: Exception | None = None):
        self.replies = replies or []
        self.error = error
        self.calls: list[dict] = []

    async def dispatch(self, ctx_payload, reply):
        self.calls.append(ctx_payload)
        for payload in self.replies:
            reply(payload, "final")
        if self.error is not None:
            raise self.error
        return {"ok": True}


class RecordingSystemEvents:
    def __init__(self):
        self.events: list[tuple[str, str, str | None]] = []

    def enqueue(self, text, *, session_key, context_key=None):
        self.events.append((text, session_key, context_key))


def teams_activity(
    *,
    text: str = "<at>Bot</at> hello there",
    conversation_type: str = "personal",
    conversation_id: str = "a:conv-1",
    sender_id: str = "29:user-1",
    aad_object_id: str | None = "aad-user-1",
    bot_id: str = "28:bot",
    mentions: list[str] | None = None,
    team_id: str | None = None,
    is_group: bool | None = None,
) -> dict:
    activity = {
        "id": "msg-1",
        "type": "message",
        "timestamp": "2026-01-05T09:30:00Z",
        "text": text,
        "from": {"id": sender_id, "name": "Alice", "aadObjectId": aad_object_id},
        "recipient": {"id": bot_id, "name": "Bot"},
        "conversation": {"id": conversation_id, "conversationType": conversation_type, "tenantId": "t-1"},
        "channelId": "msteams",
        "serviceUrl": "https://smba.example.com",
        "entities": [{"type": "mention", "mentioned": {"id": m, "name": m}} for m in (mentions or [])],
    }
    if is_group is not None:
        activity["conversation"]["isGroup"] = is_group
    if team_id:
        activity["channelData"] = {"team": {"id": team_id, "name": "Team"}}
    return activity


def feishu_event(
    *,
    chat_type: str = "group",
    mentions: list[str] | None = None,
    text: str = "@_user_1 请看一下这个问题",
    sender: str = "ou-colleague",
    chat_id: str = "oc-group",
) -> dict:
    return {
        "sender": {"sender_id": {"open_id": sender}},
        "message": {
            "message_id": "om-1",
            "chat_id": chat_id,
            "chat_type": chat_type,
            "message_type": "text",
            "content": json.dumps({"text": text}, ensure_ascii=False),
            "create_time": "1767605400000",
            "mentions": [
                {"key": f"@_user_{i + 1}", "id": {"open_id": m}, "name": m, "tenant_key": "t1"}
                for i, m in enumerate(mentions or [])
            ],
        },
    }


@pytest.fixture
def deliverer() -> RecordingDeliverer:
    return RecordingDeliverer()


@pytest.fixture
def pairing_store() -> MemoryPairingStore:
    return MemoryPairingStore()


@pytest.fixture
def system_events() -> RecordingSystemEvents:
    return RecordingSystemEvents()
