import itertools
import json

import pytest

from chatgate.bus.events import InboundMessage
from chatgate.gateway.notifier import (
    PREVIEW_LIMIT,
    OwnerNotifier,
    build_notify_text,
    extract_preview_body,
    should_notify_owner,
)
from tests.conftest import RecordingDeliverer

OWNER = "ou-owner"
BOT = "ou-bot"


def _msg(
    *,
    surface_kind: str = "group",
    mentioned: tuple[str, ...] = (OWNER,),
    raw_text: str | None = None,
) -> InboundMessage:
    return InboundMessage(
        provider="feishu",
        id="om-1",
        surface_kind=surface_kind,
        conversation_id="oc-group",
        sender_id="ou-colleague",
        sender_name="ou-colleague",
        text="请看一下这个问题",
        mentioned_ids=frozenset(mentioned),
        recipient_id=BOT,
        raw_text=raw_text if raw_text is not None else json.dumps({"text": "@_user_1 请看一下这个问题"}),
    )


@pytest.mark.parametrize(
    "is_group, owner_mentioned, bot_mentioned, require_mention",
    list(itertools.product([True, False], repeat=4)),
)
def test_should_notify_matrix(is_group, owner_mentioned, bot_mentioned, require_mention):
    mentioned = tuple(m for m, on in ((OWNER, owner_mentioned), (BOT, bot_mentioned)) if on)
    msg = _msg(surface_kind="group" if is_group else "dm", mentioned=mentioned)
    expected = is_group and owner_mentioned and not bot_mentioned and require_mention
    assert should_notify_owner(msg, [OWNER], BOT, require_mention) is expected


def test_no_owners_never_notifies():
    assert not should_notify_owner(_msg(), [], BOT, True)


def test_any_owner_mentioned_counts():
    msg = _msg(mentioned=("ou-second",))
    assert should_notify_owner(msg, [OWNER, "ou-second"], BOT, True)


def test_notify_text_uses_json_text_field():
    assert build_notify_text(_msg()) == "[群聊提醒] ou-colleague @了你:\n@_user_1 请看一下这个问题"


def test_notify_text_falls_back_to_raw_string():
    assert build_notify_text(_msg(raw_text="not json")).endswith("@了你:\nnot json")


def test_preview_truncated():
    body = "x" * (PREVIEW_LIMIT + 100)
    text = build_notify_text(_msg(raw_text=json.dumps({"text": body})))
    assert text.endswith("\n" + "x" * PREVIEW_LIMIT)


@pytest.mark.parametrize("raw", ["[1, 2]", '{"text": 5}', "42"])
def test_extract_preview_body_non_text_json(raw):
    assert extract_preview_body(raw) == raw


@pytest.mark.asyncio
async def test_notifies_first_owner(deliverer):
    sent = await OwnerNotifier(deliverer).notify_if_owner_mentioned(_msg(), [OWNER, "ou-other"], BOT)
    assert sent
    assert deliverer.sent == [(f"user:{OWNER}", "[群聊提醒] ou-colleague @了你:\n@_user_1 请看一下这个问题")]


@pytest.mark.asyncio
async def test_bot_mentioned_skips(deliverer):
    sent = await OwnerNotifier(deliverer).notify_if_owner_mentioned(
        _msg(mentioned=(OWNER, BOT)), [OWNER], BOT
    )
    assert not sent
    assert deliverer.sent == []


@pytest.mark.asyncio
async def test_send_failure_is_swallowed():
    failing = RecordingDeliverer(fail_on={"[群聊提醒] ou-colleague @了你:\n@_user_1 请看一下这个问题"})
    sent = await OwnerNotifier(failing).notify_if_owner_mentioned(_msg(), [OWNER], BOT)
    assert not sent


@pytest.mark.asyncio
async def test_without_deliverer_is_noop():
    assert not await OwnerNotifier(None).notify_if_owner_mentioned(_msg(), [OWNER], BOT)
