"""各渠道事件规范化。"""

import json

import pytest

from chatgate.bus.events import ProviderContext
from chatgate.channels.feishu import FeishuProvider
from chatgate.channels.msteams import MSTeamsProvider, strip_mention_tags
from chatgate.channels.telegram import TelegramProvider
from chatgate.errors import NormalizationError
from tests.conftest import feishu_event, teams_activity


class TestTeams:
    provider = MSTeamsProvider()

    def test_personal_conversation_is_dm(self):
        msg = self.provider.normalize(teams_activity(), ProviderContext())
        assert msg.surface_kind == "dm"
        assert msg.sender_id == "aad-user-1"
        assert msg.sender_name == "Alice"
        assert msg.text == "hello there"
        assert msg.recipient_id == "28:bot"
        assert msg.timestamp.year == 2026

    @pytest.mark.parametrize(
        "conversation_type, is_group, expected",
        [
            ("channel", None, "channel"),
            ("channel", True, "channel"),
            ("groupChat", None, "group"),
            ("personal", True, "group"),
            ("personal", None, "dm"),
        ],
    )
    def test_classification(self, conversation_type, is_group, expected):
        activity = teams_activity(conversation_type=conversation_type, is_group=is_group)
        assert self.provider.normalize(activity, ProviderContext()).surface_kind == expected

    def test_conversation_suffix_is_stripped(self):
        a = self.provider.normalize(
            teams_activity(conversation_id="19:abc@thread.tacv2;messageid=111"), ProviderContext()
        )
        b = self.provider.normalize(
            teams_activity(conversation_id="19:abc@thread.tacv2;messageid=222"), ProviderContext()
        )
        assert a.conversation_id == b.conversation_id == "19:abc@thread.tacv2"

    def test_sender_falls_back_to_from_id(self):
        msg = self.provider.normalize(teams_activity(aad_object_id=None), ProviderContext())
        assert msg.sender_id == "29:user-1"

    def test_mentions_collected_only_from_mention_entities(self):
        activity = teams_activity(mentions=["28:bot", "29:other"])
        activity["entities"].append({"type": "clientInfo", "mentioned": {"id": "29:ghost"}})
        msg = self.provider.normalize(activity, ProviderContext())
        assert msg.mentioned_ids == frozenset({"28:bot", "29:other"})
        assert msg.was_mentioned

    def test_mention_only_text_becomes_empty(self):
        msg = self.provider.normalize(teams_activity(text="<at>Bot</at>  "), ProviderContext())
        assert msg.text == ""

    def test_missing_sender_raises(self):
        activity = teams_activity()
        activity["from"] = {"name": "nobody"}
        with pytest.raises(NormalizationError):
            self.provider.normalize(activity, ProviderContext())

    def test_missing_conversation_raises(self):
        activity = teams_activity()
        del activity["conversation"]
        with pytest.raises(NormalizationError):
            self.provider.normalize(activity, ProviderContext())

    def test_invalid_payload_raises_normalization_error(self):
        with pytest.raises(NormalizationError):
            self.provider.normalize({"entities": "not-a-list"}, ProviderContext())

    def test_reply_handle_kept(self):
        handle = object()
        msg = self.provider.normalize(teams_activity(), ProviderContext(reply_handle=handle))
        assert msg.reply_handle is handle

    def test_strip_mention_tags_case_insensitive(self):
        assert strip_mention_tags("<AT>Bot</AT> hi <at>Bob</at>") == "hi"


class TestFeishu:
    provider = FeishuProvider()

    def test_group_message(self):
        msg = self.provider.normalize(
            feishu_event(mentions=["ou-owner"]), ProviderContext(bot_id="ou-bot")
        )
        assert msg.surface_kind == "group"
        assert msg.conversation_id == "oc-group"
        assert msg.sender_id == "ou-colleague"
        assert msg.text == "请看一下这个问题"
        assert msg.mentioned_ids == frozenset({"ou-owner"})
        assert not msg.was_mentioned
        assert json.loads(msg.raw_text)["text"].startswith("@_user_1")

    def test_double_digit_mention_keys_fully_removed(self):
        owners = [f"ou-{i}" for i in range(1, 11)]
        text = " ".join(f"@_user_{i}" for i in range(1, 11)) + " hello"
        msg = self.provider.normalize(feishu_event(mentions=owners, text=text), ProviderContext(bot_id="ou-bot"))
        assert msg.text == "hello"
        assert len(msg.mentioned_ids) == 10

    def test_p2p_is_dm(self):
        msg = self.provider.normalize(feishu_event(chat_type="p2p", text="hello"), ProviderContext())
        assert msg.surface_kind == "dm"
        assert msg.text == "hello"

    def test_bot_mention_detected(self):
        msg = self.provider.normalize(
            feishu_event(mentions=["ou-bot"]), ProviderContext(bot_id="ou-bot")
        )
        assert msg.was_mentioned

    def test_missing_sender_raises(self):
        event = feishu_event()
        event["sender"] = {"sender_id": {}}
        with pytest.raises(NormalizationError):
            self.provider.normalize(event, ProviderContext())

    def test_non_json_content_used_verbatim(self):
        event = feishu_event(chat_type="p2p")
        event["message"]["content"] = "plain text"
        msg = self.provider.normalize(event, ProviderContext())
        assert msg.text == "plain text"


class TestTelegram:
    provider = TelegramProvider()

    def _update(self, chat_type="private", text="hi", entities=None, with_from=True):
        message = {
            "message_id": 7,
            "date": 1767605400,
            "chat": {"id": -100123 if chat_type != "private" else 42, "type": chat_type, "title": "G"},
            "text": text,
            "entities": entities or [],
        }
        if with_from:
            message["from"] = {"id": 42, "is_bot": False, "first_name": "Ann", "username": "ann"}
        key = "channel_post" if chat_type == "channel" else "message"
        return {"update_id": 1, key: message}

    @pytest.mark.parametrize(
        "chat_type, expected",
        [("private", "dm"), ("group", "group"), ("supergroup", "group"), ("channel", "channel")],
    )
    def test_classification(self, chat_type, expected):
        update = self._update(chat_type=chat_type)
        if chat_type == "channel":
            update["channel_post"]["sender_chat"] = {"id": -100123, "type": "channel", "title": "News"}
        msg = self.provider.normalize(update, ProviderContext(bot_id="@MyBot"))
        assert msg.surface_kind == expected

    def test_bot_mention_stripped_with_utf16_offsets(self):
        text = "😀 @mybot status please"
        # 😀 占两个 UTF-16 码元
        entities = [{"type": "mention", "offset": 3, "length": 6}]
        msg = self.provider.normalize(
            self._update(chat_type="group", text=text, entities=entities),
            ProviderContext(bot_id="@MyBot"),
        )
        assert msg.was_mentioned
        assert msg.mentioned_ids == frozenset({"@mybot"})
        assert msg.text == "😀  status please"

    def test_other_mentions_kept_in_text(self):
        entities = [{"type": "mention", "offset": 0, "length": 6}]
        msg = self.provider.normalize(
            self._update(chat_type="group", text="@alice look", entities=entities),
            ProviderContext(bot_id="@mybot"),
        )
        assert not msg.was_mentioned
        assert msg.text == "@alice look"

    def test_message_without_sender_raises(self):
        with pytest.raises(NormalizationError):
            self.provider.normalize(self._update(with_from=False), ProviderContext())

    def test_text_measured_in_utf16_units(self):
        assert self.provider.measure_text("\U0001F600") == 2
        assert self.provider.measure_text("abc") == 3
        assert FeishuProvider().measure_text("\U0001F600") == 1

    def test_update_without_message_raises(self):
        with pytest.raises(NormalizationError):
            self.provider.normalize({"update_id": 3}, ProviderContext())
