"""群主 @ 提醒。

群里有人 @ 了主人、却没有 @ 机器人时（机器人因此不会处理这条消息），
给第一个配置的主人发一条私信提醒。与主流程并行、尽力而为，失败只记日志。
"""

import json

from loguru import logger

from chatgate.bus.events import InboundMessage
from chatgate.errors import NotifierError
from chatgate.gateway.ports import Deliverer

PREVIEW_LIMIT = 500
NOTIFY_PREFIX = "[群聊提醒]"


def extract_preview_body(raw_text: str) -> str:
    """消息正文：优先解析 JSON 的 text 字段，解析失败时用原始字符串。"""
    try:
        parsed = json.loads(raw_text)
    except (TypeError, ValueError):
        return raw_text
    if isinstance(parsed, dict) and isinstance(parsed.get("text"), str):
        return parsed["text"]
    return raw_text


def should_notify_owner(
    msg: InboundMessage, owner_ids: list[str], bot_id: str | None, require_mention: bool
) -> bool:
    if not owner_ids:
        return False
    if msg.surface_kind != "group":
        return False
    if not require_mention:
        return False
    # 机器人被 @ 时消息会被正常处理，无需提醒
    if bot_id and bot_id in msg.mentioned_ids:
        return False
    return any(owner in msg.mentioned_ids for owner in owner_ids)


def build_notify_text(msg: InboundMessage) -> str:
    body = extract_preview_body(msg.raw_text or msg.text)
    return f"{NOTIFY_PREFIX} {msg.sender_id} @了你:\n{body[:PREVIEW_LIMIT]}"


class OwnerNotifier:
    def __init__(self, deliverer: Deliverer | None):
        self.deliverer = deliverer

    async def notify_if_owner_mentioned(
        self,
        msg: InboundMessage,
        owner_ids: list[str],
        bot_id: str | None,
        require_mention: bool = True,
    ) -> bool:
        """满足条件时发送提醒，返回是否成功发出。从不抛异常。"""
        if not should_notify_owner(msg, owner_ids, bot_id, require_mention):
            return False
        if self.deliverer is None:
            logger.warning(f"{msg.provider}: owner mentioned but no outbound deliverer configured")
            return False

        target = f"user:{owner_ids[0]}"
        try:
            await self.deliverer.send(target, build_notify_text(msg))
        except Exception as e:
            err = NotifierError(target, e)
            logger.error(f"{msg.provider}: failed to notify owner: {err}")
            return False
        logger.info(f"{msg.provider}: notified owner {owner_ids[0]} of mention in {msg.conversation_id}")
        return True
