"""Telegram 渠道：Bot API 更新的规范化、投递与轮询接入。"""

import asyncio
import re
from datetime import datetime, timezone
from typing import Any

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field
from telegram import Bot, Update
from telegram.constants import ChatAction, ParseMode
from telegram.error import BadRequest
from telegram.ext import Application, ContextTypes, MessageHandler, filters

from chatgate.bus.events import DeliveryReceipt, InboundMessage, ProviderContext
from chatgate.bus.queue import MessageBus
from chatgate.channels.base import BaseProvider, BaseTransport
from chatgate.config.schema import TelegramConfig
from chatgate.errors import NormalizationError
from chatgate.utils.helpers import parse_timestamp, utf16_len


class _TelegramModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class TelegramUser(_TelegramModel):
    id: int
    is_bot: bool = False
    first_name: str = ""
    last_name: str | None = None
    username: str | None = None


class TelegramChat(_TelegramModel):
    id: int
    type: str = "private"  # private | group | supergroup | channel
    title: str | None = None
    username: str | None = None


class TelegramEntity(_TelegramModel):
    type: str
    offset: int
    length: int
    user: TelegramUser | None = None


class TelegramMessage(_TelegramModel):
    message_id: int
    date: int | None = None
    chat: TelegramChat
    from_: TelegramUser | None = Field(default=None, alias="from")
    sender_chat: TelegramChat | None = None
    text: str | None = None
    caption: str | None = None
    entities: list[TelegramEntity] = Field(default_factory=list)
    caption_entities: list[TelegramEntity] = Field(default_factory=list)


class TelegramUpdate(_TelegramModel):
    update_id: int = 0
    message: TelegramMessage | None = None
    edited_message: TelegramMessage | None = None
    channel_post: TelegramMessage | None = None


def _entity_text(text: str, entity: TelegramEntity) -> str:
    """实体偏移以 UTF-16 码元计。"""
    encoded = text.encode("utf-16-le")
    start, end = entity.offset * 2, (entity.offset + entity.length) * 2
    return encoded[start:end].decode("utf-16-le", errors="ignore")


def _strip_entities(text: str, entities: list[TelegramEntity]) -> str:
    encoded = text.encode("utf-16-le")
    for entity in sorted(entities, key=lambda e: e.offset, reverse=True):
        start, end = entity.offset * 2, (entity.offset + entity.length) * 2
        encoded = encoded[:start] + encoded[end:]
    return encoded.decode("utf-16-le", errors="ignore")


def _display_name(user: TelegramUser) -> str:
    name = " ".join(p for p in (user.first_name, user.last_name) if p)
    return name or user.username or str(user.id)


class TelegramProvider(BaseProvider):
    name = "telegram"
    label = "Telegram"
    text_hard_limit = 4000  # Bot API 上限 4096，预留 HTML 转义余量

    def measure_text(self, text: str) -> int:
        # Bot API 的长度按 UTF-16 码元计
        return utf16_len(text)

    def normalize(self, raw_event: Any, ctx: ProviderContext) -> InboundMessage:
        update: TelegramUpdate = self.parse_event(TelegramUpdate, raw_event)
        message = update.message or update.edited_message or update.channel_post
        if message is None:
            raise NormalizationError("telegram: update without message")

        chat = message.chat
        if chat.type == "channel":
            surface = "channel"
        elif chat.type in ("group", "supergroup"):
            surface = "group"
        else:
            surface = "dm"

        if message.from_ is not None:
            sender_id, sender_name = str(message.from_.id), _display_name(message.from_)
        elif message.sender_chat is not None:
            sender_id = str(message.sender_chat.id)
            sender_name = message.sender_chat.title or sender_id
        else:
            raise NormalizationError("telegram: message without sender")

        raw_text = message.text if message.text is not None else (message.caption or "")
        entities = message.entities if message.text is not None else message.caption_entities
        bot_id = ctx.bot_id.lower() if ctx.bot_id else None

        mentioned: set[str] = set()
        bot_mentions: list[TelegramEntity] = []
        for entity in entities:
            if entity.type == "mention":
                handle = _entity_text(raw_text, entity).lower()
                mentioned.add(handle)
                if handle == bot_id:
                    bot_mentions.append(entity)
            elif entity.type == "text_mention" and entity.user is not None:
                mentioned.add(str(entity.user.id))

        return InboundMessage(
            provider=self.name,
            id=str(message.message_id),
            surface_kind=surface,
            conversation_id=str(chat.id),
            sender_id=sender_id,
            sender_name=sender_name,
            text=_strip_entities(raw_text, bot_mentions).strip(),
            mentioned_ids=frozenset(mentioned),
            timestamp=parse_timestamp(message.date) or datetime.now(timezone.utc),
            recipient_id=bot_id,
            conversation_type=chat.type,
            raw_text=raw_text,
            raw=update,
            reply_handle=ctx.reply_handle,
        )

    def mention_scopes(self, msg: InboundMessage, section: TelegramConfig) -> list[bool | None]:
        group_cfg = section.groups.get(msg.conversation_id)
        return [group_cfg.require_mention if group_cfg else None]

    def reply_target(self, msg: InboundMessage) -> str:
        return f"chat:{msg.conversation_id}"


def _markdown_to_telegram_html(text: str) -> str:
    """把常见 markdown 转成 Telegram 支持的 HTML 子集。"""
    if not text:
        return ""

    # 先抽出代码，避免后续替换误伤
    code_blocks: list[str] = []

    def save_code_block(m: re.Match) -> str:
        code_blocks.append(m.group(1))
        return f"\x00CB{len(code_blocks) - 1}\x00"

    text = re.sub(r"```[\w]*\n?([\s\S]*?)```", save_code_block, text)

    inline_codes: list[str] = []

    def save_inline_code(m: re.Match) -> str:
        inline_codes.append(m.group(1))
        return f"\x00IC{len(inline_codes) - 1}\x00"

    text = re.sub(r"`([^`]+)`", save_inline_code, text)

    text = re.sub(r"^#{1,6}\s+(.+)$", r"\1", text, flags=re.MULTILINE)
    text = re.sub(r"^>\s*(.*)$", r"\1", text, flags=re.MULTILINE)
    text = _escape_html(text)
    text = re.sub(r"\[([^\]]+)\]\(([^)]+)\)", r'<a href="\2">\1</a>', text)
    text = re.sub(r"\*\*(.+?)\*\*", r"<b>\1</b>", text)
    text = re.sub(r"__(.+?)__", r"<b>\1</b>", text)
    text = re.sub(r"(?<![a-zA-Z0-9])_([^_]+)_(?![a-zA-Z0-9])", r"<i>\1</i>", text)
    text = re.sub(r"~~(.+?)~~", r"<s>\1</s>", text)
    text = re.sub(r"^[-*]\s+", "• ", text, flags=re.MULTILINE)

    for i, code in enumerate(inline_codes):
        text = text.replace(f"\x00IC{i}\x00", f"<code>{_escape_html(code)}</code>")
    for i, code in enumerate(code_blocks):
        text = text.replace(f"\x00CB{i}\x00", f"<pre><code>{_escape_html(code)}</code></pre>")

    return text


def _escape_html(text: str) -> str:
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def _chat_id(target: str) -> int | str:
    value = target.partition(":")[2] or target
    try:
        return int(value)
    except ValueError:
        return value  # @channelusername


class TelegramDeliverer:
    def __init__(self, bot: Bot):
        self.bot = bot

    @classmethod
    def from_config(cls, config: TelegramConfig) -> "TelegramDeliverer":
        return cls(Bot(token=config.token))

    async def send(self, target: str, content: str) -> DeliveryReceipt | None:
        chat_id = _chat_id(target)
        try:
            sent = await self.bot.send_message(
                chat_id=chat_id,
                text=_markdown_to_telegram_html(content),
                parse_mode=ParseMode.HTML,
            )
        except BadRequest as e:
            # HTML 解析失败时退回纯文本
            logger.warning(f"HTML parse failed, falling back to plain text: {e}")
            sent = await self.bot.send_message(chat_id=chat_id, text=content)
        return DeliveryReceipt(message_id=str(sent.message_id), conversation_id=str(sent.chat_id))

    async def send_typing(self, target: str) -> None:
        await self.bot.send_chat_action(chat_id=_chat_id(target), action=ChatAction.TYPING)


class TelegramTransport(BaseTransport):
    """长轮询接入，把更新原样投到总线。"""

    name = "telegram"

    def __init__(self, config: TelegramConfig, bus: MessageBus):
        super().__init__(bus)
        self.config = config
        self._app: Application | None = None
        self._bot_handle: str | None = None

    @property
    def bot(self) -> Bot | None:
        return self._app.bot if self._app else None

    async def start(self) -> None:
        if not self.config.token:
            logger.error("Telegram bot token not configured")
            return

        self._running = True
        builder = Application.builder().token(self.config.token)
        if self.config.proxy:
            builder = builder.proxy(self.config.proxy).get_updates_proxy(self.config.proxy)
        self._app = builder.build()
        self._app.add_handler(
            MessageHandler(
                (filters.TEXT | filters.CAPTION) & ~filters.COMMAND,
                self._on_message,
            )
        )

        logger.info("Starting Telegram bot (polling mode)...")
        await self._app.initialize()
        await self._app.start()

        bot_info = await self._app.bot.get_me()
        self._bot_handle = f"@{bot_info.username}".lower()
        logger.info(f"Telegram bot {self._bot_handle} connected")

        await self._app.updater.start_polling(
            allowed_updates=["message", "edited_message", "channel_post"],
            drop_pending_updates=True,
        )

        while self._running:
            await asyncio.sleep(1)

    async def stop(self) -> None:
        self._running = False
        if self._app:
            logger.info("Stopping Telegram bot...")
            await self._app.updater.stop()
            await self._app.stop()
            await self._app.shutdown()
            self._app = None

    async def _on_message(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        await self._publish(update.to_dict(), ProviderContext(bot_id=self._bot_handle))
