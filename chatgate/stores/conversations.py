"""会话引用存储，供主动消息使用。"""

import asyncio
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from loguru import logger

from chatgate.utils.helpers import ensure_dir, get_data_path

MAX_CONVERSATIONS = 1000


class JsonConversationStore:
    """``{"version": 1, "conversations": {id: reference}}``，超过上限时淘汰最久未见的。"""

    def __init__(self, path: Path | None = None, max_entries: int = MAX_CONVERSATIONS):
        self.path = path or get_data_path() / "conversations.json"
        ensure_dir(self.path.parent)
        self.max_entries = max_entries
        self._lock = asyncio.Lock()

    def _load(self) -> dict[str, dict[str, Any]]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Failed to load conversation store {self.path}: {e}")
            return {}
        conversations = data.get("conversations") if isinstance(data, dict) else None
        return conversations if isinstance(conversations, dict) else {}

    def _write(self, conversations: dict[str, dict[str, Any]]) -> None:
        tmp = self.path.with_suffix(".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump({"version": 1, "conversations": conversations}, f, indent=2, ensure_ascii=False)
        tmp.replace(self.path)

    async def save(self, conversation_id: str, reference: dict[str, Any]) -> None:
        async with self._lock:
            conversations = self._load()
            conversations[conversation_id] = {
                **reference,
                "last_seen_at": datetime.now(timezone.utc).isoformat(),
            }
            if len(conversations) > self.max_entries:
                ordered = sorted(conversations.items(), key=lambda kv: kv[1].get("last_seen_at", ""))
                conversations = dict(ordered[-self.max_entries:])
            self._write(conversations)

    async def get(self, conversation_id: str) -> dict[str, Any] | None:
        async with self._lock:
            return self._load().get(conversation_id)

    async def list_all(self) -> list[tuple[str, dict[str, Any]]]:
        async with self._lock:
            return list(self._load().items())

    async def remove(self, conversation_id: str) -> bool:
        async with self._lock:
            conversations = self._load()
            if conversations.pop(conversation_id, None) is None:
                return False
            self._write(conversations)
            return True
