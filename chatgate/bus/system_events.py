"""系统事件队列。

每条入站消息都会生成一条简短摘要，按会话键排队，供 agent 在下一轮读取。
宿主通常在每轮调用 agent 前 drain 对应会话；没人读取的会话超过 max_sessions 时，
最久未更新的会话整体丢弃。
"""

from collections import OrderedDict, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone

from loguru import logger

MAX_EVENTS_PER_SESSION = 20
MAX_SESSIONS = 1000


@dataclass
class SystemEvent:
    text: str
    context_key: str | None = None
    ts: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class SystemEventQueue:
    """In-memory SystemEventSink."""

    def __init__(self, max_events: int = MAX_EVENTS_PER_SESSION, max_sessions: int = MAX_SESSIONS):
        self.max_events = max_events
        self.max_sessions = max_sessions
        self._queues: OrderedDict[str, deque[SystemEvent]] = OrderedDict()

    def enqueue(self, text: str, *, session_key: str, context_key: str | None = None) -> None:
        cleaned = text.strip()
        if not cleaned or not session_key:
            return
        queue = self._queues.get(session_key)
        if queue is None:
            queue = self._queues[session_key] = deque(maxlen=self.max_events)
            while len(self._queues) > self.max_sessions:
                evicted, _ = self._queues.popitem(last=False)
                logger.debug(f"System events for {evicted} evicted (session cap {self.max_sessions})")
        else:
            self._queues.move_to_end(session_key)
        # 连续重复的摘要只保留一条
        if queue and queue[-1].text == cleaned:
            return
        queue.append(SystemEvent(text=cleaned, context_key=context_key))

    def peek(self, session_key: str) -> list[SystemEvent]:
        return list(self._queues.get(session_key, ()))

    def drain(self, session_key: str) -> list[SystemEvent]:
        queue = self._queues.pop(session_key, None)
        return list(queue) if queue else []

    def has_events(self, session_key: str) -> bool:
        return bool(self._queues.get(session_key))
