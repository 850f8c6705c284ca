"""回复调度器。

一次 agent 调用对应一个 ReplyDispatcher：

1. agent 通过 ``enqueue`` 逐条交回复（同步调用，立即返回）。
2. 后台 worker 严格按顺序投递：文本先按上限分块，再逐个发送媒体 URL。
3. 首次入队时启动"正在输入"提示，每隔 typing_interval 秒刷新一次，直到空闲。
4. 单块失败交给 on_error，不影响后续分块。
"""

import asyncio
import inspect
from dataclasses import dataclass, field

from loguru import logger

from chatgate.bus.events import ReplyKind, ReplyPayload
from chatgate.errors import DeliveryError
from chatgate.gateway.chunking import SILENT_REPLY_TOKEN, TextLength, chunk_markdown_text, is_silent_reply
from chatgate.gateway.ports import Deliverer, ErrorHook


@dataclass
class DispatchSession:
    """一次调用内的投递簿记。"""

    queued_final: bool = False
    counts: dict[str, int] = field(default_factory=lambda: {"interim": 0, "final": 0})
    failures: int = 0
    idle: bool = True
    started: bool = False


class ReplyDispatcher:
    def __init__(
        self,
        deliverer: Deliverer,
        target: str,
        chunk_limit: int,
        *,
        response_prefix: str | None = None,
        on_error: ErrorHook | None = None,
        cancel_event: asyncio.Event | None = None,
        typing_interval: float = 6.0,
        text_length: TextLength = len,
    ):
        self.deliverer = deliverer
        self.target = target
        self.chunk_limit = chunk_limit
        self.response_prefix = response_prefix
        self.on_error = on_error
        self.cancel_event = cancel_event
        self.typing_interval = typing_interval
        self.text_length = text_length
        self.session = DispatchSession()
        self._queue: asyncio.Queue[tuple[ReplyPayload, ReplyKind]] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None
        self._typing_task: asyncio.Task[None] | None = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def enqueue(self, payload: ReplyPayload, kind: ReplyKind = "final") -> bool:
        """接收一条回复；空回复、静默回复或已取消时返回 False。"""
        if self.cancelled:
            logger.debug(f"Dispatch to {self.target} cancelled, ignoring {kind} reply")
            return False
        if payload.is_empty:
            return False
        if is_silent_reply(payload.text) and not payload.media_urls:
            return False

        self.session.idle = False
        if not self.session.started:
            self.session.started = True
            self._start_typing()
        if self._worker is None:
            self._worker = asyncio.create_task(self._run())
        self._queue.put_nowait((self._apply_prefix(payload), kind))
        return True

    def _apply_prefix(self, payload: ReplyPayload) -> ReplyPayload:
        text = payload.text or ""
        if not self.response_prefix or not text.strip() or is_silent_reply(text):
            return payload
        if text.startswith(self.response_prefix):
            return payload
        return ReplyPayload(text=f"{self.response_prefix} {text}", media_urls=list(payload.media_urls))

    def render(self, payload: ReplyPayload) -> list[str]:
        """把一条回复展开成按顺序投递的内容列表。"""
        contents: list[str] = []
        text = payload.text or ""
        if text.strip() and not is_silent_reply(text):
            for chunk in chunk_markdown_text(text, self.chunk_limit, self.text_length):
                if not chunk.strip() or chunk.strip() == SILENT_REPLY_TOKEN:
                    continue
                # 只去掉首部空行和尾部空白，代码缩进要保留
                contents.append(chunk.lstrip("\n").rstrip())
        contents.extend(url for url in payload.media_urls if url)
        return contents

    async def _run(self) -> None:
        while True:
            payload, kind = await self._queue.get()
            try:
                await self._deliver(payload, kind)
            except Exception as e:
                logger.error(f"Unexpected dispatcher error for {self.target}: {e}")
            finally:
                self._queue.task_done()

    async def _deliver(self, payload: ReplyPayload, kind: ReplyKind) -> None:
        for content in self.render(payload):
            if self.cancelled:
                logger.info(f"Dispatch to {self.target} cancelled, skipping remaining chunks")
                return
            self.session.counts[kind] = self.session.counts.get(kind, 0) + 1
            if kind == "final":
                self.session.queued_final = True
            try:
                await self.deliverer.send(self.target, content)
            except Exception as e:
                self.session.failures += 1
                await self._report(DeliveryError(kind, self.target, e), kind)

    async def _report(self, err: DeliveryError, kind: ReplyKind) -> None:
        logger.error(f"{kind} reply to {self.target} failed: {err.cause}")
        if self.on_error is None:
            return
        try:
            result = self.on_error(err, {"kind": kind})
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"on_error hook failed: {e}")

    def _start_typing(self) -> None:
        self._typing_task = asyncio.create_task(self._typing_loop())

    async def _typing_loop(self) -> None:
        while not self.cancelled:
            try:
                await self.deliverer.send_typing(self.target)
            except Exception as e:
                # typing 失败不能影响回复
                logger.debug(f"Typing indicator for {self.target} failed: {e}")
            if self.typing_interval <= 0:
                return
            await asyncio.sleep(self.typing_interval)

    async def wait_for_idle(self) -> None:
        await self._queue.join()

    async def mark_dispatch_idle(self) -> None:
        """等待队列清空，然后停止 typing 与 worker。"""
        await self.wait_for_idle()
        await self.abort()

    async def abort(self) -> None:
        """不等队列，直接停止 typing 与 worker；未投递的回复丢弃。"""
        for task in (self._typing_task, self._worker):
            if task is not None and not task.done():
                task.cancel()
        for task in (self._typing_task, self._worker):
            if task is not None:
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._typing_task = None
        self._worker = None
        self.session.idle = True
