"""后台任务队列：尽力而为、失败只记日志、调用方从不等待。

会话引用保存、群主提醒等副作用都通过这里提交，保证主路径不被它们阻塞。
"""

import asyncio
from typing import Any, Coroutine

from loguru import logger


class JobQueue:
    """Detached asyncio tasks with logged failures."""

    def __init__(self) -> None:
        self._tasks: dict[str, asyncio.Task[Any]] = {}
        self._seq = 0

    def submit(self, coro: Coroutine[Any, Any, Any], name: str = "job") -> asyncio.Task[Any]:
        """提交一个协程，立即返回对应的 Task。"""
        self._seq += 1
        job_id = f"{name}#{self._seq}"
        task = asyncio.create_task(coro, name=job_id)
        self._tasks[job_id] = task
        task.add_done_callback(lambda t: self._on_done(job_id, t))
        return task

    def _on_done(self, job_id: str, task: asyncio.Task[Any]) -> None:
        self._tasks.pop(job_id, None)
        if task.cancelled():
            logger.debug(f"Job {job_id} cancelled")
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Job {job_id} failed: {exc}")

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: float | None = None) -> None:
        """等待当前所有任务结束；关闭与测试时使用。"""
        tasks = list(self._tasks.values())
        if not tasks:
            return
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning(f"Cancelled {len(pending)} unfinished jobs")
