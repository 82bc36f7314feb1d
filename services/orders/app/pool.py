"""
Orders Service — 有界タスクプール

フェッチ / ポストのタスクを実行するプール。

  submit() ──▶ [ 受付枠: max_workers + queue_capacity ]
                   │
                   ▼
               [ 実行枠: max_workers ] ──▶ タスク本体

受付枠が埋まっているとき:
  - "reject": ResourceExhausted を送出し、仕事は開始しない
  - "block" : 空きが出るまで呼び出し元が待つ
いずれの場合も仕事を黙って捨てることはない。
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Literal, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

SaturationPolicy = Literal["reject", "block"]


class ResourceExhausted(Exception):
    """プールの受付枠が埋まっていてタスクを受け付けられない"""


class BoundedTaskPool:
    def __init__(
        self,
        max_workers: int = 50,
        queue_capacity: int = 100,
        saturation_policy: SaturationPolicy = "reject",
    ):
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        if queue_capacity < 0:
            raise ValueError("queue_capacity must not be negative")
        self.max_workers = max_workers
        self.queue_capacity = queue_capacity
        self.saturation_policy = saturation_policy
        self._admission = asyncio.Semaphore(max_workers + queue_capacity)
        self._workers = asyncio.Semaphore(max_workers)
        # join されないタスクも完了まで参照を保持する
        self._tasks: set[asyncio.Task] = set()

    @property
    def outstanding(self) -> int:
        return len(self._tasks)

    async def submit(
        self,
        factory: Callable[[], Awaitable[T]],
        *,
        name: str | None = None,
    ) -> "asyncio.Task[T]":
        """
        タスクを受け付けて開始する。

        "reject" ポリシーでは await せずに返る（または送出する）ので、
        呼び出し元をブロックしない。
        """
        if self._admission.locked():
            if self.saturation_policy == "reject":
                logger.warning(
                    "Task pool saturated (%d outstanding), rejecting %s",
                    self.outstanding, name or "task",
                )
                raise ResourceExhausted(
                    f"Task pool saturated: {self.outstanding} tasks outstanding"
                )
            logger.info("Task pool saturated, waiting for a slot for %s", name or "task")
        await self._admission.acquire()

        task = asyncio.create_task(self._run(factory), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    async def _run(self, factory: Callable[[], Awaitable[T]]) -> T:
        try:
            async with self._workers:
                return await factory()
        finally:
            self._admission.release()

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.debug("Pool task %s finished with %r", task.get_name(), exc)

    async def aclose(self) -> None:
        """残っているタスクの完了を待つ。"""
        if self._tasks:
            logger.info("Waiting for %d outstanding pool tasks", len(self._tasks))
            await asyncio.gather(*self._tasks, return_exceptions=True)
