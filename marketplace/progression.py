"""
Marketplace — 注文ステータスの自動進行

注文作成時に各ステップ (confirmed +10s, preparing +20s, completed +40s) を
作成時刻からの相対遅延でイベントループのタイマーに登録する。ステップ同士は
連鎖しない。各ステップは 1 トランザクションで前進を試み、ランク比較で
重複や順序の入れ替わりを無害化する。

スケジュール済みの注文 ID はこのオブジェクトが保持する (アプリ起動時に 1 つ作る)。
プロセス内タイマーなので、再起動するとスケジュール済みの前進は失われる。
"""

import asyncio
import logging

from . import commands
from .aggregate import STATUS_SEQUENCE, ProgressionStep
from .documents import DocumentStore
from .events import EventPublisher

logger = logging.getLogger(__name__)


class ProgressionScheduler:
    def __init__(
        self,
        store: DocumentStore,
        publisher: EventPublisher | None = None,
        steps: tuple[ProgressionStep, ...] = STATUS_SEQUENCE,
    ) -> None:
        self.store = store
        self.publisher = publisher or EventPublisher()
        self.steps = steps
        self._scheduled: set[str] = set()
        self._timers: dict[str, list[asyncio.TimerHandle]] = {}
        self._tasks: set[asyncio.Task] = set()

    def is_scheduled(self, order_id: str) -> bool:
        return order_id in self._scheduled

    def schedule(self, order_id: str) -> bool:
        """進行を登録する。同じ注文がすでに登録済みなら何もせず False。"""
        if order_id in self._scheduled:
            return False

        self._scheduled.add(order_id)
        loop = asyncio.get_running_loop()
        last = len(self.steps) - 1
        self._timers[order_id] = [
            loop.call_later(step.delay, self._fire, order_id, step.status, index == last)
            for index, step in enumerate(self.steps)
        ]
        return True

    async def run_step(self, order_id: str, status: str) -> bool:
        """1 ステップ分の前進。失敗はログに残して握りつぶす。"""
        try:
            return await commands.advance_order_status(self.store, self.publisher, order_id, status)
        except Exception:
            logger.exception("Failed to update order %s to %s", order_id, status)
            return False

    async def shutdown(self) -> None:
        for handles in self._timers.values():
            for handle in handles:
                handle.cancel()
        self._timers.clear()
        self._scheduled.clear()

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # ── 内部処理 ──────────────────────────────────

    def _fire(self, order_id: str, status: str, last: bool) -> None:
        task = asyncio.ensure_future(self._run(order_id, status, last))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, order_id: str, status: str, last: bool) -> None:
        try:
            await self.run_step(order_id, status)
        finally:
            if last:
                self._scheduled.discard(order_id)
                self._timers.pop(order_id, None)
