"""
Background sweep that closes calls left `in_progress`.

A call whose stop event and socket close were both lost (process crash,
dropped network) would stay in_progress forever; the sweep marks any such
call older than the threshold as completed. Runs once at startup, then on a
fixed interval.
"""

from __future__ import annotations

import asyncio
from typing import Optional

import structlog

from src.concierge.store import CallStore

logger = structlog.get_logger(__name__)


class StaleCallReconciler:
    def __init__(self, store: CallStore, *, threshold_minutes: int = 3, interval_seconds: float = 60.0):
        self.store = store
        self.threshold_minutes = threshold_minutes
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> int:
        """One sweep. Store failures are logged and count as zero closed calls."""
        try:
            closed = await self.store.reconcile_stale(self.threshold_minutes)
        except Exception as e:
            logger.error("Stale call reconcile failed", error=str(e))
            return 0
        if closed:
            logger.info("Reconciled stale calls", closed=closed, threshold_minutes=self.threshold_minutes)
        return closed

    async def _loop(self) -> None:
        while True:
            await self.run_once()
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
