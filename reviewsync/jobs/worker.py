"""
Sync Worker

Long-running alternative to the cron trigger: invokes the orchestrator on a
fixed interval until SIGINT/SIGTERM. Each invocation is still bounded by the
orchestrator's own budgets.

Run with:

    python -m reviewsync.jobs.worker
"""

from __future__ import annotations

import asyncio
import signal
from typing import Any, Callable
from uuid import uuid4

import structlog

from reviewsync.config import Settings, get_settings
from reviewsync.db.client import close_db, close_db_pool, init_db
from reviewsync.monitoring.logging import configure_logging
from reviewsync.runtime import sync_orchestrator
from reviewsync.sync.orchestrator import RunOptions

logger = structlog.get_logger()


class SyncWorker:
    def __init__(
        self,
        *,
        settings: Settings | None = None,
        orchestrator_factory: Callable[[], Any] | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.worker_id = f"sync-worker:{uuid4()}"
        self._orchestrator_factory = orchestrator_factory or (lambda: sync_orchestrator(self.settings))
        self._shutdown = asyncio.Event()
        self.invocations = 0

    async def run_forever(self) -> None:
        interval = max(1, int(self.settings.job_worker_poll_interval_seconds))
        max_invocations = int(self.settings.job_worker_max_invocations)
        logger.info("Sync worker starting", worker_id=self.worker_id, interval_seconds=interval)

        try:
            while not self._shutdown.is_set():
                await self.run_once()
                if max_invocations and self.invocations >= max_invocations:
                    break
                try:
                    await asyncio.wait_for(self._shutdown.wait(), timeout=interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            logger.info("Sync worker stopped", worker_id=self.worker_id, invocations=self.invocations)

    async def run_once(self) -> None:
        self.invocations += 1
        # Never crash the loop because of one invocation.
        try:
            async with self._orchestrator_factory() as orchestrator:
                report = await orchestrator.run(RunOptions(force=True))
            logger.info(
                "Sync invocation complete",
                worker_id=self.worker_id,
                aborted=report.aborted,
                jobs=report.jobs.to_dict(),
            )
        except Exception as exc:
            logger.error("Sync invocation failed", worker_id=self.worker_id, error=str(exc))

    async def shutdown(self) -> None:
        self._shutdown.set()


async def _run() -> None:
    configure_logging()
    await init_db()
    worker = SyncWorker()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, lambda: asyncio.create_task(worker.shutdown()))
        except NotImplementedError:
            signal.signal(sig, lambda *_: asyncio.create_task(worker.shutdown()))

    try:
        await worker.run_forever()
    finally:
        await close_db_pool()
        await close_db()


def main() -> None:
    asyncio.run(_run())


if __name__ == "__main__":
    main()
