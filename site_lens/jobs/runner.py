# site_lens/jobs/runner.py
"""
Фоновое выполнение заданий сканирования.

:class:`JobRunner` создаёт задание в :class:`~site_lens.jobs.store.JobStore`,
запускает координатор в отдельной asyncio-задаче и, пока идёт проход по
страницам, периодически обновляет прогресс (heartbeat), чтобы опрашивающий
клиент видел, что задание живо.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Set

from site_lens.config import ScannerConfig
from site_lens.coordinator import MultiEngineCoordinator
from site_lens.errors import sanitize_error_message
from site_lens.jobs.store import Job, JobStore
from site_lens.models import ScanRequest

__all__ = ("JobRunner", "HEARTBEAT_START", "HEARTBEAT_CEILING", "HEARTBEAT_STEP")

logger = logging.getLogger("SiteLens")

HEARTBEAT_START = 32
HEARTBEAT_CEILING = 82
HEARTBEAT_STEP = 4


class _Progress:
    """Последний записанный процент; прогресс задания не убывает."""

    def __init__(self, percent: int = 0) -> None:
        self.percent = percent

    def advance(self, percent: int) -> int:
        self.percent = max(self.percent, int(percent))
        return self.percent


class JobRunner:
    def __init__(
        self,
        config: ScannerConfig,
        coordinator: MultiEngineCoordinator,
        store: JobStore,
        *,
        heartbeat_interval_s: Optional[float] = None,
    ) -> None:
        self.config = config
        self.coordinator = coordinator
        self.store = store
        self.heartbeat_interval_s = heartbeat_interval_s or config.jobs.heartbeat_interval_s
        self._tasks: Set[asyncio.Task] = set()

    async def submit(self, payload: Dict[str, Any]) -> Job:
        """Создаёт задание (status=queued) и планирует его выполнение."""
        job = await self.store.create(payload)
        task = asyncio.create_task(self.run(job.job_id), name=f"site-lens-{job.job_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return job

    async def run(self, job_id: str) -> Optional[Job]:
        job = await self.store.get(job_id)
        if job is None:
            logger.warning("Job %s not found or expired", job_id)
            return None
        if job.status != "queued":
            logger.info("Job %s already %s", job_id, job.status)
            return job

        try:
            request = ScanRequest.from_payload(job.payload or {}, self.config)
            if request.canonical_url is None:
                return await self.store.fail(job_id, "Invalid startUrl in job payload.", code="invalid_request")

            progress = _Progress()
            await self._progress(job_id, progress, 10, "Launching browser context...")

            async def on_progress(percent: int, message: str) -> None:
                await self._progress(job_id, progress, percent, message)

            heartbeat = asyncio.create_task(self._heartbeat(job_id, progress))
            try:
                report = await self.coordinator.run(request, progress=on_progress)
            finally:
                heartbeat.cancel()
                await asyncio.gather(heartbeat, return_exceptions=True)

            return await self.store.complete(job_id, report.to_dict())
        except asyncio.CancelledError:
            await self.store.fail(job_id, "Scan cancelled.", code="cancelled")
            raise
        except Exception as exc:  # noqa: BLE001
            logger.error("Job %s crashed: %s", job_id, sanitize_error_message(exc))
            return await self.store.fail(job_id, exc)

    async def _progress(self, job_id: str, progress: _Progress, percent: int, message: str) -> None:
        if percent < progress.percent:
            return
        progress.advance(percent)
        await self.store.mark_running(job_id, percent, message)

    async def _heartbeat(self, job_id: str, progress: _Progress) -> None:
        tick = 0
        percent = HEARTBEAT_START
        while True:
            await asyncio.sleep(self.heartbeat_interval_s)
            tick += 1
            percent = min(HEARTBEAT_CEILING, percent + HEARTBEAT_STEP)
            message = (
                "Page fetch stage complete. Running accessibility checks..."
                if tick == 1
                else "Running accessibility checks on discovered pages..."
            )
            try:
                await self._progress(job_id, progress, max(percent, progress.percent), message)
            except Exception as exc:  # noqa: BLE001
                logger.debug("heartbeat for %s failed: %s", job_id, exc)

    async def close(self) -> None:
        """Отменяет незавершённые задания (при остановке сервера)."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
