"""Process-wide state: one registry, one runner, the running job tasks."""
from __future__ import annotations

import asyncio
import logging
from typing import Optional, Set

from .errors import TooManyJobs
from .events import EventChannel
from .jobs import Job, Publish, run_job
from .registry import FileRegistry
from .runner import YtDlpRunner
from .settings import Settings

logger = logging.getLogger(__name__)


class Broker:
    def __init__(self, settings: Settings):
        self.settings = settings
        self.registry = FileRegistry(ttl=settings.file_ttl, sweep_interval=settings.reaper_interval)
        self.runner = YtDlpRunner.from_settings(settings)
        self._active = 0
        self._tasks: Set[asyncio.Task] = set()

    @property
    def active_jobs(self) -> int:
        return self._active

    def start(self) -> None:
        self.registry.start()
        logger.info(
            "Broker started: DOWNLOAD_DIR=%s tool=%s",
            self.runner.staging_dir,
            " ".join(self.runner.command),
        )

    async def stop(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.registry.stop()
        self.registry.clear()

    def reserve(self) -> None:
        """Take a job slot or raise ``TooManyJobs``."""
        if self._active >= self.settings.max_concurrent:
            raise TooManyJobs()
        self._active += 1

    def release(self) -> None:
        self._active = max(self._active - 1, 0)

    async def run(self, job: Job, publish: Publish) -> Job:
        """Run ``job`` in the caller's task; a slot must already be reserved."""
        try:
            return await run_job(
                job,
                self.runner,
                self.registry,
                publish,
                timeout=self.settings.job_timeout,
                scan_fallback=self.settings.output_scan_fallback,
            )
        finally:
            self.release()

    def launch(self, job: Job, channel: Optional[EventChannel] = None) -> EventChannel:
        """Run ``job`` in a background task feeding ``channel``.

        The task is not tied to the HTTP connection: a client that goes away does not
        stop the download, the job still ends by itself or by its timeout.
        """
        channel = channel or EventChannel(job.id)
        self.reserve()
        task = asyncio.get_running_loop().create_task(self.run(job, channel.publish))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return channel
