"""One download job: validated URL in, staged files and a terminal event out."""
from __future__ import annotations

import asyncio
import enum
import logging
import os
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from .errors import (
    BrokerError,
    ExternalToolError,
    JobTimeout,
    MissingCompletionSignal,
    StagingDirectoryUnavailable,
)
from .events import Event, error_event
from .progress import Completed, Destination, OutputParser, ParsedEvent, Progress, RawLine
from .registry import FileRegistry, StagedFile, remove_file
from .runner import YtDlpRunner, display_name, job_prefix, tail_message
from .settings import DEFAULT_FORMAT

logger = logging.getLogger(__name__)

Publish = Callable[[Event], object]


class JobState(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass
class Job:
    source_url: str
    format_selector: str = DEFAULT_FORMAT
    allow_playlist: bool = False
    verbose: bool = False
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: JobState = JobState.PENDING
    files: List[StagedFile] = field(default_factory=list)
    error: Optional[BrokerError] = None


def file_url(token: str) -> str:
    return f"/api/files/{token}"


def ensure_staging_dir(path: str) -> None:
    try:
        os.makedirs(path, exist_ok=True)
    except OSError as exc:
        raise StagingDirectoryUnavailable(f"Cannot create download directory '{path}': {exc}") from exc
    if not os.access(path, os.W_OK):
        raise StagingDirectoryUnavailable(f"Download directory '{path}' is not writable")


class JobPipeline:
    """Runs a :class:`Job` and publishes its events; exactly one terminal event."""

    def __init__(
        self,
        job: Job,
        runner: YtDlpRunner,
        registry: FileRegistry,
        publish: Publish,
        timeout: float = 10 * 60,
        scan_fallback: bool = False,
    ):
        self.job = job
        self.runner = runner
        self.registry = registry
        self.publish = publish
        self.timeout = timeout
        self.scan_fallback = scan_fallback
        self._tokens: Dict[str, str] = {}

    async def run(self) -> Job:
        job = self.job
        try:
            await self._run()
        except JobTimeout as exc:
            self._fail(JobState.TIMED_OUT, exc)
        except BrokerError as exc:
            self._fail(JobState.FAILED, exc)
        except asyncio.CancelledError:
            job.state = JobState.FAILED
            self._cleanup_partials()
            self.publish(Event("error", {"code": "cancelled", "error": "Server is shutting down"}))
            raise
        except Exception as exc:
            logger.exception("Job %s crashed", job.id)
            job.state = JobState.FAILED
            self._cleanup_partials()
            self.publish(error_event(exc))
        else:
            job.state = JobState.SUCCEEDED
            logger.info("Job %s finished with %d file(s)", job.id, len(job.files))
            self.publish(Event("done", {"ok": True, "files": len(job.files)}))
        return job

    async def _run(self) -> None:
        job = self.job
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout
        ensure_staging_dir(str(self.runner.staging_dir))

        if job.allow_playlist:
            self.publish(Event("info", {"isPlaylist": True}))
        else:
            info = await self.runner.probe(job.source_url, job.format_selector, deadline)
            if info:
                self.publish(Event("info", info))
        if loop.time() >= deadline:
            raise JobTimeout()

        job.state = JobState.RUNNING
        logger.info("Job %s: downloading %s (format %s)", job.id, job.source_url, job.format_selector)
        process = await self.runner.start(
            job.source_url,
            job.id,
            job.format_selector,
            deadline,
            allow_playlist=job.allow_playlist,
        )
        parser = OutputParser(verbose=job.verbose)
        async for stream, chunk in process.output():
            for event in parser.feed(stream, chunk):
                self._handle(event)
        for event in parser.flush():
            self._handle(event)

        if process.returncode != 0:
            if not job.files:
                raise ExternalToolError(tail_message(process.stderr_tail, process.returncode), process.returncode)
            logger.warning(
                "Job %s: yt-dlp exited with %s after producing %d file(s)",
                job.id,
                process.returncode,
                len(job.files),
            )
        if not job.files and self.scan_fallback:
            for path in self.runner.job_files(job.id):
                if not path.endswith((".part", ".ytdl", ".temp")):
                    logger.warning("Job %s: no completion path printed, using scanned file %s", job.id, path)
                    self._register(path)
        if not job.files:
            raise MissingCompletionSignal()

    def _handle(self, event: ParsedEvent) -> None:
        if isinstance(event, Progress):
            self.publish(Event("progress", event.to_payload()))
        elif isinstance(event, Completed):
            self._register(event.path)
        elif isinstance(event, Destination):
            self.publish(Event("info", {"filename": display_name(event.path, self.job.id)}))
        elif isinstance(event, RawLine):
            self.publish(Event("log", {"stream": event.stream, "line": event.line}))

    def _owns(self, path: str) -> bool:
        """Whether ``path`` is one of this job's outputs in the staging directory."""
        path = os.path.abspath(path)
        return (
            os.path.dirname(path) == str(self.runner.staging_dir)
            and os.path.basename(path).startswith(job_prefix(self.job.id))
        )

    def _register(self, path: str) -> None:
        if path in self._tokens:
            return
        if not self._owns(path):
            logger.warning("Job %s: ignoring reported file outside its staging area: %s", self.job.id, path)
            return
        try:
            token = self.registry.register(path, filename=display_name(path, self.job.id))
        except OSError:
            logger.warning("Job %s: reported file %s is not readable", self.job.id, path)
            return
        self._tokens[path] = token
        staged = self.registry.peek(token)
        self.job.files.append(staged)
        self.publish(
            Event(
                "file",
                {"downloadUrl": file_url(token), "filename": staged.filename, "sizeBytes": staged.size_bytes},
            )
        )

    def _fail(self, state: JobState, exc: BrokerError) -> None:
        job = self.job
        job.state = state
        job.error = exc
        logger.warning("Job %s %s: %s", job.id, state.value, exc.message)
        self._cleanup_partials()
        self.publish(error_event(exc))

    def _cleanup_partials(self) -> None:
        staged = {entry.path for entry in self.job.files}
        for path in self.runner.job_files(self.job.id):
            if path not in staged:
                remove_file(path)


async def run_job(
    job: Job,
    runner: YtDlpRunner,
    registry: FileRegistry,
    publish: Publish,
    timeout: float = 10 * 60,
    scan_fallback: bool = False,
) -> Job:
    return await JobPipeline(job, runner, registry, publish, timeout=timeout, scan_fallback=scan_fallback).run()
