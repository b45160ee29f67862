"""Build yt-dlp command lines and supervise one subprocess per job."""
from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from .errors import ExternalToolError, JobTimeout
from .settings import Settings

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 64
STDERR_TAIL_BYTES = 8 * 1024
ERROR_TAIL_LINES = 6
# How long to wait for a killed process group to be reaped.
KILL_GRACE_SECONDS = 5
# Everything yt-dlp writes for a job starts with "<job id>__".
JOB_PREFIX_SEPARATOR = "__"
OUTPUT_TEMPLATE = "%(title).80s-%(id)s.%(ext)s"


def resolve_tool_command(settings: Settings) -> List[str]:
    """Interpreter + module, else explicit executable, else ``yt-dlp`` on PATH."""
    if settings.ytdlp_py:
        return [settings.ytdlp_py, "-m", "yt_dlp"]
    if settings.ytdlp_path:
        return [settings.ytdlp_path]
    return ["yt-dlp"]


def job_prefix(job_id: str) -> str:
    return f"{job_id}{JOB_PREFIX_SEPARATOR}"


def output_template(staging_dir: Path, job_id: str) -> str:
    return os.path.join(str(staging_dir), job_prefix(job_id) + OUTPUT_TEMPLATE)


def display_name(path: str, job_id: str) -> str:
    name = os.path.basename(path)
    prefix = job_prefix(job_id)
    if name.startswith(prefix) and len(name) > len(prefix):
        return name[len(prefix):]
    return name


def build_download_args(
    url: str,
    format_selector: str,
    template: str,
    allow_playlist: bool = False,
) -> List[str]:
    args = [
        "-f",
        format_selector,
        "--remux-video",
        "mp4",
        "--restrict-filenames",
        "--newline",
        # --print implies --quiet; keep the progress lines coming on stderr.
        "--progress",
        "--print",
        "after_move:filepath",
        "-o",
        template,
    ]
    if not allow_playlist:
        args.append("--no-playlist")
    args.append(url)
    return args


def build_probe_args(url: str, format_selector: str) -> List[str]:
    return [
        "-f",
        format_selector,
        "--simulate",
        "--dump-json",
        "--no-warnings",
        "--no-playlist",
        url,
    ]


def summarize_probe(info: Dict[str, Any]) -> Dict[str, Any]:
    """Pick title and expected total size out of ``--dump-json`` output."""
    requested = info.get("requested_formats")
    if isinstance(requested, list) and requested:
        total = sum(_filesize(fmt) for fmt in requested if isinstance(fmt, dict))
    else:
        total = _filesize(info)
    summary: Dict[str, Any] = {}
    if info.get("title"):
        summary["title"] = info["title"]
    if total:
        summary["totalBytes"] = total
    return summary


def _filesize(info: Dict[str, Any]) -> int:
    for key in ("filesize", "filesize_approx"):
        value = info.get(key)
        if isinstance(value, (int, float)) and value > 0:
            return int(value)
    return 0


def tail_message(stderr_tail: bytes, returncode: Optional[int]) -> str:
    lines = [line.strip() for line in stderr_tail.decode("utf-8", "replace").splitlines() if line.strip()]
    errors = [line for line in lines if "ERROR:" in line]
    detail = "\n".join((errors or lines)[-ERROR_TAIL_LINES:]).strip()
    return detail or f"yt-dlp exited with code {returncode}"


async def kill_process_group(proc: asyncio.subprocess.Process, job_id: str = "-") -> None:
    """SIGKILL ``proc`` and every child it started, then reap it.

    Children inherit our pipes, so waiting on ``proc`` alone can block for as long as
    a helper like ffmpeg keeps running.
    """
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    except PermissionError:
        proc.kill()
    try:
        await asyncio.wait_for(proc.wait(), timeout=KILL_GRACE_SECONDS)
    except asyncio.TimeoutError:
        logger.warning("Job %s: yt-dlp (pid %s) did not exit after SIGKILL", job_id, proc.pid)


class ToolProcess:
    """A running yt-dlp subprocess bounded by an absolute loop-time deadline."""

    def __init__(self, proc: asyncio.subprocess.Process, deadline: float, job_id: str = "-"):
        self._proc = proc
        self._deadline = deadline
        self.job_id = job_id
        self.stderr_tail = b""

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def returncode(self) -> Optional[int]:
        return self._proc.returncode

    async def output(self) -> AsyncIterator[Tuple[str, bytes]]:
        """Yield ``(stream, chunk)`` pairs from stdout and stderr as they arrive.

        Returns once both pipes are closed and the process has exited. Raises
        ``JobTimeout`` (after killing the process) when the deadline passes.
        """
        loop = asyncio.get_running_loop()
        queue: "asyncio.Queue[Tuple[str, Optional[bytes]]]" = asyncio.Queue()
        readers = [
            loop.create_task(self._pump("stdout", self._proc.stdout, queue)),
            loop.create_task(self._pump("stderr", self._proc.stderr, queue)),
        ]
        open_streams = len(readers)
        try:
            while open_streams:
                try:
                    name, chunk = await asyncio.wait_for(queue.get(), timeout=self._remaining())
                except asyncio.TimeoutError:
                    await self._expire()
                if chunk is None:
                    open_streams -= 1
                    continue
                if name == "stderr":
                    self.stderr_tail = (self.stderr_tail + chunk)[-STDERR_TAIL_BYTES:]
                yield name, chunk
            try:
                await asyncio.wait_for(self._proc.wait(), timeout=self._remaining())
            except asyncio.TimeoutError:
                await self._expire()
        finally:
            for reader in readers:
                reader.cancel()
            if self._proc.returncode is None:
                await self.kill()

    async def kill(self) -> None:
        await kill_process_group(self._proc, self.job_id)

    def _remaining(self) -> float:
        return max(self._deadline - asyncio.get_running_loop().time(), 0)

    async def _expire(self) -> None:
        logger.warning("Job %s: yt-dlp (pid %s) exceeded its time budget, killing", self.job_id, self.pid)
        await self.kill()
        raise JobTimeout()

    @staticmethod
    async def _pump(name: str, stream: Optional[asyncio.StreamReader], queue: asyncio.Queue) -> None:
        try:
            if stream is None:
                return
            while True:
                chunk = await stream.read(CHUNK_SIZE)
                if not chunk:
                    break
                await queue.put((name, chunk))
        finally:
            queue.put_nowait((name, None))


class YtDlpRunner:
    def __init__(self, command: List[str], staging_dir: Path, probe_timeout: float = 60):
        self.command = list(command)
        self.staging_dir = Path(staging_dir)
        self.probe_timeout = probe_timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "YtDlpRunner":
        return cls(
            resolve_tool_command(settings),
            Path(settings.download_dir).resolve(),
            probe_timeout=settings.probe_timeout,
        )

    async def _spawn(self, args: List[str]) -> asyncio.subprocess.Process:
        try:
            return await asyncio.create_subprocess_exec(
                *self.command,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                # own process group, so a kill also reaches ffmpeg and other helpers
                start_new_session=True,
            )
        except (FileNotFoundError, PermissionError) as exc:
            raise ExternalToolError(f"yt-dlp is not installed or not executable: {exc}") from exc

    async def start(
        self,
        url: str,
        job_id: str,
        format_selector: str,
        deadline: float,
        allow_playlist: bool = False,
    ) -> ToolProcess:
        template = output_template(self.staging_dir, job_id)
        args = build_download_args(url, format_selector, template, allow_playlist=allow_playlist)
        proc = await self._spawn(args)
        logger.info("Job %s: started yt-dlp pid %s", job_id, proc.pid)
        return ToolProcess(proc, deadline, job_id=job_id)

    async def probe(self, url: str, format_selector: str, deadline: float) -> Optional[Dict[str, Any]]:
        """Best-effort metadata lookup; ``None`` on any failure."""
        loop = asyncio.get_running_loop()
        timeout = min(self.probe_timeout, max(deadline - loop.time(), 0))
        try:
            proc = await self._spawn(build_probe_args(url, format_selector))
        except ExternalToolError:
            logger.debug("Probe could not start yt-dlp", exc_info=True)
            return None
        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.info("Probe for %s timed out after %.0fs", url, timeout)
            await kill_process_group(proc)
            return None
        if proc.returncode != 0:
            return None
        try:
            info = json.loads(stdout.decode("utf-8", "replace").splitlines()[0])
        except (ValueError, IndexError):
            logger.debug("Probe returned unparsable JSON for %s", url)
            return None
        return summarize_probe(info) if isinstance(info, dict) else None

    def job_files(self, job_id: str) -> List[str]:
        """Files in the staging directory carrying this job's prefix."""
        prefix = job_prefix(job_id)
        try:
            entries = list(os.scandir(self.staging_dir))
        except OSError:
            return []
        return sorted(entry.path for entry in entries if entry.name.startswith(prefix) and entry.is_file())
