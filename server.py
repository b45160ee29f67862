"""FastAPI backend for ytdrop.

This service exposes:
- GET  /api/download/stream : runs yt-dlp and streams progress as Server-Sent Events
- POST /api/download        : runs yt-dlp to completion and returns the download link
- GET  /api/files/{token}   : sends a staged file once, then deletes it
- GET  /api/health          : tool versions and broker state

Run with:
    uvicorn server:app --host 0.0.0.0 --port 8000
"""
from __future__ import annotations

import subprocess
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import BaseModel
from yt_dlp.version import __version__ as YT_DLP_VERSION

from ytdrop import __version__
from ytdrop.broker import Broker
from ytdrop.delivery import deliver
from ytdrop.errors import BrokerError
from ytdrop.events import SSE_HEADERS, Event, error_event, format_sse
from ytdrop.jobs import Job, JobState
from ytdrop.settings import Settings, configure_logging
from ytdrop.validate_url import validate_url

router = APIRouter()


class DownloadRequest(BaseModel):
    url: str
    format: Optional[str] = None
    playlist: bool = False


def get_broker(request: Request) -> Broker:
    return request.app.state.broker


def _error_body(exc: BrokerError) -> Dict[str, Any]:
    return {"ok": False, "code": exc.code, "error": exc.message}


async def broker_error_handler(request: Request, exc: BrokerError) -> JSONResponse:
    return JSONResponse({"detail": exc.message, "error": exc.code}, status_code=exc.status_code)


@router.get("/")
async def root() -> Dict[str, str]:
    return {"status": "ok"}


@router.get("/api/health")
def healthcheck(request: Request) -> Dict[str, Any]:
    """Return service readiness and tool versions."""
    ffmpeg_version = None
    try:
        proc = subprocess.run(["ffmpeg", "-version"], capture_output=True, text=True, timeout=2)
        if proc.returncode == 0:
            ffmpeg_version = proc.stdout.splitlines()[0]
    except FileNotFoundError:
        ffmpeg_version = None
    except (OSError, subprocess.SubprocessError):
        ffmpeg_version = "ffmpeg check failed"

    broker = get_broker(request)
    return {
        "status": "ok",
        "yt_dlp": YT_DLP_VERSION,
        "ffmpeg": ffmpeg_version or "missing",
        "tool_command": broker.runner.command,
        "max_concurrent_downloads": broker.settings.max_concurrent,
        "active_downloads": broker.active_jobs,
        "staged_files": len(broker.registry),
    }


@router.get("/api/download/stream")
async def download_stream(
    request: Request,
    url: Optional[str] = Query(None, description="YouTube URL to download"),
    format: Optional[str] = Query(None, description="yt-dlp format selector"),
    playlist: bool = Query(False, description="Allow downloading a whole playlist"),
    verbose: bool = Query(False, description="Forward unparsed yt-dlp output as log events"),
):
    """
    Stream a download job as Server-Sent Events.

    - info/progress/file/log events while yt-dlp runs
    - exactly one done or error event, then the stream closes
    - a keep-alive comment whenever the job has been quiet for a while
    """
    broker = get_broker(request)
    try:
        valid_url = validate_url(url or "")
        job = Job(
            valid_url,
            format_selector=(format or "").strip() or broker.settings.stream_format,
            allow_playlist=playlist,
            verbose=verbose,
        )
        channel = broker.launch(job)
    except BrokerError as exc:
        return Response(
            format_sse(error_event(exc)),
            status_code=exc.status_code,
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    return StreamingResponse(
        channel.stream(broker.settings.keepalive_interval),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@router.post("/api/download")
async def download(body: DownloadRequest, request: Request):
    """Run a job to completion and return the one-time download link."""
    broker = get_broker(request)
    try:
        valid_url = validate_url(body.url)
        broker.reserve()
    except BrokerError as exc:
        return JSONResponse(_error_body(exc), status_code=exc.status_code)

    job = Job(
        valid_url,
        format_selector=(body.format or "").strip() or broker.settings.default_format,
        allow_playlist=body.playlist,
    )
    events: List[Event] = []
    await broker.run(job, events.append)

    if job.state != JobState.SUCCEEDED:
        if job.error is not None:
            return JSONResponse(_error_body(job.error), status_code=job.error.status_code)
        terminal = events[-1].data if events else {"code": "internal_error", "error": "Unknown error"}
        return JSONResponse({"ok": False, **terminal}, status_code=500)

    files = [event.data for event in events if event.type == "file"]
    return {"ok": True, "downloadUrl": files[0]["downloadUrl"], "files": files}


@router.get("/api/files/{token}")
async def fetch_file(token: str, request: Request):
    """Send the staged file behind ``token`` once; 404 unknown/expired, 410 already sent."""
    return deliver(get_broker(request).registry, token)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)
    broker = Broker(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        broker.start()
        try:
            yield
        finally:
            await broker.stop()

    app = FastAPI(title="ytdrop API", version=__version__, lifespan=lifespan)
    app.state.broker = broker

    # Allow the frontend to connect from any origin during development
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(BrokerError, broker_error_handler)
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("server:app", host="0.0.0.0", port=8000, reload=False)
