"""Process-wide configuration, read from the environment once at startup."""
from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Optional

from pydantic import BaseModel

DEFAULT_FORMAT = "bv*+ba/b"
STREAM_FORMAT = "b[ext=mp4]/bv*[ext=mp4]+ba[ext=m4a]/b/bv*+ba"
DEFAULT_DOWNLOAD_DIR = Path(tempfile.gettempdir()) / "ytdrop-downloads"


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "") or ""
    try:
        return float(raw) if raw.strip() else default
    except ValueError:
        return default


class Settings(BaseModel):
    download_dir: Path = DEFAULT_DOWNLOAD_DIR
    # Tool invocation: interpreter + module wins over an explicit path.
    ytdlp_py: Optional[str] = None
    ytdlp_path: Optional[str] = None
    job_timeout: float = 10 * 60
    probe_timeout: float = 60
    file_ttl: float = 60 * 60
    reaper_interval: float = 10 * 60
    keepalive_interval: float = 15
    max_concurrent: int = 3
    default_format: str = DEFAULT_FORMAT
    stream_format: str = STREAM_FORMAT
    output_scan_fallback: bool = False
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        download_dir = os.getenv("DOWNLOAD_DIR", "").strip()
        return cls(
            download_dir=Path(download_dir) if download_dir else DEFAULT_DOWNLOAD_DIR,
            ytdlp_py=(os.getenv("YTDLP_PY") or "").strip() or None,
            ytdlp_path=(os.getenv("YTDLP_PATH") or "").strip() or None,
            job_timeout=_env_float("JOB_TIMEOUT_SECONDS", 10 * 60),
            probe_timeout=_env_float("PROBE_TIMEOUT_SECONDS", 60),
            file_ttl=_env_float("FILE_TTL_SECONDS", 60 * 60),
            reaper_interval=_env_float("REAPER_INTERVAL_SECONDS", 10 * 60),
            keepalive_interval=_env_float("KEEPALIVE_SECONDS", 15),
            max_concurrent=max(int(os.getenv("MAX_CONCURRENT_DOWNLOADS", "3") or "3"), 1),
            output_scan_fallback=_env_flag("OUTPUT_SCAN_FALLBACK"),
            log_level=(os.getenv("LOG_LEVEL") or "INFO").upper(),
        )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
