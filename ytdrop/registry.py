"""In-memory token → staged file map with a TTL reaper.

Tokens are single use: ``take`` removes the entry and the caller becomes responsible
for deleting the file once it has been sent. Entries nobody claims are evicted (file
included) by the reaper after ``ttl`` seconds; an expired entry is also refused by
``take`` so the TTL always wins over a late claim. All methods run on the event loop
thread, so no locking is needed.
"""
from __future__ import annotations

import asyncio
import logging
import mimetypes
import os
import secrets
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .errors import TokenGone, TokenNotFound

logger = logging.getLogger(__name__)

TOKEN_BYTES = 24
FALLBACK_MIME = "application/octet-stream"


@dataclass(frozen=True)
class StagedFile:
    token: str
    path: str
    mime: str
    filename: str
    size_bytes: int
    created_at: float


def guess_mime(path: str, explicit: Optional[str] = None) -> str:
    if explicit:
        return explicit
    guessed, _ = mimetypes.guess_type(path)
    return guessed or FALLBACK_MIME


def remove_file(path: str) -> bool:
    """Delete ``path``; an already missing file is not an error."""
    try:
        os.remove(path)
        return True
    except FileNotFoundError:
        return False
    except OSError:
        logger.warning("Could not delete staged file %s", path, exc_info=True)
        return False


class FileRegistry:
    def __init__(
        self,
        ttl: float = 60 * 60,
        sweep_interval: float = 10 * 60,
        clock: Callable[[], float] = time.time,
    ):
        self.ttl = ttl
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._files: Dict[str, StagedFile] = {}
        self._consumed: Dict[str, float] = {}
        self._reaper: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._files)

    def __contains__(self, token: object) -> bool:
        return token in self._files

    def register(self, path: str, *, filename: Optional[str] = None, mime: Optional[str] = None) -> str:
        """Stage ``path`` and return a fresh token for it."""
        path = os.path.abspath(path)
        size = os.stat(path).st_size
        token = secrets.token_urlsafe(TOKEN_BYTES)
        while token in self._files or token in self._consumed:
            token = secrets.token_urlsafe(TOKEN_BYTES)
        self._files[token] = StagedFile(
            token=token,
            path=path,
            mime=guess_mime(path, mime),
            filename=filename or os.path.basename(path),
            size_bytes=size,
            created_at=self._clock(),
        )
        return token

    def peek(self, token: str) -> Optional[StagedFile]:
        return self._files.get(token)

    def take(self, token: str) -> StagedFile:
        """Claim ``token``. The caller now owns (and must delete) the file."""
        entry = self._files.get(token)
        if entry is None:
            if token in self._consumed:
                raise TokenGone()
            raise TokenNotFound()

        now = self._clock()
        if self._expired(entry, now):
            self._evict(token)
            raise TokenNotFound()

        del self._files[token]
        self._consumed[token] = now
        if not os.path.exists(entry.path):
            raise TokenGone()
        return entry

    def reap(self, now: Optional[float] = None) -> int:
        """Evict expired entries and their files; returns how many were evicted."""
        if now is None:
            now = self._clock()
        expired = [token for token, entry in self._files.items() if self._expired(entry, now)]
        for token in expired:
            self._evict(token)
        for token, consumed_at in list(self._consumed.items()):
            if now - consumed_at > self.ttl:
                del self._consumed[token]
        if expired:
            logger.info("Reaped %d expired staged file(s)", len(expired))
        return len(expired)

    def clear(self) -> None:
        for token in list(self._files):
            self._evict(token)
        self._consumed.clear()

    def start(self) -> None:
        if self._reaper is None or self._reaper.done():
            self._reaper = asyncio.get_running_loop().create_task(self._reap_forever())

    async def stop(self) -> None:
        task, self._reaper = self._reaper, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _reap_forever(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                self.reap()
            except Exception:
                logger.exception("Reaper sweep failed")

    def _expired(self, entry: StagedFile, now: float) -> bool:
        return now - entry.created_at > self.ttl

    def _evict(self, token: str) -> None:
        entry = self._files.pop(token, None)
        if entry is not None:
            remove_file(entry.path)
