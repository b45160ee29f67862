"""Send a staged file to the client once, then delete it."""
from __future__ import annotations

import logging
import os
import re
from urllib.parse import quote

from fastapi.responses import FileResponse
from starlette.types import Receive, Scope, Send

from .errors import TokenGone
from .registry import FileRegistry, StagedFile, remove_file

logger = logging.getLogger(__name__)


def sanitize_filename(name: str) -> str:
    """Create a safe, ASCII filename for Content-Disposition headers."""
    stem, ext = os.path.splitext(name)
    safe_stem = re.sub(r'[\\/*?:"<>|]', "", stem).replace("\n", " ").replace("\r", " ").strip()
    # Force ASCII to avoid latin-1 header encoding failures
    safe_stem = safe_stem.encode("ascii", "ignore").decode("ascii").strip() or "download"
    safe_ext = re.sub(r"[^A-Za-z0-9.]", "", ext)
    return f"{safe_stem}{safe_ext}"


def content_disposition(filename: str) -> str:
    ascii_name = sanitize_filename(filename)
    if ascii_name == filename:
        return f'attachment; filename="{ascii_name}"'
    return f"attachment; filename=\"{ascii_name}\"; filename*=UTF-8''{quote(filename)}"


class OneShotFileResponse(FileResponse):
    """A ``FileResponse`` that deletes its file when the response is over.

    Deletion happens whether the body was sent in full, cut off half way, or never
    started because the client was already gone.
    """

    def __init__(self, entry: StagedFile, stat_result: os.stat_result):
        super().__init__(
            entry.path,
            media_type=entry.mime,
            stat_result=stat_result,
            headers={
                "Content-Disposition": content_disposition(entry.filename),
                "Cache-Control": "no-store",
            },
        )
        self.entry = entry

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        completed = False
        try:
            await super().__call__(scope, receive, send)
            completed = True
        finally:
            remove_file(self.entry.path)
            if completed:
                logger.info("Delivered %s (%d bytes)", self.entry.filename, self.entry.size_bytes)
            else:
                logger.warning("Delivery of %s did not complete, file removed", self.entry.filename)


def deliver(registry: FileRegistry, token: str) -> OneShotFileResponse:
    """Claim ``token`` and build the response.

    Raises ``TokenNotFound`` for unknown or expired tokens and ``TokenGone`` when the
    token was already used or its file disappeared.
    """
    entry = registry.take(token)
    try:
        stat_result = os.stat(entry.path)
    except FileNotFoundError as exc:
        raise TokenGone() from exc
    return OneShotFileResponse(entry, stat_result)
