"""Turn yt-dlp's human-readable console output into structured events.

yt-dlp writes progress to stderr (``--newline`` gives one line per update) and, with
``--print after_move:filepath``, the absolute path of every finished file to stdout.
Output arrives in arbitrary chunks, so :class:`OutputParser` buffers partial lines per
stream and only classifies complete ones.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Union

SIZE_UNITS: Dict[str, int] = {
    "B": 1,
    "KiB": 1024,
    "MiB": 1024 ** 2,
    "GiB": 1024 ** 3,
    "TiB": 1024 ** 4,
}

PERCENT_RE = re.compile(r"^\[download\]\s+(\d{1,3}(?:\.\d+)?)%")
TOTAL_RE = re.compile(r"\bof\s+~?\s*(\d+(?:\.\d+)?)\s*(B|KiB|MiB|GiB|TiB)\b")
SPEED_RE = re.compile(r"\bat\s+(\S+/s|N/A|Unknown B/s)")
ETA_RE = re.compile(r"\bETA\s+(\d+(?::\d+)+|N/A|Unknown)")
DESTINATION_RES = (
    re.compile(r"^\[download\] Destination:\s*(.+)$"),
    re.compile(r"^\[Merger\] Merging formats into \"(.+)\"$"),
    re.compile(r"^\[ExtractAudio\] Destination:\s*(.+)$"),
    re.compile(r"^\[download\] (.+) has already been downloaded$"),
)


@dataclass(frozen=True)
class Progress:
    percent: float
    downloaded_bytes: int = 0
    total_bytes: int = 0
    speed: Optional[str] = None
    eta: Optional[str] = None

    def to_payload(self) -> Dict[str, object]:
        payload: Dict[str, object] = {
            "percent": self.percent,
            "downloadedBytes": self.downloaded_bytes,
            "totalBytes": self.total_bytes,
        }
        if self.speed:
            payload["speed"] = self.speed
        if self.eta:
            payload["eta"] = self.eta
        return payload


@dataclass(frozen=True)
class Destination:
    """Display-only: the file yt-dlp is currently writing."""

    path: str


@dataclass(frozen=True)
class Completed:
    """Authoritative: a fully produced file."""

    path: str


@dataclass(frozen=True)
class RawLine:
    stream: str
    line: str


ParsedEvent = Union[Progress, Destination, Completed, RawLine]


def size_to_bytes(value: Union[str, float], unit: str) -> int:
    """Convert ``120.50``/``MiB`` style sizes to bytes using 1024-based units."""
    return int(round(float(value) * SIZE_UNITS.get(unit, 1)))


def parse_progress(line: str) -> Optional[Progress]:
    match = PERCENT_RE.match(line)
    if not match:
        return None
    try:
        percent = round(float(match.group(1)), 1)
    except ValueError:
        return None
    if percent > 100:
        return None

    total_bytes = 0
    total = TOTAL_RE.search(line)
    if total:
        total_bytes = size_to_bytes(total.group(1), total.group(2))

    speed = None
    found = SPEED_RE.search(line)
    if found and found.group(1) not in ("N/A", "Unknown B/s"):
        speed = found.group(1)

    eta = None
    found = ETA_RE.search(line)
    if found and found.group(1) not in ("N/A", "Unknown"):
        eta = found.group(1)

    return Progress(
        percent=percent,
        downloaded_bytes=int(round(percent / 100 * total_bytes)),
        total_bytes=total_bytes,
        speed=speed,
        eta=eta,
    )


def classify_line(line: str) -> Optional[Union[Progress, Destination]]:
    """Classify one progress-log line; ``None`` means not recognized."""
    line = line.strip()
    if not line:
        return None
    progress = parse_progress(line)
    if progress is not None:
        return progress
    for pattern in DESTINATION_RES:
        match = pattern.match(line)
        if match:
            return Destination(match.group(1).strip())
    return None


class OutputParser:
    """Incremental parser for one yt-dlp run.

    ``feed`` returns the events found in the complete lines of ``chunk``. Progress
    events are deduplicated on percent. With ``verbose`` unmatched lines come back as
    :class:`RawLine` instead of being dropped.
    """

    def __init__(self, verbose: bool = False):
        self.verbose = verbose
        self._buffers: Dict[str, bytes] = {}
        self._last_percent: Optional[float] = None

    def feed(self, stream: str, chunk: bytes) -> List[ParsedEvent]:
        data = self._buffers.get(stream, b"") + chunk
        # yt-dlp redraws progress with \r when --newline is missing.
        parts = re.split(rb"\r\n|\r|\n", data)
        self._buffers[stream] = parts.pop()
        events: List[ParsedEvent] = []
        for raw in parts:
            event = self._handle_line(stream, raw)
            if event is not None:
                events.append(event)
        return events

    def flush(self) -> List[ParsedEvent]:
        events: List[ParsedEvent] = []
        for stream in list(self._buffers):
            raw = self._buffers.pop(stream)
            if raw:
                event = self._handle_line(stream, raw)
                if event is not None:
                    events.append(event)
        return events

    def _handle_line(self, stream: str, raw: bytes) -> Optional[ParsedEvent]:
        line = raw.decode("utf-8", "replace").strip()
        if not line:
            return None

        if stream == "stdout" and os.path.isabs(line):
            return Completed(line)

        event = classify_line(line)
        if isinstance(event, Progress):
            if event.percent == self._last_percent:
                return None
            self._last_percent = event.percent
            return event
        if event is not None:
            return event
        if self.verbose:
            return RawLine(stream, line)
        return None
