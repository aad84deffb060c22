"""
Parsing of ffmpeg's human-readable stderr into progress samples.

ffmpeg rewrites its stats line in place with ``\\r``, so callers split the
stream on both ``\\r`` and ``\\n`` before handing lines here. Piped input
usually reports ``Duration: N/A``; percent is then left unset.
"""

import re
from typing import Optional

from mediashrink.engine.events import EngineProgress

_DURATION_RE = re.compile(r"Duration:\s*(\d+):(\d{2}):(\d{2}(?:\.\d+)?)")
_TIME_RE = re.compile(r"\btime=\s*(-?\d+):(\d{2}):(\d{2}(?:\.\d+)?)")
_FRAME_RE = re.compile(r"\bframe=\s*(\d+)")


def _to_seconds(hours: str, minutes: str, seconds: str) -> float:
    return int(hours) * 3600 + int(minutes) * 60 + float(seconds)


def parse_duration(line: str) -> Optional[float]:
    match = _DURATION_RE.search(line)
    if not match:
        return None
    duration = _to_seconds(*match.groups())
    return duration if duration > 0 else None


def parse_progress(line: str, duration: Optional[float] = None) -> Optional[EngineProgress]:
    """
    Turn one stats line into an ``EngineProgress``.

    Returns None for lines that are not stats lines. Negative timestamps, which
    ffmpeg prints before the first frame is muxed, are treated as unknown.
    """
    time_match = _TIME_RE.search(line)
    frame_match = _FRAME_RE.search(line)
    if not time_match and not frame_match:
        return None

    processed = None
    if time_match and not time_match.group(1).startswith("-"):
        processed = _to_seconds(*time_match.groups())

    percent = None
    if processed is not None and duration:
        percent = round(min(processed / duration * 100, 100.0), 2)

    frames = int(frame_match.group(1)) if frame_match else None
    return EngineProgress(percent=percent, processed_seconds=processed, frames=frames)
