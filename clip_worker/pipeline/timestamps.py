"""
Timestamp extraction and validation for AI-proposed clip ranges.

AI output is untrusted: a malformed item is logged and dropped on its own
without failing the rest of the batch.
"""

import logging
import math
import re
from typing import Any, Iterable, List, Mapping, Optional, Tuple, Union

from ..errors import IntegrityError
from ..models import ExtractedTimestamp

logger = logging.getLogger("clip_worker")

_HMS = re.compile(r"^(\d{1,2}):(\d{2}):(\d{2})(?:[.,](\d{1,3}))?$")
_MS = re.compile(r"^(\d{1,2}):(\d{2})(?:[.,](\d{1,3}))?$")


def parse_timecode(value: Union[str, int, float]) -> float:
    """Parse HH:MM:SS[.mmm] or MM:SS[.mmm] to seconds

    Raises:
        ValueError: if the value is not a well-formed timecode
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid timecode: {value!r}")
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            raise ValueError(f"Non-finite timecode: {value!r}")
        if value < 0:
            raise ValueError(f"Negative timecode: {value!r}")
        return float(value)
    if not isinstance(value, str):
        raise ValueError(f"Invalid timecode: {value!r}")

    text = value.strip()
    match = _HMS.match(text)
    if match:
        hours, minutes, seconds, fraction = match.groups()
    else:
        match = _MS.match(text)
        if not match:
            raise ValueError(f"Invalid timecode: {value!r}")
        hours = "0"
        minutes, seconds, fraction = match.groups()

    if int(minutes) >= 60 or int(seconds) >= 60:
        raise ValueError(f"Invalid timecode: {value!r}")

    total = int(hours) * 3600 + int(minutes) * 60 + int(seconds)
    if fraction:
        total += int(fraction) / (10 ** len(fraction))
    return float(total)


def format_timecode(seconds: float) -> str:
    """Format seconds as HH:MM:SS"""
    seconds = int(max(seconds, 0))
    hours = seconds // 3600
    minutes = (seconds % 3600) // 60
    secs = seconds % 60
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


def format_srt_timecode(seconds: float) -> str:
    """Format seconds as HH:MM:SS,mmm"""
    millis = int(round(max(seconds, 0) * 1000))
    hours, millis = divmod(millis, 3600 * 1000)
    minutes, millis = divmod(millis, 60 * 1000)
    secs, millis = divmod(millis, 1000)
    return f"{hours:02d}:{minutes:02d}:{secs:02d},{millis:03d}"


def is_finite_range(start_seconds: float, end_seconds: float) -> bool:
    return math.isfinite(start_seconds) and math.isfinite(end_seconds)


def _get(item: Any, *names: str) -> Any:
    for name in names:
        if isinstance(item, Mapping):
            if name in item:
                return item[name]
        elif hasattr(item, name):
            return getattr(item, name)
    return None


def extract_timestamps(ai_clips: Iterable[Any]) -> List[ExtractedTimestamp]:
    """Convert AI clip proposals to timestamps, dropping malformed items

    Items are mappings (or objects) with title, startTime, endTime,
    transcript and reason. Range sanity is left to validate_timestamps.
    """
    timestamps = []
    for position, item in enumerate(ai_clips or []):
        try:
            start = parse_timecode(_get(item, "startTime", "start_time"))
            end = parse_timecode(_get(item, "endTime", "end_time"))
        except ValueError as e:
            logger.warning(f"Dropping AI clip #{position}: {e}")
            continue

        title = _get(item, "title") or f"Clip {format_timecode(start)}"
        timestamps.append(ExtractedTimestamp(
            title=str(title).strip(),
            start_seconds=start,
            end_seconds=end,
            transcript=str(_get(item, "transcript") or ""),
            reason=str(_get(item, "reason") or ""),
        ))
    return timestamps


def validate_timestamps(
    timestamps: List[ExtractedTimestamp],
    video_duration_seconds: Optional[float],
) -> List[ExtractedTimestamp]:
    """Keep only ranges that fit the video; relative order is preserved

    With an unknown duration only malformed ranges (start >= end or
    negative start) are rejected.
    """
    valid = []
    for ts in timestamps:
        reason = None
        if not is_finite_range(ts.start_seconds, ts.end_seconds):
            reason = "non-finite bound"
        elif ts.start_seconds < 0:
            reason = "negative start"
        elif ts.start_seconds >= ts.end_seconds:
            reason = "start is not before end"
        elif video_duration_seconds is not None:
            if ts.start_seconds >= video_duration_seconds:
                reason = f"starts beyond duration {video_duration_seconds:.2f}s"
            elif ts.end_seconds > video_duration_seconds:
                reason = f"ends beyond duration {video_duration_seconds:.2f}s"

        if reason:
            logger.warning(
                f"Dropping clip '{ts.title}' ({ts.start_seconds:.2f}-{ts.end_seconds:.2f}): {reason}"
            )
            continue
        valid.append(ts)
    return valid


def sort_by_start_time(timestamps: List[ExtractedTimestamp]) -> List[ExtractedTimestamp]:
    """Stable sort by start time"""
    return sorted(timestamps, key=lambda ts: ts.start_seconds)


def find_overlaps(timestamps: List[ExtractedTimestamp]) -> List[Tuple[int, int]]:
    """Index pairs of adjacent timestamps that overlap, in sorted order"""
    ordered = sort_by_start_time(timestamps)
    overlaps = []
    for i in range(len(ordered) - 1):
        if ordered[i].end_seconds > ordered[i + 1].start_seconds:
            overlaps.append((i, i + 1))
    return overlaps


def check_clip_bounds(start_seconds: float, end_seconds: float, duration_seconds: Optional[float] = None) -> None:
    """Raise IntegrityError for a range that must never be persisted"""
    if not is_finite_range(start_seconds, end_seconds):
        raise IntegrityError(f"Non-finite clip range {start_seconds}-{end_seconds}")
    if start_seconds < 0 or start_seconds >= end_seconds:
        raise IntegrityError(f"Invalid clip range {start_seconds}-{end_seconds}")
    if duration_seconds is not None and end_seconds > duration_seconds:
        raise IntegrityError(
            f"Clip range {start_seconds}-{end_seconds} exceeds video duration {duration_seconds}"
        )
