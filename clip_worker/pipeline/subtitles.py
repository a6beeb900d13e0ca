"""
Deterministic subtitle segmentation for clips.

Sentences overlapping a clip are wrapped into lines of at most
SUBTITLE_MAX_CHARS_PER_LINE characters, grouped SUBTITLE_MAX_LINES at a
time, and timed by interpolating over each sentence's character count.
"""

import logging
from typing import List, Sequence, Tuple

from ..errors import ValidationError
from ..models import SubtitleSegment
from .timestamps import format_srt_timecode, is_finite_range

logger = logging.getLogger("clip_worker")

SUBTITLE_MAX_CHARS_PER_LINE = 16
SUBTITLE_MAX_LINES = 2


def filter_sentences_for_clip(
    sentences: Sequence[Tuple[float, float, str]],
    clip_start: float,
    clip_end: float,
) -> List[Tuple[float, float, str]]:
    """Sentences (start, end, text) that overlap the clip range"""
    return [s for s in sentences if s[0] < clip_end and s[1] > clip_start and s[2].strip()]


def wrap_text(text: str, max_chars: int = SUBTITLE_MAX_CHARS_PER_LINE) -> List[str]:
    """Greedy word wrap; words longer than a line are split"""
    lines: List[str] = []
    current = ""
    for word in text.split():
        while len(word) > max_chars:
            if current:
                lines.append(current)
                current = ""
            lines.append(word[:max_chars])
            word = word[max_chars:]
        if not word:
            continue
        candidate = f"{current} {word}" if current else word
        if len(candidate) <= max_chars:
            current = candidate
        else:
            lines.append(current)
            current = word
    if current:
        lines.append(current)
    return lines


def build_subtitle_segments(
    sentences: Sequence[Tuple[float, float, str]],
    clip_start: float,
    clip_end: float,
) -> List[SubtitleSegment]:
    """Subtitle segments with times relative to the clip start"""
    segments: List[SubtitleSegment] = []
    for start, end, text in filter_sentences_for_clip(sentences, clip_start, clip_end):
        rel_start = max(start, clip_start) - clip_start
        rel_end = min(end, clip_end) - clip_start

        lines = wrap_text(text)
        groups = [lines[i:i + SUBTITLE_MAX_LINES] for i in range(0, len(lines), SUBTITLE_MAX_LINES)]
        total_chars = sum(len(line) for line in lines)

        # Overlapping sentences must not produce overlapping captions
        cursor = max(rel_start, segments[-1].end_seconds) if segments else rel_start
        consumed = 0
        for group in groups:
            consumed += sum(len(line) for line in group)
            group_end = rel_start + (rel_end - rel_start) * consumed / total_chars
            seg_start, seg_end = round(cursor, 3), round(group_end, 3)
            if seg_end <= seg_start:
                # Too short to show on its own; fold into the previous caption when it has room
                if segments and len(segments[-1].lines) + len(group) <= SUBTITLE_MAX_LINES:
                    segments[-1].lines.extend(group)
                    segments[-1].end_seconds = max(segments[-1].end_seconds, seg_end)
                else:
                    logger.warning(f"Dropping zero-length subtitle {group!r}")
                continue
            segments.append(SubtitleSegment(
                index=len(segments),
                lines=list(group),
                start_seconds=seg_start,
                end_seconds=seg_end,
            ))
            cursor = group_end
    return segments


def validate_segments(segments: Sequence[SubtitleSegment]) -> None:
    """Raise ValidationError unless segments form a displayable subtitle track"""
    if not segments:
        raise ValidationError("Subtitle must have at least one segment")

    for i, segment in enumerate(segments):
        if segment.index != i:
            raise ValidationError(f"Segment index {segment.index} at position {i} is out of sequence")
        if (not is_finite_range(segment.start_seconds, segment.end_seconds)
                or segment.start_seconds < 0 or segment.start_seconds >= segment.end_seconds):
            raise ValidationError(
                f"Segment {i} has invalid time range {segment.start_seconds}-{segment.end_seconds}"
            )
        if i and segment.start_seconds < segments[i - 1].end_seconds:
            raise ValidationError(
                f"Segment {i} starts at {segment.start_seconds} before segment {i - 1} ends"
            )
        if not 1 <= len(segment.lines) <= SUBTITLE_MAX_LINES:
            raise ValidationError(f"Segment {i} must have 1 to {SUBTITLE_MAX_LINES} lines")
        for line in segment.lines:
            if not line.strip():
                raise ValidationError(f"Segment {i} has an empty line")
            if len(line) > SUBTITLE_MAX_CHARS_PER_LINE:
                raise ValidationError(
                    f"Segment {i} line exceeds {SUBTITLE_MAX_CHARS_PER_LINE} characters: {line!r}"
                )


def to_srt(segments: Sequence[SubtitleSegment]) -> str:
    """Render segments as SRT"""
    blocks = []
    for i, segment in enumerate(segments, 1):
        start_time = format_srt_timecode(segment.start_seconds)
        end_time = format_srt_timecode(segment.end_seconds)
        blocks.append(f"{i}\n{start_time} --> {end_time}\n" + "\n".join(segment.lines) + "\n")
    return "\n".join(blocks)
