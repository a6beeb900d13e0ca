"""Tests for timecode parsing and AI timestamp validation."""

import pytest

from clip_worker.errors import IntegrityError
from clip_worker.models import ExtractedTimestamp
from clip_worker.pipeline.analysis import AiClip
from clip_worker.pipeline.timestamps import (
    check_clip_bounds,
    extract_timestamps,
    find_overlaps,
    format_srt_timecode,
    format_timecode,
    parse_timecode,
    sort_by_start_time,
    validate_timestamps,
)


def _ts(start: float, end: float, title: str = "clip") -> ExtractedTimestamp:
    return ExtractedTimestamp(title=title, start_seconds=start, end_seconds=end)


@pytest.mark.parametrize(
    "value,expected",
    [
        ("00:00:00", 0.0),
        ("01:02:03", 3723.0),
        ("00:01:30.5", 90.5),
        ("00:00:01,250", 1.25),
        ("02:15", 135.0),
        (" 00:00:10 ", 10.0),
        (42, 42.0),
        (12.5, 12.5),
    ],
)
def test_parse_timecode_accepts_supported_forms(value, expected) -> None:
    assert parse_timecode(value) == pytest.approx(expected)


@pytest.mark.parametrize("value", ["", "abc", "1:2:3", "00:61:00", "00:00:75", "-00:00:01", -1, True, None])
def test_parse_timecode_rejects_malformed(value) -> None:
    with pytest.raises(ValueError):
        parse_timecode(value)


def test_format_timecode_and_srt() -> None:
    assert format_timecode(3723.9) == "01:02:03"
    assert format_timecode(-5) == "00:00:00"
    assert format_srt_timecode(1.25) == "00:00:01,250"
    assert format_srt_timecode(3661.001) == "01:01:01,001"


def test_extract_timestamps_drops_only_malformed_items() -> None:
    clips = [
        {"title": "Intro", "startTime": "00:00:00", "endTime": "00:00:10"},
        {"title": "Broken", "startTime": "soon", "endTime": "00:00:20"},
        {"title": "Missing end", "startTime": "00:00:05"},
        {"startTime": "00:00:30", "endTime": "00:00:45", "transcript": "hi", "reason": "funny"},
    ]

    result = extract_timestamps(clips)

    assert [ts.title for ts in result] == ["Intro", "Clip 00:00:30"]
    assert result[1].start_seconds == 30.0
    assert result[1].transcript == "hi"
    assert result[1].reason == "funny"


def test_extract_timestamps_reads_pydantic_models() -> None:
    clip = AiClip(title="Hook", startTime="00:01:00", endTime="00:01:20", transcript="t", reason="r")

    result = extract_timestamps([clip])

    assert result[0].start_seconds == 60.0
    assert result[0].end_seconds == 80.0


def test_extract_timestamps_handles_empty() -> None:
    assert extract_timestamps([]) == []
    assert extract_timestamps(None) == []


def test_validate_timestamps_filters_and_preserves_order() -> None:
    candidates = [
        _ts(50, 60, "late"),
        _ts(-1, 5, "negative"),
        _ts(20, 20, "empty"),
        _ts(30, 25, "reversed"),
        _ts(10, 20, "early"),
        _ts(110, 130, "overrun"),
        _ts(120, 125, "after end"),
    ]

    valid = validate_timestamps(candidates, 120.0)

    assert [ts.title for ts in valid] == ["late", "early"]


def test_validate_timestamps_allows_end_equal_to_duration() -> None:
    assert len(validate_timestamps([_ts(100, 120)], 120.0)) == 1


def test_validate_timestamps_without_duration_only_checks_shape() -> None:
    valid = validate_timestamps([_ts(500, 900), _ts(5, 1)], None)

    assert [(ts.start_seconds, ts.end_seconds) for ts in valid] == [(500, 900)]


def test_sort_is_stable() -> None:
    ordered = sort_by_start_time([_ts(10, 20, "b"), _ts(0, 5, "a"), _ts(10, 15, "c")])

    assert [ts.title for ts in ordered] == ["a", "b", "c"]


def test_find_overlaps_reports_adjacent_pairs() -> None:
    assert find_overlaps([_ts(0, 10), _ts(10, 20)]) == []
    assert find_overlaps([_ts(15, 30), _ts(0, 20), _ts(40, 50)]) == [(0, 1)]


def test_check_clip_bounds() -> None:
    check_clip_bounds(0, 10, 10)
    with pytest.raises(IntegrityError):
        check_clip_bounds(5, 5)
    with pytest.raises(IntegrityError):
        check_clip_bounds(0, 11, 10)


def test_overlap_report_for_three_clips() -> None:
    assert find_overlaps([_ts(0, 10), _ts(5, 15), _ts(20, 30)]) == [(0, 1)]


def test_valid_items_pass_through_unchanged() -> None:
    clips = [{"title": "A", "startTime": "00:00:05", "endTime": "00:01:00", "transcript": "t", "reason": "r"}]

    extracted = extract_timestamps(clips)

    assert validate_timestamps(extracted, 60.0) == extracted
    assert extracted[0] == ExtractedTimestamp("A", 5.0, 60.0, "t", "r")


@pytest.mark.parametrize("value", [float("nan"), float("inf"), float("-inf")])
def test_parse_timecode_rejects_non_finite_numbers(value) -> None:
    with pytest.raises(ValueError):
        parse_timecode(value)


@pytest.mark.parametrize("duration", [60.0, None])
def test_non_finite_ranges_are_dropped(duration) -> None:
    timestamps = [_ts(float("nan"), 5.0), _ts(0.0, float("inf")), _ts(1.0, float("nan")), _ts(1.0, 5.0)]

    assert validate_timestamps(timestamps, duration) == [_ts(1.0, 5.0)]


@pytest.mark.parametrize(
    "start,end",
    [(float("nan"), 5.0), (0.0, float("nan")), (0.0, float("inf"))],
)
def test_non_finite_clip_bounds_raise(start, end) -> None:
    with pytest.raises(IntegrityError):
        check_clip_bounds(start, end, 60.0)
    with pytest.raises(IntegrityError):
        check_clip_bounds(start, end)
