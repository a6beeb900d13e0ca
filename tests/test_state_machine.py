"""Tests for video and job status transitions."""

from dataclasses import replace
from datetime import timedelta

import pytest

from clip_worker.errors import ConflictError, IntegrityError
from clip_worker.models import (
    ProcessingJob,
    ProcessingJobStatus,
    ResetStep,
    TranscriptionPhase,
    Video,
    VideoStatus,
    utcnow,
)
from clip_worker.state_machine import (
    RESET_PLANS,
    can_transition_video,
    check_video_invariants,
    fail_video,
    rewind_video,
    set_phase,
    transition_job,
    transition_video,
)

URL = "https://drive.google.com/file/d/file123/view"


def _cached_video(**changes) -> Video:
    video = Video.from_source_url(URL)
    video = replace(video, cache_uri="s3://b/videos/x/original", cache_expires_at=utcnow() + timedelta(days=1))
    return replace(video, **changes)


def test_from_source_url_extracts_file_id() -> None:
    video = Video.from_source_url(URL)

    assert video.source_file_id == "file123"
    assert video.status == VideoStatus.PENDING


def test_transition_returns_copy() -> None:
    video = _cached_video()

    moved = transition_video(video, VideoStatus.TRANSCRIBING, phase=TranscriptionPhase.EXTRACTING_AUDIO)

    assert video.status == VideoStatus.PENDING
    assert moved.status == VideoStatus.TRANSCRIBING
    assert moved.transcription_phase == TranscriptionPhase.EXTRACTING_AUDIO
    assert moved.progress_message == "Extracting audio"


@pytest.mark.parametrize(
    "current,target",
    [
        (VideoStatus.PENDING, VideoStatus.TRANSCRIBED),
        (VideoStatus.PENDING, VideoStatus.COMPLETED),
        (VideoStatus.TRANSCRIBED, VideoStatus.PENDING),
        (VideoStatus.COMPLETED, VideoStatus.FAILED),
        (VideoStatus.FAILED, VideoStatus.TRANSCRIBING),
    ],
)
def test_illegal_transitions_raise_conflict(current, target) -> None:
    video = _cached_video(status=current, error_message="x" if current == VideoStatus.FAILED else None)

    assert not can_transition_video(current, target)
    with pytest.raises(ConflictError):
        transition_video(video, target)


def test_transcribing_requires_cache_reference() -> None:
    video = Video.from_source_url(URL)

    with pytest.raises(ConflictError):
        transition_video(video, VideoStatus.TRANSCRIBING)


def test_failed_requires_message() -> None:
    video = _cached_video()

    with pytest.raises(IntegrityError):
        transition_video(video, VideoStatus.FAILED)

    failed = transition_video(video, VideoStatus.FAILED, error_message="boom")
    assert failed.error_message == "boom"


def test_failed_to_extracting_requires_transcript() -> None:
    video = _cached_video(status=VideoStatus.FAILED, error_message="earlier")

    with pytest.raises(ConflictError):
        transition_video(video, VideoStatus.EXTRACTING)

    moved = transition_video(video, VideoStatus.EXTRACTING, has_transcription=True)
    assert moved.error_message is None


def test_leaving_transcribing_clears_phase() -> None:
    video = _cached_video(status=VideoStatus.TRANSCRIBING, transcription_phase=TranscriptionPhase.SAVING)

    done = transition_video(video, VideoStatus.TRANSCRIBED)

    assert done.transcription_phase is None
    check_video_invariants(done)


def test_set_phase_only_while_transcribing() -> None:
    with pytest.raises(IntegrityError):
        set_phase(_cached_video(), TranscriptionPhase.UPLOADING)

    video = _cached_video(status=VideoStatus.TRANSCRIBING)
    assert set_phase(video, TranscriptionPhase.UPLOADING).progress_message == "Uploading audio"


def test_fail_video_on_completed_is_refused() -> None:
    assert fail_video(_cached_video(status=VideoStatus.COMPLETED), "boom") is None

    already = _cached_video(status=VideoStatus.FAILED, error_message="first")
    assert fail_video(already, "second").error_message == "second"


def test_invariants() -> None:
    with pytest.raises(IntegrityError):
        check_video_invariants(replace(Video.from_source_url(URL), status=VideoStatus.FAILED))
    with pytest.raises(IntegrityError):
        check_video_invariants(replace(Video.from_source_url(URL), transcription_phase=TranscriptionPhase.SAVING))
    with pytest.raises(IntegrityError):
        check_video_invariants(replace(Video.from_source_url(URL), cache_uri="s3://b/k"))


def test_reset_plans_rewind() -> None:
    video = _cached_video(status=VideoStatus.COMPLETED, audio_uri="s3://b/audio.wav")

    transcribe = rewind_video(video, RESET_PLANS[ResetStep.TRANSCRIBE])
    assert transcribe.status == VideoStatus.PENDING
    assert transcribe.cache_uri == video.cache_uri
    assert transcribe.audio_uri == video.audio_uri

    audio = rewind_video(video, RESET_PLANS[ResetStep.AUDIO])
    assert audio.audio_uri is None
    assert audio.cache_uri == video.cache_uri

    everything = rewind_video(video, RESET_PLANS[ResetStep.ALL])
    assert everything.cache_uri is None
    assert everything.cache_expires_at is None
    assert everything.audio_uri is None

    refine = rewind_video(video, RESET_PLANS[ResetStep.REFINE])
    assert refine.status == VideoStatus.TRANSCRIBING
    assert refine.transcription_phase == TranscriptionPhase.SAVING
    check_video_invariants(refine)


def test_job_transitions_track_timestamps() -> None:
    job = ProcessingJob(id="j1", video_id="v1", instructions="find jokes")

    analyzing = transition_job(job, ProcessingJobStatus.ANALYZING)
    assert analyzing.started_at is not None
    assert analyzing.completed_at is None

    failed = transition_job(analyzing, ProcessingJobStatus.FAILED, error_message="ai down")
    assert failed.completed_at is not None
    assert not failed.is_active

    retried = transition_job(failed, ProcessingJobStatus.PENDING)
    assert retried.started_at is None
    assert retried.completed_at is None
    assert retried.error_message is None


def test_completed_job_is_terminal() -> None:
    job = ProcessingJob(id="j1", video_id="v1", status=ProcessingJobStatus.COMPLETED)

    with pytest.raises(ConflictError):
        transition_job(job, ProcessingJobStatus.PENDING)
    with pytest.raises(IntegrityError):
        transition_job(ProcessingJob(id="j2", video_id="v1"), ProcessingJobStatus.FAILED)
