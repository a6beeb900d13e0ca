"""Tests for the resumable transcription pipeline."""

import threading
from dataclasses import replace

import pytest

from clip_worker.errors import ConflictError, TransientExternalError
from clip_worker.models import TranscriptionPhase, VideoStatus
from clip_worker.processor import audio_key


def test_run_pipeline_transcribes_video(orchestrator, storage, object_store, transcoder, speech, refiner, video) -> None:
    result = orchestrator.run_pipeline(video.id)

    assert result.status == VideoStatus.TRANSCRIBED
    assert result.transcription_phase is None
    assert result.progress_message is None
    assert result.duration_seconds == 120.0
    assert result.audio_uri == object_store.uri_for(audio_key(video.id, "wav"))
    assert transcoder.audio_calls == 1
    assert speech.calls == 1
    assert refiner.calls == 1

    transcription = storage.get_transcription(video.id)
    assert len(transcription.segments) == 3
    refined = storage.get_refined_transcription(transcription.id)
    assert [s.original_segment_indices for s in refined.sentences] == [[0], [1], [2]]
    assert orchestrator.get_stats()['videos_processed'] == 1


def test_run_pipeline_records_stages(orchestrator, video) -> None:
    result = orchestrator.processor.run(video.id)

    assert result.stages_completed == ["cache", "audio", "transcribe", "refine"]
    assert result.refinement.refined is True


def test_rerun_on_transcribed_video_is_noop(orchestrator, transcoder, speech, transcribed_video) -> None:
    again = orchestrator.run_pipeline(transcribed_video.id)

    assert again.status == VideoStatus.TRANSCRIBED
    assert transcoder.audio_calls == 1
    assert speech.calls == 1


def test_refinement_failure_is_not_fatal(orchestrator, storage, refiner, video) -> None:
    refiner.error = RuntimeError("model returned garbage")

    result = orchestrator.processor.run(video.id)

    assert result.video.status == VideoStatus.TRANSCRIBED
    assert result.refinement.refined is False
    assert "garbage" in result.refinement.reason
    transcription = storage.get_transcription(video.id)
    assert storage.get_refined_transcription(transcription.id) is None


def test_refinement_timeout_is_not_fatal(orchestrator, config, storage, refiner, video) -> None:
    config.REFINE_TIMEOUT_SECONDS = 0.2
    refiner.delay = threading.Event()
    try:
        result = orchestrator.processor.run(video.id)
    finally:
        refiner.delay.set()

    assert result.video.status == VideoStatus.TRANSCRIBED
    assert result.refinement.refined is False
    assert "timed out" in result.refinement.reason


def test_refinement_disabled(orchestrator, config, refiner, video) -> None:
    config.REFINE_ENABLED = False

    result = orchestrator.processor.run(video.id)

    assert result.refinement.refined is False
    assert refiner.calls == 0


def test_failure_marks_video_failed(orchestrator, storage, speech, video) -> None:
    speech.error = TransientExternalError("speech", "service unavailable")

    with pytest.raises(TransientExternalError):
        orchestrator.run_pipeline(video.id)

    failed = storage.get_video(video.id)
    assert failed.status == VideoStatus.FAILED
    assert failed.error_message == "speech: service unavailable"
    assert failed.transcription_phase is None
    assert failed.cache_uri is not None
    assert orchestrator.get_stats()['videos_failed'] == 1

    with pytest.raises(ConflictError):
        orchestrator.run_pipeline(video.id)


def test_resume_skips_completed_steps(orchestrator, storage, file_host, transcoder, speech, video) -> None:
    speech.error = TransientExternalError("speech", "rate limited")
    with pytest.raises(TransientExternalError):
        orchestrator.run_pipeline(video.id)

    speech.error = None
    orchestrator.reset(video.id, "transcribe")
    result = orchestrator.run_pipeline(video.id)

    assert result.status == VideoStatus.TRANSCRIBED
    assert file_host.downloads == 1
    assert transcoder.audio_calls == 1
    assert speech.calls == 2


def test_interrupted_transcribing_video_resumes(orchestrator, storage, file_host, transcoder, speech, video) -> None:
    orchestrator.processor.cache_step(storage.get_video(video.id))
    orchestrator.processor.extract_audio_step(storage.get_video(video.id))
    interrupted = storage.get_video(video.id)
    assert interrupted.status == VideoStatus.TRANSCRIBING
    assert interrupted.transcription_phase == TranscriptionPhase.UPLOADING

    result = orchestrator.run_pipeline(video.id)

    assert result.status == VideoStatus.TRANSCRIBED
    assert file_host.downloads == 1
    assert transcoder.audio_calls == 1
    assert speech.calls == 1


def test_lost_audio_is_extracted_again(orchestrator, storage, object_store, transcoder, video) -> None:
    orchestrator.processor.cache_step(storage.get_video(video.id))
    orchestrator.processor.extract_audio_step(storage.get_video(video.id))
    object_store.purge(storage.get_video(video.id).audio_uri)

    orchestrator.run_pipeline(video.id)

    assert transcoder.audio_calls == 2


def test_unknown_duration_comes_from_transcription(orchestrator, storage, transcoder, speech, video) -> None:
    transcoder.duration = None
    speech.result = replace(speech.result, duration_seconds=95.5)

    result = orchestrator.run_pipeline(video.id)

    assert result.duration_seconds == 95.5
