"""Tests for the in-process storage adapter."""

import pytest

from clip_worker.adapters.memory_adapter import MemoryJobSourceAdapter
from clip_worker.errors import ConflictError, IntegrityError
from clip_worker.models import Clip, ClipSubtitle, ProcessingJob, Video, VideoStatus

URL = "https://drive.google.com/file/d/{}/view"


def test_reads_return_copies(storage) -> None:
    video = Video.from_source_url(URL.format("a"))
    storage.save_video(video)

    loaded = storage.get_video(video.id)
    loaded.title = "changed"

    assert storage.get_video(video.id).title is None


def test_duplicate_source_conflicts(storage) -> None:
    storage.save_video(Video.from_source_url(URL.format("a")))

    with pytest.raises(ConflictError):
        storage.save_video(Video.from_source_url(URL.format("a")))


def test_invariants_checked_on_save(storage) -> None:
    video = Video.from_source_url(URL.format("a"))
    video.status = VideoStatus.FAILED

    with pytest.raises(IntegrityError):
        storage.save_video(video)
    assert storage.list_videos() == []


def test_clip_bounds_checked_against_duration(storage) -> None:
    video = Video.from_source_url(URL.format("a"))
    video.duration_seconds = 30.0
    storage.save_video(video)

    with pytest.raises(IntegrityError):
        storage.save_clips([
            Clip(id="c1", video_id=video.id, start_seconds=0, end_seconds=10),
            Clip(id="c2", video_id=video.id, start_seconds=20, end_seconds=40),
        ])
    assert storage.list_clips(video.id) == []


def test_job_claims(storage) -> None:
    source = MemoryJobSourceAdapter(storage)
    storage.save_job(ProcessingJob(id="j1", video_id="v", instructions="a"))
    storage.save_job(ProcessingJob(id="j2", video_id="v", instructions="b"))

    first = source.claim_job()
    second = source.claim_job()

    assert {first.id, second.id} == {"j1", "j2"}
    assert source.claim_job() is None

    source.release_job(first.id)
    assert source.claim_job().id == first.id


def test_delete_video_cascades(orchestrator, storage, transcribed_video) -> None:
    orchestrator.extract_clips(transcribed_video.id, instructions="anything")

    storage.delete_video(transcribed_video.id)

    assert storage.get_transcription(transcribed_video.id) is None
    assert storage.list_clips(transcribed_video.id) == []
    assert storage.list_jobs(transcribed_video.id) == []
    assert storage.refined == {}
    assert storage.subtitles == {}


def test_delete_clip_drops_subtitle(storage) -> None:
    video = Video.from_source_url(URL.format("a"))
    storage.save_video(video)
    storage.save_clips([
        Clip(id="c1", video_id=video.id, start_seconds=0, end_seconds=10),
        Clip(id="c2", video_id=video.id, start_seconds=10, end_seconds=20),
    ])
    storage.save_subtitle(ClipSubtitle(id="s1", clip_id="c1", segments=[]))

    storage.delete_clip("c1")

    assert storage.get_clip("c1") is None
    assert storage.get_subtitle("c1") is None
    assert [c.id for c in storage.list_all_clips()] == ["c2"]
