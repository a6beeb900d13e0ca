"""Tests for the worker polling loop."""

from unittest.mock import MagicMock, patch

import pytest

from clip_worker.adapters.memory_adapter import MemoryJobSourceAdapter, MemoryStorageAdapter
from clip_worker.config import WorkerConfig
from clip_worker.models import ProcessingJobStatus, VideoStatus
from clip_worker.service import WorkerService


@pytest.fixture
def service(config, storage, orchestrator):
    worker = WorkerService(config)
    worker.storage = storage
    worker.job_source = MemoryJobSourceAdapter(storage)
    worker.lock = orchestrator.lock
    worker.orchestrator = orchestrator
    return worker


def test_run_once_without_jobs(service) -> None:
    assert service.run_once() is False


def test_run_once_processes_claimed_job(service, orchestrator, storage, video) -> None:
    job = orchestrator.enqueue_extraction(video.id, instructions="highlights")

    assert service.run_once() is True

    assert storage.get_job(job.id).status == ProcessingJobStatus.COMPLETED
    assert storage.get_video(video.id).status == VideoStatus.COMPLETED
    assert service.run_once() is False


def test_busy_video_hands_job_back(service, orchestrator, storage, config, video) -> None:
    config.LOCK_WAIT_SECONDS = 0
    job = orchestrator.enqueue_extraction(video.id, instructions="highlights")
    assert orchestrator.lock.acquire(video.id)
    try:
        assert service.run_once() is False
    finally:
        orchestrator.lock.release(video.id)

    assert storage.get_job(job.id).status == ProcessingJobStatus.PENDING
    assert [j.id for j in service.job_source.get_pending_jobs()] == [job.id]
    assert service.run_once() is True


def test_failed_job_is_consumed(service, orchestrator, storage, speech, video) -> None:
    speech.error = RuntimeError("speech down")
    orchestrator.enqueue_extraction(video.id, instructions="highlights")

    with pytest.raises(RuntimeError):
        service.run_once()

    assert service.job_source.claim_job() is None


def test_backoff_grows_to_maximum(config) -> None:
    config.POLL_INTERVAL_MS = 100
    config.BACKOFF_MULTIPLIER = 2
    config.MAX_BACKOFF_MS = 300
    worker = WorkerService(config)

    with patch("clip_worker.service.time.sleep") as mock_sleep:
        worker._sleep_with_backoff()
        worker._sleep_with_backoff()
        worker._sleep_with_backoff()

    assert [c[0][0] for c in mock_sleep.call_args_list] == [0.1, 0.2, 0.3]
    assert worker.backoff_interval == 300


def test_memory_storage_is_selected(config) -> None:
    worker = WorkerService(config)

    assert isinstance(worker._create_storage_adapter(), MemoryStorageAdapter)


def test_unsupported_storage_type() -> None:
    worker = WorkerService(WorkerConfig(STORAGE_TYPE="sqlite"))

    with pytest.raises(ValueError):
        worker._create_storage_adapter()


def test_stats_include_storage_counts(service, transcribed_video) -> None:
    stats = service.get_stats()

    assert stats["config"]["storage_type"] == "memory"
    assert stats["storage"]["videos"] == {"transcribed": 1}
    assert stats["orchestrator"]["videos_processed"] == 1


def test_stop_closes_adapters(service) -> None:
    service.object_store = MagicMock()
    service.file_host = MagicMock()
    service.running = True

    service.stop()

    assert service.running is False
    service.object_store.close.assert_called_once()
    service.file_host.close.assert_called_once()
