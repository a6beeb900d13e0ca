"""
Pipeline orchestration.

Public entry points for submitting videos, running the transcription
pipeline, extracting clips and resetting. Owns the per-video lock so at
most one mutating operation runs per video, and keeps run statistics.
"""

import time
import logging
import threading
from datetime import datetime
from typing import Optional, Dict, Any, List

from .adapters.base import (
    StorageAdapter, ObjectStoreAdapter, FileHostAdapter, TranscoderAdapter, SpeechAdapter,
    ClipAnalyzerAdapter, TranscriptRefinerAdapter, VideoLock,
)
from .adapters.memory_adapter import LocalVideoLock
from .cache import TemporaryCacheManager
from .clip_subtitles import ClipSubtitleService
from .clips import ClipExtractor, clip_key
from .config import WorkerConfig
from .errors import ConflictError, NotFoundError, ValidationError
from .logging_setup import log_exception
from .models import (
    Video, VideoStatus, Clip, ProcessingJob, ProcessingJobStatus, ExtractionResult, TimeRange, new_id,
)
from .pipeline.timestamps import is_finite_range
from .processor import VideoProcessor
from .reset import ResetController
from .state_machine import can_transition_video, transition_job

logger = logging.getLogger("clip_worker")

VIDEO_PAGE_LIMIT = 500
CLIP_PAGE_DEFAULT = 50
CLIP_PAGE_LIMIT = 100


def paginate(items: List[Any], page: int, limit: int, max_limit: int) -> List[Any]:
    """1-based page of items; page and limit are clamped to valid values"""
    page = max(1, page)
    limit = min(max_limit, max(1, limit))
    offset = (page - 1) * limit
    return items[offset:offset + limit]


class PipelineOrchestrator:
    """Manages pipeline execution flow and coordination"""

    def __init__(
        self,
        config: WorkerConfig,
        storage: StorageAdapter,
        object_store: ObjectStoreAdapter,
        file_host: FileHostAdapter,
        transcoder: TranscoderAdapter,
        speech: SpeechAdapter,
        analyzer: Optional[ClipAnalyzerAdapter] = None,
        refiner: Optional[TranscriptRefinerAdapter] = None,
        lock: Optional[VideoLock] = None,
    ):
        self.config = config
        self.storage = storage
        self.object_store = object_store
        self.file_host = file_host
        self.lock = lock or LocalVideoLock()
        self.cache_manager = TemporaryCacheManager(storage, object_store, file_host)
        self.processor = VideoProcessor(
            config, storage, object_store, self.cache_manager, transcoder, speech, refiner
        )
        self.extractor = ClipExtractor(
            config, storage, object_store, self.cache_manager, transcoder, analyzer
        )
        self.resetter = ResetController(storage, self.lock)
        self.subtitles = ClipSubtitleService(config, storage, object_store, transcoder)
        self._stats_lock = threading.Lock()
        self.stats = self._fresh_stats()

    @staticmethod
    def _fresh_stats() -> Dict[str, Any]:
        return {
            'videos_processed': 0,
            'videos_failed': 0,
            'jobs_processed': 0,
            'jobs_failed': 0,
            'clips_created': 0,
            'total_processing_time': 0.0,
            'start_time': datetime.now()
        }

    # Videos

    def submit(self, source_url: str) -> Video:
        """Register a video from its Drive share URL"""
        video = Video.from_source_url(source_url)
        if self.storage.find_video_by_source(video.source_file_id):
            raise ConflictError(f"Video for source file {video.source_file_id} already exists")

        metadata = self.file_host.get_metadata(video.source_file_id)
        video.title = metadata.name
        video.size_bytes = metadata.size_bytes
        self.storage.save_video(video)
        logger.info(f"Submitted video {video.id} ({video.title}) from {video.source_file_id}")
        return video

    def get_video(self, video_id: str) -> Video:
        video = self.storage.get_video(video_id)
        if video is None:
            raise NotFoundError("Video", video_id)
        return video

    def list_videos(
        self,
        status: Optional[VideoStatus] = None,
        page: int = 1,
        limit: int = VIDEO_PAGE_LIMIT,
    ) -> List[Video]:
        """One page of videos, oldest first, optionally filtered by status"""
        return paginate(self.storage.list_videos(status), page, limit, VIDEO_PAGE_LIMIT)

    def get_clips(self, video_id: str) -> List[Clip]:
        self.get_video(video_id)
        return self.storage.list_clips(video_id)

    def list_all_clips(self, page: int = 1, limit: int = CLIP_PAGE_DEFAULT) -> List[Clip]:
        """One page of clips across every video, newest first"""
        return paginate(self.storage.list_all_clips(), page, limit, CLIP_PAGE_LIMIT)

    def get_clip(self, clip_id: str) -> Clip:
        clip = self.storage.get_clip(clip_id)
        if clip is None:
            raise NotFoundError("Clip", clip_id)
        return clip

    def get_clip_url(self, clip_id: str, expires_in: Optional[int] = None) -> str:
        """Presigned URL for the clip, preferring the subtitled copy"""
        clip = self.get_clip(clip_id)
        uri = clip.subtitled_uri or clip.output_uri
        if not uri:
            raise NotFoundError("Clip output", clip_id)
        return self.object_store.presigned_url(uri, expires_in)

    def delete_clip(self, clip_id: str) -> None:
        """Delete a clip, its subtitle and its uploaded files"""
        clip = self.get_clip(clip_id)
        with self.lock.hold(clip.video_id, timeout=0):
            removed = self.object_store.delete_prefix(clip_key(clip.video_id, clip.id, ""))
            self.storage.delete_clip(clip.id)
        logger.info(f"Deleted clip {clip_id} of video {clip.video_id} ({removed} remote objects)")

    def get_jobs(self, video_id: str) -> List[ProcessingJob]:
        self.get_video(video_id)
        return self.storage.list_jobs(video_id)

    def delete_video(self, video_id: str) -> None:
        """Delete a video, everything it owns and its remote objects"""
        self.get_video(video_id)
        with self.lock.hold(video_id, timeout=0):
            removed = self.object_store.delete_prefix(f"videos/{video_id}/")
            removed += self.object_store.delete_prefix(f"clips/{video_id}/")
            self.storage.delete_video(video_id)
        logger.info(f"Deleted video {video_id} ({removed} remote objects)")

    # Transcription pipeline

    def run_pipeline(self, video_id: str) -> Video:
        """
        Take a video to transcribed, resuming after the last completed step.

        A second call for the same video waits for the first one and then
        finds nothing left to do.
        """
        self.get_video(video_id)
        start_time = time.time()
        with self.lock.hold(video_id, timeout=self.config.LOCK_WAIT_SECONDS):
            try:
                result = self.processor.run(video_id)
            except ConflictError:
                raise
            except Exception:
                self._count('videos_failed', 1)
                raise
        if result.stages_completed:
            self._count('videos_processed', 1)
            self._count('total_processing_time', time.time() - start_time)
        return result.video

    def reset(self, video_id: str, step) -> Video:
        return self.resetter.reset(video_id, step)

    # Clip extraction

    def _new_job(self, video_id: str, instructions: Optional[str], ranges: Optional[List[TimeRange]]) -> ProcessingJob:
        video = self.get_video(video_id)
        ranges = list(ranges or [])
        if instructions is not None and not instructions.strip():
            raise ValidationError("Clip instructions must not be empty")
        if not instructions and not ranges:
            raise ValidationError("Either clip instructions or time ranges are required")

        duration = video.duration_seconds
        for r in ranges:
            if not is_finite_range(r.start_seconds, r.end_seconds):
                raise ValidationError(f"Time range {r.start_seconds}-{r.end_seconds} must be finite")
            if r.start_seconds < 0 or r.start_seconds >= r.end_seconds:
                raise ValidationError(f"Invalid time range {r.start_seconds}-{r.end_seconds}")
            if duration is not None and r.end_seconds > duration:
                raise ValidationError(
                    f"Time range {r.start_seconds}-{r.end_seconds} exceeds video duration {duration}"
                )

        return ProcessingJob(
            id=new_id(),
            video_id=video_id,
            instructions=(instructions or "").strip(),
            requested_ranges=ranges,
        )

    def _check_extractable(self, video: Video) -> None:
        if not can_transition_video(video.status, VideoStatus.EXTRACTING):
            raise ConflictError(f"Video {video.id} is {video.status.value}; it must be transcribed first")
        if self.storage.get_transcription(video.id) is None:
            raise NotFoundError("Transcription", video.id)

    def _check_no_active_job(self, video_id: str, except_job_id: Optional[str] = None) -> None:
        for job in self.storage.list_jobs(video_id):
            if job.is_active and job.id != except_job_id:
                raise ConflictError(f"Video {video_id} already has active job {job.id}")

    def extract_clips(
        self,
        video_id: str,
        instructions: Optional[str] = None,
        ranges: Optional[List[TimeRange]] = None,
    ) -> ExtractionResult:
        """Run a clip-extraction job synchronously"""
        job = self._new_job(video_id, instructions, ranges)
        with self.lock.hold(video_id, timeout=0):
            video = self.get_video(video_id)
            self._check_extractable(video)
            self._check_no_active_job(video_id)
            self.storage.save_job(job)
            return self._run_extraction(video, job)

    def enqueue_extraction(
        self,
        video_id: str,
        instructions: Optional[str] = None,
        ranges: Optional[List[TimeRange]] = None,
    ) -> ProcessingJob:
        """Record a pending job for the worker loop to pick up"""
        job = self._new_job(video_id, instructions, ranges)
        self._check_no_active_job(video_id)
        self.storage.save_job(job)
        logger.info(f"Enqueued job {job.id} for video {video_id}")
        return job

    def process_job(self, job: ProcessingJob) -> ExtractionResult:
        """Handle a claimed job: transcribe if needed, then extract"""
        with self.lock.hold(job.video_id, timeout=self.config.LOCK_WAIT_SECONDS):
            try:
                result = self.processor.run(job.video_id)
                if result.stages_completed:
                    self._count('videos_processed', 1)
                video = self.get_video(job.video_id)
                self._check_extractable(video)
                self._check_no_active_job(job.video_id, except_job_id=job.id)
            except Exception as e:
                log_exception(logger, f"Job {job.id} cannot run for video {job.video_id}: {e}")
                current = self.storage.get_job(job.id)
                if current and current.status == ProcessingJobStatus.PENDING:
                    self.storage.save_job(transition_job(current, ProcessingJobStatus.FAILED, error_message=str(e)))
                self._count('jobs_failed', 1)
                raise
            return self._run_extraction(video, job)

    def _run_extraction(self, video: Video, job: ProcessingJob) -> ExtractionResult:
        start_time = time.time()
        try:
            result = self.extractor.extract(video, job)
        except Exception:
            self._count('jobs_failed', 1)
            raise
        self._count('total_processing_time', time.time() - start_time)
        if result.job.status == ProcessingJobStatus.COMPLETED:
            self._count('jobs_processed', 1)
            self._count('clips_created', len(result.succeeded))
        else:
            self._count('jobs_failed', 1)
        return result

    def retry_job(self, job_id: str) -> ProcessingJob:
        """Put a failed job back in the queue"""
        job = self.storage.get_job(job_id)
        if job is None:
            raise NotFoundError("ProcessingJob", job_id)
        self._check_no_active_job(job.video_id, except_job_id=job.id)
        job = transition_job(job, ProcessingJobStatus.PENDING)
        self.storage.save_job(job)
        return job

    # Statistics

    def _count(self, key: str, amount: float) -> None:
        # Worker threads and the health server share these counters
        with self._stats_lock:
            self.stats[key] += amount

    def get_stats(self) -> Dict[str, Any]:
        """Get orchestrator statistics"""
        with self._stats_lock:
            stats = dict(self.stats)
        uptime = (datetime.now() - stats['start_time']).total_seconds()
        finished = stats['jobs_processed'] + stats['jobs_failed']
        return {
            'videos_processed': stats['videos_processed'],
            'videos_failed': stats['videos_failed'],
            'jobs_processed': stats['jobs_processed'],
            'jobs_failed': stats['jobs_failed'],
            'clips_created': stats['clips_created'],
            'total_processing_time': stats['total_processing_time'],
            'uptime_seconds': uptime,
            'success_rate': stats['jobs_processed'] / finished if finished > 0 else 0
        }

    def reset_stats(self) -> None:
        """Reset orchestrator statistics"""
        with self._stats_lock:
            self.stats = self._fresh_stats()
        logger.info("Orchestrator statistics reset")
