"""
Clip extraction.

Turns AI-proposed (or caller-supplied) ranges into clip rows, then cuts
and uploads every clip concurrently. One clip failing never affects its
siblings; the job fails only when no clip succeeds. The caller holds the
video lock.
"""

import os
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from typing import List, Optional, Tuple

from .adapters.base import (
    StorageAdapter, ObjectStoreAdapter, TranscoderAdapter, ClipAnalyzerAdapter, AnalysisRequest,
)
from .cache import TemporaryCacheManager
from .config import WorkerConfig
from .errors import NotFoundError
from .logging_setup import log_exception
from .models import (
    Video, VideoStatus, Clip, ClipStatus, ProcessingJob, ProcessingJobStatus,
    ExtractedTimestamp, ExtractionResult, TimeRange, new_id, utcnow,
)
from .pipeline.timestamps import (
    extract_timestamps, validate_timestamps, sort_by_start_time, find_overlaps, format_timecode,
)
from .pipeline.util import work_dir
from .state_machine import transition_video, transition_job, fail_video

logger = logging.getLogger("clip_worker")

AUTO_TITLE_MAX_LENGTH = 50


def clip_key(video_id: str, clip_id: str, suffix: str = "mp4") -> str:
    return f"clips/{video_id}/{clip_id}.{suffix}"


def transcript_lines_for(storage: StorageAdapter, video_id: str) -> List[Tuple[float, float, str]]:
    """Refined sentences when available, raw segments otherwise"""
    transcription = storage.get_transcription(video_id)
    if transcription is None:
        raise NotFoundError("Transcription", video_id)
    refined = storage.get_refined_transcription(transcription.id)
    if refined and refined.sentences:
        return [(s.start_seconds, s.end_seconds, s.text) for s in refined.sentences]
    return [(s.start_seconds, s.end_seconds, s.text) for s in transcription.segments]


def excerpt(lines: List[Tuple[float, float, str]], start: float, end: float) -> str:
    return " ".join(text for s, e, text in lines if s < end and e > start).strip()


def auto_title(text: str, start: float, end: float) -> str:
    """Title from the transcript excerpt, or the time range when there is none"""
    if text:
        if len(text) <= AUTO_TITLE_MAX_LENGTH:
            return text
        return text[:AUTO_TITLE_MAX_LENGTH - 1].rstrip() + "…"
    return f"Clip {format_timecode(start)}-{format_timecode(end)}"


def timestamps_from_ranges(ranges: List[TimeRange], lines: List[Tuple[float, float, str]]) -> List[ExtractedTimestamp]:
    timestamps = []
    for r in ranges:
        text = excerpt(lines, r.start_seconds, r.end_seconds)
        timestamps.append(ExtractedTimestamp(
            title=r.title or auto_title(text, r.start_seconds, r.end_seconds),
            start_seconds=r.start_seconds,
            end_seconds=r.end_seconds,
            transcript=text,
            reason="requested range",
        ))
    return timestamps


class ClipExtractor:
    """Runs one processing job against a transcribed video"""

    def __init__(
        self,
        config: WorkerConfig,
        storage: StorageAdapter,
        object_store: ObjectStoreAdapter,
        cache_manager: TemporaryCacheManager,
        transcoder: TranscoderAdapter,
        analyzer: Optional[ClipAnalyzerAdapter],
    ):
        self.config = config
        self.storage = storage
        self.object_store = object_store
        self.cache_manager = cache_manager
        self.transcoder = transcoder
        self.analyzer = analyzer

    def extract(self, video: Video, job: ProcessingJob) -> ExtractionResult:
        """
        Execute a pending job end to end.

        Args:
            video: Video in transcribed, completed or failed (with transcript) state
            job: Pending job for the video

        Returns:
            ExtractionResult with the final job and every clip created
        """
        start_time = time.time()
        clips: List[Clip] = []
        lines = transcript_lines_for(self.storage, video.id)
        video = self._save_video(transition_video(video, VideoStatus.EXTRACTING, has_transcription=True))
        try:
            # Step 1: Candidate ranges
            if job.requested_ranges:
                candidates = timestamps_from_ranges(job.requested_ranges, lines)
            else:
                job = self._save_job(transition_job(job, ProcessingJobStatus.ANALYZING))
                job, candidates = self._analyze(video, job, lines)

            # Step 2: Validate, order, flag overlaps
            duration = video.duration_seconds
            if duration is None:
                transcription = self.storage.get_transcription(video.id)
                duration = transcription.duration_seconds if transcription else None
            valid = sort_by_start_time(validate_timestamps(candidates, duration))
            dropped = len(candidates) - len(valid)
            overlaps = find_overlaps(valid)
            for first, second in overlaps:
                logger.warning(
                    f"Clips '{valid[first].title}' and '{valid[second].title}' overlap in video {video.id}"
                )

            job = self._save_job(replace(transition_job(job, ProcessingJobStatus.EXTRACTING), overlaps=overlaps))

            if not valid:
                return self._finish_failed(video, job, clips, dropped, "No valid clip ranges to extract")

            # Step 3: Persist clip rows
            clips = [
                Clip(
                    id=new_id(),
                    video_id=video.id,
                    job_id=job.id,
                    start_seconds=ts.start_seconds,
                    end_seconds=ts.end_seconds,
                    title=ts.title,
                    transcript=ts.transcript,
                    reason=ts.reason,
                )
                for ts in valid
            ]
            self.storage.save_clips(clips)
            logger.info(f"Created {len(clips)} clips for video {video.id} ({dropped} dropped)")

            # Step 4: Cut and upload concurrently
            cache = self.cache_manager.ensure_cached(self._reload(video.id))
            source = self.object_store.presigned_url(cache.uri)
            with work_dir(f"clips-{video.id}", self.config.DATA_DIR) as tmp:
                clips = self._fan_out(self._cut_clip, clips, source, tmp)
                job = self._save_job(transition_job(job, ProcessingJobStatus.UPLOADING))
                clips = self._fan_out(self._upload_clip, clips, source, tmp)

            succeeded = [c for c in clips if c.status == ClipStatus.COMPLETED]
            if not succeeded:
                return self._finish_failed(video, job, clips, dropped, f"All {len(clips)} clips failed")

            job = self._save_job(transition_job(job, ProcessingJobStatus.COMPLETED))
            video = self._save_video(transition_video(self._reload(video.id), VideoStatus.COMPLETED))

            processing_time = time.time() - start_time
            logger.info(
                f"Job {job.id} completed for video {video.id}: {len(succeeded)}/{len(clips)} clips in {processing_time:.2f}s"
            )
            return ExtractionResult(
                job=job,
                clips=clips,
                dropped=dropped,
                overlaps=overlaps,
                metrics={'processing_time_sec': processing_time, 'succeeded': len(succeeded)},
            )

        except Exception as e:
            log_exception(logger, f"Extraction failed for video {video.id}, job {job.id}: {e}")
            self._fail_job(job.id, str(e))
            self._fail_video(video.id, str(e))
            raise

    def _analyze(self, video: Video, job: ProcessingJob, lines) -> Tuple[ProcessingJob, List[ExtractedTimestamp]]:
        if self.analyzer is None:
            raise NotFoundError("ClipAnalyzer", "default")
        response = self.analyzer.analyze(AnalysisRequest(
            source_ref=video.title or video.source_url,
            instructions=job.instructions,
            lines=lines,
            duration_seconds=video.duration_seconds,
        ))
        job = self._save_job(replace(job, ai_response=response.raw_response, updated_at=utcnow()))
        return job, extract_timestamps(response.clips)

    def _fan_out(self, worker, clips: List[Clip], source: str, tmp: str) -> List[Clip]:
        """Run worker over every clip still in play; results keep input order"""
        pending = [c for c in clips if c.status != ClipStatus.FAILED]
        if not pending:
            return clips
        with ThreadPoolExecutor(max_workers=self.config.CLIP_WORKERS, thread_name_prefix="clip") as executor:
            done = {clip.id: clip for clip in executor.map(lambda c: worker(c, source, tmp), pending)}
        return [done.get(c.id, c) for c in clips]

    def _cut_clip(self, clip: Clip, source: str, tmp: str) -> Clip:
        try:
            clip = self._save_clip(replace(clip, status=ClipStatus.PROCESSING, updated_at=utcnow()))
            self.transcoder.extract_clip(source, self._local_path(tmp, clip), clip.start_seconds, clip.end_seconds)
            return clip
        except Exception as e:
            return self._clip_failed(clip, e)

    def _upload_clip(self, clip: Clip, source: str, tmp: str) -> Clip:
        try:
            with open(self._local_path(tmp, clip), 'rb') as clip_file:
                stored = self.object_store.upload_from_stream(clip_key(clip.video_id, clip.id), clip_file, "video/mp4")
            return self._save_clip(replace(
                clip, status=ClipStatus.COMPLETED, output_uri=stored.uri, error_message=None, updated_at=utcnow(),
            ))
        except Exception as e:
            return self._clip_failed(clip, e)

    @staticmethod
    def _local_path(tmp: str, clip: Clip) -> str:
        return os.path.join(tmp, f"{clip.id}.mp4")

    def _clip_failed(self, clip: Clip, error: Exception) -> Clip:
        logger.warning(f"Clip {clip.id} ({clip.start_seconds:.2f}-{clip.end_seconds:.2f}s) failed: {error}")
        failed = replace(clip, status=ClipStatus.FAILED, error_message=str(error), updated_at=utcnow())
        try:
            self.storage.save_clip(failed)
        except Exception as e:
            log_exception(logger, f"Could not record failure of clip {clip.id}: {e}")
        return failed

    def _finish_failed(self, video: Video, job: ProcessingJob, clips: List[Clip], dropped: int, message: str) -> ExtractionResult:
        logger.error(f"Job {job.id} for video {video.id} failed: {message}")
        job = self._save_job(transition_job(job, ProcessingJobStatus.FAILED, error_message=message))
        self._fail_video(video.id, message)
        return ExtractionResult(job=job, clips=clips, dropped=dropped, overlaps=job.overlaps)

    def _fail_job(self, job_id: str, message: str) -> None:
        try:
            job = self.storage.get_job(job_id)
            if job and job.is_active:
                self.storage.save_job(transition_job(job, ProcessingJobStatus.FAILED, error_message=message))
        except Exception as e:
            log_exception(logger, f"Could not mark job {job_id} failed: {e}")

    def _fail_video(self, video_id: str, message: str) -> None:
        try:
            current = self.storage.get_video(video_id)
            if current is None:
                return
            failed = fail_video(current, message)
            if failed is not None:
                self.storage.save_video(failed)
        except Exception as e:
            log_exception(logger, f"Could not mark video {video_id} failed: {e}")

    def _reload(self, video_id: str) -> Video:
        video = self.storage.get_video(video_id)
        if video is None:
            raise NotFoundError("Video", video_id)
        return video

    def _save_video(self, video: Video) -> Video:
        self.storage.save_video(video)
        return video

    def _save_job(self, job: ProcessingJob) -> ProcessingJob:
        self.storage.save_job(job)
        return job

    def _save_clip(self, clip: Clip) -> Clip:
        self.storage.save_clip(clip)
        return clip
