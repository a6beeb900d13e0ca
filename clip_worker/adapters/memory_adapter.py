"""
In-process adapters backed by dictionaries.

Used for single-process deployments and tests. Every read and write
copies the entity so callers never share state with the store.
"""

import copy
import logging
import threading
from collections import Counter
from typing import Optional, Dict, Any, List

from .base import StorageAdapter, JobSourceAdapter, VideoLock
from ..errors import ConflictError
from ..models import (
    Video, VideoStatus, Transcription, RefinedTranscription, Clip, ClipSubtitle,
    ProcessingJob, ProcessingJobStatus,
)
from ..pipeline.timestamps import check_clip_bounds
from ..state_machine import check_video_invariants

logger = logging.getLogger("clip_worker")


class MemoryStorageAdapter(StorageAdapter):
    """Dictionary-backed storage adapter"""

    def __init__(self):
        self._lock = threading.RLock()
        self.videos: Dict[str, Video] = {}
        self.transcriptions: Dict[str, Transcription] = {}  # keyed by video id
        self.refined: Dict[str, RefinedTranscription] = {}  # keyed by transcription id
        self.clips: Dict[str, Clip] = {}
        self.subtitles: Dict[str, ClipSubtitle] = {}  # keyed by clip id
        self.jobs: Dict[str, ProcessingJob] = {}
        self.claimed_jobs: set = set()

    def ping(self) -> None:
        return None

    def get_video(self, video_id: str) -> Optional[Video]:
        with self._lock:
            return copy.deepcopy(self.videos.get(video_id))

    def find_video_by_source(self, source_file_id: str) -> Optional[Video]:
        with self._lock:
            for video in self.videos.values():
                if video.source_file_id == source_file_id:
                    return copy.deepcopy(video)
            return None

    def list_videos(self, status: Optional[VideoStatus] = None) -> List[Video]:
        with self._lock:
            videos = [v for v in self.videos.values() if status is None or v.status == status]
            return copy.deepcopy(sorted(videos, key=lambda v: v.created_at))

    def save_video(self, video: Video) -> None:
        check_video_invariants(video)
        with self._lock:
            for other in self.videos.values():
                if other.id != video.id and other.source_file_id == video.source_file_id:
                    raise ConflictError(f"Video for source file {video.source_file_id} already exists")
            self.videos[video.id] = copy.deepcopy(video)

    def delete_video(self, video_id: str) -> None:
        with self._lock:
            self.videos.pop(video_id, None)
            transcription = self.transcriptions.pop(video_id, None)
            if transcription:
                self.refined.pop(transcription.id, None)
            self._delete_clips(video_id)
            for job_id in [j.id for j in self.jobs.values() if j.video_id == video_id]:
                del self.jobs[job_id]
                self.claimed_jobs.discard(job_id)

    def _delete_clips(self, video_id: str) -> None:
        for clip_id in [c.id for c in self.clips.values() if c.video_id == video_id]:
            del self.clips[clip_id]
            self.subtitles.pop(clip_id, None)

    def get_transcription(self, video_id: str) -> Optional[Transcription]:
        with self._lock:
            return copy.deepcopy(self.transcriptions.get(video_id))

    def save_transcription(self, transcription: Transcription) -> None:
        with self._lock:
            self.transcriptions[transcription.video_id] = copy.deepcopy(transcription)

    def get_refined_transcription(self, transcription_id: str) -> Optional[RefinedTranscription]:
        with self._lock:
            return copy.deepcopy(self.refined.get(transcription_id))

    def save_refined_transcription(self, refined: RefinedTranscription) -> None:
        with self._lock:
            self.refined[refined.transcription_id] = copy.deepcopy(refined)

    def get_clip(self, clip_id: str) -> Optional[Clip]:
        with self._lock:
            return copy.deepcopy(self.clips.get(clip_id))

    def list_clips(self, video_id: str) -> List[Clip]:
        with self._lock:
            clips = [c for c in self.clips.values() if c.video_id == video_id]
            return copy.deepcopy(sorted(clips, key=lambda c: (c.start_seconds, c.created_at)))

    def list_all_clips(self) -> List[Clip]:
        with self._lock:
            return copy.deepcopy(sorted(self.clips.values(), key=lambda c: c.created_at, reverse=True))

    def delete_clip(self, clip_id: str) -> None:
        with self._lock:
            self.clips.pop(clip_id, None)
            self.subtitles.pop(clip_id, None)

    def save_clips(self, clips: List[Clip]) -> None:
        with self._lock:
            for clip in clips:
                video = self.videos.get(clip.video_id)
                check_clip_bounds(
                    clip.start_seconds, clip.end_seconds,
                    video.duration_seconds if video else None,
                )
            for clip in clips:
                self.clips[clip.id] = copy.deepcopy(clip)

    def get_subtitle(self, clip_id: str) -> Optional[ClipSubtitle]:
        with self._lock:
            return copy.deepcopy(self.subtitles.get(clip_id))

    def save_subtitle(self, subtitle: ClipSubtitle) -> None:
        with self._lock:
            self.subtitles[subtitle.clip_id] = copy.deepcopy(subtitle)

    def get_job(self, job_id: str) -> Optional[ProcessingJob]:
        with self._lock:
            return copy.deepcopy(self.jobs.get(job_id))

    def list_jobs(self, video_id: str) -> List[ProcessingJob]:
        with self._lock:
            jobs = [j for j in self.jobs.values() if j.video_id == video_id]
            return copy.deepcopy(sorted(jobs, key=lambda j: j.created_at))

    def save_job(self, job: ProcessingJob) -> None:
        with self._lock:
            if job.status == ProcessingJobStatus.PENDING and job.started_at is None:
                self.claimed_jobs.discard(job.id)
            self.jobs[job.id] = copy.deepcopy(job)

    def apply_reset(self, video: Video, clear_transcription: bool, clear_refined: bool, clear_clips: bool) -> None:
        check_video_invariants(video)
        with self._lock:
            transcription = self.transcriptions.get(video.id)
            if transcription and (clear_transcription or clear_refined):
                self.refined.pop(transcription.id, None)
            if clear_transcription:
                self.transcriptions.pop(video.id, None)
            if clear_clips:
                self._delete_clips(video.id)
            self.videos[video.id] = copy.deepcopy(video)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "videos": dict(Counter(v.status.value for v in self.videos.values())),
                "clips": dict(Counter(c.status.value for c in self.clips.values())),
                "jobs": dict(Counter(j.status.value for j in self.jobs.values())),
                "transcriptions": len(self.transcriptions),
                "refined_transcriptions": len(self.refined),
            }


class MemoryJobSourceAdapter(JobSourceAdapter):
    """Job source over a MemoryStorageAdapter's pending jobs"""

    def __init__(self, storage: MemoryStorageAdapter):
        self.storage = storage

    def claim_job(self) -> Optional[ProcessingJob]:
        with self.storage._lock:
            for job in sorted(self.storage.jobs.values(), key=lambda j: j.created_at):
                if job.status == ProcessingJobStatus.PENDING and job.id not in self.storage.claimed_jobs:
                    self.storage.claimed_jobs.add(job.id)
                    logger.info(f"Claimed job {job.id} for video {job.video_id}")
                    return copy.deepcopy(job)
            return None

    def release_job(self, job_id: str) -> None:
        with self.storage._lock:
            self.storage.claimed_jobs.discard(job_id)

    def get_pending_jobs(self, limit: int = 10) -> List[ProcessingJob]:
        with self.storage._lock:
            pending = [j for j in self.storage.jobs.values()
                       if j.status == ProcessingJobStatus.PENDING and j.id not in self.storage.claimed_jobs]
            return copy.deepcopy(sorted(pending, key=lambda j: j.created_at)[:limit])


class LocalVideoLock(VideoLock):
    """Per-video lock for a single process"""

    def __init__(self):
        self._guard = threading.Lock()
        self._held: Dict[str, threading.Lock] = {}
        self._users: Dict[str, int] = {}  # holders plus waiters per video

    def _checkout(self, video_id: str) -> threading.Lock:
        with self._guard:
            self._users[video_id] = self._users.get(video_id, 0) + 1
            return self._held.setdefault(video_id, threading.Lock())

    def _checkin(self, video_id: str) -> None:
        with self._guard:
            self._users[video_id] -= 1
            if not self._users[video_id]:
                del self._users[video_id]
                del self._held[video_id]

    def acquire(self, video_id: str, timeout: float = 0.0) -> bool:
        lock = self._checkout(video_id)
        if timeout and timeout > 0:
            acquired = lock.acquire(timeout=timeout)
        else:
            acquired = lock.acquire(blocking=False)
        if not acquired:
            self._checkin(video_id)
            logger.info(f"Lock for video {video_id} is held elsewhere")
        return acquired

    def release(self, video_id: str) -> None:
        with self._guard:
            lock = self._held.get(video_id)
        if lock is None or not lock.locked():
            return
        lock.release()
        self._checkin(video_id)
