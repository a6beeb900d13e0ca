"""
Abstract base classes for the worker's collaborators.

Defines the interface every adapter must implement, enabling easy
swapping between storage backends (Postgres, in-memory), object stores,
file hosts, transcoders and AI services.
"""

import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, BinaryIO, Iterator, Tuple

from ..errors import ConflictError
from ..models import (
    Video, VideoStatus, Transcription, RefinedTranscription, Clip, ClipSubtitle,
    ProcessingJob, StoredObject, FileMetadata, SpeechResult,
)

logger = logging.getLogger("clip_worker")


class StorageAdapter(ABC):
    """Persistent store for videos and everything they own"""

    def connect(self) -> None:
        """Open connections; no-op for stores without one"""

    def close(self) -> None:
        """Release connections"""

    @abstractmethod
    def ping(self) -> None:
        """Raise if the store is unreachable"""
        pass

    @abstractmethod
    def get_video(self, video_id: str) -> Optional[Video]:
        pass

    @abstractmethod
    def find_video_by_source(self, source_file_id: str) -> Optional[Video]:
        pass

    @abstractmethod
    def list_videos(self, status: Optional[VideoStatus] = None) -> List[Video]:
        pass

    @abstractmethod
    def save_video(self, video: Video) -> None:
        """
        Insert or update a video.

        Raises:
            ConflictError: another video already uses the same source file
            IntegrityError: the video violates a state invariant
        """
        pass

    @abstractmethod
    def delete_video(self, video_id: str) -> None:
        """Delete a video and every transcript, clip, subtitle and job it owns"""
        pass

    @abstractmethod
    def get_transcription(self, video_id: str) -> Optional[Transcription]:
        pass

    @abstractmethod
    def save_transcription(self, transcription: Transcription) -> None:
        pass

    @abstractmethod
    def get_refined_transcription(self, transcription_id: str) -> Optional[RefinedTranscription]:
        pass

    @abstractmethod
    def save_refined_transcription(self, refined: RefinedTranscription) -> None:
        pass

    @abstractmethod
    def get_clip(self, clip_id: str) -> Optional[Clip]:
        pass

    @abstractmethod
    def list_clips(self, video_id: str) -> List[Clip]:
        pass

    @abstractmethod
    def list_all_clips(self) -> List[Clip]:
        """Every clip across videos, newest first"""
        pass

    @abstractmethod
    def save_clips(self, clips: List[Clip]) -> None:
        """Insert or update several clips in one transaction"""
        pass

    def save_clip(self, clip: Clip) -> None:
        self.save_clips([clip])

    @abstractmethod
    def delete_clip(self, clip_id: str) -> None:
        """Delete a clip and its subtitle"""
        pass

    @abstractmethod
    def get_subtitle(self, clip_id: str) -> Optional[ClipSubtitle]:
        pass

    @abstractmethod
    def save_subtitle(self, subtitle: ClipSubtitle) -> None:
        pass

    @abstractmethod
    def get_job(self, job_id: str) -> Optional[ProcessingJob]:
        pass

    @abstractmethod
    def list_jobs(self, video_id: str) -> List[ProcessingJob]:
        pass

    @abstractmethod
    def save_job(self, job: ProcessingJob) -> None:
        pass

    @abstractmethod
    def apply_reset(
        self,
        video: Video,
        clear_transcription: bool,
        clear_refined: bool,
        clear_clips: bool,
    ) -> None:
        """
        Persist a rewound video and discard artifacts in one transaction.

        Args:
            video: Video already rewound by the state machine
            clear_transcription: Delete the transcription (and its refinement)
            clear_refined: Delete only the refined transcription
            clear_clips: Delete clips and their subtitles
        """
        pass

    @abstractmethod
    def get_stats(self) -> Dict[str, Any]:
        """Counts of videos, clips and jobs by status"""
        pass


class JobSourceAdapter(ABC):
    """Abstract base class for job source adapters"""

    @abstractmethod
    def claim_job(self) -> Optional[ProcessingJob]:
        """
        Atomically claim a pending processing job.

        Returns:
            ProcessingJob if available, None if no jobs pending
        """
        pass

    @abstractmethod
    def release_job(self, job_id: str) -> None:
        """Return a claimed job to the queue so another worker can pick it up"""
        pass

    @abstractmethod
    def get_pending_jobs(self, limit: int = 10) -> List[ProcessingJob]:
        pass


class VideoLock(ABC):
    """Per-video mutual exclusion lease"""

    @abstractmethod
    def acquire(self, video_id: str, timeout: float = 0.0) -> bool:
        """
        Try to take the lease for a video.

        Args:
            video_id: Video to lock
            timeout: Seconds to wait; 0 means a single attempt

        Returns:
            True if the lease was acquired
        """
        pass

    @abstractmethod
    def release(self, video_id: str) -> None:
        pass

    @contextmanager
    def hold(self, video_id: str, timeout: float = 0.0) -> Iterator[None]:
        """Hold the lease for the duration of the block or raise ConflictError"""
        if not self.acquire(video_id, timeout):
            raise ConflictError(f"Video {video_id} is busy with another operation")
        try:
            yield
        finally:
            self.release(video_id)


class ObjectStoreAdapter(ABC):
    """Remote object store holding the temporary cache, audio and clip outputs"""

    @abstractmethod
    def uri_for(self, key: str) -> str:
        """Deterministic URI for a key"""
        pass

    @abstractmethod
    def exists(self, uri: str) -> bool:
        pass

    @abstractmethod
    def stat(self, uri: str) -> Optional[StoredObject]:
        """Object reference with its expiry, or None when absent"""
        pass

    @abstractmethod
    def upload_from_stream(self, key: str, stream: BinaryIO, content_type: str) -> StoredObject:
        """
        Upload a stream under a key.

        The object becomes visible only once the upload completes, so a
        failed transfer never replaces an existing object.
        """
        pass

    @abstractmethod
    def download_as_stream(self, uri: str) -> BinaryIO:
        pass

    @abstractmethod
    def presigned_url(self, uri: str, expires_in: Optional[int] = None) -> str:
        """Time-limited HTTP URL the transcoder can read from"""
        pass

    @abstractmethod
    def delete_prefix(self, prefix: str) -> int:
        """Delete every object under a key prefix; returns the count"""
        pass


class FileHostAdapter(ABC):
    """Source file host the original videos live on"""

    @abstractmethod
    def get_metadata(self, file_id: str) -> FileMetadata:
        pass

    @abstractmethod
    def download_as_stream(self, file_id: str) -> BinaryIO:
        """Readable stream of the file content; the caller closes it"""
        pass


class TranscoderAdapter(ABC):
    """Media operations on a local path or readable URL"""

    @abstractmethod
    def extract_audio(self, source: str, output_path: str, audio_format: str = "wav") -> str:
        """Mono 16 kHz audio track written to output_path"""
        pass

    @abstractmethod
    def get_duration(self, source: str) -> Optional[float]:
        pass

    @abstractmethod
    def extract_clip(self, source: str, output_path: str, start_seconds: float, end_seconds: float) -> str:
        pass

    @abstractmethod
    def burn_subtitles(self, source: str, srt_path: str, output_path: str) -> str:
        pass


class SpeechAdapter(ABC):
    """Speech-to-text service"""

    @abstractmethod
    def transcribe(self, audio_path: str, mime_type: str) -> SpeechResult:
        pass


@dataclass
class AnalysisRequest:
    """Input for AI clip analysis"""
    source_ref: str
    instructions: str
    lines: List[Tuple[float, float, str]] = field(default_factory=list)
    duration_seconds: Optional[float] = None
    multiple_clips: bool = True


@dataclass
class AnalysisResponse:
    clips: List[Dict[str, Any]]
    raw_response: str


class ClipAnalyzerAdapter(ABC):
    """AI service proposing clip ranges from a transcript"""

    @abstractmethod
    def analyze(self, request: AnalysisRequest) -> AnalysisResponse:
        pass


class TranscriptRefinerAdapter(ABC):
    """AI service merging raw segments into clean sentences"""

    @abstractmethod
    def refine(self, transcription: Transcription) -> RefinedTranscription:
        pass
