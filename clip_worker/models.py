"""
Domain models for the clip worker.

Defines the core data structures used throughout the system,
providing type safety and clear interfaces between components.
"""

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any, List, Tuple

from .errors import ValidationError


DRIVE_URL_PATTERN = re.compile(r"^https://drive\.google\.com/file/d/([a-zA-Z0-9_-]+)")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class VideoStatus(str, Enum):
    PENDING = "pending"
    TRANSCRIBING = "transcribing"
    TRANSCRIBED = "transcribed"
    EXTRACTING = "extracting"
    COMPLETED = "completed"
    FAILED = "failed"


class TranscriptionPhase(str, Enum):
    DOWNLOADING = "downloading"
    EXTRACTING_AUDIO = "extracting_audio"
    UPLOADING = "uploading"
    TRANSCRIBING = "transcribing"
    SAVING = "saving"
    REFINING = "refining"


class ClipStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ProcessingJobStatus(str, Enum):
    PENDING = "pending"
    ANALYZING = "analyzing"
    EXTRACTING = "extracting"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"


class SubtitleStatus(str, Enum):
    DRAFT = "draft"
    CONFIRMED = "confirmed"


class ResetStep(str, Enum):
    CACHE = "cache"
    AUDIO = "audio"
    TRANSCRIBE = "transcribe"
    REFINE = "refine"
    ALL = "all"


@dataclass
class Video:
    """A source video and its pipeline state"""
    id: str
    source_file_id: str
    source_url: str
    title: Optional[str] = None
    description: Optional[str] = None
    duration_seconds: Optional[float] = None
    size_bytes: Optional[int] = None
    status: VideoStatus = VideoStatus.PENDING
    transcription_phase: Optional[TranscriptionPhase] = None
    error_message: Optional[str] = None
    progress_message: Optional[str] = None
    cache_uri: Optional[str] = None
    cache_expires_at: Optional[datetime] = None
    audio_uri: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def from_source_url(cls, source_url: str, video_id: Optional[str] = None) -> 'Video':
        """Create a pending video from a Google Drive share URL"""
        match = DRIVE_URL_PATTERN.match(source_url or "")
        if not match:
            raise ValidationError(f"Invalid Google Drive URL: {source_url}")
        return cls(id=video_id or new_id(), source_file_id=match.group(1), source_url=source_url)

    def has_cache_reference(self, now: Optional[datetime] = None) -> bool:
        """True when cache metadata is present and not yet expired"""
        if not self.cache_uri or not self.cache_expires_at:
            return False
        return self.cache_expires_at > (now or utcnow())


@dataclass
class TranscriptionSegment:
    text: str
    start_seconds: float
    end_seconds: float
    confidence: float = 1.0


@dataclass
class Transcription:
    """Raw speech-to-text output for one video"""
    id: str
    video_id: str
    full_text: str
    segments: List[TranscriptionSegment] = field(default_factory=list)
    language_code: Optional[str] = None
    duration_seconds: Optional[float] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class RefinedSentence:
    text: str
    start_seconds: float
    end_seconds: float
    original_segment_indices: List[int] = field(default_factory=list)


@dataclass
class RefinedTranscription:
    """Sentence-level cleanup of a transcription; supersedes it when present"""
    id: str
    transcription_id: str
    full_text: str
    sentences: List[RefinedSentence] = field(default_factory=list)
    model: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Clip:
    """A cut segment of a video"""
    id: str
    video_id: str
    start_seconds: float
    end_seconds: float
    title: Optional[str] = None
    transcript: Optional[str] = None
    reason: Optional[str] = None
    job_id: Optional[str] = None
    status: ClipStatus = ClipStatus.PENDING
    error_message: Optional[str] = None
    output_uri: Optional[str] = None
    subtitled_uri: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def duration_seconds(self) -> float:
        return self.end_seconds - self.start_seconds


@dataclass
class SubtitleSegment:
    """One on-screen caption, times relative to the clip start"""
    index: int
    lines: List[str]
    start_seconds: float
    end_seconds: float


@dataclass
class ClipSubtitle:
    id: str
    clip_id: str
    segments: List[SubtitleSegment] = field(default_factory=list)
    status: SubtitleStatus = SubtitleStatus.DRAFT
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class TimeRange:
    """A caller-supplied clip range"""
    start_seconds: float
    end_seconds: float
    title: Optional[str] = None


@dataclass
class ProcessingJob:
    """One clip-extraction request against a video"""
    id: str
    video_id: str
    instructions: str = ""
    requested_ranges: List[TimeRange] = field(default_factory=list)
    status: ProcessingJobStatus = ProcessingJobStatus.PENDING
    ai_response: Optional[str] = None
    overlaps: List[Tuple[int, int]] = field(default_factory=list)
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status not in (ProcessingJobStatus.COMPLETED, ProcessingJobStatus.FAILED)


@dataclass
class ExtractedTimestamp:
    """A candidate clip range parsed from AI output or explicit ranges"""
    title: str
    start_seconds: float
    end_seconds: float
    transcript: str = ""
    reason: str = ""


@dataclass
class StoredObject:
    """Reference to an object written to the object store"""
    uri: str
    expires_at: datetime
    size_bytes: Optional[int] = None


@dataclass
class FileMetadata:
    name: str
    size_bytes: Optional[int] = None
    mime_type: Optional[str] = None


@dataclass
class SpeechResult:
    """Output of the speech-to-text service"""
    full_text: str
    segments: List[TranscriptionSegment]
    language_code: Optional[str] = None
    duration_seconds: Optional[float] = None


@dataclass
class CacheResult:
    uri: str
    expires_at: datetime
    was_already_cached: bool


@dataclass
class RefinementOutcome:
    """Result of the best-effort refinement step"""
    refined: bool
    reason: Optional[str] = None
    refined_transcription: Optional[RefinedTranscription] = None

    @classmethod
    def skipped(cls, reason: str) -> 'RefinementOutcome':
        return cls(refined=False, reason=reason)


@dataclass
class ExtractionResult:
    """Represents the result of one clip-extraction job"""
    job: ProcessingJob
    clips: List[Clip]
    dropped: int = 0
    overlaps: List[Tuple[int, int]] = field(default_factory=list)
    metrics: Dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> List[Clip]:
        return [clip for clip in self.clips if clip.status == ClipStatus.COMPLETED]


@dataclass
class ProcessingResult:
    """Represents the result of one transcription pipeline run"""
    video: Video
    stages_completed: List[str] = field(default_factory=list)
    refinement: Optional[RefinementOutcome] = None
    processing_time_sec: Optional[float] = None
