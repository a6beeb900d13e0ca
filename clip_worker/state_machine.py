"""
Status transition rules for videos and processing jobs.

All status changes go through the guard functions here. They never
mutate their argument: each returns an updated copy, so a caller that
fails to persist the copy leaves the stored entity untouched.
"""

import logging
from dataclasses import dataclass, replace
from typing import Dict, Optional, Set

from .errors import ConflictError, IntegrityError
from .models import (
    Video, VideoStatus, TranscriptionPhase, ProcessingJob, ProcessingJobStatus,
    ResetStep, utcnow,
)

logger = logging.getLogger("clip_worker")


VIDEO_TRANSITIONS: Dict[VideoStatus, Set[VideoStatus]] = {
    VideoStatus.PENDING: {VideoStatus.TRANSCRIBING, VideoStatus.FAILED},
    VideoStatus.TRANSCRIBING: {VideoStatus.TRANSCRIBED, VideoStatus.FAILED},
    VideoStatus.TRANSCRIBED: {VideoStatus.EXTRACTING, VideoStatus.FAILED},
    VideoStatus.EXTRACTING: {VideoStatus.COMPLETED, VideoStatus.FAILED},
    VideoStatus.COMPLETED: {VideoStatus.EXTRACTING},
    # Re-extraction after a failed extraction; guarded on an existing transcript
    VideoStatus.FAILED: {VideoStatus.EXTRACTING},
}

JOB_TRANSITIONS: Dict[ProcessingJobStatus, Set[ProcessingJobStatus]] = {
    ProcessingJobStatus.PENDING: {
        ProcessingJobStatus.ANALYZING, ProcessingJobStatus.EXTRACTING, ProcessingJobStatus.FAILED,
    },
    ProcessingJobStatus.ANALYZING: {ProcessingJobStatus.EXTRACTING, ProcessingJobStatus.FAILED},
    ProcessingJobStatus.EXTRACTING: {ProcessingJobStatus.UPLOADING, ProcessingJobStatus.FAILED},
    ProcessingJobStatus.UPLOADING: {ProcessingJobStatus.COMPLETED, ProcessingJobStatus.FAILED},
    ProcessingJobStatus.COMPLETED: set(),
    ProcessingJobStatus.FAILED: {ProcessingJobStatus.PENDING},
}

PHASE_LABELS = {
    TranscriptionPhase.DOWNLOADING: "Downloading source video",
    TranscriptionPhase.EXTRACTING_AUDIO: "Extracting audio",
    TranscriptionPhase.UPLOADING: "Uploading audio",
    TranscriptionPhase.TRANSCRIBING: "Transcribing audio",
    TranscriptionPhase.SAVING: "Saving transcription",
    TranscriptionPhase.REFINING: "Refining transcription",
}


def can_transition_video(current: VideoStatus, target: VideoStatus) -> bool:
    return target in VIDEO_TRANSITIONS.get(current, set())


def transition_video(
    video: Video,
    target: VideoStatus,
    error_message: Optional[str] = None,
    phase: Optional[TranscriptionPhase] = None,
    has_transcription: bool = False,
) -> Video:
    """Return a copy of ``video`` moved to ``target``

    Args:
        video: Current video state
        target: Desired status
        error_message: Required when ``target`` is failed
        phase: Initial phase when entering transcribing
        has_transcription: Whether a transcript is stored; gates failed -> extracting

    Returns:
        Updated copy of the video
    """
    if not can_transition_video(video.status, target):
        raise ConflictError(
            f"Cannot move video {video.id} from {video.status.value} to {target.value}"
        )

    if target == VideoStatus.FAILED and not error_message:
        raise IntegrityError(f"Video {video.id} cannot fail without an error message")

    if target == VideoStatus.TRANSCRIBING and not video.cache_uri:
        raise ConflictError(f"Video {video.id} has no cached copy to transcribe from")

    if video.status == VideoStatus.FAILED and target == VideoStatus.EXTRACTING and not has_transcription:
        raise ConflictError(f"Video {video.id} has no transcription; reset it before extracting")

    if phase is not None and target != VideoStatus.TRANSCRIBING:
        raise IntegrityError("Transcription phase is only valid while transcribing")

    return replace(
        video,
        status=target,
        transcription_phase=phase if target == VideoStatus.TRANSCRIBING else None,
        error_message=error_message if target == VideoStatus.FAILED else None,
        progress_message=PHASE_LABELS.get(phase) if phase else None,
        updated_at=utcnow(),
    )


def set_phase(video: Video, phase: TranscriptionPhase, progress_message: Optional[str] = None) -> Video:
    """Return a copy of a transcribing video with a new phase"""
    if video.status != VideoStatus.TRANSCRIBING:
        raise IntegrityError(
            f"Video {video.id} is {video.status.value}; phase {phase.value} requires transcribing"
        )
    return replace(
        video,
        transcription_phase=phase,
        progress_message=progress_message or PHASE_LABELS[phase],
        updated_at=utcnow(),
    )


def fail_video(video: Video, error_message: str) -> Optional[Video]:
    """Failed copy of ``video``, or None when the current status cannot fail"""
    if video.status == VideoStatus.FAILED:
        return replace(video, error_message=error_message, progress_message=None, updated_at=utcnow())
    if not can_transition_video(video.status, VideoStatus.FAILED):
        logger.warning(f"Video {video.id} is {video.status.value}; not marking it failed")
        return None
    return transition_video(video, VideoStatus.FAILED, error_message=error_message)


@dataclass(frozen=True)
class ResetPlan:
    """What a reset step discards and where the video lands"""
    clear_cache: bool
    clear_audio: bool
    clear_transcription: bool
    clear_refined: bool
    clear_clips: bool
    status: VideoStatus
    phase: Optional[TranscriptionPhase] = None


_FULL_RESET = ResetPlan(True, True, True, True, True, VideoStatus.PENDING)

RESET_PLANS: Dict[ResetStep, ResetPlan] = {
    ResetStep.ALL: _FULL_RESET,
    ResetStep.CACHE: _FULL_RESET,
    ResetStep.AUDIO: ResetPlan(False, True, True, True, True, VideoStatus.PENDING),
    ResetStep.TRANSCRIBE: ResetPlan(False, False, True, True, True, VideoStatus.PENDING),
    ResetStep.REFINE: ResetPlan(
        False, False, False, True, False, VideoStatus.TRANSCRIBING, TranscriptionPhase.SAVING,
    ),
}


def rewind_video(video: Video, plan: ResetPlan) -> Video:
    """Return a copy of ``video`` rewound according to a reset plan"""
    updated = replace(
        video,
        status=plan.status,
        transcription_phase=plan.phase,
        error_message=None,
        progress_message=None,
        updated_at=utcnow(),
    )
    if plan.clear_cache:
        updated = replace(updated, cache_uri=None, cache_expires_at=None)
    if plan.clear_audio:
        updated = replace(updated, audio_uri=None)
    return updated


def can_transition_job(current: ProcessingJobStatus, target: ProcessingJobStatus) -> bool:
    return target in JOB_TRANSITIONS.get(current, set())


def transition_job(job: ProcessingJob, target: ProcessingJobStatus, error_message: Optional[str] = None) -> ProcessingJob:
    """Return a copy of ``job`` moved to ``target``"""
    if not can_transition_job(job.status, target):
        raise ConflictError(
            f"Cannot move job {job.id} from {job.status.value} to {target.value}"
        )
    if target == ProcessingJobStatus.FAILED and not error_message:
        raise IntegrityError(f"Job {job.id} cannot fail without an error message")

    now = utcnow()
    started_at = job.started_at
    completed_at = job.completed_at
    if job.status == ProcessingJobStatus.PENDING and started_at is None:
        started_at = now
    if target in (ProcessingJobStatus.COMPLETED, ProcessingJobStatus.FAILED):
        completed_at = now
    if target == ProcessingJobStatus.PENDING:
        # Retrying a failed job starts a fresh attempt
        started_at = None
        completed_at = None

    return replace(
        job,
        status=target,
        error_message=error_message if target == ProcessingJobStatus.FAILED else None,
        started_at=started_at,
        completed_at=completed_at,
        updated_at=now,
    )


def check_video_invariants(video: Video) -> None:
    """Raise IntegrityError if a video about to be persisted is inconsistent"""
    if video.status == VideoStatus.FAILED and not video.error_message:
        raise IntegrityError(f"Video {video.id} is failed without an error message")
    if video.transcription_phase is not None and video.status != VideoStatus.TRANSCRIBING:
        raise IntegrityError(
            f"Video {video.id} has phase {video.transcription_phase.value} while {video.status.value}"
        )
    if video.cache_uri and video.cache_expires_at is None:
        raise IntegrityError(f"Video {video.id} has a cache reference without an expiry")

