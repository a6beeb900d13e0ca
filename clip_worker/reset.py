"""
Reset controller.

Rewinds a video to an earlier step so the pipeline redoes that step and
everything after it. The rewind and the artifact deletions commit
together. Processing job history is kept.
"""

import logging

from .adapters.base import StorageAdapter, VideoLock
from .errors import ConflictError, NotFoundError, ValidationError
from .models import Video, ResetStep
from .state_machine import RESET_PLANS, rewind_video

logger = logging.getLogger("clip_worker")


def parse_reset_step(step) -> ResetStep:
    try:
        return ResetStep(step)
    except ValueError:
        valid = ", ".join(s.value for s in ResetStep)
        raise ValidationError(f"Unknown reset step {step!r}; expected one of {valid}") from None


class ResetController:
    """Handles per-step video resets"""

    def __init__(self, storage: StorageAdapter, lock: VideoLock):
        self.storage = storage
        self.lock = lock

    def reset(self, video_id: str, step) -> Video:
        """
        Reset a video to before ``step``.

        Args:
            video_id: Video to reset
            step: ResetStep or its string value

        Returns:
            The rewound video

        Raises:
            ConflictError: the video is busy, or a refine reset has no transcript to refine
        """
        step = parse_reset_step(step)
        plan = RESET_PLANS[step]

        with self.lock.hold(video_id, timeout=0):
            video = self.storage.get_video(video_id)
            if video is None:
                raise NotFoundError("Video", video_id)

            if step == ResetStep.REFINE and self.storage.get_transcription(video_id) is None:
                raise ConflictError(f"Video {video_id} has no transcription to refine; reset 'transcribe' instead")

            rewound = rewind_video(video, plan)
            self.storage.apply_reset(
                rewound,
                clear_transcription=plan.clear_transcription,
                clear_refined=plan.clear_refined,
                clear_clips=plan.clear_clips,
            )
            logger.info(f"Reset video {video_id} step '{step.value}': {video.status.value} -> {rewound.status.value}")

            current = self.storage.get_video(video_id)
            if current is None:
                raise NotFoundError("Video", video_id)
            return current
