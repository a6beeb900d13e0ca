"""
Clip subtitle lifecycle: generate a draft, edit it, confirm it, then
burn it into a subtitled copy of the clip.
"""

import os
import logging
from dataclasses import replace
from typing import List, Optional

from .adapters.base import StorageAdapter, ObjectStoreAdapter, TranscoderAdapter
from .clips import clip_key, transcript_lines_for
from .config import WorkerConfig
from .errors import ConflictError, NotFoundError, ValidationError
from .models import Clip, ClipSubtitle, SubtitleSegment, SubtitleStatus, new_id, utcnow
from .pipeline.subtitles import build_subtitle_segments, validate_segments, to_srt
from .pipeline.util import work_dir

logger = logging.getLogger("clip_worker")


class ClipSubtitleService:
    """Generates, edits and composes subtitles for clips"""

    def __init__(
        self,
        config: WorkerConfig,
        storage: StorageAdapter,
        object_store: ObjectStoreAdapter,
        transcoder: TranscoderAdapter,
    ):
        self.config = config
        self.storage = storage
        self.object_store = object_store
        self.transcoder = transcoder

    def get(self, clip_id: str) -> Optional[ClipSubtitle]:
        self._clip(clip_id)
        return self.storage.get_subtitle(clip_id)

    def generate(self, clip_id: str) -> ClipSubtitle:
        """Build a draft from the transcript lines overlapping the clip"""
        clip = self._clip(clip_id)
        existing = self.storage.get_subtitle(clip_id)
        if existing and existing.status == SubtitleStatus.CONFIRMED:
            raise ConflictError(f"Subtitle for clip {clip_id} is already confirmed")

        lines = transcript_lines_for(self.storage, clip.video_id)
        segments = build_subtitle_segments(lines, clip.start_seconds, clip.end_seconds)
        if not segments:
            raise ValidationError(f"No transcript found for clip {clip_id} time range")
        validate_segments(segments)

        now = utcnow()
        subtitle = ClipSubtitle(
            id=existing.id if existing else new_id(),
            clip_id=clip_id,
            segments=segments,
            status=SubtitleStatus.DRAFT,
            created_at=existing.created_at if existing else now,
            updated_at=now,
        )
        self.storage.save_subtitle(subtitle)
        logger.info(f"Generated {len(segments)} subtitle segments for clip {clip_id}")
        return subtitle

    def update(self, clip_id: str, segments: List[SubtitleSegment]) -> ClipSubtitle:
        """Replace the segments of a draft subtitle"""
        subtitle = self._subtitle(clip_id)
        if subtitle.status == SubtitleStatus.CONFIRMED:
            raise ConflictError(f"Subtitle for clip {clip_id} is confirmed and can no longer be edited")
        validate_segments(segments)
        updated = replace(subtitle, segments=list(segments), updated_at=utcnow())
        self.storage.save_subtitle(updated)
        return updated

    def confirm(self, clip_id: str) -> ClipSubtitle:
        subtitle = self._subtitle(clip_id)
        if subtitle.status == SubtitleStatus.CONFIRMED:
            raise ConflictError(f"Subtitle for clip {clip_id} is already confirmed")
        confirmed = replace(subtitle, status=SubtitleStatus.CONFIRMED, updated_at=utcnow())
        self.storage.save_subtitle(confirmed)
        logger.info(f"Confirmed subtitle for clip {clip_id}")
        return confirmed

    def compose(self, clip_id: str) -> Clip:
        """Burn the confirmed subtitle into a copy of the clip and upload it"""
        clip = self._clip(clip_id)
        subtitle = self._subtitle(clip_id)
        if subtitle.status != SubtitleStatus.CONFIRMED:
            raise ConflictError(f"Subtitle for clip {clip_id} must be confirmed before composing")
        if not clip.output_uri:
            raise ConflictError(f"Clip {clip_id} has no extracted output to compose onto")

        source = self.object_store.presigned_url(clip.output_uri)
        with work_dir(f"subs-{clip_id}", self.config.DATA_DIR) as tmp:
            srt_path = os.path.join(tmp, "subtitles.srt")
            with open(srt_path, 'w', encoding='utf-8') as f:
                f.write(to_srt(subtitle.segments))
            output_path = os.path.join(tmp, "subtitled.mp4")
            self.transcoder.burn_subtitles(source, srt_path, output_path)
            with open(output_path, 'rb') as clip_file:
                stored = self.object_store.upload_from_stream(
                    clip_key(clip.video_id, clip.id, "subtitled.mp4"), clip_file, "video/mp4"
                )

        updated = replace(clip, subtitled_uri=stored.uri, updated_at=utcnow())
        self.storage.save_clip(updated)
        logger.info(f"Composed subtitled clip {clip_id}: {stored.uri}")
        return updated

    def _clip(self, clip_id: str) -> Clip:
        clip = self.storage.get_clip(clip_id)
        if clip is None:
            raise NotFoundError("Clip", clip_id)
        return clip

    def _subtitle(self, clip_id: str) -> ClipSubtitle:
        self._clip(clip_id)
        subtitle = self.storage.get_subtitle(clip_id)
        if subtitle is None:
            raise NotFoundError("ClipSubtitle", clip_id)
        return subtitle
