"""
Transcription pipeline.

Runs cache -> extract audio -> transcribe -> save -> refine for one
video. Each step checks its persisted postcondition first and skips when
it already holds, so a rerun after a failure or reset resumes where the
last run stopped. The caller holds the video lock.
"""

import os
import shutil
import time
import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from dataclasses import replace
from typing import List, Optional

from .adapters.base import StorageAdapter, ObjectStoreAdapter, TranscoderAdapter, SpeechAdapter, TranscriptRefinerAdapter
from .cache import TemporaryCacheManager
from .config import WorkerConfig
from .errors import ConflictError, IntegrityError, NotFoundError
from .logging_setup import log_exception
from .models import (
    Video, VideoStatus, TranscriptionPhase, Transcription, SpeechResult,
    RefinementOutcome, ProcessingResult, new_id, utcnow,
)
from .pipeline.media import audio_mime_type
from .pipeline.transcribe import validate_transcription
from .pipeline.util import work_dir
from .state_machine import transition_video, set_phase, fail_video

logger = logging.getLogger("clip_worker")


def audio_key(video_id: str, audio_format: str) -> str:
    return f"videos/{video_id}/audio.{audio_format}"


class VideoProcessor:
    """Handles transcription pipeline execution"""

    def __init__(
        self,
        config: WorkerConfig,
        storage: StorageAdapter,
        object_store: ObjectStoreAdapter,
        cache_manager: TemporaryCacheManager,
        transcoder: TranscoderAdapter,
        speech: SpeechAdapter,
        refiner: Optional[TranscriptRefinerAdapter] = None,
    ):
        self.config = config
        self.storage = storage
        self.object_store = object_store
        self.cache_manager = cache_manager
        self.transcoder = transcoder
        self.speech = speech
        self.refiner = refiner

    def run(self, video_id: str) -> ProcessingResult:
        """
        Take a video from pending (or a partial transcribing state) to transcribed.

        Args:
            video_id: Video to process

        Returns:
            ProcessingResult with the final video state and the steps that ran

        Raises:
            ConflictError: the video is failed and must be reset first
        """
        start_time = time.time()
        stages_completed: List[str] = []
        video = self._reload(video_id)

        if video.status in (VideoStatus.TRANSCRIBED, VideoStatus.EXTRACTING, VideoStatus.COMPLETED):
            logger.info(f"Video {video_id} is already {video.status.value}; nothing to do")
            return ProcessingResult(video=video, processing_time_sec=0.0)
        if video.status == VideoStatus.FAILED:
            raise ConflictError(f"Video {video_id} failed: {video.error_message}; reset it before retrying")

        try:
            # Step 1: Cached copy in the object store
            video = self.cache_step(video)
            stages_completed.append("cache")

            # Step 2: Audio track
            video = self.extract_audio_step(video)
            stages_completed.append("audio")

            # Step 3-4: Speech to text, persisted
            video = self.transcribe_step(video)
            stages_completed.append("transcribe")

            # Step 5: Best-effort refinement
            refinement = self.refine_step(video)
            if refinement.refined:
                stages_completed.append("refine")

            video = self._reload(video_id)
            video = transition_video(video, VideoStatus.TRANSCRIBED)
            self.storage.save_video(video)

            processing_time = time.time() - start_time
            logger.info(f"READY: Video {video_id} transcribed in {processing_time:.2f}s ({', '.join(stages_completed)})")
            return ProcessingResult(
                video=video,
                stages_completed=stages_completed,
                refinement=refinement,
                processing_time_sec=processing_time,
            )

        except Exception as e:
            log_exception(logger, f"Pipeline failed for video {video_id} after {stages_completed or ['start']}: {e}")
            self._mark_failed(video_id, str(e))
            raise

    def cache_step(self, video: Video) -> Video:
        """Ensure a cached copy exists; moves pending videos to transcribing"""
        if video.status == VideoStatus.TRANSCRIBING:
            if self._audio_available(video) or self.storage.get_transcription(video.id):
                logger.info(f"CACHE: Skipped for video {video.id}; later artifacts exist")
                return video
            video = self._save(set_phase(video, TranscriptionPhase.DOWNLOADING))
        else:
            video = self._save(replace(video, progress_message="Checking cache", updated_at=utcnow()))

        logger.info(f"CACHE: Ensuring cached copy for video {video.id}")
        result = self.cache_manager.ensure_cached(video)

        video = self._reload(video.id)
        if video.cache_uri != result.uri:
            raise IntegrityError(f"Video {video.id} cache reference was not persisted")

        if video.status == VideoStatus.PENDING:
            video = self._save(transition_video(video, VideoStatus.TRANSCRIBING, phase=TranscriptionPhase.EXTRACTING_AUDIO))
        return video

    def extract_audio_step(self, video: Video) -> Video:
        """Extract the audio track from the cached copy and store it remotely"""
        if self._audio_available(video) or self.storage.get_transcription(video.id):
            logger.info(f"AUDIO: Skipped for video {video.id}; audio already stored")
            return video

        if not video.cache_uri:
            raise IntegrityError(f"Video {video.id} has no cached copy for audio extraction")

        logger.info(f"AUDIO: Extracting audio for video {video.id}")
        video = self._save(set_phase(video, TranscriptionPhase.EXTRACTING_AUDIO))
        audio_format = self.config.AUDIO_FORMAT
        source = self.object_store.presigned_url(video.cache_uri)

        with work_dir(f"audio-{video.id}", self.config.DATA_DIR) as tmp:
            audio_path = os.path.join(tmp, f"audio.{audio_format}")
            self.transcoder.extract_audio(source, audio_path, audio_format)
            duration = video.duration_seconds or self.transcoder.get_duration(source)

            video = self._save(set_phase(self._reload(video.id), TranscriptionPhase.UPLOADING))
            with open(audio_path, 'rb') as audio_file:
                stored = self.object_store.upload_from_stream(
                    audio_key(video.id, audio_format), audio_file, audio_mime_type(audio_format)
                )

        current = self._reload(video.id)
        self.storage.save_video(replace(current, audio_uri=stored.uri, duration_seconds=duration, updated_at=utcnow()))

        video = self._reload(video.id)
        if video.audio_uri != stored.uri:
            raise IntegrityError(f"Video {video.id} audio reference was not persisted")
        logger.info(f"AUDIO: Stored {stored.uri} for video {video.id} (duration {duration}s)")
        return video

    def transcribe_step(self, video: Video) -> Video:
        """Run speech-to-text on the stored audio and persist the result"""
        if self.storage.get_transcription(video.id):
            logger.info(f"TRANSCRIBE: Skipped for video {video.id}; transcription exists")
            return video
        if not video.audio_uri:
            raise IntegrityError(f"Video {video.id} has no audio to transcribe")

        logger.info(f"TRANSCRIBE: Starting transcription for video {video.id}")
        video = self._save(set_phase(video, TranscriptionPhase.TRANSCRIBING))
        audio_format = video.audio_uri.rsplit(".", 1)[-1]

        with work_dir(f"speech-{video.id}", self.config.DATA_DIR) as tmp:
            audio_path = os.path.join(tmp, f"audio.{audio_format}")
            stream = self.object_store.download_as_stream(video.audio_uri)
            try:
                with open(audio_path, 'wb') as audio_file:
                    shutil.copyfileobj(stream, audio_file)
            finally:
                stream.close()
            result = self.speech.transcribe(audio_path, audio_mime_type(audio_format))

        return self.save_step(video, result)

    def save_step(self, video: Video, result: SpeechResult) -> Video:
        """Persist a speech result as the video's transcription"""
        validate_transcription(result)
        video = self._save(set_phase(self._reload(video.id), TranscriptionPhase.SAVING))

        transcription = Transcription(
            id=new_id(),
            video_id=video.id,
            full_text=result.full_text,
            segments=result.segments,
            language_code=result.language_code,
            duration_seconds=result.duration_seconds,
        )
        self.storage.save_transcription(transcription)

        if self.storage.get_transcription(video.id) is None:
            raise IntegrityError(f"Transcription for video {video.id} was not persisted")
        logger.info(f"SAVE: Stored {len(result.segments)} segments for video {video.id}")

        if video.duration_seconds is None and result.duration_seconds is not None:
            video = self._save(replace(video, duration_seconds=result.duration_seconds, updated_at=utcnow()))
        return video

    def refine_step(self, video: Video) -> RefinementOutcome:
        """Best-effort refinement; failure or timeout never fails the pipeline"""
        if self.refiner is None or not self.config.REFINE_ENABLED:
            return RefinementOutcome.skipped("refinement disabled")

        transcription = self.storage.get_transcription(video.id)
        if transcription is None:
            raise IntegrityError(f"Video {video.id} has no transcription to refine")

        existing = self.storage.get_refined_transcription(transcription.id)
        if existing:
            logger.info(f"REFINE: Skipped for video {video.id}; refined transcription exists")
            return RefinementOutcome(refined=True, refined_transcription=existing)

        logger.info(f"REFINE: Refining transcription for video {video.id}")
        self._save(set_phase(self._reload(video.id), TranscriptionPhase.REFINING))

        timeout = self.config.REFINE_TIMEOUT_SECONDS
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"refine-{video.id[:8]}")
        future = executor.submit(self.refiner.refine, transcription)
        try:
            refined = future.result(timeout=timeout)
        except FuturesTimeout:
            logger.warning(f"REFINE: Timed out after {timeout}s for video {video.id}; continuing without it")
            return RefinementOutcome.skipped(f"timed out after {timeout}s")
        except Exception as e:
            logger.warning(f"REFINE: Failed for video {video.id}; continuing without it: {e}")
            return RefinementOutcome.skipped(str(e))
        finally:
            # A late result from a timed-out call is discarded
            executor.shutdown(wait=False, cancel_futures=True)

        self.storage.save_refined_transcription(refined)
        logger.info(f"REFINE: Stored {len(refined.sentences)} sentences for video {video.id}")
        return RefinementOutcome(refined=True, refined_transcription=refined)

    def _audio_available(self, video: Video) -> bool:
        return bool(video.audio_uri) and self.object_store.exists(video.audio_uri)

    def _reload(self, video_id: str) -> Video:
        video = self.storage.get_video(video_id)
        if video is None:
            raise NotFoundError("Video", video_id)
        return video

    def _save(self, video: Video) -> Video:
        self.storage.save_video(video)
        return video

    def _mark_failed(self, video_id: str, message: str) -> None:
        try:
            current = self.storage.get_video(video_id)
            if current is None:
                return
            failed = fail_video(current, message)
            if failed is not None:
                self.storage.save_video(failed)
        except Exception as e:
            log_exception(logger, f"Could not mark video {video_id} failed: {e}")
