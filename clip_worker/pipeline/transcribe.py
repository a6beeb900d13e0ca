import logging
import math
from typing import Optional

from openai import OpenAI, OpenAIError

from ..adapters.base import SpeechAdapter
from ..errors import IntegrityError, TransientExternalError
from ..models import SpeechResult, TranscriptionSegment

logger = logging.getLogger("clip_worker")


def _confidence(avg_logprob: Optional[float]) -> float:
    if avg_logprob is None:
        return 1.0
    return round(min(1.0, max(0.0, math.exp(avg_logprob))), 4)


class WhisperSpeechAdapter(SpeechAdapter):
    """OpenAI Whisper speech-to-text"""

    def __init__(self, model: str = "whisper-1", client: Optional[OpenAI] = None):
        self.model = model
        self.client = client

    def transcribe(self, audio_path: str, mime_type: str) -> SpeechResult:
        """
        Transcribe an audio file and return timed segments

        Returns:
            SpeechResult with full text, segments, language and duration
        """
        client = self.client or OpenAI()
        logger.info(f"Transcribing audio {audio_path} ({mime_type}) with {self.model}")

        try:
            with open(audio_path, 'rb') as audio_file:
                transcript = client.audio.transcriptions.create(
                    model=self.model,
                    file=audio_file,
                    response_format="verbose_json",
                    timestamp_granularities=["segment"]
                )
        except OpenAIError as e:
            raise TransientExternalError("speech", str(e)) from e

        duration = getattr(transcript, 'duration', None)
        segments = []
        if getattr(transcript, 'segments', None):
            for segment in transcript.segments:
                text = segment.text.strip()
                if not text:
                    continue
                segments.append(TranscriptionSegment(
                    text=text,
                    start_seconds=float(segment.start),
                    end_seconds=float(segment.end),
                    confidence=_confidence(getattr(segment, 'avg_logprob', None)),
                ))
        elif transcript.text and transcript.text.strip():
            # Fallback if no segments
            segments.append(TranscriptionSegment(
                text=transcript.text.strip(),
                start_seconds=0.0,
                end_seconds=float(duration or 0.0),
            ))

        logger.info(f"Transcription completed: {len(segments)} segments")
        return SpeechResult(
            full_text=(transcript.text or "").strip(),
            segments=segments,
            language_code=getattr(transcript, 'language', None),
            duration_seconds=float(duration) if duration is not None else None,
        )


def validate_transcription(result: SpeechResult) -> None:
    """Raise IntegrityError for a transcription that must not be persisted"""
    if not result.full_text.strip() or not result.segments:
        raise IntegrityError("Transcription is empty")

    for i, segment in enumerate(result.segments):
        if not segment.text.strip():
            raise IntegrityError(f"Transcription segment {i} has no text")
        if segment.start_seconds < 0 or segment.end_seconds < segment.start_seconds:
            raise IntegrityError(
                f"Transcription segment {i} has invalid range {segment.start_seconds}-{segment.end_seconds}"
            )
        if not 0.0 <= segment.confidence <= 1.0:
            raise IntegrityError(f"Transcription segment {i} has confidence {segment.confidence} outside [0, 1]")
