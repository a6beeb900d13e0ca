import json
import logging
from typing import List, Optional

from openai import OpenAI, OpenAIError
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from ..adapters.base import TranscriptRefinerAdapter
from ..errors import TransientExternalError
from ..models import Transcription, RefinedTranscription, RefinedSentence, new_id
from .util import strict_json_schema

logger = logging.getLogger("clip_worker")


class RefinedSentenceItem(BaseModel):
    text: str = Field(description="Cleaned sentence text")
    segment_indices: List[int] = Field(description="Indices of the source segments merged into this sentence")


class RefinementResult(BaseModel):
    """Structured output from transcript refinement"""
    sentences: List[RefinedSentenceItem] = Field(description="Sentences in spoken order")


REFINE_PROMPT = """Clean up this speech-to-text transcript.

Merge the numbered segments into complete, punctuated sentences. Fix obvious
recognition errors and remove filler words, but do not invent content. For
every sentence list the indices of the segments it was built from, in order.

Segments:
{segments}"""


def build_refine_prompt(transcription: Transcription) -> str:
    lines = "\n".join(f"[{i}] {segment.text}" for i, segment in enumerate(transcription.segments))
    return REFINE_PROMPT.format(segments=lines)


def sentences_from_result(result: RefinementResult, transcription: Transcription) -> List[RefinedSentence]:
    """Attach timings from the source segments; drops sentences with no valid indices"""
    segments = transcription.segments
    sentences = []
    for item in result.sentences:
        indices = sorted({i for i in item.segment_indices if 0 <= i < len(segments)})
        text = item.text.strip()
        if not indices or not text:
            logger.warning(f"Dropping refined sentence without valid segments: {item.text[:40]!r}")
            continue
        sentences.append(RefinedSentence(
            text=text,
            start_seconds=segments[indices[0]].start_seconds,
            end_seconds=segments[indices[-1]].end_seconds,
            original_segment_indices=indices,
        ))
    return sentences


class OpenAITranscriptRefiner(TranscriptRefinerAdapter):
    """Transcript refinement with OpenAI structured outputs"""

    def __init__(self, model: str = "gpt-4o-mini", client: Optional[OpenAI] = None, temperature: float = 0.1):
        self.model = model
        self.client = client
        self.temperature = temperature

    def refine(self, transcription: Transcription) -> RefinedTranscription:
        client = self.client or OpenAI()
        logger.info(f"Refining transcription {transcription.id} ({len(transcription.segments)} segments)")

        try:
            response = client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": build_refine_prompt(transcription)}],
                response_format={
                    "type": "json_schema",
                    "json_schema": {
                        "name": "transcript_refinement",
                        "schema": strict_json_schema(RefinementResult),
                        "strict": True
                    }
                },
                temperature=self.temperature
            )
        except OpenAIError as e:
            raise TransientExternalError("ai", f"refinement failed: {e}") from e

        content = response.choices[0].message.content or ""
        try:
            result = RefinementResult(**json.loads(content))
        except (json.JSONDecodeError, PydanticValidationError) as e:
            raise TransientExternalError("ai", f"unparseable refinement: {e}") from e

        sentences = sentences_from_result(result, transcription)
        if not sentences:
            raise TransientExternalError("ai", "refinement returned no usable sentences")

        return RefinedTranscription(
            id=new_id(),
            transcription_id=transcription.id,
            full_text=" ".join(s.text for s in sentences),
            sentences=sentences,
            model=self.model,
        )
