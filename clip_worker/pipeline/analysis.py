import json
import logging
from typing import List, Optional

from openai import OpenAI, OpenAIError
from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError

from ..adapters.base import ClipAnalyzerAdapter, AnalysisRequest, AnalysisResponse
from ..errors import TransientExternalError
from .timestamps import format_timecode
from .util import strict_json_schema

logger = logging.getLogger("clip_worker")


class AiClip(BaseModel):
    """Clip proposed by the model"""
    model_config = ConfigDict(populate_by_name=True)

    title: str = Field(description="Short catchy title for the clip")
    start_time: str = Field(alias="startTime", description="Clip start as HH:MM:SS")
    end_time: str = Field(alias="endTime", description="Clip end as HH:MM:SS")
    transcript: str = Field(description="What is said during the clip")
    reason: str = Field(description="Why this range matches the instructions")


class ClipAnalysis(BaseModel):
    """Structured output from clip analysis"""
    clips: List[AiClip] = Field(description="Proposed clips in chronological order")


CLIP_ANALYSIS_PROMPT = """You are editing short clips out of a longer video.

Video: {source_ref}
Duration: {duration}

Transcript (one line per segment, [start - end] text):
{transcript}

Editor instructions:
{instructions}

Return {clip_count} that best satisfy the instructions. Use HH:MM:SS
timestamps taken from the transcript. Every clip must start before it
ends and stay within the video duration."""


def build_prompt(request: AnalysisRequest) -> str:
    transcript = "\n".join(
        f"[{format_timecode(start)} - {format_timecode(end)}] {text}"
        for start, end, text in request.lines
    )
    duration = format_timecode(request.duration_seconds) if request.duration_seconds else "unknown"
    return CLIP_ANALYSIS_PROMPT.format(
        source_ref=request.source_ref,
        duration=duration,
        transcript=transcript or "(no transcript)",
        instructions=request.instructions,
        clip_count="one or more clips" if request.multiple_clips else "exactly one clip",
    )


class OpenAIClipAnalyzer(ClipAnalyzerAdapter):
    """Clip analysis with OpenAI structured outputs"""

    def __init__(self, model: str = "gpt-4o-mini", client: Optional[OpenAI] = None, temperature: float = 0.1):
        self.model = model
        self.client = client
        self.temperature = temperature

    def analyze(self, request: AnalysisRequest) -> AnalysisResponse:
        """
        Ask the model for clip ranges

        Returns:
            AnalysisResponse with raw clip mappings (startTime/endTime strings)
            and the raw response text for auditing
        """
        client = self.client or OpenAI()
        logger.info(f"Analyzing {request.source_ref} for clips with {self.model}")

        try:
            response = client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": build_prompt(request)}],
                response_format={
                    "type": "json_schema",
                    "json_schema": {
                        "name": "clip_analysis",
                        "schema": strict_json_schema(ClipAnalysis),
                        "strict": True
                    }
                },
                temperature=self.temperature
            )
        except OpenAIError as e:
            raise TransientExternalError("ai", f"clip analysis failed: {e}") from e

        content = response.choices[0].message.content or ""
        try:
            analysis = ClipAnalysis(**json.loads(content))
        except (json.JSONDecodeError, PydanticValidationError) as e:
            raise TransientExternalError("ai", f"unparseable clip analysis: {e}") from e

        clips = [clip.model_dump(by_alias=True) for clip in analysis.clips]
        logger.info(f"Clip analysis completed for {request.source_ref}: {len(clips)} clips proposed")
        return AnalysisResponse(clips=clips, raw_response=content)
