import logging
from typing import Optional

import ffmpeg

from ..adapters.base import TranscoderAdapter
from ..errors import TransientExternalError

logger = logging.getLogger("clip_worker")

AUDIO_SAMPLE_RATE = 16000

# format -> (codec, mime type)
AUDIO_FORMATS = {
    "wav": ("pcm_s16le", "audio/wav"),
    "flac": ("flac", "audio/flac"),
}


def audio_mime_type(audio_format: str) -> str:
    return AUDIO_FORMATS[audio_format][1]


def _ffmpeg_error(action: str, e: ffmpeg.Error) -> TransientExternalError:
    stderr = e.stderr.decode(errors="replace") if e.stderr else str(e)
    logger.error(f"FFmpeg error {action}: {stderr}")
    return TransientExternalError("transcoder", f"{action}: {stderr[-500:]}")


class FfmpegTranscoder(TranscoderAdapter):
    """ffmpeg-python implementation of the transcoder"""

    def extract_audio(self, source: str, output_path: str, audio_format: str = "wav") -> str:
        """
        Extract a mono 16 kHz 16-bit audio track

        Returns:
            Path of the written audio file
        """
        if audio_format not in AUDIO_FORMATS:
            raise ValueError(f"Unsupported audio format: {audio_format}")
        codec, _ = AUDIO_FORMATS[audio_format]

        logger.info(f"Extracting {audio_format} audio -> {output_path}")
        try:
            (
                ffmpeg
                .input(source)
                .audio
                .filter('aresample', AUDIO_SAMPLE_RATE)  # 16kHz
                .output(
                    output_path,
                    acodec=codec,
                    ac=1,                     # mono
                    ar=AUDIO_SAMPLE_RATE,
                    sample_fmt='s16'          # 16-bit
                )
                .overwrite_output()
                .run(quiet=True)
            )
        except ffmpeg.Error as e:
            raise _ffmpeg_error("extracting audio", e) from e
        return output_path

    def get_duration(self, source: str) -> Optional[float]:
        """Container duration in seconds, None if unknown"""
        try:
            probe = ffmpeg.probe(source)
        except ffmpeg.Error as e:
            raise _ffmpeg_error("probing duration", e) from e

        duration = probe.get('format', {}).get('duration')
        if duration is None:
            for stream in probe.get('streams', []):
                if stream.get('duration'):
                    duration = stream['duration']
                    break
        return float(duration) if duration is not None else None

    def extract_clip(self, source: str, output_path: str, start_seconds: float, end_seconds: float) -> str:
        logger.info(f"Cutting clip {start_seconds:.2f}-{end_seconds:.2f}s -> {output_path}")
        try:
            (
                ffmpeg
                .input(source, ss=start_seconds)
                .output(
                    output_path,
                    t=end_seconds - start_seconds,
                    vcodec='libx264',
                    acodec='aac',
                    preset='veryfast',
                    crf=22,
                    movflags='+faststart'
                )
                .overwrite_output()
                .run(quiet=True)
            )
        except ffmpeg.Error as e:
            raise _ffmpeg_error("cutting clip", e) from e
        return output_path

    def burn_subtitles(self, source: str, srt_path: str, output_path: str) -> str:
        logger.info(f"Burning subtitles {srt_path} -> {output_path}")
        try:
            (
                ffmpeg
                .input(source)
                .output(
                    output_path,
                    vf=f"subtitles={srt_path}",
                    vcodec='libx264',
                    acodec='copy',
                    preset='veryfast',
                    crf=22
                )
                .overwrite_output()
                .run(quiet=True)
            )
        except ffmpeg.Error as e:
            raise _ffmpeg_error("burning subtitles", e) from e
        return output_path
