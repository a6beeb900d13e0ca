"""Shared fakes for the clip worker tests."""

import io
import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest

from clip_worker.adapters.base import (
    ObjectStoreAdapter, FileHostAdapter, TranscoderAdapter, SpeechAdapter,
    ClipAnalyzerAdapter, TranscriptRefinerAdapter, AnalysisResponse,
)
from clip_worker.adapters.memory_adapter import MemoryStorageAdapter, LocalVideoLock
from clip_worker.config import WorkerConfig
from clip_worker.errors import TransientExternalError
from clip_worker.models import (
    StoredObject, FileMetadata, SpeechResult, TranscriptionSegment,
    RefinedTranscription, RefinedSentence, new_id,
)
from clip_worker.orchestrator import PipelineOrchestrator

DRIVE_URL = "https://drive.google.com/file/d/abc123_XYZ/view?usp=sharing"
SOURCE_BYTES = b"0123456789" * 100


class FakeObjectStore(ObjectStoreAdapter):
    def __init__(self, ttl_days: int = 7, chunk_size: int = 64):
        self.objects: Dict[str, bytes] = {}
        self.expiry: Dict[str, datetime] = {}
        self.uploads: List[str] = []
        self.ttl_days = ttl_days
        self.chunk_size = chunk_size
        self.fail_keys: List[str] = []
        self._lock = threading.Lock()

    def uri_for(self, key: str) -> str:
        return f"s3://fake-bucket/{key}"

    def _key(self, uri: str) -> str:
        return uri[len("s3://fake-bucket/"):]

    def exists(self, uri: str) -> bool:
        return self._key(uri) in self.objects

    def stat(self, uri: str) -> Optional[StoredObject]:
        key = self._key(uri)
        if key not in self.objects:
            return None
        return StoredObject(uri=uri, expires_at=self.expiry[key], size_bytes=len(self.objects[key]))

    def upload_from_stream(self, key, stream, content_type):
        if any(key.startswith(prefix) for prefix in self.fail_keys):
            raise TransientExternalError("object_store", f"upload {key} refused")
        buffer = bytearray()
        while True:
            chunk = stream.read(self.chunk_size)
            if not chunk:
                break
            buffer.extend(chunk)
        expires_at = datetime.now(timezone.utc) + timedelta(days=self.ttl_days)
        with self._lock:
            self.objects[key] = bytes(buffer)
            self.expiry[key] = expires_at
            self.uploads.append(key)
        return StoredObject(uri=self.uri_for(key), expires_at=expires_at, size_bytes=len(buffer))

    def download_as_stream(self, uri):
        return io.BytesIO(self.objects[self._key(uri)])

    def presigned_url(self, uri, expires_in=None):
        return f"https://fake-bucket.example.com/{self._key(uri)}"

    def delete_prefix(self, prefix: str) -> int:
        with self._lock:
            keys = [k for k in self.objects if k.startswith(prefix)]
            for key in keys:
                del self.objects[key]
                del self.expiry[key]
        return len(keys)

    def purge(self, uri: str) -> None:
        key = self._key(uri)
        self.objects.pop(key, None)
        self.expiry.pop(key, None)


class BrokenStream(io.RawIOBase):
    """Yields some bytes, then fails like a dropped connection"""

    def __init__(self, data: bytes, fail_after: int):
        self.data = data
        self.fail_after = fail_after
        self.position = 0

    def read(self, size=-1):
        if self.position >= self.fail_after:
            raise ConnectionResetError("connection reset by peer")
        end = len(self.data) if size is None or size < 0 else self.position + size
        end = min(end, self.fail_after)
        chunk = self.data[self.position:end]
        self.position = end
        return chunk


class FakeFileHost(FileHostAdapter):
    def __init__(self):
        self.files: Dict[str, bytes] = {"abc123_XYZ": SOURCE_BYTES}
        self.downloads = 0
        self.fail_after: Optional[int] = None

    def get_metadata(self, file_id):
        return FileMetadata(name=f"{file_id}.mp4", size_bytes=len(self.files[file_id]), mime_type="video/mp4")

    def download_as_stream(self, file_id):
        self.downloads += 1
        if self.fail_after is not None:
            return BrokenStream(self.files[file_id], self.fail_after)
        return io.BytesIO(self.files[file_id])


class FakeTranscoder(TranscoderAdapter):
    def __init__(self, duration: Optional[float] = 120.0):
        self.duration = duration
        self.audio_calls = 0
        self.clip_calls: List[tuple] = []
        self.fail_clip_starts: set = set()
        self.audio_gate: Optional[threading.Event] = None
        self.audio_entered = threading.Event()
        self._lock = threading.Lock()

    def extract_audio(self, source, output_path, audio_format="wav"):
        with self._lock:
            self.audio_calls += 1
        self.audio_entered.set()
        if self.audio_gate is not None:
            self.audio_gate.wait(timeout=10)
        with open(output_path, "wb") as f:
            f.write(b"RIFF-audio")
        return output_path

    def get_duration(self, source):
        return self.duration

    def extract_clip(self, source, output_path, start_seconds, end_seconds):
        with self._lock:
            self.clip_calls.append((start_seconds, end_seconds))
        if start_seconds in self.fail_clip_starts:
            raise TransientExternalError("transcoder", f"cannot cut at {start_seconds}")
        with open(output_path, "wb") as f:
            f.write(b"clip-%d" % int(start_seconds))
        return output_path

    def burn_subtitles(self, source, srt_path, output_path):
        with open(srt_path, encoding="utf-8") as srt, open(output_path, "wb") as f:
            f.write(srt.read().encode("utf-8"))
        return output_path


class FakeSpeech(SpeechAdapter):
    def __init__(self):
        self.calls = 0
        self.error: Optional[Exception] = None
        self.result = SpeechResult(
            full_text="Welcome to the show. Today we cook pasta. Then we taste it.",
            segments=[
                TranscriptionSegment("Welcome to the show.", 0.0, 10.0, 0.95),
                TranscriptionSegment("Today we cook pasta.", 10.0, 40.0, 0.9),
                TranscriptionSegment("Then we taste it.", 40.0, 90.0, 0.92),
            ],
            language_code="en",
            duration_seconds=120.0,
        )

    def transcribe(self, audio_path, mime_type):
        self.calls += 1
        if self.error:
            raise self.error
        return self.result


class FakeAnalyzer(ClipAnalyzerAdapter):
    def __init__(self):
        self.requests = []
        self.clips = [
            {"title": "Intro", "startTime": "00:00:00", "endTime": "00:00:10", "transcript": "Welcome", "reason": "hook"},
            {"title": "Cooking", "startTime": "00:00:10", "endTime": "00:00:40", "transcript": "pasta", "reason": "core"},
        ]

    def analyze(self, request):
        self.requests.append(request)
        return AnalysisResponse(clips=list(self.clips), raw_response='{"clips": []}')


class FakeRefiner(TranscriptRefinerAdapter):
    def __init__(self):
        self.calls = 0
        self.error: Optional[Exception] = None
        self.delay: Optional[threading.Event] = None

    def refine(self, transcription):
        self.calls += 1
        if self.delay is not None:
            self.delay.wait(timeout=5)
        if self.error:
            raise self.error
        sentences = [
            RefinedSentence(s.text, s.start_seconds, s.end_seconds, [i])
            for i, s in enumerate(transcription.segments)
        ]
        return RefinedTranscription(
            id=new_id(),
            transcription_id=transcription.id,
            full_text=" ".join(s.text for s in sentences),
            sentences=sentences,
            model="fake",
        )


@pytest.fixture
def config(tmp_path):
    return WorkerConfig(
        STORAGE_TYPE="memory",
        DATA_DIR=str(tmp_path),
        REFINE_TIMEOUT_SECONDS=1.0,
        LOCK_WAIT_SECONDS=5.0,
        CLIP_WORKERS=3,
    )


@pytest.fixture
def storage():
    return MemoryStorageAdapter()


@pytest.fixture
def object_store():
    return FakeObjectStore()


@pytest.fixture
def file_host():
    return FakeFileHost()


@pytest.fixture
def transcoder():
    return FakeTranscoder()


@pytest.fixture
def speech():
    return FakeSpeech()


@pytest.fixture
def analyzer():
    return FakeAnalyzer()


@pytest.fixture
def refiner():
    return FakeRefiner()


@pytest.fixture
def orchestrator(config, storage, object_store, file_host, transcoder, speech, analyzer, refiner):
    return PipelineOrchestrator(
        config, storage, object_store, file_host, transcoder, speech,
        analyzer=analyzer, refiner=refiner, lock=LocalVideoLock(),
    )


@pytest.fixture
def video(orchestrator):
    return orchestrator.submit(DRIVE_URL)


@pytest.fixture
def transcribed_video(orchestrator, video):
    return orchestrator.run_pipeline(video.id)
