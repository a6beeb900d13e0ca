"""
Temporary remote cache of source videos.

The source file host is slow and rate limited, so every downstream step
reads the video from an object-store copy that expires after a TTL.
"""

import logging
import time
from dataclasses import replace
from datetime import datetime
from typing import BinaryIO, Callable, Optional

from .adapters.base import StorageAdapter, ObjectStoreAdapter, FileHostAdapter
from .errors import NotFoundError, TransientExternalError
from .models import Video, CacheResult, StoredObject, utcnow
from .pipeline.util import format_bytes

logger = logging.getLogger("clip_worker")


def cache_key(video_id: str) -> str:
    return f"videos/{video_id}/original"


class ProgressThrottler:
    """Allows an update every ``interval`` seconds or every ``step_percent`` of progress"""

    def __init__(self, interval: float = 5.0, step_percent: float = 10.0, clock: Callable[[], float] = time.monotonic):
        self.interval = interval
        self.step_percent = step_percent
        self.clock = clock
        self._last_time: Optional[float] = None
        self._last_percent: Optional[float] = None

    def should_update(self, percent: Optional[float]) -> bool:
        now = self.clock()
        if self._last_time is None:
            self._mark(now, percent)
            return True
        if now - self._last_time >= self.interval:
            self._mark(now, percent)
            return True
        if percent is not None and self._last_percent is not None and percent - self._last_percent >= self.step_percent:
            self._mark(now, percent)
            return True
        return False

    def _mark(self, now: float, percent: Optional[float]) -> None:
        self._last_time = now
        if percent is not None:
            self._last_percent = percent


class ProgressReader:
    """File-like wrapper that counts bytes read and reports progress"""

    def __init__(self, stream: BinaryIO, total_bytes: Optional[int], on_progress: Callable[[int, Optional[int]], None]):
        self.stream = stream
        self.total_bytes = total_bytes
        self.on_progress = on_progress
        self.bytes_read = 0

    def read(self, size: int = -1) -> bytes:
        try:
            chunk = self.stream.read(size)
        except Exception as e:
            raise TransientExternalError("file_host", f"stream interrupted after {self.bytes_read} bytes: {e}") from e
        if chunk:
            self.bytes_read += len(chunk)
            self.on_progress(self.bytes_read, self.total_bytes)
        return chunk


class TemporaryCacheManager:
    """Ensures a video has a live cached copy in the object store"""

    def __init__(
        self,
        storage: StorageAdapter,
        object_store: ObjectStoreAdapter,
        file_host: FileHostAdapter,
        clock: Callable[[], datetime] = utcnow,
        throttler_factory: Callable[[], ProgressThrottler] = ProgressThrottler,
    ):
        self.storage = storage
        self.object_store = object_store
        self.file_host = file_host
        self.clock = clock
        self.throttler_factory = throttler_factory

    def ensure_cached(self, video: Video) -> CacheResult:
        """
        Return a live cache reference, transferring from the file host if needed.

        The cache fields on the video are written once, after the upload
        completes; a failed transfer leaves the previous values in place.

        Args:
            video: Current persisted state of the video

        Returns:
            CacheResult with the cache uri, its expiry and whether a transfer was skipped
        """
        now = self.clock()

        # Step 1: existing reference still valid
        if video.has_cache_reference(now):
            if self.object_store.exists(video.cache_uri):
                logger.info(f"Video {video.id} already cached at {video.cache_uri}")
                return CacheResult(video.cache_uri, video.cache_expires_at, True)
            logger.warning(f"Cached copy {video.cache_uri} for video {video.id} has been purged")

        # Step 2: object left behind by an earlier run whose metadata was cleared
        existing = self.object_store.stat(self.object_store.uri_for(cache_key(video.id)))
        if existing and existing.expires_at > now:
            logger.info(f"Found live cached object {existing.uri} for video {video.id}")
            self._record(video.id, existing)
            return CacheResult(existing.uri, existing.expires_at, True)

        # Step 3: transfer from the file host
        stored = self._transfer(video)
        self._record(video.id, stored)
        return CacheResult(stored.uri, stored.expires_at, False)

    def _transfer(self, video: Video) -> StoredObject:
        logger.info(f"Caching video {video.id} from file host ({video.source_file_id})")
        started = time.time()
        throttler = self.throttler_factory()

        def on_progress(done: int, total: Optional[int]) -> None:
            percent = (done / total * 100) if total else None
            if throttler.should_update(percent):
                if percent is not None:
                    message = f"Downloading... {format_bytes(done)} / {format_bytes(total)} ({percent:.0f}%)"
                else:
                    message = f"Downloading... {format_bytes(done)}"
                self._update_progress(video.id, message)

        stream = self.file_host.download_as_stream(video.source_file_id)
        try:
            reader = ProgressReader(stream, video.size_bytes, on_progress)
            stored = self.object_store.upload_from_stream(cache_key(video.id), reader, "video/mp4")
        finally:
            stream.close()

        logger.info(
            f"Cached video {video.id}: {format_bytes(reader.bytes_read)} in {time.time() - started:.1f}s"
        )
        return stored

    def _current(self, video_id: str) -> Video:
        current = self.storage.get_video(video_id)
        if current is None:
            raise NotFoundError("Video", video_id)
        return current

    def _record(self, video_id: str, stored: StoredObject) -> None:
        current = self._current(video_id)
        self.storage.save_video(replace(
            current,
            cache_uri=stored.uri,
            cache_expires_at=stored.expires_at,
            progress_message=None,
            updated_at=utcnow(),
        ))

    def _update_progress(self, video_id: str, message: str) -> None:
        try:
            current = self._current(video_id)
            self.storage.save_video(replace(current, progress_message=message, updated_at=utcnow()))
        except Exception as e:
            # Progress is informational; the transfer keeps going
            logger.warning(f"Failed to update progress for video {video_id}: {e}")
