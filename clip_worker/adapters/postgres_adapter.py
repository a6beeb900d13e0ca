"""
Postgres adapter implementations for storage, job source and video lease.

One connection pool is shared by the three adapters; multi-row writes
run on a single connection and commit once so they are all-or-nothing.
"""

import logging
import os
import socket
import time
import uuid
from contextlib import contextmanager
from dataclasses import asdict
from typing import Optional, Dict, Any, List

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from .base import StorageAdapter, JobSourceAdapter, VideoLock
from ..errors import ConflictError, TransientExternalError
from ..logging_setup import log_exception
from ..models import (
    Video, VideoStatus, TranscriptionPhase, Transcription, TranscriptionSegment,
    RefinedTranscription, RefinedSentence, Clip, ClipStatus, ClipSubtitle, SubtitleSegment,
    SubtitleStatus, ProcessingJob, ProcessingJobStatus, TimeRange,
)
from ..pipeline.timestamps import check_clip_bounds
from ..state_machine import check_video_invariants

logger = logging.getLogger("clip_worker")


SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS videos (
        id TEXT PRIMARY KEY,
        source_file_id TEXT NOT NULL UNIQUE,
        source_url TEXT NOT NULL,
        title TEXT,
        description TEXT,
        duration_seconds DOUBLE PRECISION,
        size_bytes BIGINT,
        status TEXT NOT NULL,
        transcription_phase TEXT,
        error_message TEXT,
        progress_message TEXT,
        cache_uri TEXT,
        cache_expires_at TIMESTAMPTZ,
        audio_uri TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CHECK (status <> 'failed' OR error_message IS NOT NULL),
        CHECK (transcription_phase IS NULL OR status = 'transcribing')
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS transcriptions (
        id TEXT PRIMARY KEY,
        video_id TEXT NOT NULL UNIQUE REFERENCES videos(id) ON DELETE CASCADE,
        full_text TEXT NOT NULL,
        segments JSONB NOT NULL,
        language_code TEXT,
        duration_seconds DOUBLE PRECISION,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refined_transcriptions (
        id TEXT PRIMARY KEY,
        transcription_id TEXT NOT NULL UNIQUE REFERENCES transcriptions(id) ON DELETE CASCADE,
        full_text TEXT NOT NULL,
        sentences JSONB NOT NULL,
        model TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS processing_jobs (
        id TEXT PRIMARY KEY,
        video_id TEXT NOT NULL REFERENCES videos(id) ON DELETE CASCADE,
        instructions TEXT NOT NULL DEFAULT '',
        requested_ranges JSONB NOT NULL DEFAULT '[]',
        status TEXT NOT NULL,
        ai_response TEXT,
        overlaps JSONB NOT NULL DEFAULT '[]',
        error_message TEXT,
        claimed_at TIMESTAMPTZ,
        started_at TIMESTAMPTZ,
        completed_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS clips (
        id TEXT PRIMARY KEY,
        video_id TEXT NOT NULL REFERENCES videos(id) ON DELETE CASCADE,
        job_id TEXT,
        start_seconds DOUBLE PRECISION NOT NULL,
        end_seconds DOUBLE PRECISION NOT NULL,
        title TEXT,
        transcript TEXT,
        reason TEXT,
        status TEXT NOT NULL,
        error_message TEXT,
        output_uri TEXT,
        subtitled_uri TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CHECK (start_seconds >= 0 AND start_seconds < end_seconds)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS clip_subtitles (
        id TEXT PRIMARY KEY,
        clip_id TEXT NOT NULL UNIQUE REFERENCES clips(id) ON DELETE CASCADE,
        segments JSONB NOT NULL,
        status TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS video_leases (
        video_id TEXT PRIMARY KEY,
        owner TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_clips_video_id ON clips(video_id)",
    "CREATE INDEX IF NOT EXISTS idx_jobs_pending ON processing_jobs(created_at) WHERE status = 'pending'",
]


@contextmanager
def translate_errors(operation: str):
    """Map driver errors onto the worker's error taxonomy"""
    try:
        yield
    except psycopg.errors.UniqueViolation as e:
        raise ConflictError(f"{operation}: {e.diag.message_primary or e}") from e
    except psycopg.OperationalError as e:
        raise TransientExternalError("storage", f"{operation}: {e}") from e


def _video_from_row(row: Dict[str, Any]) -> Video:
    return Video(
        id=row['id'],
        source_file_id=row['source_file_id'],
        source_url=row['source_url'],
        title=row['title'],
        description=row['description'],
        duration_seconds=row['duration_seconds'],
        size_bytes=row['size_bytes'],
        status=VideoStatus(row['status']),
        transcription_phase=TranscriptionPhase(row['transcription_phase']) if row['transcription_phase'] else None,
        error_message=row['error_message'],
        progress_message=row['progress_message'],
        cache_uri=row['cache_uri'],
        cache_expires_at=row['cache_expires_at'],
        audio_uri=row['audio_uri'],
        created_at=row['created_at'],
        updated_at=row['updated_at'],
    )


def _clip_from_row(row: Dict[str, Any]) -> Clip:
    return Clip(
        id=row['id'],
        video_id=row['video_id'],
        job_id=row['job_id'],
        start_seconds=row['start_seconds'],
        end_seconds=row['end_seconds'],
        title=row['title'],
        transcript=row['transcript'],
        reason=row['reason'],
        status=ClipStatus(row['status']),
        error_message=row['error_message'],
        output_uri=row['output_uri'],
        subtitled_uri=row['subtitled_uri'],
        created_at=row['created_at'],
        updated_at=row['updated_at'],
    )


def _job_from_row(row: Dict[str, Any]) -> ProcessingJob:
    return ProcessingJob(
        id=row['id'],
        video_id=row['video_id'],
        instructions=row['instructions'] or "",
        requested_ranges=[TimeRange(**r) for r in row['requested_ranges'] or []],
        status=ProcessingJobStatus(row['status']),
        ai_response=row['ai_response'],
        overlaps=[tuple(pair) for pair in row['overlaps'] or []],
        error_message=row['error_message'],
        started_at=row['started_at'],
        completed_at=row['completed_at'],
        created_at=row['created_at'],
        updated_at=row['updated_at'],
    )


class PostgresStorageAdapter(StorageAdapter):
    """Postgres implementation of the storage adapter"""

    def __init__(self, database_url: str, pool_size: int = 5, timeout: int = 10):
        self.database_url = database_url
        self.pool_size = pool_size
        self.timeout = timeout
        self.pool = None

    def connect(self):
        """Initialize connection pool"""
        try:
            self.pool = ConnectionPool(
                self.database_url,
                min_size=1,
                max_size=self.pool_size,
                kwargs={
                    "connect_timeout": self.timeout,
                    "application_name": "clip_worker"
                }
            )
            logger.info("Postgres storage connection pool initialized")
            self._bootstrap_schema()
        except Exception as e:
            log_exception(logger, f"Failed to connect to Postgres storage: {e}")
            raise

    def _bootstrap_schema(self):
        """Create tables if they do not exist"""
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                for statement in SCHEMA_STATEMENTS:
                    cur.execute(statement)
                conn.commit()
                logger.info("Postgres storage schema ready")

    def close(self):
        """Close connection pool"""
        if self.pool:
            self.pool.close()
            logger.info("Postgres storage connection pool closed")

    def ping(self) -> None:
        with translate_errors("ping"):
            with self.pool.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
                    cur.fetchone()

    def _fetch_one(self, query: str, params: tuple) -> Optional[Dict[str, Any]]:
        with translate_errors("query"):
            with self.pool.connection() as conn:
                with conn.cursor(row_factory=dict_row) as cur:
                    cur.execute(query, params)
                    return cur.fetchone()

    def _fetch_all(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        with translate_errors("query"):
            with self.pool.connection() as conn:
                with conn.cursor(row_factory=dict_row) as cur:
                    cur.execute(query, params)
                    return cur.fetchall()

    # Videos

    def get_video(self, video_id: str) -> Optional[Video]:
        row = self._fetch_one("SELECT * FROM videos WHERE id = %s", (video_id,))
        return _video_from_row(row) if row else None

    def find_video_by_source(self, source_file_id: str) -> Optional[Video]:
        row = self._fetch_one("SELECT * FROM videos WHERE source_file_id = %s", (source_file_id,))
        return _video_from_row(row) if row else None

    def list_videos(self, status: Optional[VideoStatus] = None) -> List[Video]:
        if status is None:
            rows = self._fetch_all("SELECT * FROM videos ORDER BY created_at")
        else:
            rows = self._fetch_all("SELECT * FROM videos WHERE status = %s ORDER BY created_at", (status.value,))
        return [_video_from_row(row) for row in rows]

    def _upsert_video(self, cur, video: Video) -> None:
        cur.execute("""
            INSERT INTO videos (
                id, source_file_id, source_url, title, description, duration_seconds, size_bytes,
                status, transcription_phase, error_message, progress_message,
                cache_uri, cache_expires_at, audio_uri, created_at, updated_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (id) DO UPDATE SET
                title = EXCLUDED.title,
                description = EXCLUDED.description,
                duration_seconds = EXCLUDED.duration_seconds,
                size_bytes = EXCLUDED.size_bytes,
                status = EXCLUDED.status,
                transcription_phase = EXCLUDED.transcription_phase,
                error_message = EXCLUDED.error_message,
                progress_message = EXCLUDED.progress_message,
                cache_uri = EXCLUDED.cache_uri,
                cache_expires_at = EXCLUDED.cache_expires_at,
                audio_uri = EXCLUDED.audio_uri,
                updated_at = EXCLUDED.updated_at
        """, (
            video.id, video.source_file_id, video.source_url, video.title, video.description,
            video.duration_seconds, video.size_bytes, video.status.value,
            video.transcription_phase.value if video.transcription_phase else None,
            video.error_message, video.progress_message, video.cache_uri,
            video.cache_expires_at, video.audio_uri, video.created_at, video.updated_at,
        ))

    def save_video(self, video: Video) -> None:
        check_video_invariants(video)
        with translate_errors(f"save video {video.id}"):
            with self.pool.connection() as conn:
                with conn.cursor() as cur:
                    self._upsert_video(cur, video)
                    conn.commit()

    def delete_video(self, video_id: str) -> None:
        with translate_errors(f"delete video {video_id}"):
            with self.pool.connection() as conn:
                with conn.cursor() as cur:
                    # Owned rows go through ON DELETE CASCADE
                    cur.execute("DELETE FROM videos WHERE id = %s", (video_id,))
                    cur.execute("DELETE FROM video_leases WHERE video_id = %s", (video_id,))
                    conn.commit()
                    logger.info(f"Deleted video {video_id} and owned rows")

    # Transcriptions

    def get_transcription(self, video_id: str) -> Optional[Transcription]:
        row = self._fetch_one("SELECT * FROM transcriptions WHERE video_id = %s", (video_id,))
        if not row:
            return None
        return Transcription(
            id=row['id'],
            video_id=row['video_id'],
            full_text=row['full_text'],
            segments=[TranscriptionSegment(**s) for s in row['segments']],
            language_code=row['language_code'],
            duration_seconds=row['duration_seconds'],
            created_at=row['created_at'],
        )

    def save_transcription(self, transcription: Transcription) -> None:
        with translate_errors(f"save transcription for video {transcription.video_id}"):
            with self.pool.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("""
                        INSERT INTO transcriptions (id, video_id, full_text, segments, language_code, duration_seconds, created_at)
                        VALUES (%s, %s, %s, %s, %s, %s, %s)
                        ON CONFLICT (video_id) DO UPDATE SET
                            full_text = EXCLUDED.full_text,
                            segments = EXCLUDED.segments,
                            language_code = EXCLUDED.language_code,
                            duration_seconds = EXCLUDED.duration_seconds
                    """, (
                        transcription.id, transcription.video_id, transcription.full_text,
                        Jsonb([asdict(s) for s in transcription.segments]),
                        transcription.language_code, transcription.duration_seconds,
                        transcription.created_at,
                    ))
                    conn.commit()

    def get_refined_transcription(self, transcription_id: str) -> Optional[RefinedTranscription]:
        row = self._fetch_one(
            "SELECT * FROM refined_transcriptions WHERE transcription_id = %s", (transcription_id,)
        )
        if not row:
            return None
        return RefinedTranscription(
            id=row['id'],
            transcription_id=row['transcription_id'],
            full_text=row['full_text'],
            sentences=[RefinedSentence(**s) for s in row['sentences']],
            model=row['model'],
            created_at=row['created_at'],
        )

    def save_refined_transcription(self, refined: RefinedTranscription) -> None:
        with translate_errors(f"save refined transcription {refined.id}"):
            with self.pool.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("""
                        INSERT INTO refined_transcriptions (id, transcription_id, full_text, sentences, model, created_at)
                        VALUES (%s, %s, %s, %s, %s, %s)
                        ON CONFLICT (transcription_id) DO UPDATE SET
                            full_text = EXCLUDED.full_text,
                            sentences = EXCLUDED.sentences,
                            model = EXCLUDED.model
                    """, (
                        refined.id, refined.transcription_id, refined.full_text,
                        Jsonb([asdict(s) for s in refined.sentences]),
                        refined.model, refined.created_at,
                    ))
                    conn.commit()

    # Clips

    def get_clip(self, clip_id: str) -> Optional[Clip]:
        row = self._fetch_one("SELECT * FROM clips WHERE id = %s", (clip_id,))
        return _clip_from_row(row) if row else None

    def list_clips(self, video_id: str) -> List[Clip]:
        rows = self._fetch_all(
            "SELECT * FROM clips WHERE video_id = %s ORDER BY start_seconds, created_at", (video_id,)
        )
        return [_clip_from_row(row) for row in rows]

    def list_all_clips(self) -> List[Clip]:
        rows = self._fetch_all("SELECT * FROM clips ORDER BY created_at DESC")
        return [_clip_from_row(row) for row in rows]

    def delete_clip(self, clip_id: str) -> None:
        with translate_errors(f"delete clip {clip_id}"):
            with self.pool.connection() as conn:
                with conn.cursor() as cur:
                    # clip_subtitles goes through ON DELETE CASCADE
                    cur.execute("DELETE FROM clips WHERE id = %s", (clip_id,))
                    conn.commit()

    def save_clips(self, clips: List[Clip]) -> None:
        if not clips:
            return
        durations: Dict[str, Optional[float]] = {}
        for clip in clips:
            if clip.video_id not in durations:
                video = self.get_video(clip.video_id)
                durations[clip.video_id] = video.duration_seconds if video else None
            check_clip_bounds(clip.start_seconds, clip.end_seconds, durations[clip.video_id])

        with translate_errors(f"save {len(clips)} clips"):
            with self.pool.connection() as conn:
                with conn.cursor() as cur:
                    for clip in clips:
                        cur.execute("""
                            INSERT INTO clips (
                                id, video_id, job_id, start_seconds, end_seconds, title, transcript, reason,
                                status, error_message, output_uri, subtitled_uri, created_at, updated_at
                            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                            ON CONFLICT (id) DO UPDATE SET
                                title = EXCLUDED.title,
                                status = EXCLUDED.status,
                                error_message = EXCLUDED.error_message,
                                output_uri = EXCLUDED.output_uri,
                                subtitled_uri = EXCLUDED.subtitled_uri,
                                updated_at = EXCLUDED.updated_at
                        """, (
                            clip.id, clip.video_id, clip.job_id, clip.start_seconds, clip.end_seconds,
                            clip.title, clip.transcript, clip.reason, clip.status.value,
                            clip.error_message, clip.output_uri, clip.subtitled_uri,
                            clip.created_at, clip.updated_at,
                        ))
                    conn.commit()

    # Subtitles

    def get_subtitle(self, clip_id: str) -> Optional[ClipSubtitle]:
        row = self._fetch_one("SELECT * FROM clip_subtitles WHERE clip_id = %s", (clip_id,))
        if not row:
            return None
        return ClipSubtitle(
            id=row['id'],
            clip_id=row['clip_id'],
            segments=[SubtitleSegment(**s) for s in row['segments']],
            status=SubtitleStatus(row['status']),
            created_at=row['created_at'],
            updated_at=row['updated_at'],
        )

    def save_subtitle(self, subtitle: ClipSubtitle) -> None:
        with translate_errors(f"save subtitle for clip {subtitle.clip_id}"):
            with self.pool.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("""
                        INSERT INTO clip_subtitles (id, clip_id, segments, status, created_at, updated_at)
                        VALUES (%s, %s, %s, %s, %s, %s)
                        ON CONFLICT (clip_id) DO UPDATE SET
                            segments = EXCLUDED.segments,
                            status = EXCLUDED.status,
                            updated_at = EXCLUDED.updated_at
                    """, (
                        subtitle.id, subtitle.clip_id, Jsonb([asdict(s) for s in subtitle.segments]),
                        subtitle.status.value, subtitle.created_at, subtitle.updated_at,
                    ))
                    conn.commit()

    # Jobs

    def get_job(self, job_id: str) -> Optional[ProcessingJob]:
        row = self._fetch_one("SELECT * FROM processing_jobs WHERE id = %s", (job_id,))
        return _job_from_row(row) if row else None

    def list_jobs(self, video_id: str) -> List[ProcessingJob]:
        rows = self._fetch_all(
            "SELECT * FROM processing_jobs WHERE video_id = %s ORDER BY created_at", (video_id,)
        )
        return [_job_from_row(row) for row in rows]

    def save_job(self, job: ProcessingJob) -> None:
        with translate_errors(f"save job {job.id}"):
            with self.pool.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("""
                        INSERT INTO processing_jobs (
                            id, video_id, instructions, requested_ranges, status, ai_response, overlaps,
                            error_message, started_at, completed_at, created_at, updated_at
                        ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                        ON CONFLICT (id) DO UPDATE SET
                            status = EXCLUDED.status,
                            ai_response = EXCLUDED.ai_response,
                            overlaps = EXCLUDED.overlaps,
                            error_message = EXCLUDED.error_message,
                            started_at = EXCLUDED.started_at,
                            completed_at = EXCLUDED.completed_at,
                            updated_at = EXCLUDED.updated_at,
                            claimed_at = CASE
                                WHEN EXCLUDED.status = 'pending' AND EXCLUDED.started_at IS NULL THEN NULL
                                ELSE processing_jobs.claimed_at
                            END
                    """, (
                        job.id, job.video_id, job.instructions,
                        Jsonb([asdict(r) for r in job.requested_ranges]),
                        job.status.value, job.ai_response, Jsonb([list(p) for p in job.overlaps]),
                        job.error_message, job.started_at, job.completed_at,
                        job.created_at, job.updated_at,
                    ))
                    conn.commit()

    def apply_reset(self, video: Video, clear_transcription: bool, clear_refined: bool, clear_clips: bool) -> None:
        check_video_invariants(video)
        with translate_errors(f"reset video {video.id}"):
            with self.pool.connection() as conn:
                with conn.cursor() as cur:
                    if clear_clips:
                        cur.execute("DELETE FROM clips WHERE video_id = %s", (video.id,))
                    if clear_transcription:
                        cur.execute("DELETE FROM transcriptions WHERE video_id = %s", (video.id,))
                    elif clear_refined:
                        cur.execute("""
                            DELETE FROM refined_transcriptions
                            WHERE transcription_id IN (SELECT id FROM transcriptions WHERE video_id = %s)
                        """, (video.id,))
                    self._upsert_video(cur, video)
                    conn.commit()

    def get_stats(self) -> Dict[str, Any]:
        with translate_errors("stats"):
            with self.pool.connection() as conn:
                with conn.cursor() as cur:
                    stats = {}
                    for key, table in (("videos", "videos"), ("clips", "clips"), ("jobs", "processing_jobs")):
                        cur.execute(f"SELECT status, COUNT(*) FROM {table} GROUP BY status")
                        stats[key] = {row[0]: row[1] for row in cur.fetchall()}
                    cur.execute("SELECT COUNT(*) FROM transcriptions")
                    stats["transcriptions"] = cur.fetchone()[0]
                    cur.execute("SELECT COUNT(*) FROM refined_transcriptions")
                    stats["refined_transcriptions"] = cur.fetchone()[0]
                    return stats


class PostgresJobSourceAdapter(JobSourceAdapter):
    """Claims pending processing jobs with FOR UPDATE SKIP LOCKED"""

    def __init__(self, storage: PostgresStorageAdapter):
        self.storage = storage

    def claim_job(self) -> Optional[ProcessingJob]:
        with translate_errors("claim job"):
            with self.storage.pool.connection() as conn:
                with conn.cursor(row_factory=dict_row) as cur:
                    cur.execute("""
                        WITH j AS (
                            SELECT id
                            FROM processing_jobs
                            WHERE status = 'pending' AND claimed_at IS NULL
                            ORDER BY created_at
                            FOR UPDATE SKIP LOCKED
                            LIMIT 1
                        )
                        UPDATE processing_jobs
                        SET claimed_at = now()
                        FROM j
                        WHERE processing_jobs.id = j.id
                        RETURNING processing_jobs.*;
                    """)
                    result = cur.fetchone()
                    conn.commit()
                    if result:
                        logger.info(f"Claimed job {result['id']} for video {result['video_id']}")
                        return _job_from_row(result)
                    return None

    def release_job(self, job_id: str) -> None:
        with translate_errors(f"release job {job_id}"):
            with self.storage.pool.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("UPDATE processing_jobs SET claimed_at = NULL WHERE id = %s", (job_id,))
                    conn.commit()

    def get_pending_jobs(self, limit: int = 10) -> List[ProcessingJob]:
        rows = self.storage._fetch_all("""
            SELECT * FROM processing_jobs
            WHERE status = 'pending' AND claimed_at IS NULL
            ORDER BY created_at
            LIMIT %s
        """, (limit,))
        return [_job_from_row(row) for row in rows]


class PostgresVideoLock(VideoLock):
    """Lease row per video; an expired lease can be taken over by another worker"""

    def __init__(self, storage: PostgresStorageAdapter, ttl_seconds: int = 3600, poll_interval: float = 0.5):
        self.storage = storage
        self.ttl_seconds = ttl_seconds
        self.poll_interval = poll_interval
        self.owner_prefix = f"{socket.gethostname()}:{os.getpid()}"
        self._tokens: Dict[str, str] = {}

    def _try_acquire(self, video_id: str, token: str) -> bool:
        with translate_errors(f"lock video {video_id}"):
            with self.storage.pool.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("""
                        INSERT INTO video_leases (video_id, owner, expires_at)
                        VALUES (%s, %s, now() + make_interval(secs => %s))
                        ON CONFLICT (video_id) DO UPDATE SET
                            owner = EXCLUDED.owner,
                            expires_at = EXCLUDED.expires_at
                        WHERE video_leases.expires_at < now()
                        RETURNING owner
                    """, (video_id, token, self.ttl_seconds))
                    row = cur.fetchone()
                    conn.commit()
                    return row is not None

    def acquire(self, video_id: str, timeout: float = 0.0) -> bool:
        token = f"{self.owner_prefix}:{uuid.uuid4().hex[:8]}"
        deadline = time.monotonic() + max(timeout, 0.0)
        while True:
            if self._try_acquire(video_id, token):
                self._tokens[video_id] = token
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.info(f"Lease for video {video_id} is held elsewhere")
                return False
            time.sleep(min(self.poll_interval, remaining))

    def release(self, video_id: str) -> None:
        token = self._tokens.pop(video_id, None)
        if token is None:
            return
        with translate_errors(f"unlock video {video_id}"):
            with self.storage.pool.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        "DELETE FROM video_leases WHERE video_id = %s AND owner = %s",
                        (video_id, token),
                    )
                    conn.commit()
