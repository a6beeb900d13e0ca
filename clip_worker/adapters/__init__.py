"""
Adapter implementations for storage, job source, object store and file host.

This module provides the abstract base classes and the concrete
Postgres, in-memory, S3 and Google Drive implementations.
"""

from .base import (
    StorageAdapter, JobSourceAdapter, VideoLock, ObjectStoreAdapter, FileHostAdapter,
    TranscoderAdapter, SpeechAdapter, ClipAnalyzerAdapter, TranscriptRefinerAdapter,
    AnalysisRequest, AnalysisResponse,
)
from .memory_adapter import MemoryStorageAdapter, MemoryJobSourceAdapter, LocalVideoLock
from .postgres_adapter import PostgresStorageAdapter, PostgresJobSourceAdapter, PostgresVideoLock
from .s3_adapter import S3ObjectStore
from .drive_adapter import GoogleDriveFileHost

__all__ = [
    'StorageAdapter',
    'JobSourceAdapter',
    'VideoLock',
    'ObjectStoreAdapter',
    'FileHostAdapter',
    'TranscoderAdapter',
    'SpeechAdapter',
    'ClipAnalyzerAdapter',
    'TranscriptRefinerAdapter',
    'AnalysisRequest',
    'AnalysisResponse',
    'MemoryStorageAdapter',
    'MemoryJobSourceAdapter',
    'LocalVideoLock',
    'PostgresStorageAdapter',
    'PostgresJobSourceAdapter',
    'PostgresVideoLock',
    'S3ObjectStore',
    'GoogleDriveFileHost',
]
