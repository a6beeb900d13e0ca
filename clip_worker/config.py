"""
Configuration management for the clip worker.

Centralizes all configuration loading from environment variables
and provides type-safe access to configuration values.
"""

import os
from typing import Dict, Any
from dataclasses import dataclass


AUDIO_FORMATS = ("wav", "flac")


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass
class WorkerConfig:
    """Configuration for the clip worker"""

    # Storage settings
    STORAGE_TYPE: str = "postgres"  # postgres, memory
    STORAGE_CONFIG: Dict[str, Any] = None

    # Object store (temporary cache, audio, clip outputs)
    OBJECT_STORE_CONFIG: Dict[str, Any] = None

    # Source file host
    FILE_HOST_CONFIG: Dict[str, Any] = None

    # AI models
    OPENAI_TRANSCRIBE_MODEL: str = "whisper-1"
    OPENAI_ANALYSIS_MODEL: str = "gpt-4o-mini"
    OPENAI_REFINE_MODEL: str = "gpt-4o-mini"

    # Pipeline settings
    AUDIO_FORMAT: str = "wav"
    REFINE_ENABLED: bool = True
    REFINE_TIMEOUT_SECONDS: float = 120.0
    CLIP_WORKERS: int = 3
    LOCK_WAIT_SECONDS: float = 30.0
    LOCK_TTL_SECONDS: int = 3600

    # Job loop settings
    POLL_INTERVAL_MS: int = 1500
    BACKOFF_MULTIPLIER: float = 1.5
    MAX_BACKOFF_MS: int = 12000

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = "/app/data/worker"

    # HTTP server
    ENABLE_HTTP_SERVER: bool = False
    HTTP_PORT: int = 8000

    # Data directory for temporary work files
    DATA_DIR: str = "/app/data"

    def __post_init__(self):
        if self.STORAGE_CONFIG is None:
            self.STORAGE_CONFIG = {}
        if self.OBJECT_STORE_CONFIG is None:
            self.OBJECT_STORE_CONFIG = {}
        if self.FILE_HOST_CONFIG is None:
            self.FILE_HOST_CONFIG = {}

    @classmethod
    def from_env(cls) -> 'WorkerConfig':
        """Load configuration from environment variables"""
        config = cls()

        # Storage configuration
        config.STORAGE_TYPE = os.getenv("STORAGE_TYPE", "postgres")
        config.STORAGE_CONFIG = cls._parse_storage_config()
        config.OBJECT_STORE_CONFIG = cls._parse_object_store_config()
        config.FILE_HOST_CONFIG = cls._parse_file_host_config()

        # AI models
        config.OPENAI_TRANSCRIBE_MODEL = os.getenv("OPENAI_TRANSCRIBE_MODEL", "whisper-1")
        config.OPENAI_ANALYSIS_MODEL = os.getenv("OPENAI_ANALYSIS_MODEL", "gpt-4o-mini")
        config.OPENAI_REFINE_MODEL = os.getenv("OPENAI_REFINE_MODEL", "gpt-4o-mini")

        # Pipeline settings
        config.AUDIO_FORMAT = os.getenv("AUDIO_FORMAT", "wav").lower()
        config.REFINE_ENABLED = _env_bool("REFINE_ENABLED", "true")
        config.REFINE_TIMEOUT_SECONDS = float(os.getenv("REFINE_TIMEOUT_SECONDS", "120"))
        config.CLIP_WORKERS = int(os.getenv("CLIP_WORKERS", "3"))
        config.LOCK_WAIT_SECONDS = float(os.getenv("LOCK_WAIT_SECONDS", "30"))
        config.LOCK_TTL_SECONDS = int(os.getenv("LOCK_TTL_SECONDS", "3600"))

        # Job loop settings
        config.POLL_INTERVAL_MS = int(os.getenv("WORKER_POLL_MS", "1500"))
        config.BACKOFF_MULTIPLIER = float(os.getenv("WORKER_BACKOFF_MULTIPLIER", "1.5"))
        config.MAX_BACKOFF_MS = int(os.getenv("WORKER_MAX_BACKOFF_MS", "12000"))

        # Logging
        config.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
        config.LOG_DIR = os.getenv("LOG_DIR", "/app/data/worker")

        # HTTP server
        config.ENABLE_HTTP_SERVER = _env_bool("WORKER_DEV_HTTP", "false")
        config.HTTP_PORT = int(os.getenv("WORKER_HTTP_PORT", "8000"))

        config.DATA_DIR = os.getenv("DATA_DIR", "/app/data")

        return config

    @classmethod
    def _parse_storage_config(cls) -> Dict[str, Any]:
        """Parse storage specific configuration"""
        storage_type = os.getenv("STORAGE_TYPE", "postgres")

        if storage_type == "postgres":
            return {
                "database_url": os.getenv("DATABASE_URL"),
                "connection_pool_size": int(os.getenv("POSTGRES_POOL_SIZE", "5")),
                "connection_timeout": int(os.getenv("POSTGRES_TIMEOUT", "10"))
            }
        return {}

    @classmethod
    def _parse_object_store_config(cls) -> Dict[str, Any]:
        """Parse S3 object store configuration"""
        return {
            "bucket": os.getenv("AWS_S3_BUCKET"),
            "region": os.getenv("AWS_REGION", "us-east-1"),
            "prefix": os.getenv("S3_PREFIX", "clip-worker/"),
            "ttl_days": int(os.getenv("CACHE_TTL_DAYS", "7")),
            "presign_seconds": int(os.getenv("PRESIGN_SECONDS", "3600")),
            "manage_lifecycle": _env_bool("S3_MANAGE_LIFECYCLE", "false"),
        }

    @classmethod
    def _parse_file_host_config(cls) -> Dict[str, Any]:
        """Parse Google Drive file host configuration"""
        return {
            "api_base": os.getenv("DRIVE_API_BASE", "https://www.googleapis.com/drive/v3"),
            "access_token": os.getenv("DRIVE_ACCESS_TOKEN"),
            "api_key": os.getenv("DRIVE_API_KEY"),
            "timeout": int(os.getenv("DRIVE_TIMEOUT", "30")),
        }

    def validate(self) -> None:
        """Validate configuration and raise errors for missing required values"""
        required_vars = []

        if self.STORAGE_TYPE not in ("postgres", "memory"):
            raise ValueError(f"Unsupported STORAGE_TYPE: {self.STORAGE_TYPE}")

        if self.STORAGE_TYPE == "postgres" and not self.STORAGE_CONFIG.get("database_url"):
            required_vars.append("DATABASE_URL")

        if not self.OBJECT_STORE_CONFIG.get("bucket"):
            required_vars.append("AWS_S3_BUCKET")

        if not (self.FILE_HOST_CONFIG.get("access_token") or self.FILE_HOST_CONFIG.get("api_key")):
            required_vars.append("DRIVE_ACCESS_TOKEN or DRIVE_API_KEY")

        if not os.getenv("OPENAI_API_KEY"):
            required_vars.append("OPENAI_API_KEY")

        if required_vars:
            raise ValueError(f"Missing required environment variables: {', '.join(required_vars)}")

        if self.AUDIO_FORMAT not in AUDIO_FORMATS:
            raise ValueError(f"AUDIO_FORMAT must be one of {', '.join(AUDIO_FORMATS)}, got {self.AUDIO_FORMAT}")

        if self.CLIP_WORKERS < 1:
            raise ValueError("CLIP_WORKERS must be at least 1")
