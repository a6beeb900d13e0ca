"""
Main worker service.

Builds the adapters from configuration and runs the polling loop that
claims pending processing jobs and hands them to the orchestrator.
"""

import time
import signal
import sys
import logging
from typing import Optional, Dict, Any

from .config import WorkerConfig
from .adapters.base import JobSourceAdapter, StorageAdapter, VideoLock
from .adapters.memory_adapter import MemoryStorageAdapter, MemoryJobSourceAdapter, LocalVideoLock
from .adapters.postgres_adapter import PostgresStorageAdapter, PostgresJobSourceAdapter, PostgresVideoLock
from .adapters.s3_adapter import S3ObjectStore
from .adapters.drive_adapter import GoogleDriveFileHost
from .errors import ConflictError, PipelineError
from .orchestrator import PipelineOrchestrator
from .pipeline.analysis import OpenAIClipAnalyzer
from .pipeline.media import FfmpegTranscoder
from .pipeline.refine import OpenAITranscriptRefiner
from .pipeline.transcribe import WhisperSpeechAdapter
from .logging_setup import setup_logging, log_exception
from .http_server import start_health_server

logger = logging.getLogger("clip_worker")


class WorkerService:
    """Main worker service with adapter-based architecture"""

    def __init__(self, config: Optional[WorkerConfig] = None):
        self.config = config or WorkerConfig.from_env()
        self.storage: Optional[StorageAdapter] = None
        self.job_source: Optional[JobSourceAdapter] = None
        self.lock: Optional[VideoLock] = None
        self.object_store: Optional[S3ObjectStore] = None
        self.file_host: Optional[GoogleDriveFileHost] = None
        self.orchestrator: Optional[PipelineOrchestrator] = None
        self.health_server = None
        self.running = False
        self.backoff_interval = self.config.POLL_INTERVAL_MS
        self.max_backoff = self.config.MAX_BACKOFF_MS

    def initialize(self):
        """Initialize worker with adapters based on configuration"""
        try:
            setup_logging(self.config.LOG_LEVEL, self.config.LOG_DIR)
            self.config.validate()
            self._initialize_adapters()

            self.orchestrator = PipelineOrchestrator(
                self.config,
                self.storage,
                self.object_store,
                self.file_host,
                FfmpegTranscoder(),
                WhisperSpeechAdapter(model=self.config.OPENAI_TRANSCRIBE_MODEL),
                analyzer=OpenAIClipAnalyzer(model=self.config.OPENAI_ANALYSIS_MODEL),
                refiner=OpenAITranscriptRefiner(model=self.config.OPENAI_REFINE_MODEL),
                lock=self.lock,
            )

            self.health_server = start_health_server(self)

            logger.info("Worker service initialized successfully")

        except Exception as e:
            log_exception(logger, f"Failed to initialize worker service: {e}")
            raise

    def _initialize_adapters(self):
        """Initialize storage, job source, lock, object store and file host"""
        self.storage = self._create_storage_adapter()
        self.storage.connect()

        if isinstance(self.storage, PostgresStorageAdapter):
            self.job_source = PostgresJobSourceAdapter(self.storage)
            self.lock = PostgresVideoLock(self.storage, ttl_seconds=self.config.LOCK_TTL_SECONDS)
        else:
            self.job_source = MemoryJobSourceAdapter(self.storage)
            self.lock = LocalVideoLock()

        store = self.config.OBJECT_STORE_CONFIG
        self.object_store = S3ObjectStore(
            bucket=store["bucket"],
            region=store.get("region", "us-east-1"),
            prefix=store.get("prefix", "clip-worker/"),
            ttl_days=store.get("ttl_days", 7),
            presign_seconds=store.get("presign_seconds", 3600),
            manage_lifecycle=store.get("manage_lifecycle", False),
        )
        self.object_store.connect()

        host = self.config.FILE_HOST_CONFIG
        self.file_host = GoogleDriveFileHost(
            access_token=host.get("access_token"),
            api_key=host.get("api_key"),
            api_base=host.get("api_base", "https://www.googleapis.com/drive/v3"),
            timeout=host.get("timeout", 30),
        )
        self.file_host.connect()

        logger.info(f"Initialized adapters: {self.config.STORAGE_TYPE} storage, s3 object store, drive file host")

    def _create_storage_adapter(self) -> StorageAdapter:
        """Create storage adapter based on configuration"""

        if self.config.STORAGE_TYPE == "postgres":
            config = self.config.STORAGE_CONFIG
            return PostgresStorageAdapter(
                database_url=config["database_url"],
                pool_size=config.get("connection_pool_size", 5),
                timeout=config.get("connection_timeout", 10)
            )

        elif self.config.STORAGE_TYPE == "memory":
            return MemoryStorageAdapter()

        else:
            raise ValueError(f"Unsupported storage type: {self.config.STORAGE_TYPE}")

    def start(self):
        """Start the worker service"""
        if self.running:
            logger.warning("Worker service is already running")
            return

        self.running = True
        logger.info("Worker service started")
        self._start_polling_loop()

    def _sleep_with_backoff(self):
        time.sleep(self.backoff_interval / 1000.0)
        self.backoff_interval = min(
            self.backoff_interval * self.config.BACKOFF_MULTIPLIER,
            self.max_backoff
        )

    def _start_polling_loop(self):
        """Poll for pending processing jobs"""
        logger.info("Worker started, polling for jobs...")

        while self.running:
            try:
                processed = self.run_once()

                if not processed:
                    # No job available (or it was handed back), use exponential backoff
                    self._sleep_with_backoff()
                else:
                    self.backoff_interval = self.config.POLL_INTERVAL_MS

            except KeyboardInterrupt:
                logger.info("Received interrupt signal, shutting down...")
                break
            except Exception as e:
                log_exception(logger, f"Unexpected error in worker loop: {str(e)}")
                self._sleep_with_backoff()

        logger.info("Worker polling loop stopped")

    def run_once(self) -> bool:
        """
        Run one iteration of the worker loop.

        Returns:
            True if a job was processed, False if no job was available
            or the job had to be handed back
        """
        job = self.job_source.claim_job()
        if not job:
            return False

        # Reset backoff on successful job claim
        self.backoff_interval = self.config.POLL_INTERVAL_MS

        try:
            result = self.orchestrator.process_job(job)
            logger.info(
                f"Job {job.id} finished as {result.job.status.value}: "
                f"{len(result.succeeded)}/{len(result.clips)} clips"
            )
            return True
        except ConflictError as e:
            current = self.storage.get_job(job.id)
            if current and current.is_active:
                # Video busy with another operation; let it go back to the queue
                logger.warning(f"Job {job.id} deferred: {e}")
                self.job_source.release_job(job.id)
                return False
            return True
        except PipelineError as e:
            logger.error(f"Job {job.id} failed ({e.__class__.__name__}, retryable={e.retryable}): {e}")
            return True

    def stop(self):
        """Stop the worker service"""
        self.running = False

        if self.health_server:
            self.health_server.stop()

        for adapter in (self.file_host, self.object_store, self.storage):
            if adapter:
                adapter.close()

        logger.info("Worker service stopped")

    def get_stats(self) -> Dict[str, Any]:
        """Get worker statistics"""
        stats = {
            'running': self.running,
            'config': {
                'storage_type': self.config.STORAGE_TYPE,
                'audio_format': self.config.AUDIO_FORMAT,
                'refine_enabled': self.config.REFINE_ENABLED,
                'clip_workers': self.config.CLIP_WORKERS,
                'poll_interval_ms': self.config.POLL_INTERVAL_MS
            }
        }

        if self.orchestrator:
            stats['orchestrator'] = self.orchestrator.get_stats()
        if self.storage:
            stats['storage'] = self.storage.get_stats()

        return stats

    def reset_stats(self):
        """Reset worker statistics"""
        if self.orchestrator:
            self.orchestrator.reset_stats()
        logger.info("Worker statistics reset")


def signal_handler(signum, frame):
    """Handle shutdown signals"""
    logger.info(f"Received signal {signum}, shutting down...")
    sys.exit(0)


def main():
    """Main entry point"""
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    worker = WorkerService()

    try:
        worker.initialize()
        worker.start()
    except Exception as e:
        log_exception(logger, f"Worker failed to start: {str(e)}")
        sys.exit(1)
    finally:
        worker.stop()


if __name__ == "__main__":
    main()
