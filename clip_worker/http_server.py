import logging
from dataclasses import asdict
from threading import Thread
from typing import Any, Dict, Optional

import uvicorn
from fastapi import FastAPI, HTTPException

from .errors import PipelineError
from .models import VideoStatus
from .orchestrator import VIDEO_PAGE_LIMIT

logger = logging.getLogger("clip_worker")


def entity_payload(entity) -> Dict[str, Any]:
    """Dataclass as a dict; enums and datetimes are encoded by FastAPI"""
    return asdict(entity)


class HealthServer:
    def __init__(self, service, port: int = 8000):
        self.service = service
        self.port = port
        self.app = FastAPI(title="Clip Worker Health API")
        self.setup_routes()
        self.server_thread = None
        self.running = False

    def setup_routes(self):
        """Setup API routes"""

        @self.app.get("/healthz")
        def health_check():
            """Health check endpoint"""
            try:
                self.service.storage.ping()
                return {"ok": True, "status": "healthy"}
            except Exception as e:
                logger.error(f"Health check failed: {str(e)}")
                raise HTTPException(status_code=503, detail=f"Storage connection failed: {str(e)}")

        @self.app.get("/stats")
        def get_stats():
            """Get worker statistics"""
            try:
                return self.service.get_stats()
            except Exception as e:
                logger.error(f"Error getting stats: {str(e)}")
                raise HTTPException(status_code=500, detail=f"Error fetching stats: {str(e)}")

        @self.app.get("/videos")
        def list_videos(status: Optional[str] = None, page: int = 1, limit: int = VIDEO_PAGE_LIMIT):
            """List videos, optionally filtered by status"""
            try:
                video_status = VideoStatus(status) if status else None
            except ValueError:
                raise HTTPException(status_code=400, detail=f"Unknown video status: {status}")
            videos = self.service.orchestrator.list_videos(video_status, page, limit)
            return {"videos": [entity_payload(v) for v in videos]}

        @self.app.get("/clips/{clip_id}/url")
        def get_clip_url(clip_id: str):
            """Presigned download URL for a clip"""
            try:
                return {"url": self.service.orchestrator.get_clip_url(clip_id)}
            except PipelineError as e:
                raise HTTPException(status_code=e.status_code, detail=e.message)

        @self.app.get("/videos/{video_id}")
        def get_video(video_id: str):
            """Peek at a video, its clips and jobs"""
            try:
                orchestrator = self.service.orchestrator
                video = orchestrator.get_video(video_id)
                return {
                    "video": entity_payload(video),
                    "clips": [entity_payload(c) for c in orchestrator.get_clips(video_id)],
                    "jobs": [entity_payload(j) for j in orchestrator.get_jobs(video_id)],
                }
            except PipelineError as e:
                raise HTTPException(status_code=e.status_code, detail=e.message)

    def start(self):
        """Start the HTTP server in a background thread"""
        if self.running:
            return

        def run_server():
            try:
                uvicorn.run(
                    self.app,
                    host="0.0.0.0",
                    port=self.port,
                    log_level="warning",  # Reduce uvicorn logging
                    access_log=False
                )
            except Exception as e:
                logger.error(f"HTTP server error: {str(e)}")

        self.server_thread = Thread(target=run_server, daemon=True)
        self.server_thread.start()
        self.running = True

        logger.info(f"Health server started on port {self.port}")

    def stop(self):
        """Stop the HTTP server"""
        self.running = False
        logger.info("Health server stopped")


def start_health_server(service) -> Optional[HealthServer]:
    """Start the health server if enabled"""
    if service.config.ENABLE_HTTP_SERVER:
        server = HealthServer(service, service.config.HTTP_PORT)
        server.start()
        return server
    return None
