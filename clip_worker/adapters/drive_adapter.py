"""
Google Drive file host adapter.

Reads file metadata and streams file content over the Drive v3 REST API
using requests.
"""

import logging
from typing import Optional, BinaryIO

import requests

from .base import FileHostAdapter
from ..errors import NotFoundError, TransientExternalError
from ..models import FileMetadata

logger = logging.getLogger("clip_worker")

DRIVE_API_BASE = "https://www.googleapis.com/drive/v3"


class GoogleDriveFileHost(FileHostAdapter):
    """Google Drive implementation of the file host adapter"""

    def __init__(
        self,
        access_token: Optional[str] = None,
        api_key: Optional[str] = None,
        api_base: str = DRIVE_API_BASE,
        timeout: int = 30,
    ):
        self.access_token = access_token
        self.api_key = api_key
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self.session = None

    def connect(self):
        """Create the HTTP session"""
        self.session = requests.Session()
        if self.access_token:
            self.session.headers["Authorization"] = f"Bearer {self.access_token}"
        logger.info(f"Drive file host ready: {self.api_base}")

    def close(self):
        if self.session:
            self.session.close()

    def _params(self, **extra) -> dict:
        params = {"supportsAllDrives": "true", **extra}
        if self.api_key:
            params["key"] = self.api_key
        return params

    def _get(self, file_id: str, stream: bool = False, **params) -> requests.Response:
        if self.session is None:
            self.connect()
        url = f"{self.api_base}/files/{file_id}"
        try:
            response = self.session.get(url, params=self._params(**params), stream=stream, timeout=self.timeout)
        except requests.RequestException as e:
            raise TransientExternalError("file_host", f"request for {file_id} failed: {e}") from e

        if response.status_code == 404:
            response.close()
            raise NotFoundError("SourceFile", file_id)
        try:
            response.raise_for_status()
        except requests.HTTPError as e:
            response.close()
            raise TransientExternalError("file_host", f"{file_id}: HTTP {response.status_code}") from e
        return response

    def get_metadata(self, file_id: str) -> FileMetadata:
        response = self._get(file_id, fields="name,size,mimeType")
        data = response.json()
        size = data.get("size")
        return FileMetadata(
            name=data.get("name") or file_id,
            size_bytes=int(size) if size is not None else None,
            mime_type=data.get("mimeType"),
        )

    def download_as_stream(self, file_id: str) -> BinaryIO:
        response = self._get(file_id, stream=True, alt="media")
        raw = response.raw
        raw.decode_content = True
        logger.info(f"Streaming Drive file {file_id} ({response.headers.get('Content-Length', '?')} bytes)")
        return raw
