"""Tests for the Google Drive file host adapter."""

from unittest.mock import MagicMock

import pytest
import requests

from clip_worker.adapters.drive_adapter import GoogleDriveFileHost
from clip_worker.errors import NotFoundError, TransientExternalError


def _response(status_code: int = 200, json_body=None) -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = json_body or {}
    response.headers = {"Content-Length": "1024"}
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(f"HTTP {status_code}")
    return response


def _host(response=None, error=None, **kwargs) -> GoogleDriveFileHost:
    host = GoogleDriveFileHost(**kwargs)
    host.session = MagicMock()
    if error is not None:
        host.session.get.side_effect = error
    else:
        host.session.get.return_value = response
    return host


def test_connect_sets_bearer_header() -> None:
    host = GoogleDriveFileHost(access_token="abc")
    host.connect()

    assert host.session.headers["Authorization"] == "Bearer abc"
    host.close()


def test_get_metadata() -> None:
    host = _host(_response(json_body={"name": "talk.mp4", "size": "2048", "mimeType": "video/mp4"}), api_key="k")

    metadata = host.get_metadata("file1")

    assert metadata.name == "talk.mp4"
    assert metadata.size_bytes == 2048
    assert metadata.mime_type == "video/mp4"
    url = host.session.get.call_args[0][0]
    params = host.session.get.call_args[1]["params"]
    assert url == "https://www.googleapis.com/drive/v3/files/file1"
    assert params["fields"] == "name,size,mimeType"
    assert params["key"] == "k"


def test_download_returns_raw_stream() -> None:
    response = _response()
    host = _host(response)

    stream = host.download_as_stream("file1")

    assert stream is response.raw
    assert stream.decode_content is True
    call_kw = host.session.get.call_args[1]
    assert call_kw["stream"] is True
    assert call_kw["params"]["alt"] == "media"


def test_missing_file_is_not_found() -> None:
    host = _host(_response(404))

    with pytest.raises(NotFoundError):
        host.get_metadata("gone")


@pytest.mark.parametrize("status_code", [403, 500])
def test_http_errors_are_transient(status_code) -> None:
    host = _host(_response(status_code))

    with pytest.raises(TransientExternalError):
        host.get_metadata("file1")


def test_connection_errors_are_transient() -> None:
    host = _host(error=requests.ConnectionError("reset"))

    with pytest.raises(TransientExternalError) as exc:
        host.download_as_stream("file1")

    assert exc.value.service == "file_host"
