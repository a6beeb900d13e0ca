"""Tests for the S3 object store adapter."""

import io
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError

from clip_worker.adapters.s3_adapter import S3ObjectStore, parse_expiration_header
from clip_worker.errors import TransientExternalError, ValidationError

LAST_MODIFIED = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _client_error(code: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, "HeadObject")


def _store(**kwargs) -> S3ObjectStore:
    store = S3ObjectStore(bucket="bucket", prefix="cw/", **kwargs)
    store.s3 = MagicMock()
    return store


def test_parse_expiration_header() -> None:
    header = 'expiry-date="Fri, 23 Dec 2012 00:00:00 GMT", rule-id="clip-worker-cache-ttl"'

    assert parse_expiration_header(header) == datetime(2012, 12, 23, tzinfo=timezone.utc)
    assert parse_expiration_header(None) is None
    assert parse_expiration_header("rule-id=x") is None


def test_connect_creates_client_and_lifecycle_rule() -> None:
    with patch("clip_worker.adapters.s3_adapter.boto3") as mock_boto3:
        store = S3ObjectStore(bucket="bucket", region="eu-west-1", ttl_days=3, manage_lifecycle=True)
        store.connect()

    mock_boto3.client.assert_called_once_with("s3", region_name="eu-west-1")
    rule = store.s3.put_bucket_lifecycle_configuration.call_args[1]["LifecycleConfiguration"]["Rules"][0]
    assert rule["Expiration"] == {"Days": 3}
    assert rule["Filter"] == {"Prefix": "clip-worker/"}


def test_uri_round_trip_and_foreign_bucket() -> None:
    store = _store()

    assert store.uri_for("videos/v1/original") == "s3://bucket/cw/videos/v1/original"
    with pytest.raises(ValidationError):
        store.exists("s3://other/cw/videos/v1/original")


def test_upload_reports_expiry_from_header() -> None:
    store = _store()
    store.s3.head_object.return_value = {
        "ContentLength": 10,
        "LastModified": LAST_MODIFIED,
        "Expiration": 'expiry-date="Wed, 08 May 2024 00:00:00 GMT", rule-id="r"',
    }

    stored = store.upload_from_stream("videos/v1/original", io.BytesIO(b"0123456789"), "video/mp4")

    args = store.s3.upload_fileobj.call_args
    assert args[0][1:] == ("bucket", "cw/videos/v1/original")
    assert args[1]["ExtraArgs"] == {"ContentType": "video/mp4"}
    assert stored.uri == "s3://bucket/cw/videos/v1/original"
    assert stored.expires_at == datetime(2024, 5, 8, tzinfo=timezone.utc)
    assert stored.size_bytes == 10


def test_stat_falls_back_to_ttl() -> None:
    store = _store(ttl_days=7)
    store.s3.head_object.return_value = {"ContentLength": 1, "LastModified": LAST_MODIFIED}

    stored = store.stat("s3://bucket/cw/videos/v1/original")

    assert stored.expires_at == LAST_MODIFIED + timedelta(days=7)


def test_missing_object() -> None:
    store = _store()
    store.s3.head_object.side_effect = _client_error("404")

    assert store.exists("s3://bucket/cw/a") is False
    assert store.stat("s3://bucket/cw/a") is None


def test_other_head_errors_are_transient() -> None:
    store = _store()
    store.s3.head_object.side_effect = _client_error("AccessDenied")

    with pytest.raises(TransientExternalError):
        store.exists("s3://bucket/cw/a")


def test_upload_failure_is_transient() -> None:
    store = _store()
    store.s3.upload_fileobj.side_effect = _client_error("SlowDown")

    with pytest.raises(TransientExternalError):
        store.upload_from_stream("k", io.BytesIO(b"x"), "audio/wav")


def test_presigned_url_defaults() -> None:
    store = _store(presign_seconds=600)
    store.s3.generate_presigned_url.return_value = "https://signed"

    assert store.presigned_url("s3://bucket/cw/a") == "https://signed"
    store.s3.generate_presigned_url.assert_called_once_with(
        "get_object", Params={"Bucket": "bucket", "Key": "cw/a"}, ExpiresIn=600,
    )


def test_delete_prefix_pages_through_objects() -> None:
    store = _store()
    paginator = MagicMock()
    paginator.paginate.return_value = [
        {"Contents": [{"Key": "cw/videos/v1/original"}, {"Key": "cw/videos/v1/audio.wav"}]},
        {},
    ]
    store.s3.get_paginator.return_value = paginator

    assert store.delete_prefix("videos/v1/") == 2
    paginator.paginate.assert_called_once_with(Bucket="bucket", Prefix="cw/videos/v1/")
    store.s3.delete_objects.assert_called_once()
