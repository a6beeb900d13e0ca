"""
AWS S3 adapter for the object store.

Holds the temporary cache of source videos, extracted audio and clip
outputs. Expiry is enforced by a bucket lifecycle rule on the prefix;
the adapter reports the expiry S3 advertises for each object.
"""

import logging
import re
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import Optional, BinaryIO

import boto3
from botocore.exceptions import ClientError, BotoCoreError

from .base import ObjectStoreAdapter
from ..errors import TransientExternalError, ValidationError
from ..models import StoredObject

logger = logging.getLogger("clip_worker")

_EXPIRY_DATE = re.compile(r'expiry-date="([^"]+)"')


def parse_expiration_header(header: Optional[str]) -> Optional[datetime]:
    """Parse the x-amz-expiration value, e.g. expiry-date="Fri, 23 Dec 2012 00:00:00 GMT", rule-id="x" """
    if not header:
        return None
    match = _EXPIRY_DATE.search(header)
    if not match:
        return None
    try:
        expires = parsedate_to_datetime(match.group(1))
    except (TypeError, ValueError):
        return None
    if expires.tzinfo is None:
        expires = expires.replace(tzinfo=timezone.utc)
    return expires


class S3ObjectStore(ObjectStoreAdapter):
    """AWS S3 implementation of the object store adapter"""

    def __init__(
        self,
        bucket: str,
        region: str = "us-east-1",
        prefix: str = "clip-worker/",
        ttl_days: int = 7,
        presign_seconds: int = 3600,
        manage_lifecycle: bool = False,
    ):
        self.bucket = bucket
        self.region = region
        self.prefix = prefix
        self.ttl_days = ttl_days
        self.presign_seconds = presign_seconds
        self.manage_lifecycle = manage_lifecycle
        self.s3 = None

    def connect(self):
        """Initialize S3 client"""
        try:
            self.s3 = boto3.client('s3', region_name=self.region)
            logger.info(f"S3 object store connected to bucket: {self.bucket}")
        except Exception as e:
            logger.error(f"Failed to connect to S3: {e}")
            raise
        if self.manage_lifecycle:
            self.ensure_lifecycle_rule()

    def close(self):
        logger.info("S3 object store connection closed")

    def ensure_lifecycle_rule(self) -> None:
        """Install the expiration rule that gives cached objects their TTL"""
        try:
            self.s3.put_bucket_lifecycle_configuration(
                Bucket=self.bucket,
                LifecycleConfiguration={
                    "Rules": [{
                        "ID": "clip-worker-cache-ttl",
                        "Filter": {"Prefix": self.prefix},
                        "Status": "Enabled",
                        "Expiration": {"Days": self.ttl_days},
                    }]
                },
            )
            logger.info(f"Lifecycle rule set on s3://{self.bucket}/{self.prefix}: {self.ttl_days} days")
        except ClientError as e:
            raise TransientExternalError("object_store", f"lifecycle rule: {e}") from e

    def uri_for(self, key: str) -> str:
        return f"s3://{self.bucket}/{self.prefix}{key}"

    def _key_from_uri(self, uri: str) -> str:
        head = f"s3://{self.bucket}/"
        if not uri.startswith(head):
            raise ValidationError(f"URI {uri} does not belong to bucket {self.bucket}")
        return uri[len(head):]

    def _head(self, key: str) -> Optional[dict]:
        try:
            return self.s3.head_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code in ("404", "NoSuchKey", "NotFound"):
                return None
            raise TransientExternalError("object_store", f"head {key}: {e}") from e
        except BotoCoreError as e:
            raise TransientExternalError("object_store", f"head {key}: {e}") from e

    def _stored_object(self, key: str, head: dict) -> StoredObject:
        expires_at = parse_expiration_header(head.get("Expiration"))
        if expires_at is None:
            last_modified = head.get("LastModified") or datetime.now(timezone.utc)
            expires_at = last_modified + timedelta(days=self.ttl_days)
        return StoredObject(
            uri=f"s3://{self.bucket}/{key}",
            expires_at=expires_at,
            size_bytes=head.get("ContentLength"),
        )

    def exists(self, uri: str) -> bool:
        return self._head(self._key_from_uri(uri)) is not None

    def stat(self, uri: str) -> Optional[StoredObject]:
        key = self._key_from_uri(uri)
        head = self._head(key)
        return self._stored_object(key, head) if head else None

    def upload_from_stream(self, key: str, stream: BinaryIO, content_type: str) -> StoredObject:
        full_key = f"{self.prefix}{key}"
        try:
            # Multipart uploads only become visible once completed
            self.s3.upload_fileobj(
                stream, self.bucket, full_key,
                ExtraArgs={"ContentType": content_type},
            )
        except (ClientError, BotoCoreError) as e:
            raise TransientExternalError("object_store", f"upload {full_key}: {e}") from e

        head = self._head(full_key)
        if head is None:
            raise TransientExternalError("object_store", f"upload {full_key} not visible after completion")
        stored = self._stored_object(full_key, head)
        logger.info(f"Uploaded {stored.uri} ({stored.size_bytes} bytes), expires {stored.expires_at.isoformat()}")
        return stored

    def download_as_stream(self, uri: str) -> BinaryIO:
        key = self._key_from_uri(uri)
        try:
            return self.s3.get_object(Bucket=self.bucket, Key=key)["Body"]
        except (ClientError, BotoCoreError) as e:
            raise TransientExternalError("object_store", f"download {key}: {e}") from e

    def presigned_url(self, uri: str, expires_in: Optional[int] = None) -> str:
        key = self._key_from_uri(uri)
        try:
            return self.s3.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=expires_in or self.presign_seconds,
            )
        except (ClientError, BotoCoreError) as e:
            raise TransientExternalError("object_store", f"presign {key}: {e}") from e

    def delete_prefix(self, prefix: str) -> int:
        full_prefix = f"{self.prefix}{prefix}"
        deleted = 0
        try:
            paginator = self.s3.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=full_prefix):
                objects = [{"Key": obj["Key"]} for obj in page.get("Contents", [])]
                if not objects:
                    continue
                self.s3.delete_objects(Bucket=self.bucket, Delete={"Objects": objects, "Quiet": True})
                deleted += len(objects)
        except (ClientError, BotoCoreError) as e:
            raise TransientExternalError("object_store", f"delete {full_prefix}: {e}") from e
        logger.info(f"Deleted {deleted} objects under s3://{self.bucket}/{full_prefix}")
        return deleted
