"""Object storage — S3-compatible bucket holding published build artifacts.

Keys look like "{user_id}/{project_id}/v{version}/{relative_path}". The
boto3 client is blocking, so every call is pushed to a worker thread.
"""

import asyncio
import logging
import mimetypes
from dataclasses import dataclass
from pathlib import PurePosixPath

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from apps.api.config import settings
from apps.api.exceptions import StorageError

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = {"NoSuchKey", "404", "NotFound"}


class ObjectNotFound(Exception):
    """The requested key does not exist. Callers map this to a 404."""

    def __init__(self, key: str):
        super().__init__(f"Object not found: {key}")
        self.key = key


@dataclass
class StoredObject:
    body: bytes
    content_type: str


def guess_content_type(path: str) -> str:
    guess, _ = mimetypes.guess_type(PurePosixPath(path).name)
    return guess or "application/octet-stream"


class ObjectStorage:
    """Thin async wrapper around one bucket."""

    def __init__(
        self,
        bucket: str,
        region: str | None = None,
        endpoint: str | None = None,
        access_key: str | None = None,
        secret_key: str | None = None,
        client=None,
    ):
        self.bucket = bucket
        self._region = region
        self._endpoint = endpoint
        self._access_key = access_key
        self._secret_key = secret_key
        self._client = client

    def _get_client(self):
        if self._client is not None:
            return self._client
        kwargs = {
            "service_name": "s3",
            "region_name": self._region,
            "endpoint_url": self._endpoint,
        }
        if self._access_key:
            kwargs["aws_access_key_id"] = self._access_key
        if self._secret_key:
            kwargs["aws_secret_access_key"] = self._secret_key
        self._client = boto3.client(**kwargs)
        return self._client

    async def upload(self, key: str, body: bytes, content_type: str | None = None) -> None:
        """Write one object, overwriting whatever was at the key."""
        client = self._get_client()
        try:
            await asyncio.to_thread(
                client.put_object,
                Bucket=self.bucket,
                Key=key,
                Body=body,
                ContentType=content_type or guess_content_type(key),
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Failed to upload {key}: {e}") from e

    async def download(self, key: str) -> StoredObject:
        client = self._get_client()
        try:
            response = await asyncio.to_thread(client.get_object, Bucket=self.bucket, Key=key)
        except ClientError as e:
            code = str(e.response.get("Error", {}).get("Code", ""))
            if code in _NOT_FOUND_CODES:
                raise ObjectNotFound(key) from e
            raise StorageError(f"Failed to fetch {key}: {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"Failed to fetch {key}: {e}") from e

        body = response.get("Body")
        if body is None:
            raise ObjectNotFound(key)
        payload = await asyncio.to_thread(body.read)
        content_type = (response.get("ContentType") or "").strip() or guess_content_type(key)
        return StoredObject(body=payload, content_type=content_type)

    async def delete_prefix(self, prefix: str) -> int:
        """Remove every object under prefix. Returns how many were deleted."""
        client = self._get_client()
        prefix = prefix.rstrip("/") + "/"
        deleted = 0
        continuation_token = None
        try:
            while True:
                kwargs = {"Bucket": self.bucket, "Prefix": prefix, "MaxKeys": 1000}
                if continuation_token:
                    kwargs["ContinuationToken"] = continuation_token
                page = await asyncio.to_thread(client.list_objects_v2, **kwargs)
                keys = [{"Key": item["Key"]} for item in page.get("Contents", []) or []]
                if keys:
                    await asyncio.to_thread(
                        client.delete_objects,
                        Bucket=self.bucket,
                        Delete={"Objects": keys, "Quiet": True},
                    )
                    deleted += len(keys)
                if not page.get("IsTruncated"):
                    break
                continuation_token = page.get("NextContinuationToken")
                if not continuation_token:
                    break
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Failed to delete {prefix}: {e}") from e
        logger.info("Deleted %d object(s) under %s", deleted, prefix)
        return deleted


def create_object_storage() -> ObjectStorage:
    return ObjectStorage(
        bucket=settings.storage_bucket,
        region=settings.storage_region,
        endpoint=settings.storage_endpoint,
        access_key=settings.storage_access_key,
        secret_key=settings.storage_secret_key,
    )


# Singleton instance
object_storage = create_object_storage()
