"""S3-compatible object storage for mailbox documents (MinIO/S3).

Folder documents are small JSON objects rewritten on every merge, so the
client favours many cheap PUTs with botocore's standard retry mode.
"""

import json
import logging
import os
from typing import Any

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

_MISSING_CODES = frozenset({"404", "NoSuchKey", "NoSuchBucket"})

# DeleteObjects accepts at most this many keys per request
_DELETE_BATCH = 1000


def _is_missing(error: ClientError) -> bool:
    return error.response.get("Error", {}).get("Code", "") in _MISSING_CODES


class ObjectStoreConfig(BaseModel):
    """Configuration for S3-compatible object storage."""

    endpoint_url: str | None = None  # None for AWS S3, set for MinIO
    access_key: str
    secret_key: str
    region: str = "us-east-1"
    default_bucket: str = "mailroom-data"
    max_attempts: int = Field(default=5, ge=1)

    @classmethod
    def from_env(cls) -> "ObjectStoreConfig":
        """Load configuration from environment variables."""
        return cls(
            endpoint_url=os.getenv("MINIO_ENDPOINT") or os.getenv("S3_ENDPOINT"),
            access_key=os.getenv("MINIO_ACCESS_KEY") or os.getenv("AWS_ACCESS_KEY_ID", ""),
            secret_key=os.getenv("MINIO_SECRET_KEY") or os.getenv("AWS_SECRET_ACCESS_KEY", ""),
            region=os.getenv("AWS_REGION", "us-east-1"),
            default_bucket=os.getenv("STORAGE_BUCKET", "mailroom-data"),
            max_attempts=int(os.getenv("STORAGE_MAX_ATTEMPTS", "5")),
        )


class ObjectStore:
    """JSON and byte documents in one bucket of an S3-compatible store."""

    def __init__(self, config: ObjectStoreConfig | None = None) -> None:
        self.config = config or ObjectStoreConfig.from_env()
        self._client = boto3.client(
            "s3",
            endpoint_url=self.config.endpoint_url,
            aws_access_key_id=self.config.access_key,
            aws_secret_access_key=self.config.secret_key,
            region_name=self.config.region,
            config=Config(
                signature_version="s3v4",
                retries={"max_attempts": self.config.max_attempts, "mode": "standard"},
            ),
        )

    def _bucket(self, bucket: str | None) -> str:
        return bucket or self.config.default_bucket

    def ensure_bucket(self, bucket: str | None = None) -> None:
        """Create the bucket unless it already exists."""
        bucket = self._bucket(bucket)
        try:
            self._client.head_bucket(Bucket=bucket)
        except ClientError as e:
            if not _is_missing(e):
                raise
            logger.info("Creating bucket %s", bucket)
            self._client.create_bucket(Bucket=bucket)

    def put_bytes(
        self,
        key: str,
        data: bytes,
        content_type: str = "application/octet-stream",
        bucket: str | None = None,
    ) -> str:
        """
        Upload bytes, replacing any existing object.

        Returns:
            URI in format s3://{bucket}/{key}
        """
        bucket = self._bucket(bucket)
        self._client.put_object(Bucket=bucket, Key=key, Body=data, ContentType=content_type)
        logger.debug("Wrote %d bytes to s3://%s/%s", len(data), bucket, key)
        return f"s3://{bucket}/{key}"

    def get_bytes(self, key: str, bucket: str | None = None) -> bytes | None:
        """
        Download object as bytes.

        Returns:
            Object contents, or None if the key does not exist
        """
        try:
            response = self._client.get_object(Bucket=self._bucket(bucket), Key=key)
        except ClientError as e:
            if _is_missing(e):
                return None
            raise
        return response["Body"].read()

    def put_json(self, key: str, value: Any, bucket: str | None = None) -> str:
        """Serialize a value as compact JSON and upload it."""
        data = json.dumps(value, separators=(",", ":")).encode("utf-8")
        return self.put_bytes(key, data, content_type="application/json", bucket=bucket)

    def get_json(self, key: str, bucket: str | None = None) -> Any | None:
        """Download and decode a JSON document, or None if missing."""
        data = self.get_bytes(key, bucket)
        if data is None:
            return None
        return json.loads(data.decode("utf-8"))

    def list_keys(self, prefix: str, bucket: str | None = None) -> list[str]:
        """List every key under a prefix."""
        paginator = self._client.get_paginator("list_objects_v2")
        keys: list[str] = []
        for page in paginator.paginate(Bucket=self._bucket(bucket), Prefix=prefix):
            keys.extend(obj["Key"] for obj in page.get("Contents", []))
        return keys

    def delete(self, key: str, bucket: str | None = None) -> None:
        """Delete a single object. Missing keys are not an error."""
        self._client.delete_object(Bucket=self._bucket(bucket), Key=key)

    def delete_prefix(self, prefix: str, bucket: str | None = None) -> int:
        """
        Delete every object under a prefix in batched requests.

        Returns:
            Number of objects deleted

        Raises:
            RuntimeError: If the store refused to delete some keys
        """
        bucket = self._bucket(bucket)
        keys = self.list_keys(prefix, bucket)
        for start in range(0, len(keys), _DELETE_BATCH):
            batch = keys[start : start + _DELETE_BATCH]
            response = self._client.delete_objects(
                Bucket=bucket,
                Delete={"Objects": [{"Key": k} for k in batch], "Quiet": True},
            )
            errors = response.get("Errors", [])
            if errors:
                raise RuntimeError(
                    f"Failed to delete {len(errors)} objects under {prefix}: {errors}"
                )
        logger.debug("Deleted %d objects under s3://%s/%s", len(keys), bucket, prefix)
        return len(keys)


def sanitize_key_part(value: str) -> str:
    """Make a value safe for use as a single path segment."""
    return value.replace("/", "_").replace(":", "_")


def build_folder_key(account_id: str, folder: str) -> str:
    """
    Build object key for a folder's message document.

    Format: emails/{account_id}/{folder}.json
    """
    return f"emails/{sanitize_key_part(account_id)}/{folder.replace('/', '_')}.json"


def build_account_prefix(account_id: str) -> str:
    """Build the key prefix holding every folder document of an account."""
    return f"emails/{sanitize_key_part(account_id)}/"
