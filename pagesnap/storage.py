"""S3 object storage adapter used to hand artifacts off from local disk."""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from pagesnap import metrics
from pagesnap.errors import StorageUploadError
from pagesnap.schemas import ImageFormat
from pagesnap.settings import CloudSettings, get_settings

LOGGER = logging.getLogger(__name__)

KEY_PREFIX = "thumbnails"
CONTENT_TYPES: Mapping[str, str] = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
    ".gif": "image/gif",
    ".svg": "image/svg+xml",
    ".ico": "image/x-icon",
}
DEFAULT_CONTENT_TYPE = "application/octet-stream"

_STORAGE_ERRORS = (BotoCoreError, ClientError, OSError)


@dataclass(slots=True)
class UploadResult:
    success: bool
    key: str
    url: str | None = None
    etag: str | None = None
    error: str | None = None


@dataclass(slots=True)
class OwnerStorageStats:
    owner_id: str
    object_count: int
    total_bytes: int
    last_modified: datetime | None = None


def build_s3_client(cloud: CloudSettings) -> Any:
    return boto3.client(
        "s3",
        region_name=cloud.region,
        endpoint_url=cloud.endpoint_url,
        aws_access_key_id=cloud.access_key_id,
        aws_secret_access_key=cloud.secret_access_key,
        config=BotoConfig(signature_version="s3v4", retries={"max_attempts": 3, "mode": "standard"}),
    )


def content_type_for(key: str) -> str:
    return CONTENT_TYPES.get(Path(key).suffix.lower(), DEFAULT_CONTENT_TYPE)


def build_key(owner_id: str, image_format: ImageFormat | str, *, now: datetime | None = None) -> str:
    """``thumbnails/{owner}/{yyyy}/{mm}/{dd}/{ms}_{16 hex}.{ext}`` (UTC date parts)."""

    moment = now or datetime.now(timezone.utc)
    extension = image_format.extension if isinstance(image_format, ImageFormat) else str(image_format)
    stamp = int(moment.timestamp() * 1000) if now else int(time.time() * 1000)
    return (
        f"{KEY_PREFIX}/{owner_id}/{moment:%Y}/{moment:%m}/{moment:%d}/"
        f"{stamp}_{secrets.token_hex(8)}.{extension}"
    )


class ObjectStorage:
    """Thin async facade over a boto3 S3 client.

    Upload and delete never raise for S3 or filesystem errors; they report
    the failure in their result so callers can fall back to local files.
    """

    def __init__(self, cloud_settings: CloudSettings | None = None, *, client: Any = None) -> None:
        self._settings = cloud_settings or get_settings().cloud
        self._client = client
        self.bucket = self._settings.bucket

    @property
    def enabled(self) -> bool:
        return self._settings.enabled

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = build_s3_client(self._settings)
            LOGGER.info("S3 storage ready (bucket=%s, region=%s)", self.bucket, self._settings.region)
        return self._client

    def build_key(self, owner_id: str, image_format: ImageFormat | str, *, now: datetime | None = None) -> str:
        return build_key(owner_id, image_format, now=now)

    def content_type_for(self, key: str) -> str:
        return content_type_for(key)

    def public_url(self, key: str) -> str:
        if self._settings.public_base_url:
            return f"{self._settings.public_base_url.rstrip('/')}/{key}"
        if self._settings.endpoint_url:
            return f"{self._settings.endpoint_url.rstrip('/')}/{self.bucket}/{key}"
        return f"https://{self.bucket}.s3.{self._settings.region}.amazonaws.com/{key}"

    async def upload_file(
        self,
        local_path: Path,
        key: str,
        *,
        metadata: Mapping[str, Any] | None = None,
        cache_control: str | None = None,
    ) -> UploadResult:
        try:
            etag = await asyncio.to_thread(self._put_object, Path(local_path), key, metadata, cache_control)
        except _STORAGE_ERRORS as exc:
            metrics.record_storage_upload(False)
            error = StorageUploadError(f"S3 upload failed for {key}: {exc}")
            LOGGER.warning("%s", error)
            return UploadResult(success=False, key=key, error=str(error))
        metrics.record_storage_upload(True)
        url = self.public_url(key)
        LOGGER.info("Uploaded %s to %s", local_path, url)
        return UploadResult(success=True, key=key, url=url, etag=etag)

    async def upload_and_relocate(
        self,
        local_path: Path,
        key: str,
        *,
        metadata: Mapping[str, Any] | None = None,
        cache_control: str | None = None,
    ) -> UploadResult:
        """Upload ``local_path`` and delete it once the object exists remotely."""

        result = await self.upload_file(local_path, key, metadata=metadata, cache_control=cache_control)
        if not result.success:
            return result
        try:
            Path(local_path).unlink()
        except OSError as exc:
            LOGGER.warning("Uploaded %s but failed to remove the local copy: %s", local_path, exc)
        return result

    async def delete_object(self, key: str) -> bool:
        try:
            await asyncio.to_thread(self.client.delete_object, Bucket=self.bucket, Key=key)
        except _STORAGE_ERRORS as exc:
            LOGGER.warning("S3 delete failed for %s: %s", key, exc)
            return False
        LOGGER.info("Deleted s3://%s/%s", self.bucket, key)
        return True

    async def presigned_url(self, key: str, *, expires_in: int = 3600) -> str:
        return await asyncio.to_thread(
            self.client.generate_presigned_url,
            "get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=expires_in,
        )

    async def owner_stats(self, owner_id: str) -> OwnerStorageStats:
        """Object count and total bytes stored under an owner's key prefix."""

        return await asyncio.to_thread(self._owner_stats_sync, owner_id)

    async def health_check(self) -> bool:
        try:
            await asyncio.to_thread(self.client.head_bucket, Bucket=self.bucket)
        except _STORAGE_ERRORS as exc:
            LOGGER.warning("S3 health check failed: %s", exc)
            return False
        return True

    def _put_object(
        self,
        local_path: Path,
        key: str,
        metadata: Mapping[str, Any] | None,
        cache_control: str | None,
    ) -> str | None:
        params: dict[str, Any] = {
            "Bucket": self.bucket,
            "Key": key,
            "Body": local_path.read_bytes(),
            "ContentType": content_type_for(key),
            "CacheControl": cache_control or self._settings.cache_control,
        }
        if metadata:
            params["Metadata"] = {name: str(value) for name, value in metadata.items()}
        if self._settings.acl:
            params["ACL"] = self._settings.acl
        response = self.client.put_object(**params)
        return response.get("ETag")

    def _owner_stats_sync(self, owner_id: str) -> OwnerStorageStats:
        paginator = self.client.get_paginator("list_objects_v2")
        count = 0
        total = 0
        latest: datetime | None = None
        for page in paginator.paginate(Bucket=self.bucket, Prefix=f"{KEY_PREFIX}/{owner_id}/"):
            for entry in page.get("Contents", []):
                count += 1
                total += int(entry.get("Size", 0))
                modified = entry.get("LastModified")
                if modified is not None and (latest is None or modified > latest):
                    latest = modified
        return OwnerStorageStats(owner_id=owner_id, object_count=count, total_bytes=total, last_modified=latest)
