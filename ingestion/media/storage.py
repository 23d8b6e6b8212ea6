"""
S3-compatible object storage for rehosted listing media.

boto3 is synchronous, so every call runs in a worker thread
(asyncio.to_thread) to keep the event loop free.

Key layout: {prefix}/{originating_system}/{listing_key}/{order}.{ext}
Public URL: {cdn_base_url}/{key}
"""

import asyncio
import logging
from typing import Any, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from core.config import settings
from core.exceptions import RateLimited, StorageError

logger = logging.getLogger(__name__)

THROTTLING_CODES = {"SlowDown", "Throttling", "ThrottlingException", "TooManyRequests", "RequestLimitExceeded"}

CONTENT_TYPE_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/gif": "gif",
}


def extension_for(content_type: Optional[str], url: Optional[str] = None) -> str:
    """Pick a file extension from the response content type, then the URL"""
    if content_type:
        ext = CONTENT_TYPE_EXTENSIONS.get(content_type.split(";")[0].strip().lower())
        if ext:
            return ext
    if url:
        path = url.split("?", 1)[0].rsplit("/", 1)[-1]
        if "." in path:
            ext = path.rsplit(".", 1)[-1].lower()
            if ext in ("jpg", "jpeg", "png", "webp", "gif"):
                return "jpg" if ext == "jpeg" else ext
    return "jpg"


class ObjectStorage:
    """
    Thin async facade over an S3 bucket.

    Throttling responses (SlowDown, 429, 503) surface as RateLimited with
    source "cdn"; every other failure is a StorageError.
    """

    def __init__(
        self,
        bucket: str,
        cdn_base_url: Optional[str] = None,
        prefix: Optional[str] = None,
        client: Any = None,
        endpoint_url: Optional[str] = None,
        region: Optional[str] = None,
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
    ):
        self.bucket = bucket
        self.cdn_base_url = (cdn_base_url or "").rstrip("/")
        self.prefix = (prefix if prefix is not None else settings.STORAGE_PREFIX).strip("/")
        self._client = client or boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            region_name=region,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            config=Config(retries={"max_attempts": 2, "mode": "standard"}),
        )

    @classmethod
    def from_settings(cls) -> Optional["ObjectStorage"]:
        """Build storage from settings, or None when storage is not configured"""
        if not settings.storage_configured:
            return None
        return cls(
            bucket=settings.S3_BUCKET,
            cdn_base_url=settings.CDN_BASE_URL or f"{settings.S3_ENDPOINT.rstrip('/')}/{settings.S3_BUCKET}",
            prefix=settings.STORAGE_PREFIX,
            endpoint_url=settings.S3_ENDPOINT,
            region=settings.S3_REGION,
            access_key_id=settings.S3_ACCESS_KEY_ID,
            secret_access_key=settings.S3_SECRET_ACCESS_KEY,
        )

    def listing_prefix(self, originating_system: str, listing_key: str) -> str:
        parts = [self.prefix, originating_system.lower(), listing_key]
        return "/".join(p for p in parts if p) + "/"

    def build_key(self, originating_system: str, listing_key: str, order: Optional[int], ext: str) -> str:
        return f"{self.listing_prefix(originating_system, listing_key)}{order if order is not None else 0}.{ext}"

    def public_url(self, key: str) -> str:
        return f"{self.cdn_base_url}/{key}"

    def _translate(self, error: Exception, operation: str, key: str):
        if isinstance(error, ClientError):
            code = error.response.get("Error", {}).get("Code", "")
            status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
            if code in THROTTLING_CODES or status in (429, 503):
                return RateLimited(
                    f"Object storage throttled {operation}",
                    source="cdn",
                    context={"operation": operation, "key": key, "code": code},
                    original_exception=error,
                    endpoint=f"s3://{self.bucket}/{key}",
                )
        return StorageError(
            f"Object storage {operation} failed",
            context={"operation": operation, "bucket": self.bucket, "key": key},
            original_exception=error,
        )

    async def put_object(self, key: str, body: bytes, content_type: Optional[str] = None) -> str:
        """Upload bytes and return the public URL"""
        kwargs = {
            "Bucket": self.bucket,
            "Key": key,
            "Body": body,
            "CacheControl": "public, max-age=31536000",
        }
        if content_type:
            kwargs["ContentType"] = content_type
        try:
            await asyncio.to_thread(self._client.put_object, **kwargs)
        except (ClientError, BotoCoreError) as e:
            raise self._translate(e, "put_object", key)
        return self.public_url(key)

    async def delete_prefix(self, prefix: str) -> int:
        """Delete every object under a prefix; returns the number deleted"""
        deleted = 0
        token = None
        try:
            while True:
                kwargs = {"Bucket": self.bucket, "Prefix": prefix}
                if token:
                    kwargs["ContinuationToken"] = token
                listing = await asyncio.to_thread(self._client.list_objects_v2, **kwargs)
                objects = [{"Key": obj["Key"]} for obj in listing.get("Contents", [])]
                if objects:
                    await asyncio.to_thread(
                        self._client.delete_objects,
                        Bucket=self.bucket,
                        Delete={"Objects": objects, "Quiet": True},
                    )
                    deleted += len(objects)
                if not listing.get("IsTruncated"):
                    break
                token = listing.get("NextContinuationToken")
        except (ClientError, BotoCoreError) as e:
            raise self._translate(e, "delete_prefix", prefix)

        if deleted:
            logger.info(f"Deleted {deleted} objects under {prefix}")
        return deleted

    async def delete_listing(self, originating_system: str, listing_key: str) -> int:
        return await self.delete_prefix(self.listing_prefix(originating_system, listing_key))
