"""
Object Storage

Thin wrapper over an S3-compatible bucket store used for generated media.
"""

from dataclasses import dataclass
from typing import Any, Optional
import boto3
from botocore.exceptions import BotoCoreError, ClientError
import structlog

from ..config import Settings
from ..errors import StorageUploadError

logger = structlog.get_logger()


@dataclass
class StoredObject:
    """A durable object and its public reference."""
    url: str
    key: str
    bucket: str
    content_type: str
    size: int = 0


class ObjectStorage:
    """S3-compatible storage for generated outputs."""

    def __init__(
        self,
        endpoint_url: Optional[str] = None,
        public_base_url: Optional[str] = None,
        region: Optional[str] = None,
        client: Any = None,
    ):
        self.endpoint_url = endpoint_url
        self.public_base_url = (public_base_url or "").rstrip("/") or None
        self.region = region
        self._client = client

    @classmethod
    def from_settings(cls, settings: Settings) -> "ObjectStorage":
        return cls(
            endpoint_url=settings.storage_endpoint_url,
            public_base_url=settings.storage_public_base_url,
            region=settings.storage_region,
        )

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = boto3.client(
                "s3",
                endpoint_url=self.endpoint_url,
                region_name=self.region,
            )
        return self._client

    def public_url(self, bucket: str, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{bucket}/{key}"
        if self.endpoint_url:
            return f"{self.endpoint_url.rstrip('/')}/{bucket}/{key}"
        return f"https://{bucket}.s3.amazonaws.com/{key}"

    def is_hosted(self, url: Optional[str]) -> bool:
        """True if `url` already points into this store's public base."""
        return bool(url and self.public_base_url and url.startswith(self.public_base_url + "/"))

    def put(self, bucket: str, key: str, data: bytes, content_type: str) -> StoredObject:
        """Upload bytes, overwriting any object already at `key`."""
        try:
            self.client.put_object(
                Bucket=bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
            )
        except (BotoCoreError, ClientError) as e:
            logger.error("storage_upload_failed", bucket=bucket, key=key, error=str(e))
            raise StorageUploadError(f"Upload to {bucket}/{key} failed: {e}")

        stored = StoredObject(
            url=self.public_url(bucket, key),
            key=key,
            bucket=bucket,
            content_type=content_type,
            size=len(data),
        )
        logger.info("storage_object_written", bucket=bucket, key=key, size=stored.size)
        return stored
