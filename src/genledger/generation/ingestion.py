"""
Output Ingestion

Turns a completion payload into a durable object. A payload arrives as one
of three shapes, checked in this order:

    data:<mime>;base64,<payload>     inline data URI
    http(s)://... or gs://bucket/key remote reference, fetched
    anything else                    raw base64

The decoded bytes are stored under `{user_id}/{generation_id}.{ext}` in the
bucket for the media kind.
"""

import base64
import binascii
from typing import Dict, Optional, Tuple
import requests
import structlog

from ..config import Settings
from ..errors import EmptyPayload, IngestionError, ValidationError
from .storage import ObjectStorage, StoredObject

logger = structlog.get_logger()

FETCH_TIMEOUT_SECONDS = 60

# (signature check, extension, content type) per media kind
SIGNATURES = {
    "image": [
        (lambda b: b[:4] == b"\x89PNG", "png", "image/png"),
        (lambda b: b[:3] == b"\xff\xd8\xff", "jpg", "image/jpeg"),
        (lambda b: b[:4] == b"RIFF" and b[8:12] == b"WEBP", "webp", "image/webp"),
    ],
    "video": [
        (lambda b: b[4:8] == b"ftyp", "mp4", "video/mp4"),
        (lambda b: b[:4] == b"\x1a\x45\xdf\xa3", "webm", "video/webm"),
    ],
}

DEFAULT_FORMAT = {
    "image": ("png", "image/png"),
    "video": ("mp4", "video/mp4"),
}


def detect_format(data: bytes, media_kind: str) -> Tuple[str, str, bool]:
    """Return (extension, content type, signature matched)."""
    for check, ext, content_type in SIGNATURES[media_kind]:
        if check(data):
            return ext, content_type, True
    ext, content_type = DEFAULT_FORMAT[media_kind]
    return ext, content_type, False


def gcs_public_url(uri: str) -> str:
    """Map gs://bucket/key onto the public HTTPS endpoint."""
    return "https://storage.googleapis.com/" + uri[len("gs://"):]


class OutputIngestion:
    """Materializes generation outputs into object storage."""

    def __init__(
        self,
        storage: ObjectStorage,
        buckets: Optional[Dict[str, str]] = None,
        session: Optional[requests.Session] = None,
    ):
        self.storage = storage
        self.buckets = buckets or {"image": "images", "video": "videos"}
        self.session = session or requests.Session()

    @classmethod
    def from_settings(cls, settings: Settings) -> "OutputIngestion":
        return cls(
            storage=ObjectStorage.from_settings(settings),
            buckets={
                "image": settings.storage_image_bucket,
                "video": settings.storage_video_bucket,
            },
        )

    def is_hosted(self, raw: Optional[str]) -> bool:
        return self.storage.is_hosted(raw)

    def decode(self, raw: str) -> bytes:
        """Resolve a payload of any accepted shape to bytes."""
        if raw.startswith("data:"):
            marker = ";base64,"
            idx = raw.find(marker)
            if idx < 0:
                raise IngestionError("Data URI is not base64 encoded")
            return self._b64decode(raw[idx + len(marker):])

        if raw.startswith(("http://", "https://", "gs://")):
            url = gcs_public_url(raw) if raw.startswith("gs://") else raw
            return self._fetch(url)

        return self._b64decode(raw)

    def _b64decode(self, payload: str) -> bytes:
        try:
            return base64.b64decode("".join(payload.split()), validate=True)
        except (binascii.Error, ValueError) as e:
            raise IngestionError(f"Payload is not valid base64: {e}")

    def _fetch(self, url: str) -> bytes:
        try:
            response = self.session.get(url, timeout=FETCH_TIMEOUT_SECONDS)
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            logger.warning("output_fetch_failed", url=url, error=str(e))
            raise IngestionError(f"Could not fetch output from {url}: {e}")
        logger.info("output_fetched", url=url, size=len(response.content))
        return response.content

    def ingest(
        self,
        raw: str,
        media_kind: str,
        user_id: str,
        generation_id: str,
    ) -> StoredObject:
        """Decode `raw` and write it to the media kind's bucket."""
        if media_kind not in self.buckets:
            raise ValidationError(f"Unsupported media kind: {media_kind}")
        if not raw:
            raise EmptyPayload("Output payload is empty")

        data = self.decode(raw.strip())
        if not data:
            raise EmptyPayload("Output payload decoded to zero bytes")

        ext, content_type, matched = detect_format(data, media_kind)
        if not matched:
            logger.warning(
                "output_signature_mismatch",
                generation_id=generation_id,
                media_kind=media_kind,
                head=data[:8].hex(),
            )

        key = f"{user_id}/{generation_id}.{ext}"
        stored = self.storage.put(self.buckets[media_kind], key, data, content_type)

        logger.info(
            "output_ingested",
            generation_id=generation_id,
            media_kind=media_kind,
            key=key,
            size=len(data),
        )
        return stored
