"""
Image Generation

Synchronous image generation on a Vertex AI publisher model. A quota
rejection on the primary model is retried once on the fallback model.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple
import structlog

from ..config import Settings
from ..errors import UpstreamError, UpstreamQuotaExceeded
from .poller import VertexClient

logger = structlog.get_logger()


class VertexImageClient(VertexClient):
    """generateContent for image models."""

    def generate(
        self,
        model_id: str,
        prompt: str,
        aspect_ratio: str = "1:1",
        image_base64: Optional[str] = None,
        mime_type: Optional[str] = None,
    ) -> Dict[str, Any]:
        parts = [{"text": f"{prompt} Aspect ratio: {aspect_ratio}"}]
        if image_base64 and mime_type:
            parts.append({"inlineData": {"mimeType": mime_type, "data": image_base64}})
        return self._post(
            self._model_url(model_id, "generateContent"),
            {"contents": [{"role": "user", "parts": parts}]},
            (),
        )


def extract_image(response: Dict[str, Any]) -> Tuple[str, str]:
    """Return (base64 data, mime type) of the first inline image part."""
    for candidate in response.get("candidates") or []:
        if not isinstance(candidate, dict):
            continue
        for part in (candidate.get("content") or {}).get("parts") or []:
            inline = part.get("inlineData") if isinstance(part, dict) else None
            if isinstance(inline, dict) and inline.get("data"):
                return inline["data"], inline.get("mimeType") or "image/png"
    raise UpstreamError("No image in provider response")


@dataclass
class ImageResult:
    data: str
    mime_type: str
    model_id: str

    @property
    def data_uri(self) -> str:
        return f"data:{self.mime_type};base64,{self.data}"


class ImageGenerator:
    """
    Primary model first, fallback model once on quota errors.

    Usage:
        images = ImageGenerator(client, model_id="imagen-4.0-generate-001",
                                fallback_model_id="gemini-2.5-flash-image")
        result = images.generate("a red fox", aspect_ratio="1:1")
    """

    def __init__(self, client: Any, model_id: str, fallback_model_id: Optional[str] = None):
        self.client = client
        self.model_id = model_id
        self.fallback_model_id = fallback_model_id

    @classmethod
    def from_settings(cls, settings: Settings, client: Any = None) -> "ImageGenerator":
        return cls(
            client=client or VertexImageClient.from_settings(settings),
            model_id=settings.image_model,
            fallback_model_id=settings.image_fallback_model,
        )

    @property
    def models(self) -> Tuple[str, ...]:
        if self.fallback_model_id and self.fallback_model_id != self.model_id:
            return (self.model_id, self.fallback_model_id)
        return (self.model_id,)

    def generate(
        self,
        prompt: str,
        aspect_ratio: str = "1:1",
        image_base64: Optional[str] = None,
        mime_type: Optional[str] = None,
    ) -> ImageResult:
        models = self.models
        for index, model_id in enumerate(models):
            try:
                response = self.client.generate(model_id, prompt, aspect_ratio, image_base64, mime_type)
            except UpstreamQuotaExceeded as e:
                if index + 1 == len(models):
                    raise
                logger.warning(
                    "image_quota_fallback",
                    model=model_id,
                    fallback=models[index + 1],
                    error=e.message,
                )
                continue

            data, content_type = extract_image(response)
            logger.info("image_generated", model=model_id, fallback=index > 0)
            return ImageResult(data=data, mime_type=content_type, model_id=model_id)

        raise UpstreamError("No image model configured")
