"""
Generation Workflows

balance hint -> pending record -> provider -> complete (charge) | fail

Video runs through the long-running JobPoller; images are generated
synchronously by the ImageGenerator.
"""

import threading
from typing import Any, Dict, Optional
import structlog

from ..billing.ledger import Ledger
from ..billing.pricing import PriceQuote, calculate_price
from ..errors import GenLedgerError, InsufficientFunds, UpstreamError
from ..persistence.models import GenerationRecord
from .images import ImageGenerator
from .poller import JobPoller
from .records import CompletionResult, GenerationService

logger = structlog.get_logger()


class GenerationWorkflow:
    """Runs one provider-backed generation end to end."""

    def __init__(
        self,
        generations: GenerationService,
        ledger: Ledger,
        poller: JobPoller,
        images: Optional[ImageGenerator] = None,
    ):
        self.generations = generations
        self.ledger = ledger
        self.poller = poller
        self.images = images

    def _preflight(self, user_id: str, quote: PriceQuote) -> None:
        # Hint only: the binding check is the conditional charge in complete()
        balance = self.ledger.get_balance(user_id)
        if balance < quote.price_mxn:
            logger.info(
                "insufficient_funds_preflight",
                user_id=user_id,
                generation_type=quote.generation_type,
                required=str(quote.price_mxn),
                available=str(balance),
            )
            raise InsufficientFunds(
                "Insufficient credits",
                required=quote.price_mxn,
                available=balance,
                stage="preflight",
            )

    def generate_video(
        self,
        user_id: str,
        prompt: str,
        duration_seconds: Optional[int] = None,
        title: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> GenerationRecord:
        params = dict(params or {})
        if duration_seconds:
            params["duration_seconds"] = duration_seconds
        quote = calculate_price("video", duration_seconds)
        self._preflight(user_id, quote)

        generation = self.generations.create(
            user_id,
            "video",
            prompt,
            title=title,
            estimated_cost=quote.price_mxn,
            generation_params=params,
            api_model=self.poller.model_id,
        )

        try:
            outcome = self.poller.run(prompt, params, cancel_event)
        except Exception as e:
            logger.exception("video_job_crashed", generation_id=generation.id)
            self.generations.fail(generation.id, f"failed: {e}")
            raise

        if not outcome.succeeded:
            error = outcome.error or UpstreamError("Video generation failed")
            self.generations.fail(generation.id, f"{outcome.state.value}: {error.message}")
            raise error

        return self.generations.complete(
            generation.id,
            CompletionResult(
                output=outcome.payload,
                cost_mxn=quote.price_mxn,
                cost_usd=quote.cost_usd,
                mime_type="video/mp4",
                api_model=outcome.model_id,
            ),
        )

    def generate_image(
        self,
        user_id: str,
        prompt: str,
        aspect_ratio: str = "1:1",
        title: Optional[str] = None,
        reference_image: Optional[str] = None,
        reference_mime_type: Optional[str] = None,
    ) -> GenerationRecord:
        if self.images is None:
            raise UpstreamError("Image provider is not configured")
        quote = calculate_price("image")
        self._preflight(user_id, quote)

        generation = self.generations.create(
            user_id,
            "image",
            prompt,
            title=title,
            estimated_cost=quote.price_mxn,
            generation_params={"aspect_ratio": aspect_ratio},
            api_model=self.images.model_id,
        )

        try:
            result = self.images.generate(prompt, aspect_ratio, reference_image, reference_mime_type)
        except GenLedgerError as e:
            self.generations.fail(generation.id, f"{e.code}: {e.message}")
            raise
        except Exception as e:
            logger.exception("image_generation_crashed", generation_id=generation.id)
            self.generations.fail(generation.id, f"failed: {e}")
            raise

        return self.generations.complete(
            generation.id,
            CompletionResult(
                output=result.data_uri,
                cost_mxn=quote.price_mxn,
                cost_usd=quote.cost_usd,
                mime_type=result.mime_type,
                api_model=result.model_id,
            ),
        )
