"""
Generation Records

One generation is one billable unit of work:

    pending --complete--> completed
            \\--fail------> failed

Both end states are terminal. The charge for a generation is taken in the
same unit of work that moves it to completed, using the realized cost, so a
generation is billed at most once.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple
import structlog

from ..billing.ledger import Ledger
from ..billing.pricing import ZERO, to_money
from ..errors import (
    AlreadyFinalized,
    InsufficientFunds,
    IngestionError,
    NotFound,
    ValidationError,
)
from ..persistence.database import Database, get_database
from ..persistence.models import GenerationRecord, GenerationStatus, GenerationType
from ..persistence.repository import GenerationRepository
from .ingestion import OutputIngestion

logger = structlog.get_logger()

REMOTE_PREFIXES = ("http://", "https://", "gs://")

# NUMERIC(14, 4) holds 10 integer digits
MAX_MONEY_USD = Decimal("1e10")


def to_money_usd(value: Any) -> Decimal:
    """Provider costs keep four fractional digits."""
    if isinstance(value, (bool, float)):
        raise ValidationError("cost_usd must be Decimal, int or str")
    try:
        amount = Decimal(str(value))
        if not amount.is_finite() or abs(amount) >= MAX_MONEY_USD:
            raise ValidationError(f"Invalid cost_usd: {value!r}")
        return amount.quantize(Decimal("0.0001"))
    except ArithmeticError:
        raise ValidationError(f"Invalid cost_usd: {value!r}")


@dataclass
class CompletionResult:
    """What a finished external operation produced and cost."""
    output: Optional[str] = None
    cost_mxn: Any = ZERO
    cost_usd: Any = None
    output_url: Optional[str] = None
    output_key: Optional[str] = None
    mime_type: Optional[str] = None
    api_model: Optional[str] = None


class GenerationService:
    """
    Create, complete and fail generations.

    Usage:
        service = GenerationService(db, ledger, ingestion)
        gen = service.create("user-1", "image", "a red fox")
        service.complete(gen.id, CompletionResult(output=data_uri, cost_mxn="0.53"))
    """

    def __init__(
        self,
        db: Optional[Database] = None,
        ledger: Optional[Ledger] = None,
        ingestion: Optional[OutputIngestion] = None,
    ):
        self.db = db or get_database()
        self.ledger = ledger or Ledger(self.db)
        self.ingestion = ingestion
        self.generations = GenerationRepository(self.db)

    def _get_owned(self, generation_id: str, user_id: Optional[str]) -> GenerationRecord:
        generation = self.generations.get(generation_id)
        if generation is None or (user_id is not None and generation.user_id != user_id):
            raise NotFound("Generation not found", generation_id=generation_id)
        return generation

    def create(
        self,
        user_id: str,
        generation_type: str,
        prompt: str,
        title: Optional[str] = None,
        estimated_cost: Any = ZERO,
        generation_params: Optional[Dict[str, Any]] = None,
        api_model: Optional[str] = None,
    ) -> GenerationRecord:
        """Insert a pending generation. Nothing is charged here."""
        if not user_id:
            raise ValidationError("user_id is required")
        if not prompt or not prompt.strip():
            raise ValidationError("prompt is required")
        try:
            gen_type = GenerationType(generation_type)
        except ValueError:
            raise ValidationError(f"Unknown generation type: {generation_type}")
        estimate = to_money(estimated_cost)
        if estimate < ZERO:
            raise ValidationError("estimated_cost cannot be negative")

        generation = GenerationRecord(
            id=str(uuid.uuid4()),
            user_id=user_id,
            generation_type=gen_type,
            prompt=prompt,
            title=title or prompt[:50],
            estimated_cost=estimate,
            api_model=api_model,
            generation_params=generation_params or {},
        )
        return self.generations.create(generation)

    def get(self, generation_id: str, user_id: Optional[str] = None) -> GenerationRecord:
        return self._get_owned(generation_id, user_id)

    def list_for_user(
        self,
        user_id: str,
        generation_type: Optional[str] = None,
        status: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Dict[str, Any]:
        if generation_type is not None and generation_type not in {t.value for t in GenerationType}:
            raise ValidationError(f"Unknown generation type: {generation_type}")
        if status is not None and status not in {s.value for s in GenerationStatus}:
            raise ValidationError(f"Unknown status: {status}")
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive")
        limit = min(limit, 100)

        items = self.generations.list_for_user(
            user_id, generation_type, status, limit=limit, offset=(page - 1) * limit
        )
        total = self.generations.count_for_user(user_id, generation_type, status)
        return {
            "generations": [g.to_dict() for g in items],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": (total + limit - 1) // limit,
            },
        }

    def usage_summary(self, user_id: str) -> Dict[str, Any]:
        return self.generations.usage_summary(user_id)

    def _resolve_output(
        self,
        generation: GenerationRecord,
        result: CompletionResult,
    ) -> Tuple[Optional[str], Optional[str], Optional[str]]:
        """
        Ingest media outputs and return (url, key, mime type).

        Ingestion failures are logged and the caller keeps whatever
        reference it already had.
        """
        raw = result.output or result.output_url
        media_kind = generation.generation_type.media_kind
        passthrough = (result.output_url, result.output_key, result.mime_type)

        if self.ingestion is None or media_kind is None or not raw:
            return passthrough
        if self.ingestion.is_hosted(raw):
            return raw, result.output_key, result.mime_type

        try:
            stored = self.ingestion.ingest(raw, media_kind, generation.user_id, generation.id)
        except IngestionError as e:
            logger.warning(
                "output_ingestion_failed",
                generation_id=generation.id,
                error=e.message,
                code=e.code,
            )
            fallback = result.output_url
            if fallback is None and raw.startswith(REMOTE_PREFIXES):
                fallback = raw
            return fallback, result.output_key, result.mime_type

        return stored.url, stored.key, stored.content_type

    def complete(
        self,
        generation_id: str,
        result: CompletionResult,
        user_id: Optional[str] = None,
    ) -> GenerationRecord:
        """
        Finalize a pending generation and charge its realized cost.

        The status change and the charge commit together. If the balance
        cannot cover the realized cost the generation is failed instead and
        InsufficientFunds(stage="completion") is raised.
        """
        generation = self._get_owned(generation_id, user_id)
        if generation.is_terminal:
            raise AlreadyFinalized(
                f"Generation is already {generation.status.value}",
                generation_id=generation_id,
            )

        cost_mxn = to_money(result.cost_mxn)
        if cost_mxn < ZERO:
            raise ValidationError("cost_mxn cannot be negative")
        cost_usd = None if result.cost_usd is None else to_money_usd(result.cost_usd)

        output_url, output_key, mime_type = self._resolve_output(generation, result)
        completed_at = datetime.now(timezone.utc).isoformat()

        try:
            with self.db.transaction() as uow:
                updated = self.generations.mark_completed(
                    uow,
                    generation_id,
                    realized_cost_mxn=cost_mxn,
                    realized_cost_usd=cost_usd,
                    output_url=output_url,
                    output_key=output_key,
                    mime_type=mime_type,
                    api_model=result.api_model,
                    completed_at=completed_at,
                )
                if not updated:
                    raise AlreadyFinalized(
                        "Generation was finalized concurrently",
                        generation_id=generation_id,
                    )
                if cost_mxn > ZERO:
                    self.ledger.deduct(
                        generation.user_id,
                        cost_mxn,
                        f"{generation.generation_type.value} generation: {generation.title}",
                        generation_id=generation_id,
                        uow=uow,
                    )
        except InsufficientFunds as e:
            logger.warning(
                "completion_charge_shortfall",
                generation_id=generation_id,
                user_id=generation.user_id,
                required=str(e.required),
                available=str(e.available),
            )
            with self.db.transaction() as uow:
                self.generations.mark_failed(
                    uow,
                    generation_id,
                    "Insufficient credits to settle realized cost",
                    completed_at,
                )
            raise InsufficientFunds(
                "Insufficient credits to settle realized cost",
                required=e.required,
                available=e.available,
                stage="completion",
            )

        logger.info(
            "generation_completed",
            generation_id=generation_id,
            user_id=generation.user_id,
            cost_mxn=str(cost_mxn),
            estimated_cost=str(generation.estimated_cost),
        )
        return self.generations.get(generation_id)

    def fail(
        self,
        generation_id: str,
        error_message: str,
        user_id: Optional[str] = None,
    ) -> GenerationRecord:
        """Mark a pending generation failed. Never charges."""
        generation = self._get_owned(generation_id, user_id)
        if generation.is_terminal:
            raise AlreadyFinalized(
                f"Generation is already {generation.status.value}",
                generation_id=generation_id,
            )

        with self.db.transaction() as uow:
            updated = self.generations.mark_failed(
                uow,
                generation_id,
                error_message or "Generation failed",
                datetime.now(timezone.utc).isoformat(),
            )
        if not updated:
            raise AlreadyFinalized(
                "Generation was finalized concurrently",
                generation_id=generation_id,
            )

        logger.info("generation_failed", generation_id=generation_id, error=error_message)
        return self.generations.get(generation_id)

