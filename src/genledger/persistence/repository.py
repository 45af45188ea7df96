"""
Repository Layer

Read access to the ledger and generation rows, plus the conditional
terminal updates used by the generation state machine. Balance-changing
writes live in billing.ledger.Ledger only.
"""

from collections import defaultdict
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional
import structlog

from .database import Database, UnitOfWork, get_database
from .models import (
    GenerationRecord,
    GenerationStatus,
    TransactionKind,
    TransactionRecord,
)

logger = structlog.get_logger()


class TransactionRepository:
    """Read-only access to the append-only transaction log."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def list_for_user(
        self,
        user_id: str,
        kind: Optional[TransactionKind] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[TransactionRecord]:
        """List a user's transactions, newest first."""
        if kind:
            results = self.db.execute(
                """SELECT * FROM credit_transactions WHERE user_id = ? AND kind = ?
                   ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?""",
                (user_id, kind.value, limit, offset)
            )
        else:
            results = self.db.execute(
                """SELECT * FROM credit_transactions WHERE user_id = ?
                   ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?""",
                (user_id, limit, offset)
            )
        return [TransactionRecord.from_row(r) for r in results]

    def count_for_user(self, user_id: str, kind: Optional[TransactionKind] = None) -> int:
        if kind:
            results = self.db.execute(
                "SELECT COUNT(*) as cnt FROM credit_transactions WHERE user_id = ? AND kind = ?",
                (user_id, kind.value)
            )
        else:
            results = self.db.execute(
                "SELECT COUNT(*) as cnt FROM credit_transactions WHERE user_id = ?",
                (user_id,)
            )
        return results[0]["cnt"] if results else 0

    def get_by_payment(self, external_payment_id: str) -> List[TransactionRecord]:
        """All entries settled under one external payment id."""
        results = self.db.execute(
            "SELECT * FROM credit_transactions WHERE external_payment_id = ? ORDER BY kind",
            (external_payment_id,)
        )
        return [TransactionRecord.from_row(r) for r in results]

    def get_by_generation(self, generation_id: str) -> List[TransactionRecord]:
        results = self.db.execute(
            "SELECT * FROM credit_transactions WHERE generation_id = ?",
            (generation_id,)
        )
        return [TransactionRecord.from_row(r) for r in results]

    def sum_for_user(self, user_id: str) -> Decimal:
        """Sum of all entry amounts, computed in Decimal."""
        results = self.db.execute(
            "SELECT amount FROM credit_transactions WHERE user_id = ?",
            (user_id,)
        )
        return sum((Decimal(str(r["amount"])) for r in results), Decimal("0.00"))


class GenerationRepository:
    """Repository for generation records."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def create(self, generation: GenerationRecord) -> GenerationRecord:
        self.db.execute(
            """INSERT INTO generations
               (id, user_id, generation_type, title, prompt, status,
                estimated_cost, api_model, generation_params, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            generation.to_db_tuple()
        )
        logger.info(
            "generation_created",
            generation_id=generation.id,
            user_id=generation.user_id,
            generation_type=generation.generation_type.value,
        )
        return generation

    def get(self, generation_id: str) -> Optional[GenerationRecord]:
        results = self.db.execute(
            "SELECT * FROM generations WHERE id = ?",
            (generation_id,)
        )
        return GenerationRecord.from_row(results[0]) if results else None

    def list_for_user(
        self,
        user_id: str,
        generation_type: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[GenerationRecord]:
        where, params = self._filters(user_id, generation_type, status)
        results = self.db.execute(
            f"SELECT * FROM generations WHERE {where} ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
            (*params, limit, offset)
        )
        return [GenerationRecord.from_row(r) for r in results]

    def count_for_user(
        self,
        user_id: str,
        generation_type: Optional[str] = None,
        status: Optional[str] = None,
    ) -> int:
        where, params = self._filters(user_id, generation_type, status)
        results = self.db.execute(
            f"SELECT COUNT(*) as cnt FROM generations WHERE {where}",
            params
        )
        return results[0]["cnt"] if results else 0

    @staticmethod
    def _filters(user_id: str, generation_type: Optional[str], status: Optional[str]) -> tuple:
        clauses = ["user_id = ?"]
        params: List[Any] = [user_id]
        if generation_type:
            clauses.append("generation_type = ?")
            params.append(generation_type)
        if status:
            clauses.append("status = ?")
            params.append(status)
        return " AND ".join(clauses), tuple(params)

    def mark_completed(
        self,
        uow: UnitOfWork,
        generation_id: str,
        realized_cost_mxn: Decimal,
        realized_cost_usd: Optional[Decimal],
        output_url: Optional[str],
        output_key: Optional[str],
        mime_type: Optional[str],
        api_model: Optional[str],
        completed_at: str,
    ) -> bool:
        """
        Move a pending generation to completed.

        Returns False when the row was no longer pending.
        """
        updated = uow.execute(
            """UPDATE generations
               SET status = ?, realized_cost_mxn = ?, realized_cost_usd = ?,
                   output_url = ?, output_key = ?, mime_type = ?,
                   api_model = COALESCE(?, api_model), completed_at = ?
               WHERE id = ? AND status = ?""",
            (
                GenerationStatus.COMPLETED.value,
                str(realized_cost_mxn),
                str(realized_cost_usd) if realized_cost_usd is not None else None,
                output_url,
                output_key,
                mime_type,
                api_model,
                completed_at,
                generation_id,
                GenerationStatus.PENDING.value,
            )
        )
        return updated == 1

    def mark_failed(
        self,
        uow: UnitOfWork,
        generation_id: str,
        error_message: str,
        completed_at: str,
    ) -> bool:
        """Move a pending generation to failed. False if it was already terminal."""
        updated = uow.execute(
            """UPDATE generations SET status = ?, error_message = ?, completed_at = ?
               WHERE id = ? AND status = ?""",
            (
                GenerationStatus.FAILED.value,
                error_message,
                completed_at,
                generation_id,
                GenerationStatus.PENDING.value,
            )
        )
        return updated == 1

    def usage_summary(self, user_id: str, days: int = 30) -> Dict[str, Any]:
        """Completed generation counts and realized cost per type."""
        results = self.db.execute(
            """SELECT generation_type, realized_cost_mxn, completed_at FROM generations
               WHERE user_id = ? AND status = ?""",
            (user_id, GenerationStatus.COMPLETED.value)
        )

        cutoff = datetime.now(timezone.utc) - timedelta(days=days)
        by_type: Dict[str, Dict[str, Any]] = defaultdict(lambda: {"count": 0, "cost": Decimal("0.00")})
        recent_count = 0
        recent_cost = Decimal("0.00")

        for row in results:
            cost = Decimal(str(row["realized_cost_mxn"] or "0"))
            bucket = by_type[row["generation_type"]]
            bucket["count"] += 1
            bucket["cost"] += cost

            completed_at = row["completed_at"]
            if isinstance(completed_at, str):
                completed_at = datetime.fromisoformat(completed_at)
            if completed_at and completed_at >= cutoff:
                recent_count += 1
                recent_cost += cost

        return {
            "user_id": user_id,
            "by_type": [
                {"type": t, "count": v["count"], "cost_mxn": str(v["cost"])}
                for t, v in sorted(by_type.items())
            ],
            "last_days": days,
            "recent": {"generations": recent_count, "cost_mxn": str(recent_cost)},
        }
