"""
Data Models for Persistence Layer

Rows are converted to dataclasses here. Money columns come back as strings
from SQLite and as Decimal from PostgreSQL; both are normalized to Decimal.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional
import json


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _money(value: Any) -> Decimal:
    return Decimal(str(value)).quantize(Decimal("0.01"))


def _optional_money(value: Any) -> Optional[Decimal]:
    return None if value is None else Decimal(str(value))


def _timestamp(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class TransactionKind(Enum):
    """Ledger entry kinds."""
    PURCHASE = "purchase"
    BONUS = "bonus"
    USAGE = "usage"
    REFUND = "refund"


class GenerationStatus(Enum):
    """Generation lifecycle. COMPLETED and FAILED are terminal."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not GenerationStatus.PENDING


class GenerationType(Enum):
    IMAGE = "image"
    VIDEO = "video"
    STYLE = "style"
    TEXT = "text"

    @property
    def media_kind(self) -> Optional[str]:
        """Media kind for ingestion, or None for non-media outputs."""
        if self in (GenerationType.IMAGE, GenerationType.VIDEO):
            return self.value
        return None


@dataclass
class AccountRecord:
    """Persisted account (cached balance projection)."""
    user_id: str
    balance: Decimal = Decimal("0.00")
    total_purchased: Decimal = Decimal("0.00")
    total_spent: Decimal = Decimal("0.00")
    currency: str = "MXN"
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "balance": str(self.balance),
            "total_purchased": str(self.total_purchased),
            "total_spent": str(self.total_spent),
            "currency": self.currency,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "AccountRecord":
        return cls(
            user_id=row["user_id"],
            balance=_money(row["balance"]),
            total_purchased=_money(row["total_purchased"]),
            total_spent=_money(row["total_spent"]),
            currency=row.get("currency", "MXN"),
            created_at=_timestamp(row["created_at"]),
            updated_at=_timestamp(row["updated_at"]),
        )


@dataclass
class TransactionRecord:
    """Persisted ledger entry. Never updated once written."""
    id: str
    user_id: str
    kind: TransactionKind
    amount: Decimal
    balance_before: Decimal
    balance_after: Decimal
    description: str = ""
    external_payment_id: Optional[str] = None
    payment_method: Optional[str] = None
    generation_id: Optional[str] = None
    created_at: str = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "kind": self.kind.value,
            "amount": str(self.amount),
            "balance_before": str(self.balance_before),
            "balance_after": str(self.balance_after),
            "description": self.description,
            "external_payment_id": self.external_payment_id,
            "payment_method": self.payment_method,
            "generation_id": self.generation_id,
            "created_at": self.created_at,
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.id,
            self.user_id,
            self.kind.value,
            str(self.amount),
            str(self.balance_before),
            str(self.balance_after),
            self.external_payment_id,
            self.payment_method,
            self.generation_id,
            self.description,
            self.created_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "TransactionRecord":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            kind=TransactionKind(row["kind"]),
            amount=_money(row["amount"]),
            balance_before=_money(row["balance_before"]),
            balance_after=_money(row["balance_after"]),
            description=row.get("description") or "",
            external_payment_id=row.get("external_payment_id"),
            payment_method=row.get("payment_method"),
            generation_id=row.get("generation_id"),
            created_at=_timestamp(row["created_at"]),
        )


@dataclass
class GenerationRecord:
    """Persisted generation (one billable unit of work)."""
    id: str
    user_id: str
    generation_type: GenerationType
    prompt: str
    title: Optional[str] = None
    status: GenerationStatus = GenerationStatus.PENDING
    estimated_cost: Decimal = Decimal("0.00")
    realized_cost_mxn: Optional[Decimal] = None
    realized_cost_usd: Optional[Decimal] = None
    output_url: Optional[str] = None
    output_key: Optional[str] = None
    mime_type: Optional[str] = None
    api_model: Optional[str] = None
    generation_params: Dict[str, Any] = field(default_factory=dict)
    error_message: Optional[str] = None
    created_at: str = field(default_factory=_now)
    completed_at: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "generation_type": self.generation_type.value,
            "title": self.title,
            "prompt": self.prompt,
            "status": self.status.value,
            "estimated_cost": str(self.estimated_cost),
            "realized_cost_mxn": str(self.realized_cost_mxn) if self.realized_cost_mxn is not None else None,
            "realized_cost_usd": str(self.realized_cost_usd) if self.realized_cost_usd is not None else None,
            "output_url": self.output_url,
            "output_key": self.output_key,
            "mime_type": self.mime_type,
            "api_model": self.api_model,
            "generation_params": self.generation_params,
            "error_message": self.error_message,
            "created_at": self.created_at,
            "completed_at": self.completed_at,
        }

    def to_db_tuple(self) -> tuple:
        """Insert tuple for a new (pending) generation."""
        return (
            self.id,
            self.user_id,
            self.generation_type.value,
            self.title,
            self.prompt,
            self.status.value,
            str(self.estimated_cost),
            self.api_model,
            json.dumps(self.generation_params) if self.generation_params else None,
            self.created_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "GenerationRecord":
        params = row.get("generation_params")
        if isinstance(params, str) and params:
            params = json.loads(params)

        return cls(
            id=row["id"],
            user_id=row["user_id"],
            generation_type=GenerationType(row["generation_type"]),
            prompt=row["prompt"],
            title=row.get("title"),
            status=GenerationStatus(row["status"]),
            estimated_cost=_money(row.get("estimated_cost") or "0"),
            realized_cost_mxn=_optional_money(row.get("realized_cost_mxn")),
            realized_cost_usd=_optional_money(row.get("realized_cost_usd")),
            output_url=row.get("output_url"),
            output_key=row.get("output_key"),
            mime_type=row.get("mime_type"),
            api_model=row.get("api_model"),
            generation_params=params or {},
            error_message=row.get("error_message"),
            created_at=_timestamp(row["created_at"]),
            completed_at=_timestamp(row.get("completed_at")),
        )
