"""
Credit Ledger

Per-user balance plus the append-only transaction log. The cached balance on
the account row is only ever changed in the same unit of work as the
transaction insert that justifies it, so

    balance == sum(transaction.amount)

holds after every committed call. This is the only place balances change.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional
import structlog

from ..errors import InsufficientFunds, ValidationError
from ..persistence.database import Database, UnitOfWork, get_database
from ..persistence.models import AccountRecord, TransactionKind, TransactionRecord
from ..persistence.repository import TransactionRepository
from .pricing import ZERO, require_positive, to_money

logger = structlog.get_logger()

CREDIT_KINDS = (TransactionKind.PURCHASE, TransactionKind.BONUS, TransactionKind.REFUND)


def _new_transaction_id() -> str:
    return f"TXN-{uuid.uuid4().hex[:16].upper()}"


@dataclass
class CreditResult:
    """Outcome of a credit call. `duplicate` means nothing was written."""
    balance: Decimal
    duplicate: bool = False
    transactions: List[TransactionRecord] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "balance": str(self.balance),
            "duplicate": self.duplicate,
            "transactions": [t.to_dict() for t in self.transactions],
        }


@dataclass
class Reconciliation:
    """Cached balance compared with the sum of the transaction log."""
    user_id: str
    cached_balance: Decimal
    computed_balance: Decimal
    transaction_count: int

    @property
    def consistent(self) -> bool:
        return self.cached_balance == self.computed_balance

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "cached_balance": str(self.cached_balance),
            "computed_balance": str(self.computed_balance),
            "transaction_count": self.transaction_count,
            "consistent": self.consistent,
        }


class Ledger:
    """
    Balance and transaction log for every user.

    Each mutating call runs inside `Database.transaction()`: the account row
    is locked (or the SQLite write lock taken) before it is read, so two
    concurrent calls for one user serialize instead of racing.

    Usage:
        ledger = Ledger(db)
        ledger.credit("user-1", Decimal("100"), TransactionKind.PURCHASE,
                      external_payment_id="pi_123", bonus_amount=Decimal("20"))
        ledger.deduct("user-1", Decimal("8.75"), "video generation")
    """

    def __init__(self, db: Optional[Database] = None, currency: str = "MXN"):
        self.db = db or get_database()
        self.currency = currency
        self.transactions = TransactionRepository(self.db)

    # ------------------------------------------------------------------
    # Internal helpers (always called inside a unit of work)
    # ------------------------------------------------------------------

    def _ensure_account(self, uow: UnitOfWork, user_id: str) -> Dict[str, Any]:
        """Create the account if missing, then read it under lock."""
        now = datetime.now(timezone.utc).isoformat()
        uow.execute(
            """INSERT INTO accounts (user_id, balance, total_purchased, total_spent,
                                     currency, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT (user_id) DO NOTHING""",
            (user_id, "0.00", "0.00", "0.00", self.currency, now, now)
        )
        return uow.query_one(
            "SELECT * FROM accounts WHERE user_id = ?" + uow.for_update,
            (user_id,)
        )

    def _update_account(
        self,
        uow: UnitOfWork,
        user_id: str,
        balance: Decimal,
        total_purchased: Decimal,
        total_spent: Decimal,
    ) -> None:
        uow.execute(
            """UPDATE accounts SET balance = ?, total_purchased = ?, total_spent = ?, updated_at = ?
               WHERE user_id = ?""",
            (
                str(balance),
                str(total_purchased),
                str(total_spent),
                datetime.now(timezone.utc).isoformat(),
                user_id,
            )
        )

    def _insert_transaction(self, uow: UnitOfWork, record: TransactionRecord) -> None:
        uow.execute(
            """INSERT INTO credit_transactions
               (id, user_id, kind, amount, balance_before, balance_after,
                external_payment_id, payment_method, generation_id, description, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            record.to_db_tuple()
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_account(self, user_id: str) -> AccountRecord:
        """Return the account, creating it with a zero balance if missing."""
        if not user_id:
            raise ValidationError("user_id is required")
        with self.db.transaction() as uow:
            row = self._ensure_account(uow, user_id)
        return AccountRecord.from_row(row)

    def get_balance(self, user_id: str) -> Decimal:
        return self.get_account(user_id).balance

    def list_transactions(
        self,
        user_id: str,
        kind: Optional[TransactionKind] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Dict[str, Any]:
        """Paged transaction history, newest first."""
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive")
        limit = min(limit, 100)
        items = self.transactions.list_for_user(
            user_id, kind=kind, limit=limit, offset=(page - 1) * limit
        )
        total = self.transactions.count_for_user(user_id, kind=kind)
        return {
            "transactions": [t.to_dict() for t in items],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": (total + limit - 1) // limit,
            },
        }

    def reconcile(self, user_id: str) -> Reconciliation:
        """Recompute the balance from the log and compare with the cache."""
        account = self.get_account(user_id)
        computed = self.transactions.sum_for_user(user_id)
        result = Reconciliation(
            user_id=user_id,
            cached_balance=account.balance,
            computed_balance=to_money(computed),
            transaction_count=self.transactions.count_for_user(user_id),
        )
        if not result.consistent:
            logger.error(
                "ledger_inconsistent",
                user_id=user_id,
                cached=str(result.cached_balance),
                computed=str(result.computed_balance),
            )
        return result

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def deduct(
        self,
        user_id: str,
        amount: Any,
        description: str,
        generation_id: Optional[str] = None,
        uow: Optional[UnitOfWork] = None,
    ) -> Decimal:
        """
        Charge `amount` and return the new balance.

        Raises InsufficientFunds without writing anything when the balance
        cannot cover the charge. When `uow` is given the charge joins the
        caller's unit of work and commits or rolls back with it.
        """
        if not user_id:
            raise ValidationError("user_id is required")
        amount = require_positive(amount)

        if uow is not None:
            return self._deduct(uow, user_id, amount, description, generation_id)
        with self.db.transaction() as own:
            return self._deduct(own, user_id, amount, description, generation_id)

    def _deduct(
        self,
        uow: UnitOfWork,
        user_id: str,
        amount: Decimal,
        description: str,
        generation_id: Optional[str],
    ) -> Decimal:
        account = AccountRecord.from_row(self._ensure_account(uow, user_id))

        if account.balance < amount:
            logger.warning(
                "insufficient_funds",
                user_id=user_id,
                required=str(amount),
                available=str(account.balance),
                generation_id=generation_id,
            )
            raise InsufficientFunds(
                "Insufficient credits",
                required=amount,
                available=account.balance,
            )

        new_balance = account.balance - amount
        self._update_account(
            uow,
            user_id,
            balance=new_balance,
            total_purchased=account.total_purchased,
            total_spent=account.total_spent + amount,
        )
        self._insert_transaction(uow, TransactionRecord(
            id=_new_transaction_id(),
            user_id=user_id,
            kind=TransactionKind.USAGE,
            amount=-amount,
            balance_before=account.balance,
            balance_after=new_balance,
            description=description,
            generation_id=generation_id,
        ))

        logger.info(
            "credits_deducted",
            user_id=user_id,
            amount=str(amount),
            balance=str(new_balance),
            generation_id=generation_id,
        )
        return new_balance

    def credit(
        self,
        user_id: str,
        amount: Any,
        kind: TransactionKind = TransactionKind.PURCHASE,
        external_payment_id: Optional[str] = None,
        bonus_amount: Any = ZERO,
        description: Optional[str] = None,
        payment_method: Optional[str] = None,
    ) -> CreditResult:
        """
        Add credits, once per external payment id.

        A repeat call carrying an already-recorded payment id returns the
        current balance with `duplicate=True` and writes nothing.
        """
        if not user_id:
            raise ValidationError("user_id is required")
        if kind not in CREDIT_KINDS:
            raise ValidationError(f"Cannot credit with kind {kind.value}")
        amount = require_positive(amount)
        bonus = to_money(bonus_amount)
        if bonus < ZERO:
            raise ValidationError("bonus_amount cannot be negative")

        try:
            with self.db.transaction() as uow:
                account = AccountRecord.from_row(self._ensure_account(uow, user_id))

                if external_payment_id:
                    existing = uow.query_one(
                        "SELECT id FROM credit_transactions WHERE external_payment_id = ? LIMIT 1",
                        (external_payment_id,)
                    )
                    if existing:
                        logger.info(
                            "duplicate_settlement_ignored",
                            user_id=user_id,
                            external_payment_id=external_payment_id,
                        )
                        return CreditResult(balance=account.balance, duplicate=True)

                after_main = account.balance + amount
                after_bonus = after_main + bonus
                total_purchased = account.total_purchased
                if kind is TransactionKind.PURCHASE:
                    total_purchased += amount

                self._update_account(
                    uow,
                    user_id,
                    balance=after_bonus,
                    total_purchased=total_purchased,
                    total_spent=account.total_spent,
                )

                entries = [TransactionRecord(
                    id=_new_transaction_id(),
                    user_id=user_id,
                    kind=kind,
                    amount=amount,
                    balance_before=account.balance,
                    balance_after=after_main,
                    description=description or f"{kind.value.capitalize()} of {amount} {self.currency}",
                    external_payment_id=external_payment_id,
                    payment_method=payment_method,
                )]
                if bonus > ZERO:
                    entries.append(TransactionRecord(
                        id=_new_transaction_id(),
                        user_id=user_id,
                        kind=TransactionKind.BONUS,
                        amount=bonus,
                        balance_before=after_main,
                        balance_after=after_bonus,
                        description=f"Bonus of {bonus} {self.currency}",
                        external_payment_id=external_payment_id,
                        payment_method=payment_method,
                    ))
                for entry in entries:
                    self._insert_transaction(uow, entry)

        except self.db.integrity_errors:
            # A concurrent settlement of the same payment won the insert
            logger.info(
                "duplicate_settlement_ignored",
                user_id=user_id,
                external_payment_id=external_payment_id,
                via="unique_index",
            )
            return CreditResult(balance=self.get_balance(user_id), duplicate=True)

        logger.info(
            "credits_added",
            user_id=user_id,
            kind=kind.value,
            amount=str(amount),
            bonus=str(bonus),
            balance=str(after_bonus),
            external_payment_id=external_payment_id,
        )
        return CreditResult(balance=after_bonus, transactions=entries)
