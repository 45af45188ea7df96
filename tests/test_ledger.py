"""
Tests for the Credit Ledger

Balance must always equal the sum of the transaction log.
"""

import pytest
import threading
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

from genledger.billing.pricing import to_money
from genledger.errors import InsufficientFunds, ValidationError
from genledger.generation.records import to_money_usd
from genledger.persistence.models import TransactionKind


def assert_consistent(ledger, user_id):
    assert ledger.transactions.sum_for_user(user_id) == ledger.get_balance(user_id)
    assert ledger.reconcile(user_id).consistent


class TestBalance:
    """Test lazy account creation."""

    def test_new_user_has_zero_balance(self, ledger):
        assert ledger.get_balance("user-1") == Decimal("0.00")

    def test_account_created_once(self, ledger, db):
        ledger.get_balance("user-1")
        ledger.get_balance("user-1")

        rows = db.execute("SELECT COUNT(*) as cnt FROM accounts WHERE user_id = ?", ("user-1",))
        assert rows[0]["cnt"] == 1

    def test_empty_user_id_rejected(self, ledger):
        with pytest.raises(ValidationError):
            ledger.get_balance("")


class TestDeduct:
    """Test charging credits."""

    def test_deduct_records_usage_entry(self, ledger):
        ledger.credit("user-1", Decimal("10"), TransactionKind.REFUND)

        balance = ledger.deduct("user-1", Decimal("4"), "image generation", generation_id="gen-1")

        assert balance == Decimal("6.00")
        usage = ledger.transactions.list_for_user("user-1", kind=TransactionKind.USAGE)
        assert len(usage) == 1
        assert usage[0].amount == Decimal("-4.00")
        assert usage[0].balance_before == Decimal("10.00")
        assert usage[0].balance_after == Decimal("6.00")
        assert usage[0].generation_id == "gen-1"
        assert ledger.get_account("user-1").total_spent == Decimal("4.00")
        assert_consistent(ledger, "user-1")

    def test_insufficient_funds_leaves_balance(self, ledger):
        """Deducting 15 from 10 fails and leaves 10."""
        ledger.credit("user-1", Decimal("10"), TransactionKind.REFUND)

        with pytest.raises(InsufficientFunds) as exc_info:
            ledger.deduct("user-1", Decimal("15"), "video generation")

        assert exc_info.value.required == Decimal("15.00")
        assert exc_info.value.available == Decimal("10.00")
        assert ledger.get_balance("user-1") == Decimal("10.00")
        assert ledger.transactions.count_for_user("user-1") == 1
        assert_consistent(ledger, "user-1")

    def test_exact_balance_can_be_spent(self, ledger):
        ledger.credit("user-1", "2.63", TransactionKind.REFUND)

        assert ledger.deduct("user-1", "2.63", "video") == Decimal("0.00")
        assert_consistent(ledger, "user-1")

    def test_float_amount_rejected(self, ledger):
        with pytest.raises(ValidationError):
            ledger.deduct("user-1", 1.5, "image")

    @pytest.mark.parametrize("amount", ["0", "-1", "abc"])
    def test_non_positive_or_invalid_rejected(self, ledger, amount):
        with pytest.raises(ValidationError):
            ledger.deduct("user-1", amount, "image")

    def test_amount_rounded_half_up(self, ledger):
        ledger.credit("user-1", "10", TransactionKind.REFUND)

        assert ledger.deduct("user-1", "2.625", "video") == Decimal("7.37")


class TestMoneyBounds:
    """Amounts outside NUMERIC(14, 2) are rejected before any write."""

    @pytest.mark.parametrize("value", ["1e30", "1e12", "-1e12", "NaN", "Infinity", "sNaN"])
    def test_out_of_range_rejected(self, value):
        with pytest.raises(ValidationError):
            to_money(value)

    def test_largest_amount_accepted(self):
        assert to_money("999999999999.99") == Decimal("999999999999.99")

    def test_huge_deduct_rejected(self, ledger):
        ledger.credit("user-1", "10", TransactionKind.REFUND)

        with pytest.raises(ValidationError):
            ledger.deduct("user-1", "1e30", "image")

        assert ledger.get_balance("user-1") == Decimal("10.00")
        assert_consistent(ledger, "user-1")

    def test_huge_credit_rejected(self, ledger):
        with pytest.raises(ValidationError):
            ledger.credit("user-1", "1e30", TransactionKind.REFUND)

        assert ledger.get_balance("user-1") == Decimal("0.00")

    @pytest.mark.parametrize("value", ["1e30", "NaN"])
    def test_usd_cost_out_of_range_rejected(self, value):
        with pytest.raises(ValidationError):
            to_money_usd(value)


class TestCredit:
    """Test idempotent crediting."""

    def test_purchase_with_bonus_writes_two_entries(self, ledger):
        result = ledger.credit(
            "user-1",
            Decimal("100"),
            TransactionKind.PURCHASE,
            external_payment_id="pi_123",
            bonus_amount=Decimal("20"),
        )

        assert result.balance == Decimal("120.00")
        assert result.duplicate is False
        assert [t.kind for t in result.transactions] == [TransactionKind.PURCHASE, TransactionKind.BONUS]
        assert all(t.external_payment_id == "pi_123" for t in result.transactions)
        assert result.transactions[1].balance_before == Decimal("100.00")

        account = ledger.get_account("user-1")
        assert account.total_purchased == Decimal("100.00")
        assert_consistent(ledger, "user-1")

    def test_repeat_payment_id_is_noop(self, ledger):
        ledger.credit("user-1", "100", external_payment_id="pi_123", bonus_amount="20")

        again = ledger.credit("user-1", "100", external_payment_id="pi_123", bonus_amount="20")

        assert again.duplicate is True
        assert again.balance == Decimal("120.00")
        assert again.transactions == []
        assert len(ledger.transactions.get_by_payment("pi_123")) == 2
        assert_consistent(ledger, "user-1")

    def test_refund_does_not_count_as_purchase(self, ledger):
        ledger.credit("user-1", "5", TransactionKind.REFUND)

        account = ledger.get_account("user-1")
        assert account.balance == Decimal("5.00")
        assert account.total_purchased == Decimal("0.00")

    def test_usage_kind_cannot_credit(self, ledger):
        with pytest.raises(ValidationError):
            ledger.credit("user-1", "5", TransactionKind.USAGE)

    def test_negative_bonus_rejected(self, ledger):
        with pytest.raises(ValidationError):
            ledger.credit("user-1", "5", bonus_amount="-1")


class TestAtomicity:
    """A failure between the account update and the log insert leaves nothing."""

    def test_deduct_fault_rolls_back(self, ledger, monkeypatch):
        ledger.credit("user-1", "10", TransactionKind.REFUND)

        def boom(uow, record):
            raise RuntimeError("disk full")

        monkeypatch.setattr(ledger, "_insert_transaction", boom)

        with pytest.raises(RuntimeError):
            ledger.deduct("user-1", "4", "image")

        monkeypatch.undo()
        account = ledger.get_account("user-1")
        assert account.balance == Decimal("10.00")
        assert account.total_spent == Decimal("0.00")
        assert ledger.transactions.count_for_user("user-1") == 1
        assert_consistent(ledger, "user-1")

    def test_credit_fault_rolls_back(self, ledger, monkeypatch):
        def boom(uow, record):
            raise RuntimeError("connection reset")

        monkeypatch.setattr(ledger, "_insert_transaction", boom)

        with pytest.raises(RuntimeError):
            ledger.credit("user-1", "100", external_payment_id="pi_9", bonus_amount="20")

        monkeypatch.undo()
        assert ledger.get_balance("user-1") == Decimal("0.00")
        assert ledger.transactions.get_by_payment("pi_9") == []

        # The payment can still be settled once the fault clears
        result = ledger.credit("user-1", "100", external_payment_id="pi_9", bonus_amount="20")
        assert result.balance == Decimal("120.00")
        assert_consistent(ledger, "user-1")


class TestReconcile:
    """Test reconciliation against the log."""

    def test_sequence_stays_consistent(self, ledger):
        ledger.credit("user-1", "250", external_payment_id="pi_1", bonus_amount="50")
        ledger.deduct("user-1", "0.53", "image")
        ledger.deduct("user-1", "2.63", "video")
        ledger.credit("user-1", "2.63", TransactionKind.REFUND)

        result = ledger.reconcile("user-1")

        assert result.consistent
        assert result.cached_balance == Decimal("299.47")
        assert result.transaction_count == 5

    def test_tampered_cache_detected(self, ledger, db):
        ledger.credit("user-1", "50", external_payment_id="pi_1")
        db.execute("UPDATE accounts SET balance = ? WHERE user_id = ?", ("75.00", "user-1"))

        result = ledger.reconcile("user-1")

        assert not result.consistent
        assert result.computed_balance == Decimal("50.00")


class TestListTransactions:

    def test_paging(self, ledger):
        for i in range(5):
            ledger.credit("user-1", "1", TransactionKind.REFUND, description=f"refund {i}")

        page = ledger.list_transactions("user-1", page=2, limit=2)

        assert len(page["transactions"]) == 2
        assert page["pagination"]["total"] == 5
        assert page["pagination"]["pages"] == 3

    def test_kind_filter(self, ledger):
        ledger.credit("user-1", "100", external_payment_id="pi_1", bonus_amount="20")

        page = ledger.list_transactions("user-1", kind=TransactionKind.BONUS)

        assert [t["kind"] for t in page["transactions"]] == ["bonus"]


def run_concurrently(fn, count):
    """Run fn(i) on count threads released together; exceptions are returned."""
    barrier = threading.Barrier(count)

    def call(i):
        barrier.wait()
        try:
            return fn(i)
        except Exception as e:
            return e

    with ThreadPoolExecutor(max_workers=count) as pool:
        return list(pool.map(call, range(count)))


class TestConcurrency:
    """Concurrent writers against one account never overdraw it."""

    def test_concurrent_deducts_never_overdraw(self, ledger):
        ledger.credit("user-1", "10", TransactionKind.REFUND)

        results = run_concurrently(lambda i: ledger.deduct("user-1", "1", f"image {i}"), 20)

        charged = [r for r in results if isinstance(r, Decimal)]
        rejected = [r for r in results if isinstance(r, InsufficientFunds)]
        assert len(charged) == 10
        assert len(rejected) == 10
        assert sorted(charged) == [Decimal(n) for n in range(10)]
        assert ledger.get_balance("user-1") == Decimal("0.00")
        assert len(ledger.transactions.list_for_user("user-1", kind=TransactionKind.USAGE)) == 10
        assert_consistent(ledger, "user-1")

    def test_concurrent_credit_and_deduct(self, ledger):
        ledger.credit("user-1", "5", TransactionKind.REFUND)

        def work(i):
            if i % 2:
                return ledger.deduct("user-1", "1", "image")
            return ledger.credit("user-1", "1", TransactionKind.REFUND).balance

        results = run_concurrently(work, 10)

        assert not [r for r in results if isinstance(r, Exception)]
        assert ledger.get_balance("user-1") == Decimal("5.00")
        assert_consistent(ledger, "user-1")
