"""Tests for ledger primitives and the finance book — proves money moves exactly."""

import pytest
from datetime import datetime, timezone
from decimal import Decimal

from assignhub.errors import InsufficientFunds, NotFound, ValidationError
from assignhub.ledger.finance import FinanceBook
from assignhub.ledger.primitives import Ledger, display_balance, quantize, to_amount
from assignhub.models.finance import TransactionType
from assignhub.models.user import User, UserRole
from assignhub.persistence.document_store import USERS, DocumentStore


def _now() -> datetime:
    return datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)


def _store_with(*users: User) -> DocumentStore:
    store = DocumentStore()

    def seed(txn):
        for u in users:
            txn.put(USERS, u.user_id, u)

    store.run(seed)
    return store


def _seeker(balance: str = "1000") -> User:
    return User(user_id="s1", name="Nimali", role=UserRole.SEEKER,
                wallet_balance=Decimal(balance))


class TestToAmount:
    def test_accepts_strings_ints_and_decimals(self) -> None:
        assert to_amount("1500") == Decimal("1500")
        assert to_amount(20) == Decimal("20")
        assert to_amount(Decimal("0.10")) == Decimal("0.10")

    def test_float_goes_through_str(self) -> None:
        assert to_amount(0.1) == Decimal("0.1")

    @pytest.mark.parametrize("value", [0, "-5", "abc", None, True, "NaN", "Infinity"])
    def test_rejects_non_positive_or_garbage(self, value) -> None:
        with pytest.raises(ValidationError):
            to_amount(value)

    @pytest.mark.parametrize("value", ["1500.005", Decimal("0.001"), 10.125])
    def test_rejects_fractions_of_a_cent(self, value) -> None:
        with pytest.raises(ValidationError, match="fractions of a cent"):
            to_amount(value, "Fee")

    def test_trailing_zeros_are_whole_cents(self) -> None:
        assert to_amount("1500.000") == Decimal("1500.000")

    def test_plain_quantities_keep_precision(self) -> None:
        assert to_amount("33.3333", "Percentage", whole_cents=False) == Decimal("33.3333")

    def test_label_in_message(self) -> None:
        with pytest.raises(ValidationError, match="Fee must be positive"):
            to_amount("0", "Fee")


class TestRounding:
    def test_quantize_half_up(self) -> None:
        assert quantize(Decimal("33.335")) == Decimal("33.34")
        assert quantize(Decimal("33.334")) == Decimal("33.33")

    def test_display_balance_two_places(self) -> None:
        assert display_balance(Decimal("500")) == "500.00"


class TestLedger:
    def test_credit(self) -> None:
        store = _store_with(_seeker("100"))
        ledger = Ledger()
        balance = store.run(lambda txn: ledger.credit(txn, "s1", "50.25"))
        assert balance == Decimal("150.25")
        assert store.snapshot(USERS, "s1").wallet_balance == Decimal("150.25")

    def test_debit_if_sufficient(self) -> None:
        store = _store_with(_seeker("2000"))
        ledger = Ledger()
        assert store.run(lambda txn: ledger.debit_if_sufficient(txn, "s1", "1500")) == Decimal("500")

    def test_insufficient_leaves_balance(self) -> None:
        store = _store_with(_seeker("1000"))
        ledger = Ledger()
        with pytest.raises(InsufficientFunds) as exc:
            store.run(lambda txn: ledger.debit_if_sufficient(txn, "s1", "1500"))
        assert exc.value.required == Decimal("1500")
        assert exc.value.available == Decimal("1000")
        assert store.snapshot(USERS, "s1").wallet_balance == Decimal("1000")

    def test_debit_never_goes_negative(self) -> None:
        store = _store_with(_seeker("10"))
        with pytest.raises(InsufficientFunds):
            store.run(lambda txn: Ledger().debit(txn, "s1", "10.01"))

    def test_exact_balance_debit_allowed(self) -> None:
        store = _store_with(_seeker("10"))
        assert store.run(lambda txn: Ledger().debit(txn, "s1", "10")) == Decimal("0")

    def test_unknown_user(self) -> None:
        store = DocumentStore()
        with pytest.raises(NotFound):
            store.run(lambda txn: Ledger().credit(txn, "ghost", "1"))


class TestFinanceBook:
    def test_empty_summary(self) -> None:
        summary = DocumentStore().run(FinanceBook().load)
        assert summary.total_profit == Decimal("0")
        assert summary.transactions == []

    def test_commission_updates_total_and_log_together(self) -> None:
        store = DocumentStore()
        book = FinanceBook()
        store.run(lambda txn: book.record_commission(txn, "100", "A-1", "Service charge", now=_now()))
        store.run(lambda txn: book.record_commission(txn, "50", "A-2", "Service charge", now=_now()))
        summary = store.run(book.load)
        assert summary.total_profit == Decimal("150")
        assert summary.recomputed_profit() == Decimal("150")
        assert {t.transaction_type for t in summary.transactions} == {TransactionType.COMMISSION}

    def test_manual_debit_is_negative(self) -> None:
        store = DocumentStore()
        book = FinanceBook()
        store.run(lambda txn: book.record_commission(txn, "100", "A-1", "Service charge", now=_now()))
        entry = store.run(
            lambda txn: book.manual_adjustment(txn, "30", "Refund", credit=False, now=_now())
        )
        assert entry.amount == Decimal("-30")
        assert entry.transaction_type == TransactionType.MANUAL
        assert store.run(book.load).total_profit == Decimal("70")

    def test_delete_reverses_amount(self) -> None:
        store = DocumentStore()
        book = FinanceBook()
        entry = store.run(
            lambda txn: book.record_commission(txn, "100", "A-1", "Service charge", now=_now())
        )
        store.run(lambda txn: book.delete_transaction(txn, entry.transaction_id))
        summary = store.run(book.load)
        assert summary.total_profit == Decimal("0")
        assert summary.transactions == []

    def test_delete_unknown_transaction(self) -> None:
        with pytest.raises(NotFound):
            DocumentStore().run(lambda txn: FinanceBook().delete_transaction(txn, "nope"))

    def test_newest_first(self) -> None:
        store = DocumentStore()
        book = FinanceBook()
        early = datetime(2026, 1, 1, tzinfo=timezone.utc)
        store.run(lambda txn: book.record_commission(txn, "1", "A-1", "first", now=early))
        store.run(lambda txn: book.record_commission(txn, "2", "A-2", "second", now=_now()))
        ordered = FinanceBook.newest_first(store.run(book.load))
        assert [t.description for t in ordered] == ["second", "first"]
