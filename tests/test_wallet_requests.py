"""Tests for wallet requests — deposits and withdrawals resolve exactly once."""

import pytest
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path

from assignhub.engine.escrow import EscrowEngine
from assignhub.engine.wallet import WalletDesk
from assignhub.errors import InsufficientFunds, PreconditionFailed
from assignhub.models.finance import RequestState
from assignhub.models.user import User, UserRole
from assignhub.persistence.document_store import USERS, DocumentStore
from assignhub.policy.resolver import PolicyResolver


CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"


def _now() -> datetime:
    return datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def desk() -> WalletDesk:
    return WalletDesk(EscrowEngine(PolicyResolver.from_config_dir(CONFIG_DIR)))


def _user(balance: str = "0") -> User:
    return User(user_id="u1", name="Nimali", role=UserRole.SEEKER,
                wallet_balance=Decimal(balance))


def _store(user: User) -> DocumentStore:
    store = DocumentStore()
    store.run(lambda txn: txn.put(USERS, user.user_id, user))
    return store


class TestDeposits:
    def test_confirm_credits_wallet(self, desk: WalletDesk) -> None:
        store = _store(_user("0"))
        req = desk.request_deposit(_user(), "2000", now=_now())
        assert req.state == RequestState.PENDING
        assert req.request_id.startswith("dep_")
        balance = store.run(lambda txn: desk.confirm_deposit(txn, req, now=_now()))
        assert balance == Decimal("2000")
        assert req.state == RequestState.CONFIRMED
        assert req.resolved_utc == _now()

    def test_reject_leaves_wallet(self, desk: WalletDesk) -> None:
        store = _store(_user("10"))
        req = desk.request_deposit(_user(), "2000", now=_now())
        desk.reject_deposit(req, now=_now())
        assert req.state == RequestState.REJECTED
        assert store.snapshot(USERS, "u1").wallet_balance == Decimal("10")

    def test_resolved_only_once(self, desk: WalletDesk) -> None:
        store = _store(_user("0"))
        req = desk.request_deposit(_user(), "100", now=_now())
        store.run(lambda txn: desk.confirm_deposit(txn, req, now=_now()))
        with pytest.raises(PreconditionFailed, match="already confirmed"):
            store.run(lambda txn: desk.confirm_deposit(txn, req, now=_now()))
        assert store.snapshot(USERS, "u1").wallet_balance == Decimal("100")


class TestWithdrawals:
    def test_request_needs_balance(self, desk: WalletDesk) -> None:
        with pytest.raises(InsufficientFunds):
            desk.request_withdrawal(_user("100"), "500", {"bank": "BOC"}, now=_now())

    def test_request_snapshots_balance(self, desk: WalletDesk) -> None:
        req = desk.request_withdrawal(_user("800"), "500", {"bank": "BOC"}, now=_now())
        assert req.wallet_balance_at_request == Decimal("800")
        assert req.request_id.startswith("wdr_")

    def test_confirm_debits_full_amount(self, desk: WalletDesk) -> None:
        store = _store(_user("800"))
        req = desk.request_withdrawal(_user("800"), "500", {"bank": "BOC"}, now=_now())
        store.run(lambda txn: desk.confirm_withdrawal(txn, req, now=_now()))
        assert store.snapshot(USERS, "u1").wallet_balance == Decimal("300")
        assert req.state == RequestState.COMPLETED
        assert req.service_charge == Decimal("25.00")
        assert req.payout_amount == Decimal("475.00")

    def test_reject_withdrawal(self, desk: WalletDesk) -> None:
        req = desk.request_withdrawal(_user("800"), "500", {"bank": "BOC"}, now=_now())
        desk.reject_withdrawal(req, now=_now())
        assert req.state == RequestState.REJECTED
        with pytest.raises(PreconditionFailed):
            desk.reject_withdrawal(req, now=_now())


class TestAdjust:
    def test_credit_and_debit(self, desk: WalletDesk) -> None:
        store = _store(_user("100"))
        assert store.run(lambda txn: desk.adjust(txn, "u1", "50", credit=True)) == Decimal("150")
        assert store.run(lambda txn: desk.adjust(txn, "u1", "150", credit=False)) == Decimal("0")
        with pytest.raises(InsufficientFunds):
            store.run(lambda txn: desk.adjust(txn, "u1", "1", credit=False))
