"""Wallet requests — deposits and withdrawals approved by an admin.

A request is created PENDING and resolved exactly once:
    deposit     PENDING → CONFIRMED (wallet credited) | REJECTED
    withdrawal  PENDING → COMPLETED (wallet debited)  | REJECTED
Rejection never touches the balance.

Admins may also credit or debit a wallet directly to correct mistakes.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional, Union
from uuid import uuid4

from assignhub.engine.escrow import EscrowEngine
from assignhub.errors import InsufficientFunds, PreconditionFailed
from assignhub.ledger.primitives import Ledger, to_amount
from assignhub.models.finance import DepositRequest, RequestState, WithdrawalRequest
from assignhub.models.user import User
from assignhub.persistence.document_store import StoreTransaction


class WalletDesk:
    """Creates and resolves wallet requests.

    Usage:
        desk = WalletDesk(escrow)
        request = desk.request_deposit(user, Decimal("2000"))
        store.run(lambda txn: desk.confirm_deposit(txn, request))
    """

    def __init__(self, escrow: EscrowEngine, ledger: Optional[Ledger] = None) -> None:
        self._escrow = escrow
        self._ledger = ledger or Ledger()

    # ------------------------------------------------------------------
    # Deposits
    # ------------------------------------------------------------------

    def request_deposit(
        self, user: User, amount: Any, now: Optional[datetime] = None,
    ) -> DepositRequest:
        if now is None:
            now = datetime.now(timezone.utc)
        return DepositRequest(
            request_id=f"dep_{uuid4().hex[:12]}",
            user_id=user.user_id,
            amount=to_amount(amount),
            created_utc=now,
        )

    def confirm_deposit(
        self, txn: StoreTransaction, request: DepositRequest, now: Optional[datetime] = None,
    ) -> Decimal:
        """Credit the deposit. Returns the user's new balance."""
        self._resolve(request, RequestState.CONFIRMED, now)
        return self._ledger.credit(txn, request.user_id, request.amount)

    def reject_deposit(
        self, request: DepositRequest, now: Optional[datetime] = None,
    ) -> None:
        self._resolve(request, RequestState.REJECTED, now)

    # ------------------------------------------------------------------
    # Withdrawals
    # ------------------------------------------------------------------

    def request_withdrawal(
        self,
        user: User,
        amount: Any,
        bank_details: dict[str, Any],
        now: Optional[datetime] = None,
    ) -> WithdrawalRequest:
        if now is None:
            now = datetime.now(timezone.utc)
        value = to_amount(amount)
        if user.wallet_balance < value:
            raise InsufficientFunds(required=value, available=user.wallet_balance)
        return WithdrawalRequest(
            request_id=f"wdr_{uuid4().hex[:12]}",
            user_id=user.user_id,
            amount=value,
            bank_details=dict(bank_details),
            requested_utc=now,
            wallet_balance_at_request=user.wallet_balance,
        )

    def confirm_withdrawal(
        self, txn: StoreTransaction, request: WithdrawalRequest, now: Optional[datetime] = None,
    ) -> WithdrawalRequest:
        return self._escrow.settle_withdrawal(txn, request, now=now)

    def reject_withdrawal(
        self, request: WithdrawalRequest, now: Optional[datetime] = None,
    ) -> None:
        self._resolve(request, RequestState.REJECTED, now)

    # ------------------------------------------------------------------
    # Admin adjustments
    # ------------------------------------------------------------------

    def adjust(self, txn: StoreTransaction, user_id: str, amount: Any, credit: bool) -> Decimal:
        """Direct admin credit or debit. Returns the new balance."""
        if credit:
            return self._ledger.credit(txn, user_id, amount)
        return self._ledger.debit(txn, user_id, amount)

    @staticmethod
    def _resolve(
        request: Union[DepositRequest, WithdrawalRequest],
        state: RequestState,
        now: Optional[datetime],
    ) -> None:
        if request.state != RequestState.PENDING:
            raise PreconditionFailed(f"Request is already {request.state.value}")
        request.state = state
        request.resolved_utc = now or datetime.now(timezone.utc)
