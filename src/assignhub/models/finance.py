"""Finance models — commission, profit ledger, deposit and withdrawal requests.

All monetary values use Decimal for exact arithmetic. No floats in finance.

Invariants enforced by these models:
- commission + writer_payout == fee for every breakdown
- total_profit equals the sum of the transaction log amounts
- a wallet request leaves PENDING at most once
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional


class TransactionType(str, enum.Enum):
    COMMISSION = "commission"
    MANUAL = "manual"


class RequestState(str, enum.Enum):
    """Lifecycle of a deposit or withdrawal request.

    Deposits resolve to CONFIRMED, withdrawals to COMPLETED; either may
    be REJECTED. Resolved requests are terminal.
    """
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    REJECTED = "rejected"


@dataclass(frozen=True)
class FinanceTransaction:
    """A single profit movement. Amount is signed (manual debits < 0)."""
    transaction_id: str
    amount: Decimal
    transaction_type: TransactionType
    description: str
    timestamp_utc: datetime
    assignment_id: Optional[str] = None


@dataclass
class FinanceSummary:
    """Running platform profit plus the transaction log backing it."""
    total_profit: Decimal = Decimal("0")
    transactions: list[FinanceTransaction] = field(default_factory=list)

    def recomputed_profit(self) -> Decimal:
        return sum((t.amount for t in self.transactions), Decimal("0"))


@dataclass(frozen=True)
class CommissionBreakdown:
    """Split of an assignment fee at payout.

    Invariant: commission + writer_payout == fee
    """
    fee: Decimal
    rate: Decimal
    commission: Decimal
    writer_payout: Decimal
    waived: bool


@dataclass
class DepositRequest:
    request_id: str
    user_id: str
    amount: Decimal
    state: RequestState = RequestState.PENDING
    created_utc: Optional[datetime] = None
    resolved_utc: Optional[datetime] = None


@dataclass
class WithdrawalRequest:
    request_id: str
    user_id: str
    amount: Decimal
    bank_details: dict[str, Any] = field(default_factory=dict)
    state: RequestState = RequestState.PENDING
    requested_utc: Optional[datetime] = None
    resolved_utc: Optional[datetime] = None
    service_charge: Optional[Decimal] = None
    payout_amount: Optional[Decimal] = None
    wallet_balance_at_request: Optional[Decimal] = None
