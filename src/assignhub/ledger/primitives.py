"""Ledger primitives — atomic wallet balance adjustments.

Every primitive takes the enclosing StoreTransaction. There is no way to
move money outside a transaction: paying a fee debits the seeker and
flips the assignment's payment flags in the same commit, so a crash can
never leave money deducted with no escrow recorded.

Amounts must be positive Decimals. Balances never go below zero.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

from assignhub.errors import InsufficientFunds, ValidationError
from assignhub.models.user import User
from assignhub.persistence.document_store import USERS, StoreTransaction

CENT = Decimal("0.01")


def to_amount(value: Any, label: str = "Amount", whole_cents: bool = True) -> Decimal:
    """Coerce input to a positive Decimal or raise ValidationError.

    Floats are converted through str() so 0.1 stays 0.1. Money must be
    whole cents; pass whole_cents=False for plain quantities such as
    percentages.
    """
    if isinstance(value, bool):
        raise ValidationError(f"{label} must be a number")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{label} must be a number, got {value!r}")
    if not amount.is_finite():
        raise ValidationError(f"{label} must be a finite number")
    if whole_cents and amount.normalize().as_tuple().exponent < -2:
        raise ValidationError(f"{label} cannot include fractions of a cent")
    if amount <= Decimal("0"):
        raise ValidationError(f"{label} must be positive")
    return amount


def quantize(amount: Decimal) -> Decimal:
    """Round to whole cents (used whenever a rate is applied)."""
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def display_balance(amount: Decimal) -> str:
    """Two-decimal presentation of a balance. Display only."""
    return f"{quantize(amount):.2f}"


class Ledger:
    """Wallet primitives over the user collection.

    Usage:
        ledger = Ledger()
        store.run(lambda txn: ledger.debit_if_sufficient(txn, "seeker-1", fee))
    """

    def credit(self, txn: StoreTransaction, user_id: str, amount: Any) -> Decimal:
        """Add amount to the user's wallet. Returns the new balance."""
        value = to_amount(amount)
        user = self._user(txn, user_id)
        user.wallet_balance = user.wallet_balance + value
        txn.put(USERS, user_id, user)
        return user.wallet_balance

    def debit(self, txn: StoreTransaction, user_id: str, amount: Any) -> Decimal:
        """Remove amount from the user's wallet. Returns the new balance.

        The balance may not go negative; a shortfall raises
        InsufficientFunds exactly like debit_if_sufficient.
        """
        return self.debit_if_sufficient(txn, user_id, amount)

    def debit_if_sufficient(
        self, txn: StoreTransaction, user_id: str, amount: Any,
    ) -> Decimal:
        """Debit only if the freshly read balance covers amount."""
        value = to_amount(amount)
        user = self._user(txn, user_id)
        if user.wallet_balance < value:
            raise InsufficientFunds(required=value, available=user.wallet_balance)
        user.wallet_balance = user.wallet_balance - value
        txn.put(USERS, user_id, user)
        return user.wallet_balance

    def balance(self, txn: StoreTransaction, user_id: str) -> Decimal:
        return self._user(txn, user_id).wallet_balance

    @staticmethod
    def _user(txn: StoreTransaction, user_id: str) -> User:
        return txn.require(USERS, user_id, label="User")
