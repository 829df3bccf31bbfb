"""Finance book — platform profit and the transaction log behind it.

total_profit and the transaction list live in one document and are
always changed together inside the caller's transaction, so the running
total can never drift from the log it summarizes.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional
from uuid import uuid4

from assignhub.errors import NotFound, ValidationError
from assignhub.ledger.primitives import to_amount
from assignhub.models.finance import (
    FinanceSummary,
    FinanceTransaction,
    TransactionType,
)
from assignhub.persistence.document_store import (
    FINANCE,
    FINANCE_SUMMARY_ID,
    StoreTransaction,
)


class FinanceBook:
    """Records commission and manual profit adjustments.

    Usage:
        book = FinanceBook()
        store.run(lambda txn: book.record_commission(txn, Decimal("100"), "A-1", "..."))
        summary = store.run(book.load)
    """

    def load(self, txn: StoreTransaction) -> FinanceSummary:
        summary = txn.get(FINANCE, FINANCE_SUMMARY_ID)
        if summary is None:
            summary = FinanceSummary()
        return summary

    def record_commission(
        self,
        txn: StoreTransaction,
        amount: Any,
        assignment_id: str,
        description: str,
        now: Optional[datetime] = None,
    ) -> FinanceTransaction:
        """Increment profit and append a commission entry."""
        return self._append(
            txn, to_amount(amount, "Commission"), TransactionType.COMMISSION,
            description, assignment_id, now,
        )

    def manual_adjustment(
        self,
        txn: StoreTransaction,
        amount: Any,
        reason: str,
        credit: bool = True,
        now: Optional[datetime] = None,
    ) -> FinanceTransaction:
        """Admin correction of profit. Debits are stored as negative amounts."""
        if not reason or not reason.strip():
            raise ValidationError("A reason is required for a manual adjustment")
        value = to_amount(amount)
        signed = value if credit else -value
        return self._append(
            txn, signed, TransactionType.MANUAL, reason.strip(), None, now,
        )

    def delete_transaction(
        self, txn: StoreTransaction, transaction_id: str,
    ) -> FinanceTransaction:
        """Remove an entry and revert its effect on total_profit."""
        summary = self.load(txn)
        for i, entry in enumerate(summary.transactions):
            if entry.transaction_id == transaction_id:
                del summary.transactions[i]
                summary.total_profit -= entry.amount
                txn.put(FINANCE, FINANCE_SUMMARY_ID, summary)
                return entry
        raise NotFound(f"Finance transaction not found: {transaction_id}")

    @staticmethod
    def newest_first(summary: FinanceSummary) -> list[FinanceTransaction]:
        return sorted(
            summary.transactions, key=lambda t: t.timestamp_utc, reverse=True,
        )

    def _append(
        self,
        txn: StoreTransaction,
        amount: Decimal,
        kind: TransactionType,
        description: str,
        assignment_id: Optional[str],
        now: Optional[datetime],
    ) -> FinanceTransaction:
        if now is None:
            now = datetime.now(timezone.utc)
        summary = self.load(txn)
        entry = FinanceTransaction(
            transaction_id=f"ftx_{uuid4().hex[:12]}",
            amount=amount,
            transaction_type=kind,
            description=description,
            timestamp_utc=now,
            assignment_id=assignment_id,
        )
        summary.transactions.append(entry)
        summary.total_profit += amount
        txn.put(FINANCE, FINANCE_SUMMARY_ID, summary)
        return entry
