"""Ledger subsystem — wallet primitives and the platform finance book."""

from assignhub.ledger.finance import FinanceBook
from assignhub.ledger.primitives import Ledger, display_balance, quantize, to_amount

__all__ = ["FinanceBook", "Ledger", "display_balance", "quantize", "to_amount"]
