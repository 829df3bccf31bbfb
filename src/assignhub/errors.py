"""Error taxonomy for the marketplace core.

Engines raise these; the service layer converts them into failed
ServiceResults carrying the message and a stable error code. Every
message is written for the actor who triggered the action.

    ValidationError     — malformed input, rejected before any transaction
    PreconditionFailed  — action attempted in the wrong state
    InsufficientFunds   — wallet too low at transaction time
    Conflict            — concurrent modification, retried by the store
    Forbidden           — actor lacks the role or ownership
    NotFound            — referenced document does not exist
"""

from __future__ import annotations

from decimal import Decimal


class MarketplaceError(Exception):
    """Base class. ``code`` is stable and safe to expose to clients."""
    code = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(MarketplaceError):
    code = "validation"


class PreconditionFailed(MarketplaceError):
    code = "precondition_failed"


class Forbidden(MarketplaceError):
    code = "forbidden"


class NotFound(MarketplaceError):
    code = "not_found"


class Conflict(MarketplaceError):
    code = "conflict"


class InsufficientFunds(MarketplaceError):
    code = "insufficient_funds"

    def __init__(self, required: Decimal, available: Decimal) -> None:
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient balance: required LKR {required:.2f}, "
            f"available LKR {available:.2f}. Please deposit funds first."
        )
