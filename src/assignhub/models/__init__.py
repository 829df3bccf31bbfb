"""Core data models for the assignment marketplace."""

from assignhub.models.assignment import (
    Assignment,
    AssignmentStatus,
    Bid,
    Stage,
)
from assignhub.models.finance import (
    CommissionBreakdown,
    DepositRequest,
    FinanceSummary,
    FinanceTransaction,
    RequestState,
    TransactionType,
    WithdrawalRequest,
)
from assignhub.models.promotion import PromotionStatus
from assignhub.models.report import CancellationReport
from assignhub.models.user import AccountStatus, EducationLevel, User, UserRole

__all__ = [
    "AccountStatus",
    "Assignment",
    "AssignmentStatus",
    "Bid",
    "CancellationReport",
    "CommissionBreakdown",
    "DepositRequest",
    "EducationLevel",
    "FinanceSummary",
    "FinanceTransaction",
    "PromotionStatus",
    "RequestState",
    "Stage",
    "TransactionType",
    "User",
    "UserRole",
    "WithdrawalRequest",
]
