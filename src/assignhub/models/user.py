"""User directory models — identity, role, wallet, writer reputation.

The wallet balance is mutated only through the ledger primitives and
never goes below zero.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional


class UserRole(str, enum.Enum):
    SEEKER = "seeker"
    WRITER = "writer"
    TEACHER = "teacher"
    ADMIN = "admin"


class AccountStatus(str, enum.Enum):
    """Account standing. REMOVED is a soft delete by an admin."""
    ACTIVE = "active"
    BANNED = "banned"
    REMOVED = "removed"


class EducationLevel(str, enum.Enum):
    OL = "O/L"
    AL = "A/L"
    UNIVERSITY = "University"


@dataclass
class User:
    """A registered marketplace user.

    Writer-only fields (education level, rating, referral counters,
    zero-service-charge flag) are left at their defaults for other roles.
    """
    user_id: str
    name: str
    role: UserRole
    wallet_balance: Decimal = Decimal("0")
    status: AccountStatus = AccountStatus.ACTIVE
    education_level: Optional[EducationLevel] = None
    average_rating: float = 0.0
    rating_count: int = 0
    referral_code: Optional[str] = None
    referred_by: Optional[str] = None
    referral_count: int = 0
    referral_credited: bool = False
    has_zero_service_charge: bool = False
    created_utc: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE
