"""Referral promotion — lifetime commission waiver for top referrers.

When a referred user is verified, their referrer's counter goes up by
one. A referrer who reaches referrals_needed while winner slots remain
and the promotion is still running wins has_zero_service_charge.

Each referred user is credited at most once (referral_credited). An
unknown referral code is marked credited too, so it is never retried.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from assignhub.models.promotion import PromotionStatus
from assignhub.models.user import User
from assignhub.persistence.document_store import (
    PROMOTIONS,
    REFERRAL_PROMOTION_ID,
    USERS,
    StoreTransaction,
)
from assignhub.policy.resolver import PolicyResolver


@dataclass(frozen=True)
class ReferralOutcome:
    referrer_id: Optional[str]
    referrer_name: Optional[str]
    referral_count: int
    won: bool
    promotion_full: bool


class ReferralProgram:
    def __init__(self, resolver: PolicyResolver) -> None:
        self._resolver = resolver

    def credit_verified_user(
        self,
        txn: StoreTransaction,
        user_id: str,
        now: Optional[datetime] = None,
    ) -> Optional[ReferralOutcome]:
        """Credit the referrer of a newly verified user.

        Returns None when there is nothing to credit.
        """
        if now is None:
            now = datetime.now(timezone.utc)
        user: User = txn.require(USERS, user_id, label="User")
        if not user.referred_by or user.referral_credited:
            return None

        code = user.referred_by
        matches = txn.query(USERS, lambda u: u.referral_code == code)
        user.referral_credited = True
        txn.put(USERS, user.user_id, user)
        if not matches:
            return ReferralOutcome(None, None, 0, won=False, promotion_full=False)

        referrer: User = matches[0]
        referrer.referral_count += 1
        promo = self._resolver.referral_promotion()
        standing: PromotionStatus = (
            txn.get(PROMOTIONS, REFERRAL_PROMOTION_ID) or PromotionStatus()
        )
        won = (
            referrer.referral_count >= promo.referrals_needed
            and standing.winner_count < promo.max_winners
            and now < promo.end_date
            and not referrer.has_zero_service_charge
        )
        if won:
            referrer.has_zero_service_charge = True
            standing.winner_count += 1
            txn.put(PROMOTIONS, REFERRAL_PROMOTION_ID, standing)
        txn.put(USERS, referrer.user_id, referrer)
        return ReferralOutcome(
            referrer_id=referrer.user_id,
            referrer_name=referrer.name,
            referral_count=referrer.referral_count,
            won=won,
            promotion_full=won and standing.winner_count >= promo.max_winners,
        )
