"""Policy resolver — loads marketplace_params.json and exposes every
business rule as a typed method call.

No magic. No defaults. If a value is missing from the config, it fails loud.
Commission and withdrawal rates are policy, not code: they live here.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any


@dataclass(frozen=True)
class ReferralPromotion:
    """Resolved referral-challenge settings."""
    referrals_needed: int
    max_winners: int
    end_date: datetime


class PolicyResolver:
    """Loads and resolves all marketplace policy.

    Usage:
        resolver = PolicyResolver.from_config_dir(Path("config"))
        rate = resolver.commission_rate()
        limit = resolver.bid_edit_limit()
    """

    def __init__(self, params: dict[str, Any]) -> None:
        self._params = params
        self._validate()

    @classmethod
    def from_config_dir(cls, config_dir: Path) -> PolicyResolver:
        """Load from the canonical config directory."""
        return cls(_load_json(config_dir / "marketplace_params.json"))

    def _validate(self) -> None:
        if "version" not in self._params:
            raise ValueError("marketplace_params.json missing version")
        for rate in (self.commission_rate(), self.withdrawal_fee_rate()):
            if not Decimal("0") <= rate < Decimal("1"):
                raise ValueError(f"Rate out of range [0, 1): {rate}")
        if self.bid_edit_limit() < 0:
            raise ValueError("bid_edit_limit must be non-negative")
        if self.stage_count() < 1:
            raise ValueError("stage_count must be at least 1")
        if self.transaction_max_attempts() < 1:
            raise ValueError("transaction_max_attempts must be at least 1")

    @property
    def version(self) -> str:
        return str(self._params["version"])

    def currency(self) -> str:
        return self._params["currency"]

    # ------------------------------------------------------------------
    # Money
    # ------------------------------------------------------------------

    def commission_rate(self) -> Decimal:
        """Platform cut of an assignment fee at payout."""
        return Decimal(str(self._params["commission"]["commission_rate"]))

    def withdrawal_fee_rate(self) -> Decimal:
        """Service charge withheld from an approved withdrawal."""
        return Decimal(str(self._params["withdrawal"]["withdrawal_fee_rate"]))

    # ------------------------------------------------------------------
    # Bidding and staged payment
    # ------------------------------------------------------------------

    def bid_edit_limit(self) -> int:
        return int(self._params["bidding"]["bid_edit_limit"])

    def proposal_section_min_chars(self) -> int:
        return int(self._params["bidding"]["proposal_section_min_chars"])

    def max_bidding_duration_hours(self) -> int:
        return int(self._params["bidding"]["max_bidding_duration_hours"])

    def stage_count(self) -> int:
        return int(self._params["staged_payment"]["stage_count"])

    def enforce_stage_percentage_cap(self) -> bool:
        """Whether stage percentages may not sum above 100."""
        return bool(self._params["staged_payment"]["enforce_stage_percentage_cap"])

    # ------------------------------------------------------------------
    # Ratings, reports, transactions, promotions
    # ------------------------------------------------------------------

    def rating_bounds(self) -> tuple[int, int]:
        r = self._params["rating"]
        return int(r["rating_min"]), int(r["rating_max"])

    def cancellation_reason_min_chars(self) -> int:
        return int(self._params["reports"]["cancellation_reason_min_chars"])

    def transaction_max_attempts(self) -> int:
        return int(self._params["transactions"]["transaction_max_attempts"])

    def referral_promotion(self) -> ReferralPromotion:
        rp = self._params["referral_promotion"]
        end = datetime.strptime(rp["end_date"], "%Y-%m-%dT%H:%M:%SZ").replace(
            tzinfo=timezone.utc,
        )
        return ReferralPromotion(
            referrals_needed=int(rp["referrals_needed"]),
            max_winners=int(rp["max_winners"]),
            end_date=end,
        )


def _load_json(path: Path) -> dict[str, Any]:
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)
