#!/usr/bin/env python3
"""AssignHub invariant checks against the marketplace policy config."""

import json
import sys
from datetime import datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
PARAMS_PATH = ROOT / "config" / "marketplace_params.json"


def load_json(path: Path) -> dict:
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


def check_rate(section: dict, key: str, errors: list[str]) -> None:
    """Rates are decimal strings in [0, 1)."""
    raw = section.get(key)
    if not isinstance(raw, str):
        errors.append(f"{key} must be a decimal string, got {raw!r}")
        return
    try:
        rate = Decimal(raw)
    except InvalidOperation:
        errors.append(f"{key} is not a decimal: {raw!r}")
        return
    if not (Decimal("0") <= rate < Decimal("1")):
        errors.append(f"{key} must be in [0, 1), got {raw}")


def check(params_path: Path = PARAMS_PATH) -> int:
    params = load_json(params_path)
    errors: list[str] = []

    if not params.get("version"):
        errors.append("version is required")
    if params.get("currency") != "LKR":
        errors.append(f"currency must be LKR, got {params.get('currency')!r}")

    # --- Money invariants ---
    check_rate(params["commission"], "commission_rate", errors)
    check_rate(params["withdrawal"], "withdrawal_fee_rate", errors)

    # --- Bidding invariants ---
    bidding = params["bidding"]
    if bidding["bid_edit_limit"] < 0:
        errors.append("bid_edit_limit must be >= 0")
    if bidding["proposal_section_min_chars"] < 0:
        errors.append("proposal_section_min_chars must be >= 0")
    if bidding["max_bidding_duration_hours"] <= 0:
        errors.append("max_bidding_duration_hours must be > 0")

    # --- Staged payment invariants ---
    staged = params["staged_payment"]
    if staged["stage_count"] < 2:
        errors.append("stage_count must be >= 2 (a plan has intermediate stages)")
    if not isinstance(staged["enforce_stage_percentage_cap"], bool):
        errors.append("enforce_stage_percentage_cap must be a boolean")

    # --- Rating invariants ---
    rating = params["rating"]
    if rating["rating_min"] < 1:
        errors.append("rating_min must be >= 1")
    if rating["rating_max"] <= rating["rating_min"]:
        errors.append("rating_max must be greater than rating_min")

    # --- Report invariants ---
    if params["reports"]["cancellation_reason_min_chars"] < 1:
        errors.append("cancellation_reason_min_chars must be >= 1")

    # --- Transaction invariants ---
    if params["transactions"]["transaction_max_attempts"] < 1:
        errors.append("transaction_max_attempts must be >= 1")

    # --- Referral promotion invariants ---
    promo = params["referral_promotion"]
    if promo["referrals_needed"] < 1:
        errors.append("referrals_needed must be >= 1")
    if promo["max_winners"] < 0:
        errors.append("max_winners must be >= 0")
    try:
        datetime.strptime(promo["end_date"], "%Y-%m-%dT%H:%M:%SZ")
    except ValueError:
        errors.append(f"end_date must be YYYY-MM-DDTHH:MM:SSZ, got {promo['end_date']!r}")

    if errors:
        print("Invariant check failed:")
        for err in errors:
            print(f"- {err}")
        return 1

    print("Invariant check passed.")
    return 0


if __name__ == "__main__":
    raise SystemExit(check(Path(sys.argv[1]) if len(sys.argv) > 1 else PARAMS_PATH))
