"""Referral promotion standing — how many winner slots have been awarded."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class PromotionStatus:
    winner_count: int = 0
