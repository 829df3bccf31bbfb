"""Marketplace policy — configuration-backed business rules."""

from assignhub.policy.resolver import PolicyResolver, ReferralPromotion

__all__ = ["PolicyResolver", "ReferralPromotion"]
