"""Assignment aggregate — status, fee fields, stages, and bids.

The assignment is the central document. Bids and stages live inside it
as maps keyed by stable identifiers (writer id, stage number), never by
list position.

Status lifecycle:
    (new) → OPEN | BIDDING | PENDING_WRITER_ACCEPTANCE
    BIDDING → OPEN                      (deadline elapses / seeker stops)
    OPEN → CLAIMED                      (writer claims / seeker selects bid)
    PENDING_WRITER_ACCEPTANCE → CLAIMED | REJECTED
    REJECTED → OPEN | PENDING_WRITER_ACCEPTANCE
    CLAIMED → IN_PROGRESS               (escrow funded)
    IN_PROGRESS → SUBMITTED → COMPLETED (flat)
    IN_PROGRESS → COMPLETED             (staged, after stage 3)

Invariants:
- fee is set only when fee_agreed is true or a stage has been paid.
- stage.completed ⇒ stage.submitted ⇒ stage.paid.
- a writer in given_up_by or withdrawn_bids never becomes writer_id again
  and never bids again on this assignment.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional

from assignhub.models.user import EducationLevel


class AssignmentStatus(str, enum.Enum):
    OPEN = "open"
    BIDDING = "bidding"
    PENDING_WRITER_ACCEPTANCE = "pending-writer-acceptance"
    CLAIMED = "claimed"
    IN_PROGRESS = "in-progress"
    SUBMITTED = "submitted"
    COMPLETED = "completed"
    REJECTED = "rejected"


@dataclass
class Stage:
    """One slot of a staged payment plan."""
    percentage: Decimal = Decimal("0")
    amount: Decimal = Decimal("0")
    paid: bool = False
    submitted: bool = False
    completed: bool = False
    submission_name: Optional[str] = None


@dataclass
class Bid:
    """A writer's fee + proposal during the bidding phase.

    edit_count starts at 0 and increments on every edit, never on the
    first submission.
    """
    writer_id: str
    writer_name: str
    fee: Decimal
    proposal: str
    edit_count: int = 0
    created_utc: Optional[datetime] = None
    updated_utc: Optional[datetime] = None


@dataclass
class Assignment:
    assignment_id: str
    title: str
    seeker_id: str
    seeker_name: str
    education_level: EducationLevel
    subject: str = ""
    description: str = ""
    status: AssignmentStatus = AssignmentStatus.OPEN
    writer_id: Optional[str] = None
    writer_name: Optional[str] = None
    # Fee negotiation and escrow
    proposed_fee: Optional[Decimal] = None
    fee: Optional[Decimal] = None
    fee_agreed: bool = False
    payment_confirmed: bool = False
    paid_out: bool = False
    is_staged_payment: bool = False
    current_stage: Optional[int] = None
    stages: dict[int, Stage] = field(default_factory=dict)
    # Bidding
    is_bidding: bool = False
    bidding_deadline: Optional[datetime] = None
    budget: Optional[Decimal] = None
    bids: dict[str, Bid] = field(default_factory=dict)
    withdrawn_bids: set[str] = field(default_factory=set)
    given_up_by: set[str] = field(default_factory=set)
    # Delivery and feedback
    submission_name: Optional[str] = None
    rating: Optional[int] = None
    review: Optional[str] = None
    review_submitted: bool = False
    admin_feedback_submitted: bool = False
    created_utc: Optional[datetime] = None
    updated_utc: Optional[datetime] = None

    def has_bid(self, writer_id: str) -> bool:
        return writer_id in self.bids

    def bidding_range(self) -> Optional[tuple[Decimal, Decimal]]:
        """Return (lowest, highest) bid fee, or None without bids."""
        if not self.bids:
            return None
        fees = [b.fee for b in self.bids.values()]
        return min(fees), max(fees)

    def total_paid_stage_amount(self) -> Decimal:
        return sum(
            (s.amount for s in self.stages.values() if s.paid), Decimal("0")
        )

    def stage_percentage_total(self) -> Decimal:
        return sum((s.percentage for s in self.stages.values()), Decimal("0"))

    def is_barred(self, writer_id: str) -> bool:
        """True when the writer gave this assignment up or withdrew a bid."""
        return writer_id in self.given_up_by or writer_id in self.withdrawn_bids
