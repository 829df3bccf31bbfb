"""Bidding subsystem — time-boxed bid collection and writer selection.

Bids live inside the assignment keyed by writer id, so "does this writer
already have a bid" is a dict lookup. A bid is edited in place:
edit_count is 0 on first submission, +1 on every edit, and edits stop at
the configured limit.

Withdrawal deletes the bid and puts the writer in withdrawn_bids for
good. Neither a withdrawn writer nor one who gave the assignment up may
bid on it again.

Deadlines are soft: expire_if_due() flips an expired BIDDING assignment
to OPEN and is safe to call on every read. Bids stay visible so the
seeker can still select a writer.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Optional

from assignhub.engine.state_machine import AssignmentEvent, AssignmentStateMachine
from assignhub.errors import Forbidden, PreconditionFailed, ValidationError
from assignhub.ledger.primitives import to_amount
from assignhub.models.assignment import Assignment, AssignmentStatus, Bid
from assignhub.models.user import User, UserRole
from assignhub.policy.resolver import PolicyResolver

_SM = AssignmentStateMachine

ABOUT_ME_HEADING = "About Me"
QUALIFICATIONS_HEADING = "Qualifications to Claim This Work"
WORK_PLAN_HEADING = "Work Plan & Timely Delivery"


@dataclass(frozen=True)
class ProposalSections:
    """The three structured parts of a bid proposal."""
    about_me: str
    qualifications: str
    work_plan: str

    def render(self) -> str:
        return (
            f"{ABOUT_ME_HEADING}\n{self.about_me.strip()}\n\n"
            f"{QUALIFICATIONS_HEADING}\n{self.qualifications.strip()}\n\n"
            f"{WORK_PLAN_HEADING}\n{self.work_plan.strip()}"
        )


class BiddingEngine:
    """Bid collection, editing, withdrawal and selection.

    Usage:
        bidding = BiddingEngine(resolver)
        bidding.start(assignment, timedelta(hours=24), budget=None, now=now)
        bid, edited = bidding.submit_bid(assignment, writer, Decimal("900"), sections, now)
    """

    def __init__(self, resolver: PolicyResolver) -> None:
        self._resolver = resolver

    def start(
        self,
        assignment: Assignment,
        duration: timedelta,
        budget: Optional[Any] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """Put a freshly posted assignment into the bidding phase."""
        if now is None:
            now = datetime.now(timezone.utc)
        self.validate_duration(duration)
        assignment.is_bidding = True
        assignment.bidding_deadline = now + duration
        assignment.budget = to_amount(budget, "Budget") if budget is not None else None

    def validate_duration(self, duration: timedelta) -> None:
        if duration <= timedelta(0):
            raise ValidationError("Bidding duration must be positive")
        limit = timedelta(hours=self._resolver.max_bidding_duration_hours())
        if duration > limit:
            raise ValidationError(
                f"Bidding duration may not exceed {self._resolver.max_bidding_duration_hours()} hours"
            )

    def validate_sections(self, sections: ProposalSections) -> ProposalSections:
        minimum = self._resolver.proposal_section_min_chars()
        for label, text in (
            (ABOUT_ME_HEADING, sections.about_me),
            (QUALIFICATIONS_HEADING, sections.qualifications),
            (WORK_PLAN_HEADING, sections.work_plan),
        ):
            if len((text or "").strip()) < minimum:
                raise ValidationError(
                    f"'{label}' must be at least {minimum} characters"
                )
        return sections

    # ------------------------------------------------------------------
    # Bids
    # ------------------------------------------------------------------

    def submit_bid(
        self,
        assignment: Assignment,
        writer: User,
        fee: Any,
        sections: ProposalSections,
        now: Optional[datetime] = None,
    ) -> tuple[Bid, bool]:
        """Create or edit the writer's bid. Returns (bid, edited)."""
        if now is None:
            now = datetime.now(timezone.utc)
        value = to_amount(fee, "Fee")
        self.validate_sections(sections)
        if writer.role != UserRole.WRITER:
            raise Forbidden("Only writers can bid on assignments")
        self.expire_if_due(assignment, now)
        if assignment.status != AssignmentStatus.BIDDING:
            raise PreconditionFailed("Bidding for this assignment has closed")
        if writer.user_id in assignment.withdrawn_bids:
            raise PreconditionFailed(
                "You have withdrawn your bid and cannot bid again"
            )
        if writer.user_id in assignment.given_up_by:
            raise PreconditionFailed(
                "You gave up this assignment and cannot bid on it again"
            )

        existing = assignment.bids.get(writer.user_id)
        if existing is not None:
            limit = self._resolver.bid_edit_limit()
            if existing.edit_count >= limit:
                raise PreconditionFailed(
                    f"Edit limit reached: a bid can be edited at most {limit} times"
                )
            existing.fee = value
            existing.proposal = sections.render()
            existing.edit_count += 1
            existing.updated_utc = now
            return existing, True

        bid = Bid(
            writer_id=writer.user_id,
            writer_name=writer.name,
            fee=value,
            proposal=sections.render(),
            edit_count=0,
            created_utc=now,
            updated_utc=now,
        )
        assignment.bids[writer.user_id] = bid
        return bid, False

    def withdraw_bid(self, assignment: Assignment, writer_id: str) -> Bid:
        """Remove the writer's bid and bar them from bidding again."""
        bid = assignment.bids.get(writer_id)
        if bid is None:
            raise PreconditionFailed("You have no bid on this assignment")
        if assignment.writer_id == writer_id:
            raise PreconditionFailed(
                "Your bid has been selected; give up the assignment instead"
            )
        del assignment.bids[writer_id]
        assignment.withdrawn_bids.add(writer_id)
        return bid

    @staticmethod
    def bidding_range(assignment: Assignment) -> Optional[tuple[Decimal, Decimal]]:
        return assignment.bidding_range()

    # ------------------------------------------------------------------
    # Deadline and closing
    # ------------------------------------------------------------------

    @staticmethod
    def is_expired(assignment: Assignment, now: datetime) -> bool:
        return (
            assignment.status == AssignmentStatus.BIDDING
            and assignment.bidding_deadline is not None
            and assignment.bidding_deadline <= now
        )

    def expire_if_due(self, assignment: Assignment, now: datetime) -> bool:
        """Close bidding whose deadline has passed. Returns True if changed."""
        if not self.is_expired(assignment, now):
            return False
        _SM.apply_transition(assignment, AssignmentEvent.CLOSE_BIDDING, None)
        return True

    def stop_bidding(
        self, assignment: Assignment, seeker_id: str, now: Optional[datetime] = None,
    ) -> None:
        """Seeker closes bidding early; the deadline becomes now."""
        if now is None:
            now = datetime.now(timezone.utc)
        self._require_seeker(assignment, seeker_id)
        _SM.apply_transition(assignment, AssignmentEvent.CLOSE_BIDDING, UserRole.SEEKER)
        assignment.bidding_deadline = now

    def select_writer(
        self, assignment: Assignment, seeker_id: str, bidder_id: str,
    ) -> Optional[str]:
        """Move the chosen bidder into the writer slot.

        Returns the id of a different writer who was attached before, whose
        chat history must now be purged, or None.
        """
        self._require_seeker(assignment, seeker_id)
        if not assignment.is_bidding:
            raise PreconditionFailed("This assignment did not go through bidding")
        bid = assignment.bids.get(bidder_id)
        if bid is None:
            raise PreconditionFailed("That writer has no bid on this assignment")
        if assignment.is_barred(bidder_id):
            raise PreconditionFailed("That writer can no longer take this assignment")
        previous = assignment.writer_id
        _SM.apply_transition(assignment, AssignmentEvent.SELECT_WRITER, UserRole.SEEKER)
        assignment.writer_id = bid.writer_id
        assignment.writer_name = bid.writer_name
        assignment.proposed_fee = bid.fee
        assignment.fee_agreed = False
        assignment.fee = None
        if previous is not None and previous != bidder_id:
            return previous
        return None

    def reopen_without_bidding(self, assignment: Assignment, seeker_id: str) -> None:
        """Abandon bidding: first-come-first-served, bids discarded."""
        self._require_seeker(assignment, seeker_id)
        if not assignment.is_bidding:
            raise PreconditionFailed("This assignment is not in bidding")
        if assignment.writer_id is not None:
            raise PreconditionFailed(
                "A writer has been selected; cancel the assignment instead"
            )
        _SM.apply_transition(assignment, AssignmentEvent.REOPEN, UserRole.SEEKER)
        assignment.is_bidding = False
        assignment.bidding_deadline = None
        assignment.budget = None
        assignment.bids = {}

    @staticmethod
    def _require_seeker(assignment: Assignment, seeker_id: str) -> None:
        if assignment.seeker_id != seeker_id:
            raise Forbidden("Only the seeker who posted this assignment can do that")
