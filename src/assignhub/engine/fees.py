"""Fee negotiation — flat fee or staged percentage proposals by the writer.

Two modes, chosen by the first proposal and frozen by the first payment:

Flat: the writer proposes a fee any number of times while fee_agreed is
false. Each proposal overwrites proposed_fee. The seeker accepts by
funding escrow (see escrow.EscrowEngine.accept_and_pay).

Staged: the writer proposes fee + percentage for stage 1, which seeds
the remaining stages as zeroed placeholders. Stage N > 1 may be proposed
only once stage N-1 is completed and stage N is not yet paid. The stage
amount is total_fee × percentage / 100, rounded to cents.

The engine mutates the Assignment it is given. Persisting it is the
caller's job, inside the same store transaction that read it.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any

from assignhub.errors import Forbidden, PreconditionFailed, ValidationError
from assignhub.ledger.primitives import quantize, to_amount
from assignhub.models.assignment import Assignment, AssignmentStatus, Stage
from assignhub.policy.resolver import PolicyResolver

HUNDRED = Decimal("100")


class FeeNegotiationEngine:
    """Applies writer fee proposals to an assignment.

    Usage:
        fees = FeeNegotiationEngine(resolver)
        fees.propose_flat_fee(assignment, "writer-1", Decimal("1500"))
        fees.propose_stage(assignment, "writer-1", 1, Decimal("1000"), Decimal("10"))
    """

    def __init__(self, resolver: PolicyResolver) -> None:
        self._resolver = resolver

    def propose_flat_fee(
        self, assignment: Assignment, writer_id: str, fee: Any,
    ) -> Decimal:
        value = to_amount(fee, "Fee")
        self._require_writer(assignment, writer_id)
        if assignment.payment_confirmed or assignment.fee_agreed:
            raise PreconditionFailed(
                "The fee for this assignment has already been agreed and paid"
            )
        if assignment.status != AssignmentStatus.CLAIMED:
            raise PreconditionFailed(
                f"Cannot propose a fee on an assignment that is "
                f"{assignment.status.value}"
            )
        assignment.proposed_fee = value
        assignment.fee_agreed = False
        assignment.fee = None
        # Switching back from an unpaid staged proposal drops its plan
        assignment.is_staged_payment = False
        assignment.stages = {}
        assignment.current_stage = None
        return value

    def propose_stage(
        self,
        assignment: Assignment,
        writer_id: str,
        stage: int,
        total_fee: Any,
        percentage: Any,
    ) -> Stage:
        """Propose the amount for one stage of a staged payment plan."""
        fee = to_amount(total_fee, "Fee")
        pct = self.validate_percentage(percentage)
        stage_count = self._resolver.stage_count()
        if not isinstance(stage, int) or isinstance(stage, bool) or not 1 <= stage <= stage_count:
            raise ValidationError(f"Stage must be between 1 and {stage_count}")
        amount = quantize(fee * pct / HUNDRED)
        if amount <= Decimal("0"):
            raise ValidationError("Stage amount rounds to zero; increase the fee")

        self._require_writer(assignment, writer_id)

        if stage == 1:
            if assignment.payment_confirmed:
                raise PreconditionFailed(
                    "Payment has already been made; the payment plan cannot change"
                )
            if assignment.status != AssignmentStatus.CLAIMED:
                raise PreconditionFailed(
                    f"Cannot propose stage 1 on an assignment that is "
                    f"{assignment.status.value}"
                )
            assignment.is_staged_payment = True
            assignment.current_stage = 1
            assignment.stages = {n: Stage() for n in range(1, stage_count + 1)}
            assignment.proposed_fee = None
            assignment.fee_agreed = False
            assignment.fee = None
        else:
            if not assignment.is_staged_payment:
                raise PreconditionFailed(
                    "This assignment is not on a staged payment plan"
                )
            if assignment.status != AssignmentStatus.IN_PROGRESS:
                raise PreconditionFailed(
                    f"Cannot propose stage {stage} on an assignment that is "
                    f"{assignment.status.value}"
                )
            previous = assignment.stages.get(stage - 1)
            if previous is None or not previous.completed:
                raise PreconditionFailed(
                    f"Stage {stage - 1} must be completed before proposing stage {stage}"
                )
            if assignment.stages[stage].paid:
                raise PreconditionFailed(f"Stage {stage} has already been paid")

        if self._resolver.enforce_stage_percentage_cap():
            others = sum(
                (s.percentage for n, s in assignment.stages.items() if n != stage),
                Decimal("0"),
            )
            if others + pct > HUNDRED:
                raise PreconditionFailed(
                    f"Stage percentages would total {others + pct}%, above 100%"
                )

        slot = assignment.stages[stage]
        slot.percentage = pct
        slot.amount = amount
        return slot

    @staticmethod
    def validate_percentage(percentage: Any) -> Decimal:
        pct = to_amount(percentage, "Percentage", whole_cents=False)
        if pct > HUNDRED:
            raise ValidationError("Percentage must be at most 100")
        return pct

    @staticmethod
    def _require_writer(assignment: Assignment, writer_id: str) -> None:
        if assignment.writer_id != writer_id:
            raise Forbidden("Only the assigned writer can propose a fee")
