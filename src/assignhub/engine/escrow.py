"""Escrow & payment engine — seeker wallet → held fee → writer wallet.

Funding (accept_and_pay) debits the seeker and flips the assignment's
payment flags inside one store transaction. The debit is attempted
before the assignment is touched, so InsufficientFunds leaves nothing
changed.

Release (settle) happens once, on completion:
    commission    → finance book (zero when the writer's charge is waived)
    writer_payout → writer wallet (fee − commission)
paid_out guards against a second release.

Staged plans fund and deliver stage by stage:
    propose → pay → submit → complete, then the next stage unlocks.
The last stage is never completed on its own; it is completed by settle,
which also requires the seeker's rating.

Admin-approved withdrawals settle here too: the full amount leaves the
wallet and the withdrawal fee is withheld from the payout.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from assignhub.engine.state_machine import AssignmentEvent, AssignmentStateMachine
from assignhub.errors import Forbidden, PreconditionFailed, ValidationError
from assignhub.ledger.finance import FinanceBook
from assignhub.ledger.primitives import Ledger, quantize
from assignhub.models.assignment import Assignment, AssignmentStatus, Stage
from assignhub.models.finance import CommissionBreakdown, RequestState, WithdrawalRequest
from assignhub.models.user import User, UserRole
from assignhub.persistence.document_store import USERS, StoreTransaction
from assignhub.policy.resolver import PolicyResolver

_SM = AssignmentStateMachine


class EscrowEngine:
    """Funds, delivers and releases assignment payments.

    Usage:
        escrow = EscrowEngine(resolver)
        store.run(lambda txn: escrow.accept_and_pay(txn, assignment, "seeker-1"))
    """

    def __init__(
        self,
        resolver: PolicyResolver,
        ledger: Optional[Ledger] = None,
        finance: Optional[FinanceBook] = None,
    ) -> None:
        self._resolver = resolver
        self._ledger = ledger or Ledger()
        self._finance = finance or FinanceBook()

    # ------------------------------------------------------------------
    # Funding
    # ------------------------------------------------------------------

    def accept_and_pay(
        self,
        txn: StoreTransaction,
        assignment: Assignment,
        seeker_id: str,
        stage: Optional[int] = None,
    ) -> Decimal:
        """Accept the proposed fee (or stage amount) and move it into escrow.

        Returns the amount debited from the seeker.
        """
        self._require_seeker(assignment, seeker_id)
        if assignment.writer_id is None:
            raise PreconditionFailed("No writer is assigned to this assignment")

        if assignment.is_staged_payment:
            if stage is None:
                stage = assignment.current_stage
            amount = self._check_stage_payable(assignment, stage)
        else:
            if stage is not None:
                raise ValidationError("This assignment is not on a staged payment plan")
            if assignment.fee_agreed or assignment.payment_confirmed:
                raise PreconditionFailed("The fee for this assignment has already been paid")
            if assignment.proposed_fee is None:
                raise PreconditionFailed("The writer has not proposed a fee yet")
            amount = assignment.proposed_fee

        errors = _SM.validate_transition(assignment, AssignmentEvent.FUND_ESCROW, UserRole.SEEKER)
        if errors:
            raise PreconditionFailed(errors[0])

        self._ledger.debit_if_sufficient(txn, seeker_id, amount)

        _SM.apply_transition(assignment, AssignmentEvent.FUND_ESCROW, UserRole.SEEKER)
        assignment.payment_confirmed = True
        if assignment.is_staged_payment:
            assignment.stages[stage].paid = True
            assignment.fee = assignment.total_paid_stage_amount()
            # Points at the next stage that can be proposed and funded
            assignment.current_stage = stage + 1
        else:
            assignment.fee_agreed = True
            assignment.proposed_fee = None
            assignment.fee = amount
        return amount

    def _check_stage_payable(self, assignment: Assignment, stage: Optional[int]) -> Decimal:
        if stage is None or stage not in assignment.stages:
            raise ValidationError(f"Unknown stage: {stage}")
        if stage != assignment.current_stage:
            raise PreconditionFailed(
                f"Stage {stage} is not the current stage "
                f"(current: {assignment.current_stage})"
            )
        slot = assignment.stages[stage]
        if slot.paid:
            raise PreconditionFailed(f"Stage {stage} has already been paid")
        if slot.amount <= Decimal("0"):
            raise PreconditionFailed(f"No fee has been proposed for stage {stage} yet")
        previous = assignment.stages.get(stage - 1)
        if previous is not None and not previous.completed:
            raise PreconditionFailed(
                f"Stage {stage - 1} must be completed before paying stage {stage}"
            )
        return slot.amount

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def submit_work(
        self, assignment: Assignment, writer_id: str, submission_name: str,
    ) -> None:
        """Deliver the final file of a flat-fee assignment."""
        self._require_writer(assignment, writer_id)
        if assignment.is_staged_payment:
            raise PreconditionFailed("Staged assignments are delivered stage by stage")
        _SM.apply_transition(assignment, AssignmentEvent.SUBMIT_WORK, UserRole.WRITER)
        assignment.submission_name = submission_name

    def submit_stage(
        self,
        assignment: Assignment,
        writer_id: str,
        stage: int,
        submission_name: str,
    ) -> None:
        self._require_writer(assignment, writer_id)
        slot = self._staged_slot(assignment, stage)
        if not slot.paid:
            raise PreconditionFailed(f"Stage {stage} has not been paid yet")
        if slot.submitted:
            raise PreconditionFailed(f"Work for stage {stage} has already been submitted")
        slot.submitted = True
        slot.submission_name = submission_name

    def complete_stage(
        self, assignment: Assignment, seeker_id: str, stage: int,
    ) -> None:
        """Approve a submitted intermediate stage and unlock the next one."""
        self._require_seeker(assignment, seeker_id)
        slot = self._staged_slot(assignment, stage)
        if stage == self._resolver.stage_count():
            raise PreconditionFailed(
                "The final stage is completed by marking the assignment complete "
                "with a rating"
            )
        if not slot.submitted:
            raise PreconditionFailed(f"Work for stage {stage} has not been submitted yet")
        if slot.completed:
            raise PreconditionFailed(f"Stage {stage} is already complete")
        slot.completed = True
        assignment.current_stage = stage + 1

    def _staged_slot(self, assignment: Assignment, stage: int) -> Stage:
        if not assignment.is_staged_payment:
            raise PreconditionFailed("This assignment is not on a staged payment plan")
        if assignment.status != AssignmentStatus.IN_PROGRESS:
            raise PreconditionFailed(
                f"Stages can only change while the assignment is in progress "
                f"(currently {assignment.status.value})"
            )
        slot = assignment.stages.get(stage)
        if slot is None:
            raise ValidationError(f"Unknown stage: {stage}")
        return slot

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    def compute_commission(self, fee: Decimal, waived: bool) -> CommissionBreakdown:
        """Split fee into platform commission and writer payout."""
        rate = Decimal("0") if waived else self._resolver.commission_rate()
        commission = quantize(fee * rate)
        return CommissionBreakdown(
            fee=fee,
            rate=rate,
            commission=commission,
            writer_payout=fee - commission,
            waived=waived,
        )

    def settle(
        self,
        txn: StoreTransaction,
        assignment: Assignment,
        seeker_id: str,
        rating: int,
        review: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> CommissionBreakdown:
        """Complete the assignment and release the escrowed fee.

        Pays the writer, records commission, folds the rating into the
        writer's average and marks the assignment completed + paid_out,
        all within txn.
        """
        if now is None:
            now = datetime.now(timezone.utc)
        self._require_seeker(assignment, seeker_id)
        low, high = self._resolver.rating_bounds()
        if isinstance(rating, bool) or not isinstance(rating, int) or not low <= rating <= high:
            raise ValidationError(f"Rating must be a whole number from {low} to {high}")
        if assignment.paid_out:
            raise PreconditionFailed("This assignment has already been paid out")

        if assignment.is_staged_payment:
            event = AssignmentEvent.COMPLETE_STAGED
            final = self._resolver.stage_count()
            last = assignment.stages.get(final)
            if last is None or not last.submitted:
                raise PreconditionFailed(
                    f"Work for stage {final} has not been submitted yet"
                )
        else:
            event = AssignmentEvent.MARK_COMPLETE
        errors = _SM.validate_transition(assignment, event, UserRole.SEEKER)
        if errors:
            raise PreconditionFailed(errors[0])
        if not assignment.payment_confirmed or not assignment.fee:
            raise PreconditionFailed("No payment is held for this assignment")

        writer: User = txn.require(USERS, assignment.writer_id, label="Writer")
        breakdown = self.compute_commission(assignment.fee, writer.has_zero_service_charge)
        if breakdown.writer_payout > Decimal("0"):
            self._ledger.credit(txn, writer.user_id, breakdown.writer_payout)
        if breakdown.commission > Decimal("0"):
            self._finance.record_commission(
                txn,
                breakdown.commission,
                assignment.assignment_id,
                f"Service charge for assignment: {assignment.title[:30]}",
                now=now,
            )

        old_count = writer.rating_count
        old_average = writer.average_rating if old_count else 0.0
        writer.average_rating = (old_average * old_count + rating) / (old_count + 1)
        writer.rating_count = old_count + 1
        txn.put(USERS, writer.user_id, writer)

        _SM.apply_transition(assignment, event, UserRole.SEEKER)
        assignment.paid_out = True
        if assignment.is_staged_payment:
            assignment.stages[self._resolver.stage_count()].completed = True
        assignment.rating = rating
        assignment.review = review.strip() if review and review.strip() else None
        assignment.review_submitted = True
        return breakdown

    # ------------------------------------------------------------------
    # Withdrawals
    # ------------------------------------------------------------------

    def settle_withdrawal(
        self,
        txn: StoreTransaction,
        request: WithdrawalRequest,
        now: Optional[datetime] = None,
    ) -> WithdrawalRequest:
        """Debit the full amount; record the service charge and net payout."""
        if now is None:
            now = datetime.now(timezone.utc)
        if request.state != RequestState.PENDING:
            raise PreconditionFailed(
                f"Withdrawal request is already {request.state.value}"
            )
        rate = self._resolver.withdrawal_fee_rate()
        service_charge = quantize(request.amount * rate)
        self._ledger.debit_if_sufficient(txn, request.user_id, request.amount)
        request.service_charge = service_charge
        request.payout_amount = request.amount - service_charge
        request.state = RequestState.COMPLETED
        request.resolved_utc = now
        return request

    # ------------------------------------------------------------------
    # Ownership
    # ------------------------------------------------------------------

    @staticmethod
    def _require_seeker(assignment: Assignment, seeker_id: str) -> None:
        if assignment.seeker_id != seeker_id:
            raise Forbidden("Only the seeker who posted this assignment can do that")

    @staticmethod
    def _require_writer(assignment: Assignment, writer_id: str) -> None:
        if assignment.writer_id != writer_id:
            raise Forbidden("Only the assigned writer can do that")
