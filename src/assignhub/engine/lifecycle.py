"""Writer attachment lifecycle — claim, direct requests, give-up, cancel.

These operations decide who holds an assignment before money moves.
Every status change goes through AssignmentStateMachine; this module
adds the ownership checks and the field resets that go with each event.

A writer who declines, gives up, or is cancelled out of an assignment
lands in given_up_by and can never hold it again.
"""

from __future__ import annotations

from typing import Optional

from assignhub.engine.state_machine import AssignmentEvent, AssignmentStateMachine
from assignhub.errors import Forbidden, PreconditionFailed
from assignhub.models.assignment import Assignment, AssignmentStatus
from assignhub.models.user import User, UserRole

_SM = AssignmentStateMachine


def _clear_negotiation(assignment: Assignment) -> None:
    """Drop the current writer and every unpaid fee field."""
    assignment.writer_id = None
    assignment.writer_name = None
    assignment.proposed_fee = None
    assignment.fee = None
    assignment.fee_agreed = False
    assignment.is_staged_payment = False
    assignment.current_stage = None
    assignment.stages = {}


class AssignmentLifecycle:
    """Ownership-checked transitions that attach and detach writers.

    Usage:
        lifecycle = AssignmentLifecycle()
        lifecycle.claim(assignment, writer)
        purged = lifecycle.give_up(assignment, writer.user_id)
    """

    def claim(self, assignment: Assignment, writer: User) -> None:
        """First-come claim of an open assignment."""
        if writer.role != UserRole.WRITER:
            raise Forbidden("Only writers can claim assignments")
        if writer.user_id in assignment.given_up_by:
            raise PreconditionFailed(
                "You gave up this assignment and cannot claim it again"
            )
        if writer.user_id in assignment.withdrawn_bids:
            raise PreconditionFailed(
                "You withdrew from this assignment and cannot claim it"
            )
        if assignment.is_bidding:
            raise PreconditionFailed(
                "This assignment was put up for bidding; the seeker selects a writer"
            )
        if writer.education_level != assignment.education_level:
            raise PreconditionFailed(
                f"This assignment is for {assignment.education_level.value} writers"
            )
        _SM.apply_transition(assignment, AssignmentEvent.CLAIM, UserRole.WRITER)
        assignment.writer_id = writer.user_id
        assignment.writer_name = writer.name

    def request_writer(self, assignment: Assignment, writer: User) -> None:
        """Attach a specific writer to a new or rejected assignment."""
        if writer.role != UserRole.WRITER:
            raise PreconditionFailed(f"{writer.name} is not a writer")
        if not writer.is_active:
            raise PreconditionFailed(f"{writer.name} cannot take assignments right now")
        if assignment.is_barred(writer.user_id):
            raise PreconditionFailed(
                f"{writer.name} has already declined or given up this assignment"
            )
        assignment.writer_id = writer.user_id
        assignment.writer_name = writer.name

    def accept_request(self, assignment: Assignment, writer_id: str) -> None:
        self._require_writer(assignment, writer_id)
        _SM.apply_transition(assignment, AssignmentEvent.ACCEPT_REQUEST, UserRole.WRITER)

    def decline_request(self, assignment: Assignment, writer_id: str) -> None:
        self._require_writer(assignment, writer_id)
        _SM.apply_transition(assignment, AssignmentEvent.DECLINE_REQUEST, UserRole.WRITER)
        assignment.given_up_by.add(writer_id)
        _clear_negotiation(assignment)

    def re_request(
        self, assignment: Assignment, seeker_id: str, writer: User,
    ) -> None:
        """Offer a rejected assignment directly to another writer."""
        self._require_seeker(assignment, seeker_id)
        errors = _SM.validate_transition(assignment, AssignmentEvent.RE_REQUEST, UserRole.SEEKER)
        if errors:
            raise PreconditionFailed(errors[0])
        self.request_writer(assignment, writer)
        _SM.apply_transition(assignment, AssignmentEvent.RE_REQUEST, UserRole.SEEKER)
        assignment.proposed_fee = None
        assignment.fee = None
        assignment.fee_agreed = False
        assignment.is_staged_payment = False
        assignment.current_stage = None
        assignment.stages = {}

    def make_public(self, assignment: Assignment, seeker_id: str) -> None:
        """Open the assignment to every eligible writer. No-op when already open."""
        self._require_seeker(assignment, seeker_id)
        _SM.apply_transition(assignment, AssignmentEvent.MAKE_PUBLIC, UserRole.SEEKER)
        if assignment.writer_id is not None:
            _clear_negotiation(assignment)

    def give_up(self, assignment: Assignment, writer_id: str) -> str:
        """Writer relinquishes an unpaid assignment. Returns their id.

        A writer selected through bidding cannot walk away; the seeker
        has to cancel instead.
        """
        self._require_writer(assignment, writer_id)
        if assignment.is_bidding:
            raise PreconditionFailed(
                "A writer selected through bidding cannot give up the assignment; "
                "ask the seeker to cancel it"
            )
        return self.release(assignment, writer_id)

    def release(self, assignment: Assignment, writer_id: str) -> str:
        """Detach the writer from unpaid work, bidding or not.

        Used when the writer's account is removed.
        """
        self._require_writer(assignment, writer_id)
        _SM.apply_transition(assignment, AssignmentEvent.GIVE_UP, UserRole.WRITER)
        assignment.given_up_by.add(writer_id)
        _clear_negotiation(assignment)
        return writer_id

    def cancel(self, assignment: Assignment, seeker_id: str) -> Optional[str]:
        """Seeker pulls an unpaid assignment back to open.

        Returns the id of the writer who was removed, or None.
        """
        self._require_seeker(assignment, seeker_id)
        if (
            assignment.is_bidding
            and assignment.writer_id is None
            and assignment.status in (AssignmentStatus.BIDDING, AssignmentStatus.OPEN)
        ):
            raise PreconditionFailed(
                "No writer has been selected; reopen without bidding or delete "
                "the assignment instead"
            )
        previous = assignment.writer_id
        _SM.apply_transition(assignment, AssignmentEvent.CANCEL, UserRole.SEEKER)
        if previous is not None:
            assignment.given_up_by.add(previous)
        _clear_negotiation(assignment)
        return previous

    def check_editable(self, assignment: Assignment, seeker_id: str) -> None:
        """Details can change only while no writer has taken the assignment."""
        self._require_seeker(assignment, seeker_id)
        if assignment.status not in (AssignmentStatus.OPEN, AssignmentStatus.BIDDING):
            raise PreconditionFailed(
                "Only open or bidding assignments can be edited"
            )

    def check_deletable(self, assignment: Assignment, seeker_id: str) -> None:
        self._require_seeker(assignment, seeker_id)
        if assignment.payment_confirmed:
            raise PreconditionFailed(
                "Cannot delete a paid assignment. Please contact support."
            )
        if assignment.writer_id is not None:
            raise PreconditionFailed(
                "A writer is attached; cancel the assignment before deleting it"
            )

    @staticmethod
    def _require_seeker(assignment: Assignment, seeker_id: str) -> None:
        if assignment.seeker_id != seeker_id:
            raise Forbidden("Only the seeker who posted this assignment can do that")

    @staticmethod
    def _require_writer(assignment: Assignment, writer_id: str) -> None:
        if assignment.writer_id != writer_id:
            raise Forbidden("Only the assigned writer can do that")
