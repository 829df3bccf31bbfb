"""Assignment state machine — the only place status changes are decided.

Transitions are keyed by (current status, event). Each event names the
roles allowed to trigger it. Fail-closed: anything not in the table is
rejected. There are no implicit transitions.

    (new)       create_open / create_bidding / create_direct
    open        claim, select_writer, make_public, cancel, reopen
    bidding     close_bidding, reopen
    pending     accept_request, decline_request, cancel
    rejected    make_public, re_request, cancel
    claimed     select_writer, fund_escrow, give_up, cancel
    in-progress fund_escrow (staged), submit_work, complete_staged, give_up
    submitted   submit_work (replace file), mark_complete

Money guard: once payment_confirmed is true the assignment can no longer
be cancelled, given up, re-offered or reassigned. Those disputes go to
support, never through this table.
"""

from __future__ import annotations

import enum
from typing import Optional

from assignhub.errors import Forbidden, PreconditionFailed
from assignhub.models.assignment import Assignment, AssignmentStatus
from assignhub.models.user import UserRole

S = AssignmentStatus


class AssignmentEvent(str, enum.Enum):
    CREATE_OPEN = "create_open"
    CREATE_BIDDING = "create_bidding"
    CREATE_DIRECT = "create_direct"
    CLAIM = "claim"
    CLOSE_BIDDING = "close_bidding"
    SELECT_WRITER = "select_writer"
    ACCEPT_REQUEST = "accept_request"
    DECLINE_REQUEST = "decline_request"
    MAKE_PUBLIC = "make_public"
    RE_REQUEST = "re_request"
    FUND_ESCROW = "fund_escrow"
    SUBMIT_WORK = "submit_work"
    COMPLETE_STAGED = "complete_staged"
    MARK_COMPLETE = "mark_complete"
    GIVE_UP = "give_up"
    CANCEL = "cancel"
    REOPEN = "reopen"


E = AssignmentEvent

# Valid transitions: {(from_status, event): to_status}
_TRANSITIONS: dict[tuple[AssignmentStatus, AssignmentEvent], AssignmentStatus] = {
    (S.OPEN, E.CLAIM): S.CLAIMED,
    (S.BIDDING, E.CLOSE_BIDDING): S.OPEN,
    (S.OPEN, E.SELECT_WRITER): S.CLAIMED,
    (S.CLAIMED, E.SELECT_WRITER): S.CLAIMED,
    (S.PENDING_WRITER_ACCEPTANCE, E.ACCEPT_REQUEST): S.CLAIMED,
    (S.PENDING_WRITER_ACCEPTANCE, E.DECLINE_REQUEST): S.REJECTED,
    (S.REJECTED, E.MAKE_PUBLIC): S.OPEN,
    (S.OPEN, E.MAKE_PUBLIC): S.OPEN,
    (S.REJECTED, E.RE_REQUEST): S.PENDING_WRITER_ACCEPTANCE,
    (S.CLAIMED, E.FUND_ESCROW): S.IN_PROGRESS,
    (S.IN_PROGRESS, E.FUND_ESCROW): S.IN_PROGRESS,
    (S.IN_PROGRESS, E.SUBMIT_WORK): S.SUBMITTED,
    (S.SUBMITTED, E.SUBMIT_WORK): S.SUBMITTED,
    (S.IN_PROGRESS, E.COMPLETE_STAGED): S.COMPLETED,
    (S.SUBMITTED, E.MARK_COMPLETE): S.COMPLETED,
    (S.CLAIMED, E.GIVE_UP): S.OPEN,
    (S.IN_PROGRESS, E.GIVE_UP): S.OPEN,
    (S.OPEN, E.CANCEL): S.OPEN,
    (S.PENDING_WRITER_ACCEPTANCE, E.CANCEL): S.OPEN,
    (S.CLAIMED, E.CANCEL): S.OPEN,
    (S.REJECTED, E.CANCEL): S.OPEN,
    (S.BIDDING, E.REOPEN): S.OPEN,
    (S.OPEN, E.REOPEN): S.OPEN,
}

_INITIAL: dict[AssignmentEvent, AssignmentStatus] = {
    E.CREATE_OPEN: S.OPEN,
    E.CREATE_BIDDING: S.BIDDING,
    E.CREATE_DIRECT: S.PENDING_WRITER_ACCEPTANCE,
}

# None in a role set means the system itself (deadline sweep) may act.
_ACTORS: dict[AssignmentEvent, frozenset[Optional[UserRole]]] = {
    E.CREATE_OPEN: frozenset({UserRole.SEEKER}),
    E.CREATE_BIDDING: frozenset({UserRole.SEEKER}),
    E.CREATE_DIRECT: frozenset({UserRole.SEEKER}),
    E.CLAIM: frozenset({UserRole.WRITER}),
    E.CLOSE_BIDDING: frozenset({UserRole.SEEKER, None}),
    E.SELECT_WRITER: frozenset({UserRole.SEEKER}),
    E.ACCEPT_REQUEST: frozenset({UserRole.WRITER}),
    E.DECLINE_REQUEST: frozenset({UserRole.WRITER}),
    E.MAKE_PUBLIC: frozenset({UserRole.SEEKER}),
    E.RE_REQUEST: frozenset({UserRole.SEEKER}),
    E.FUND_ESCROW: frozenset({UserRole.SEEKER}),
    E.SUBMIT_WORK: frozenset({UserRole.WRITER}),
    E.COMPLETE_STAGED: frozenset({UserRole.SEEKER}),
    E.MARK_COMPLETE: frozenset({UserRole.SEEKER}),
    E.GIVE_UP: frozenset({UserRole.WRITER}),
    E.CANCEL: frozenset({UserRole.SEEKER}),
    E.REOPEN: frozenset({UserRole.SEEKER}),
}

# Events that would walk away from escrowed money
_BLOCKED_AFTER_PAYMENT: dict[AssignmentEvent, str] = {
    E.CANCEL: "Cannot cancel a paid assignment. Please contact support.",
    E.GIVE_UP: "Cannot give up a paid assignment. Please contact support.",
    E.SELECT_WRITER: "Cannot change the writer of a paid assignment. Please contact support.",
    E.RE_REQUEST: "Cannot re-offer a paid assignment. Please contact support.",
    E.MAKE_PUBLIC: "Cannot make a paid assignment public. Please contact support.",
    E.REOPEN: "Cannot reopen a paid assignment. Please contact support.",
}


class AssignmentStateMachine:
    """Validates and applies assignment status transitions.

    Pure computation: checks status, role and the payment guard only.
    Ownership, escrow preconditions and side effects belong to the
    engines and the service layer.
    """

    @staticmethod
    def initial_status(event: AssignmentEvent) -> AssignmentStatus:
        status = _INITIAL.get(event)
        if status is None:
            raise PreconditionFailed(f"{event.value} is not a creation event")
        return status

    @staticmethod
    def target(
        current: AssignmentStatus, event: AssignmentEvent,
    ) -> Optional[AssignmentStatus]:
        """Return the status event leads to from current, or None."""
        return _TRANSITIONS.get((current, event))

    @staticmethod
    def validate_transition(
        assignment: Assignment,
        event: AssignmentEvent,
        role: Optional[UserRole],
    ) -> list[str]:
        """Check if a transition is valid. Returns errors (empty = OK)."""
        errors: list[str] = []
        if role not in _ACTORS.get(event, frozenset()):
            who = role.value if role else "system"
            errors.append(f"A {who} cannot {event.value.replace('_', ' ')} an assignment")
            return errors

        if assignment.payment_confirmed and event in _BLOCKED_AFTER_PAYMENT:
            errors.append(_BLOCKED_AFTER_PAYMENT[event])
            return errors

        if (assignment.status, event) not in _TRANSITIONS:
            allowed = sorted(
                e.value for (s, e) in _TRANSITIONS if s == assignment.status
            )
            errors.append(
                f"Cannot {event.value.replace('_', ' ')} an assignment that is "
                f"{assignment.status.value}. Allowed from "
                f"{assignment.status.value}: [{', '.join(allowed)}]"
            )
        return errors

    @staticmethod
    def apply_transition(
        assignment: Assignment,
        event: AssignmentEvent,
        role: Optional[UserRole],
    ) -> AssignmentStatus:
        """Validate and apply a transition; raise on failure.

        Forbidden for a wrong role, PreconditionFailed otherwise.
        Returns the previous status.
        """
        if role not in _ACTORS.get(event, frozenset()):
            errors = AssignmentStateMachine.validate_transition(assignment, event, role)
            raise Forbidden(errors[0])
        errors = AssignmentStateMachine.validate_transition(assignment, event, role)
        if errors:
            raise PreconditionFailed(errors[0])
        previous = assignment.status
        assignment.status = _TRANSITIONS[(assignment.status, event)]
        return previous

    @staticmethod
    def is_terminal(status: AssignmentStatus) -> bool:
        """COMPLETED is the only terminal status."""
        return status == S.COMPLETED

    @staticmethod
    def valid_events(status: AssignmentStatus) -> set[AssignmentEvent]:
        """Return the events that may fire from status."""
        return {e for (s, e) in _TRANSITIONS if s == status}
