"""AssignHub service — unified facade for the marketplace core.

This is the primary interface for programmatic access to the core.
It orchestrates all subsystems:
- Users (registration, bans, removal, referral credit, wallet corrections)
- Assignment lifecycle (post, edit, claim, direct requests, give-up, cancel)
- Fee negotiation (flat and staged proposals)
- Escrow (accept-and-pay, delivery, completion and payout)
- Bidding (bids, withdrawal, selection, deadline expiry)
- Wallet requests (deposits, withdrawals)
- Finance book (profit summary, manual adjustments)
- Cancellation reports filed by either party for admins

Every action follows the same path:
1. Validate raw input (ValidationError, before any transaction).
2. Run the read-validate-write closure in a retried store transaction.
   Any MarketplaceError aborts it with nothing applied.
3. Append an audit event. The state is already committed, so a failing
   audit append is logged and reported as a warning.
4. Send notifications best-effort.

All operations return a ServiceResult. Engines raise; only this layer
turns errors into results.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Optional, TypeVar
from uuid import uuid4

from assignhub.engine.bidding import BiddingEngine, ProposalSections
from assignhub.engine.escrow import EscrowEngine
from assignhub.engine.fees import FeeNegotiationEngine
from assignhub.engine.lifecycle import AssignmentLifecycle
from assignhub.engine.referral import ReferralProgram
from assignhub.engine.state_machine import AssignmentEvent, AssignmentStateMachine
from assignhub.engine.wallet import WalletDesk
from assignhub.errors import (
    Forbidden,
    MarketplaceError,
    NotFound,
    PreconditionFailed,
    ValidationError,
)
from assignhub.ledger.finance import FinanceBook
from assignhub.ledger.primitives import Ledger, display_balance, to_amount
from assignhub.models.assignment import Assignment, AssignmentStatus
from assignhub.models.finance import DepositRequest, RequestState, WithdrawalRequest
from assignhub.models.report import CancellationReport
from assignhub.models.user import AccountStatus, EducationLevel, User, UserRole
from assignhub.persistence.document_store import (
    ASSIGNMENTS,
    DEPOSITS,
    REPORTS,
    USERS,
    WITHDRAWALS,
    DocumentStore,
    StoreTransaction,
)
from assignhub.persistence.event_log import EventKind, EventLog, EventRecord
from assignhub.policy.resolver import PolicyResolver
from assignhub.ports import ChatArchive, InMemoryChatArchive, NotificationSink

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class ServiceResult:
    """Result of a service operation."""
    success: bool
    errors: list[str] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)
    error_code: Optional[str] = None


def _link(assignment_id: str) -> str:
    return f"/assignment/{assignment_id}"


def _short(title: str) -> str:
    return title if len(title) <= 20 else f"{title[:20]}..."


class MarketplaceService:
    """Unified marketplace facade.

    Usage:
        resolver = PolicyResolver.from_config_dir(config_dir)
        service = MarketplaceService(resolver)

        service.register_user("s1", "Nimali", UserRole.SEEKER)
        service.register_user("w1", "Kasun", UserRole.WRITER,
                              education_level=EducationLevel.AL)
        service.admin_credit_wallet("admin", "s1", Decimal("2000"))

        result = service.post_assignment("s1", "Physics essay", EducationLevel.AL)
        aid = result.data["assignment"].assignment_id
        service.claim(aid, "w1")
        service.propose_fee(aid, "w1", Decimal("1500"))
        service.accept_and_pay(aid, "s1")
        service.submit_work(aid, "w1", "essay.pdf")
        service.mark_complete(aid, "s1", rating=5)

    Persistence (optional):
        store = DocumentStore(data_dir / "state.json")
        log = EventLog(data_dir / "events.jsonl")
        service = MarketplaceService(resolver, store=store, event_log=log)
    """

    def __init__(
        self,
        resolver: PolicyResolver,
        store: Optional[DocumentStore] = None,
        notifier: Optional[NotificationSink] = None,
        chat: Optional[ChatArchive] = None,
        event_log: Optional[EventLog] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._resolver = resolver
        self._store = store or DocumentStore(
            max_attempts=resolver.transaction_max_attempts(),
        )
        self._notifier = notifier
        self._chat = chat or InMemoryChatArchive()
        self._event_log = event_log
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self._ledger = Ledger()
        self._finance = FinanceBook()
        self._fees = FeeNegotiationEngine(resolver)
        self._escrow = EscrowEngine(resolver, self._ledger, self._finance)
        self._bidding = BiddingEngine(resolver)
        self._lifecycle = AssignmentLifecycle()
        self._wallet = WalletDesk(self._escrow, self._ledger)
        self._referrals = ReferralProgram(resolver)

        # Initialize counter from persisted log to avoid ID collision on restart
        self._event_counter = event_log.count if event_log is not None else 0

    @property
    def store(self) -> DocumentStore:
        return self._store

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def register_user(
        self,
        user_id: str,
        name: str,
        role: UserRole,
        education_level: Optional[EducationLevel] = None,
        referral_code: Optional[str] = None,
        referred_by: Optional[str] = None,
    ) -> ServiceResult:
        """Create a user with an empty wallet."""
        try:
            role = _parse_enum(UserRole, role, "role")
            level = (
                _parse_enum(EducationLevel, education_level, "education level")
                if education_level is not None else None
            )
            if not user_id or not user_id.strip():
                raise ValidationError("User ID is required")
            if not name or not name.strip():
                raise ValidationError("Name is required")
            if role == UserRole.WRITER and level is None:
                raise ValidationError("Writers must have an education level")
        except ValidationError as e:
            return self._failure(e)

        now = self._now()

        def apply(txn: StoreTransaction) -> User:
            if txn.get(USERS, user_id) is not None:
                raise PreconditionFailed(f"User already exists: {user_id}")
            user = User(
                user_id=user_id,
                name=name.strip(),
                role=role,
                education_level=level,
                referral_code=referral_code or f"AH-{uuid4().hex[:8].upper()}",
                referred_by=referred_by,
                created_utc=now,
            )
            txn.put(USERS, user_id, user)
            return user

        user, failed = self._run(apply)
        if failed:
            return failed
        warnings = self._audit(EventKind.USER_REGISTERED, user_id, {
            "user_id": user_id, "role": role.value,
        })
        logger.info("Registered %s %s", role.value, user_id)
        return self._ok({"user": user}, warnings)

    def get_user(self, user_id: str) -> ServiceResult:
        user = self._store.snapshot(USERS, user_id)
        if user is None:
            return self._failure(NotFound(f"User not found: {user_id}"))
        return ServiceResult(success=True, data={
            "user": user,
            "wallet_balance": display_balance(user.wallet_balance),
        })

    def ban_user(self, admin_id: str, user_id: str) -> ServiceResult:
        return self._set_user_status(admin_id, user_id, AccountStatus.BANNED)

    def unban_user(self, admin_id: str, user_id: str) -> ServiceResult:
        return self._set_user_status(admin_id, user_id, AccountStatus.ACTIVE)

    def _set_user_status(
        self, admin_id: str, user_id: str, status: AccountStatus,
    ) -> ServiceResult:
        def apply(txn: StoreTransaction) -> User:
            self._require_admin(txn, admin_id)
            user: User = txn.require(USERS, user_id, label="User")
            if user.status == AccountStatus.REMOVED:
                raise PreconditionFailed("This account has been removed")
            user.status = status
            txn.put(USERS, user_id, user)
            return user

        user, failed = self._run(apply)
        if failed:
            return failed
        warnings = self._audit(EventKind.USER_STATUS_CHANGED, admin_id, {
            "user_id": user_id, "status": status.value,
        })
        logger.info("User %s is now %s", user_id, status.value)
        return self._ok({"user": user}, warnings)

    def remove_user(self, admin_id: str, user_id: str) -> ServiceResult:
        """Soft-remove a user and detach them from unpaid work.

        Their unpaid seeker assignments are deleted, unpaid assignments
        they hold as writer are released, and their pending wallet
        requests are rejected. Paid assignments are left for support.
        """
        now = self._now()

        def apply(txn: StoreTransaction) -> dict[str, Any]:
            self._require_admin(txn, admin_id)
            user: User = txn.require(USERS, user_id, label="User")
            if user.role == UserRole.ADMIN:
                raise Forbidden("Administrators cannot be removed")
            user.status = AccountStatus.REMOVED
            txn.put(USERS, user_id, user)

            deleted: list[str] = []
            released: list[str] = []
            for a in txn.query(ASSIGNMENTS, lambda d: d.seeker_id == user_id):
                if not a.payment_confirmed:
                    txn.delete(ASSIGNMENTS, a.assignment_id)
                    deleted.append(a.assignment_id)
            for a in txn.query(ASSIGNMENTS, lambda d: d.writer_id == user_id):
                if a.payment_confirmed or a.assignment_id in deleted:
                    continue
                if a.status == AssignmentStatus.PENDING_WRITER_ACCEPTANCE:
                    self._lifecycle.decline_request(a, user_id)
                else:
                    self._lifecycle.release(a, user_id)
                self._save(txn, a, now)
                released.append(a.assignment_id)
            for a in txn.query(ASSIGNMENTS, lambda d: user_id in d.bids):
                if a.assignment_id in deleted:
                    continue
                del a.bids[user_id]
                self._save(txn, a, now)

            rejected = 0
            for req in txn.query(DEPOSITS, lambda r: r.user_id == user_id):
                if req.state == RequestState.PENDING:
                    self._wallet.reject_deposit(req, now)
                    txn.put(DEPOSITS, req.request_id, req)
                    rejected += 1
            for req in txn.query(WITHDRAWALS, lambda r: r.user_id == user_id):
                if req.state == RequestState.PENDING:
                    self._wallet.reject_withdrawal(req, now)
                    txn.put(WITHDRAWALS, req.request_id, req)
                    rejected += 1
            return {
                "user": user,
                "deleted_assignments": deleted,
                "released_assignments": released,
                "rejected_requests": rejected,
            }

        data, failed = self._run(apply)
        if failed:
            return failed
        warnings = self._audit(EventKind.USER_REMOVED, admin_id, {
            "user_id": user_id,
            "deleted_assignments": data["deleted_assignments"],
            "released_assignments": data["released_assignments"],
        })
        for aid in data["deleted_assignments"] + data["released_assignments"]:
            warnings += self._purge_chat(aid, admin_id, "user removed")
        logger.info(
            "Removed user %s (%d assignments deleted, %d released)",
            user_id, len(data["deleted_assignments"]),
            len(data["released_assignments"]),
        )
        return self._ok(data, warnings)

    def verify_user(self, user_id: str) -> ServiceResult:
        """Account verified: credit the referrer of this user, once."""
        now = self._now()
        outcome, failed = self._run(
            lambda txn: self._referrals.credit_verified_user(txn, user_id, now),
        )
        if failed:
            return failed
        if outcome is None:
            return ServiceResult(success=True, data={"credited": False})
        if outcome.referrer_id is None:
            logger.warning("Referral code of %s matches no user", user_id)
            return ServiceResult(success=True, data={"credited": False})

        warnings = self._audit(EventKind.REFERRAL_CREDITED, user_id, {
            "user_id": user_id,
            "referrer_id": outcome.referrer_id,
            "referral_count": outcome.referral_count,
            "won": outcome.won,
        })
        if outcome.won:
            self._notify(
                outcome.referrer_id,
                "Congratulations! You have completed the referral challenge "
                "and earned a 0% service charge for life!",
                "/promotions",
            )
            self._notify_admins(
                f"{outcome.referrer_name} has won the referral promotion!",
                f"/admin/support/{outcome.referrer_id}",
            )
            if outcome.promotion_full:
                self._notify_admins(
                    "The referral promotion has ended as all winner spots have been filled.",
                    "/admin",
                )
        return self._ok({"credited": True, "outcome": outcome}, warnings)

    def admin_credit_wallet(
        self, admin_id: str, user_id: str, amount: Any,
    ) -> ServiceResult:
        return self._adjust_wallet(admin_id, user_id, amount, credit=True)

    def admin_debit_wallet(
        self, admin_id: str, user_id: str, amount: Any,
    ) -> ServiceResult:
        return self._adjust_wallet(admin_id, user_id, amount, credit=False)

    def _adjust_wallet(
        self, admin_id: str, user_id: str, amount: Any, credit: bool,
    ) -> ServiceResult:
        try:
            value = to_amount(amount)
        except ValidationError as e:
            return self._failure(e)

        def apply(txn: StoreTransaction) -> Decimal:
            self._require_admin(txn, admin_id)
            return self._wallet.adjust(txn, user_id, value, credit)

        balance, failed = self._run(apply)
        if failed:
            return failed
        signed = value if credit else -value
        warnings = self._audit(EventKind.WALLET_ADJUSTED, admin_id, {
            "user_id": user_id, "amount": str(signed),
        })
        verb = "credited to" if credit else "debited from"
        self._notify(user_id, f"LKR {value:.2f} was {verb} your wallet by an administrator.", "/profile")
        logger.info("Admin %s adjusted wallet of %s by %s", admin_id, user_id, signed)
        return self._ok({"wallet_balance": balance}, warnings)

    # ------------------------------------------------------------------
    # Posting and reading assignments
    # ------------------------------------------------------------------

    def post_assignment(
        self,
        seeker_id: str,
        title: str,
        education_level: EducationLevel,
        subject: str = "",
        description: str = "",
        writer_id: Optional[str] = None,
        bidding_duration: Optional[timedelta] = None,
        budget: Optional[Any] = None,
        assignment_id: Optional[str] = None,
    ) -> ServiceResult:
        """Post an assignment as open, a direct request, or for bidding.

        writer_id makes it a direct request; bidding_duration puts it up
        for bidding. The two are mutually exclusive.
        """
        try:
            level = _parse_enum(EducationLevel, education_level, "education level")
            if not title or not title.strip():
                raise ValidationError("Title is required")
            if writer_id is not None and bidding_duration is not None:
                raise ValidationError(
                    "An assignment is either sent to a writer or put up for bidding"
                )
            if bidding_duration is not None:
                self._bidding.validate_duration(bidding_duration)
            if budget is not None:
                budget = to_amount(budget, "Budget")
        except ValidationError as e:
            return self._failure(e)

        if writer_id is not None:
            event = AssignmentEvent.CREATE_DIRECT
        elif bidding_duration is not None:
            event = AssignmentEvent.CREATE_BIDDING
        else:
            event = AssignmentEvent.CREATE_OPEN
        aid = assignment_id or f"asg_{uuid4().hex[:12]}"
        now = self._now()

        def apply(txn: StoreTransaction) -> Assignment:
            seeker = self._active_user(txn, seeker_id)
            if seeker.role != UserRole.SEEKER:
                raise Forbidden("Only seekers can post assignments")
            if txn.get(ASSIGNMENTS, aid) is not None:
                raise PreconditionFailed(f"Assignment already exists: {aid}")
            a = Assignment(
                assignment_id=aid,
                title=title.strip(),
                seeker_id=seeker.user_id,
                seeker_name=seeker.name,
                education_level=level,
                subject=subject,
                description=description,
                status=AssignmentStateMachine.initial_status(event),
                created_utc=now,
            )
            if event == AssignmentEvent.CREATE_DIRECT:
                writer: User = txn.require(USERS, writer_id, label="Writer")
                self._lifecycle.request_writer(a, writer)
            elif event == AssignmentEvent.CREATE_BIDDING:
                self._bidding.start(a, bidding_duration, budget, now)
            self._save(txn, a, now)
            return a

        a, failed = self._run(apply)
        if failed:
            return failed
        warnings = self._audit(EventKind.ASSIGNMENT_POSTED, seeker_id, {
            "assignment_id": a.assignment_id,
            "event": event.value,
            "status": a.status.value,
        })
        if a.writer_id:
            self._notify(
                a.writer_id,
                f"You have a new direct assignment request: \"{_short(a.title)}\"",
                _link(a.assignment_id),
            )
        self._notify_admins(f"New assignment posted: \"{_short(a.title)}\"", "/admin/assignments")
        logger.info("Assignment %s posted (%s)", a.assignment_id, a.status.value)
        return self._ok({"assignment": a}, warnings)

    def get_assignment(self, assignment_id: str) -> ServiceResult:
        """Read an assignment, closing bidding whose deadline has passed."""
        now = self._now()

        def apply(txn: StoreTransaction) -> tuple[Assignment, bool]:
            a = txn.require(ASSIGNMENTS, assignment_id, label="Assignment")
            expired = self._bidding.expire_if_due(a, now)
            if expired:
                self._save(txn, a, now)
            return a, expired

        outcome, failed = self._run(apply)
        if failed:
            return failed
        a, expired = outcome
        warnings: list[str] = []
        if expired:
            warnings = self._audit_transition(
                a, AssignmentStatus.BIDDING, AssignmentEvent.CLOSE_BIDDING, "system",
            )
        return self._ok({"assignment": a}, warnings)

    def list_assignments(
        self, status: Optional[AssignmentStatus] = None,
    ) -> list[Assignment]:
        """Committed assignments, optionally filtered by status. Read only."""
        docs = self._store.all(ASSIGNMENTS)
        if status is not None:
            docs = [a for a in docs if a.status == status]
        return sorted(docs, key=lambda a: a.created_utc or self._now(), reverse=True)

    # ------------------------------------------------------------------
    # Writer attachment
    # ------------------------------------------------------------------

    def claim(self, assignment_id: str, writer_id: str) -> ServiceResult:
        def mutate(txn: StoreTransaction, a: Assignment) -> None:
            writer = self._active_user(txn, writer_id)
            self._lifecycle.claim(a, writer)

        result = self._assignment_action(
            assignment_id, writer_id, AssignmentEvent.CLAIM, mutate,
        )
        if result.success:
            a = result.data["assignment"]
            self._notify(
                a.seeker_id,
                f"{a.writer_name} has claimed your assignment: \"{_short(a.title)}\"",
                _link(a.assignment_id),
            )
        return result

    def accept_request(self, assignment_id: str, writer_id: str) -> ServiceResult:
        def mutate(txn: StoreTransaction, a: Assignment) -> None:
            self._active_user(txn, writer_id)
            self._lifecycle.accept_request(a, writer_id)

        result = self._assignment_action(
            assignment_id, writer_id, AssignmentEvent.ACCEPT_REQUEST, mutate,
        )
        if result.success:
            a = result.data["assignment"]
            self._notify(
                a.seeker_id,
                f"{a.writer_name} has accepted your direct assignment request "
                f"for \"{_short(a.title)}\"",
                _link(a.assignment_id),
            )
        return result

    def decline_request(self, assignment_id: str, writer_id: str) -> ServiceResult:
        def mutate(txn: StoreTransaction, a: Assignment) -> None:
            self._active_user(txn, writer_id)
            self._lifecycle.decline_request(a, writer_id)

        result = self._assignment_action(
            assignment_id, writer_id, AssignmentEvent.DECLINE_REQUEST, mutate,
        )
        if result.success:
            a = result.data["assignment"]
            self._notify(
                a.seeker_id,
                f"Your request for \"{_short(a.title)}\" was declined. You can "
                f"offer it to another writer or make it public.",
                _link(a.assignment_id),
            )
        return result

    def make_public(self, assignment_id: str, seeker_id: str) -> ServiceResult:
        def mutate(txn: StoreTransaction, a: Assignment) -> None:
            self._active_user(txn, seeker_id)
            self._lifecycle.make_public(a, seeker_id)

        return self._assignment_action(
            assignment_id, seeker_id, AssignmentEvent.MAKE_PUBLIC, mutate,
        )

    def re_request_writer(
        self, assignment_id: str, seeker_id: str, writer_id: str,
    ) -> ServiceResult:
        """Offer a rejected assignment directly to a different writer."""
        def mutate(txn: StoreTransaction, a: Assignment) -> None:
            self._active_user(txn, seeker_id)
            writer: User = txn.require(USERS, writer_id, label="Writer")
            self._lifecycle.re_request(a, seeker_id, writer)

        result = self._assignment_action(
            assignment_id, seeker_id, AssignmentEvent.RE_REQUEST, mutate,
        )
        if result.success:
            a = result.data["assignment"]
            self._notify(
                writer_id,
                f"You have a new direct assignment request: \"{_short(a.title)}\"",
                _link(a.assignment_id),
            )
        return result

    def give_up(self, assignment_id: str, writer_id: str) -> ServiceResult:
        def mutate(txn: StoreTransaction, a: Assignment) -> None:
            self._lifecycle.give_up(a, writer_id)

        result = self._assignment_action(
            assignment_id, writer_id, AssignmentEvent.GIVE_UP, mutate,
        )
        if result.success:
            a = result.data["assignment"]
            result.errors += self._purge_chat(a.assignment_id, writer_id, "writer gave up")
            self._notify(
                a.seeker_id,
                f"The writer has given up your assignment: \"{_short(a.title)}\". "
                f"It is now open for other writers.",
                _link(a.assignment_id),
            )
        return result

    def cancel(self, assignment_id: str, seeker_id: str) -> ServiceResult:
        removed: list[str] = []

        def mutate(txn: StoreTransaction, a: Assignment) -> None:
            removed.clear()
            self._active_user(txn, seeker_id)
            previous = self._lifecycle.cancel(a, seeker_id)
            if previous is not None:
                removed.append(previous)

        result = self._assignment_action(
            assignment_id, seeker_id, AssignmentEvent.CANCEL, mutate,
        )
        if result.success and removed:
            a = result.data["assignment"]
            result.errors += self._purge_chat(a.assignment_id, seeker_id, "seeker cancelled")
            self._notify(
                removed[0],
                f"The seeker has cancelled the assignment: \"{_short(a.title)}\". "
                f"It is now open again.",
                "/dashboard",
            )
        return result

    def reopen(self, assignment_id: str, seeker_id: str) -> ServiceResult:
        """Abandon bidding and open the assignment first-come-first-served."""
        def mutate(txn: StoreTransaction, a: Assignment) -> None:
            self._active_user(txn, seeker_id)
            self._bidding.reopen_without_bidding(a, seeker_id)

        return self._assignment_action(
            assignment_id, seeker_id, AssignmentEvent.REOPEN, mutate,
        )

    def edit_assignment(
        self,
        assignment_id: str,
        seeker_id: str,
        title: Optional[str] = None,
        subject: Optional[str] = None,
        description: Optional[str] = None,
        education_level: Optional[EducationLevel] = None,
    ) -> ServiceResult:
        """Change the details of an assignment no writer has taken yet.

        Only the fields passed are changed.
        """
        try:
            if title is not None:
                title = _require_text(title, "Title is required")
            level = None
            if education_level is not None:
                level = _parse_enum(EducationLevel, education_level, "education level")
        except ValidationError as e:
            return self._failure(e)
        changed = sorted(
            name for name, value in (
                ("title", title),
                ("subject", subject),
                ("description", description),
                ("education_level", level),
            ) if value is not None
        )

        def mutate(txn: StoreTransaction, a: Assignment) -> None:
            self._active_user(txn, seeker_id)
            self._lifecycle.check_editable(a, seeker_id)
            if title is not None:
                a.title = title
            if subject is not None:
                a.subject = subject
            if description is not None:
                a.description = description
            if level is not None:
                a.education_level = level

        result = self._assignment_action(assignment_id, seeker_id, None, mutate)
        if result.success:
            result.errors += self._audit(EventKind.ASSIGNMENT_EDITED, seeker_id, {
                "assignment_id": assignment_id, "fields": changed,
            })
        return result

    def delete_assignment(self, assignment_id: str, seeker_id: str) -> ServiceResult:
        """Delete an unpaid assignment that no writer holds."""
        def apply(txn: StoreTransaction) -> Assignment:
            self._active_user(txn, seeker_id)
            a = txn.require(ASSIGNMENTS, assignment_id, label="Assignment")
            self._lifecycle.check_deletable(a, seeker_id)
            txn.delete(ASSIGNMENTS, assignment_id)
            return a

        a, failed = self._run(apply)
        if failed:
            return failed
        warnings = self._audit(EventKind.ASSIGNMENT_DELETED, seeker_id, {
            "assignment_id": assignment_id, "status": a.status.value,
        })
        warnings += self._purge_chat(assignment_id, seeker_id, "assignment deleted")
        logger.info("Assignment %s deleted by %s", assignment_id, seeker_id)
        return self._ok({"assignment_id": assignment_id}, warnings)

    # ------------------------------------------------------------------
    # Fee negotiation
    # ------------------------------------------------------------------

    def propose_fee(
        self, assignment_id: str, writer_id: str, fee: Any,
    ) -> ServiceResult:
        """Writer proposes a flat fee. Overwrites any earlier proposal."""
        try:
            value = to_amount(fee, "Fee")
        except ValidationError as e:
            return self._failure(e)

        def mutate(txn: StoreTransaction, a: Assignment) -> None:
            self._active_user(txn, writer_id)
            self._fees.propose_flat_fee(a, writer_id, value)

        result = self._assignment_action(assignment_id, writer_id, None, mutate)
        if result.success:
            a = result.data["assignment"]
            result.errors += self._audit(EventKind.FEE_PROPOSED, writer_id, {
                "assignment_id": assignment_id, "proposed_fee": str(value),
            })
            self._notify(
                a.seeker_id,
                f"A fee has been proposed for \"{_short(a.title)}\"",
                _link(assignment_id),
            )
        return result

    def propose_stage(
        self,
        assignment_id: str,
        writer_id: str,
        stage: int,
        total_fee: Any,
        percentage: Any,
    ) -> ServiceResult:
        """Writer proposes one stage of a staged payment plan."""
        try:
            fee = to_amount(total_fee, "Fee")
            pct = self._fees.validate_percentage(percentage)
        except ValidationError as e:
            return self._failure(e)

        def mutate(txn: StoreTransaction, a: Assignment) -> None:
            self._active_user(txn, writer_id)
            self._fees.propose_stage(a, writer_id, stage, fee, pct)

        result = self._assignment_action(assignment_id, writer_id, None, mutate)
        if result.success:
            a = result.data["assignment"]
            result.errors += self._audit(EventKind.STAGE_PROPOSED, writer_id, {
                "assignment_id": assignment_id,
                "stage": stage,
                "percentage": str(pct),
                "amount": str(a.stages[stage].amount),
            })
            self._notify(
                a.seeker_id,
                f"A fee for stage {stage} has been proposed for \"{_short(a.title)}\"",
                _link(assignment_id),
            )
        return result

    # ------------------------------------------------------------------
    # Escrow
    # ------------------------------------------------------------------

    def accept_and_pay(
        self,
        assignment_id: str,
        seeker_id: str,
        stage: Optional[int] = None,
    ) -> ServiceResult:
        """Accept the proposed fee (or a stage amount) and fund escrow."""
        paid: list[Decimal] = []

        def mutate(txn: StoreTransaction, a: Assignment) -> None:
            paid.clear()
            self._active_user(txn, seeker_id)
            paid.append(self._escrow.accept_and_pay(txn, a, seeker_id, stage))

        result = self._assignment_action(
            assignment_id, seeker_id, AssignmentEvent.FUND_ESCROW, mutate,
        )
        if not result.success:
            return result
        a = result.data["assignment"]
        amount = paid[0]
        result.data["amount"] = amount
        result.errors += self._audit(EventKind.ESCROW_FUNDED, seeker_id, {
            "assignment_id": assignment_id,
            "amount": str(amount),
            "stage": a.current_stage - 1 if a.is_staged_payment else None,
        })
        self._notify(
            a.writer_id,
            f"Payment for \"{_short(a.title)}\" has been secured. You can begin working.",
            _link(assignment_id),
        )
        logger.info("Escrow funded for %s: LKR %s", assignment_id, amount)
        return result

    def submit_work(
        self, assignment_id: str, writer_id: str, submission_name: str,
    ) -> ServiceResult:
        try:
            name = _require_text(submission_name, "A submission file name is required")
        except ValidationError as e:
            return self._failure(e)

        def mutate(txn: StoreTransaction, a: Assignment) -> None:
            self._active_user(txn, writer_id)
            self._escrow.submit_work(a, writer_id, name)

        result = self._assignment_action(
            assignment_id, writer_id, AssignmentEvent.SUBMIT_WORK, mutate,
        )
        if result.success:
            a = result.data["assignment"]
            result.errors += self._audit(EventKind.WORK_SUBMITTED, writer_id, {
                "assignment_id": assignment_id, "submission_name": name,
            })
            self._notify(
                a.seeker_id,
                f"The writer has submitted the work for \"{_short(a.title)}\"",
                _link(assignment_id),
            )
        return result

    def submit_stage(
        self,
        assignment_id: str,
        writer_id: str,
        stage: int,
        submission_name: str,
    ) -> ServiceResult:
        try:
            name = _require_text(submission_name, "A submission file name is required")
        except ValidationError as e:
            return self._failure(e)

        def mutate(txn: StoreTransaction, a: Assignment) -> None:
            self._active_user(txn, writer_id)
            self._escrow.submit_stage(a, writer_id, stage, name)

        result = self._assignment_action(assignment_id, writer_id, None, mutate)
        if result.success:
            a = result.data["assignment"]
            result.errors += self._audit(EventKind.STAGE_SUBMITTED, writer_id, {
                "assignment_id": assignment_id, "stage": stage, "submission_name": name,
            })
            self._notify(
                a.seeker_id,
                f"The writer has submitted work for Stage {stage} of \"{_short(a.title)}\"",
                _link(assignment_id),
            )
        return result

    def mark_stage_complete(
        self,
        assignment_id: str,
        seeker_id: str,
        stage: int,
        rating: Optional[int] = None,
        review: Optional[str] = None,
        admin_feedback: Optional[str] = None,
    ) -> ServiceResult:
        """Approve a stage. The final stage completes the whole assignment."""
        if stage == self._resolver.stage_count():
            if rating is None:
                return self._failure(ValidationError(
                    "A rating is required to complete the final stage"
                ))
            return self.mark_complete(
                assignment_id, seeker_id, rating, review, admin_feedback,
            )

        def mutate(txn: StoreTransaction, a: Assignment) -> None:
            self._active_user(txn, seeker_id)
            self._escrow.complete_stage(a, seeker_id, stage)

        result = self._assignment_action(assignment_id, seeker_id, None, mutate)
        if result.success:
            a = result.data["assignment"]
            result.errors += self._audit(EventKind.STAGE_COMPLETED, seeker_id, {
                "assignment_id": assignment_id, "stage": stage,
            })
            self._notify(
                a.writer_id,
                f"Stage {stage} for \"{_short(a.title)}\" has been marked as complete.",
                _link(assignment_id),
            )
        return result

    def mark_complete(
        self,
        assignment_id: str,
        seeker_id: str,
        rating: int,
        review: Optional[str] = None,
        admin_feedback: Optional[str] = None,
    ) -> ServiceResult:
        """Complete the assignment, pay the writer and record the rating."""
        now = self._now()
        breakdowns: list[Any] = []

        def mutate(txn: StoreTransaction, a: Assignment) -> None:
            breakdowns.clear()
            self._active_user(txn, seeker_id)
            breakdowns.append(
                self._escrow.settle(txn, a, seeker_id, rating, review, now),
            )
            if admin_feedback and admin_feedback.strip():
                a.admin_feedback_submitted = True

        event = AssignmentEvent.MARK_COMPLETE
        snapshot = self._store.snapshot(ASSIGNMENTS, assignment_id)
        if snapshot is not None and snapshot.is_staged_payment:
            event = AssignmentEvent.COMPLETE_STAGED
        result = self._assignment_action(assignment_id, seeker_id, event, mutate)
        if not result.success:
            return result

        a = result.data["assignment"]
        breakdown = breakdowns[0]
        result.data["commission"] = breakdown
        result.errors += self._audit(EventKind.PAYOUT_RELEASED, seeker_id, {
            "assignment_id": assignment_id,
            "writer_id": a.writer_id,
            "fee": str(breakdown.fee),
            "writer_payout": str(breakdown.writer_payout),
            "rating": rating,
        })
        if breakdown.commission > Decimal("0"):
            result.errors += self._audit(EventKind.COMMISSION_RECORDED, seeker_id, {
                "assignment_id": assignment_id,
                "commission": str(breakdown.commission),
                "rate": str(breakdown.rate),
            })
        self._notify(
            a.writer_id,
            "An assignment has been marked as complete. Check your wallet for the payout.",
            "/profile",
        )
        self._notify_admins(f"Assignment \"{_short(a.title)}\" completed.", "/admin/assignments")
        if admin_feedback and admin_feedback.strip():
            self._notify_admins(
                f"Feedback on \"{_short(a.title)}\": {admin_feedback.strip()}",
                "/admin/feedback",
            )
        logger.info(
            "Assignment %s completed: writer %s paid LKR %s, commission LKR %s",
            assignment_id, a.writer_id, breakdown.writer_payout, breakdown.commission,
        )
        return result

    # ------------------------------------------------------------------
    # Bidding
    # ------------------------------------------------------------------

    def submit_bid(
        self,
        assignment_id: str,
        writer_id: str,
        fee: Any,
        about_me: str,
        qualifications: str,
        work_plan: str,
    ) -> ServiceResult:
        """Submit a new bid or edit the writer's existing one."""
        now = self._now()
        try:
            value = to_amount(fee, "Fee")
            sections = self._bidding.validate_sections(
                ProposalSections(about_me, qualifications, work_plan),
            )
        except ValidationError as e:
            return self._failure(e)
        outcome: list[Any] = []

        def mutate(txn: StoreTransaction, a: Assignment) -> None:
            outcome.clear()
            writer = self._active_user(txn, writer_id)
            outcome.extend(self._bidding.submit_bid(a, writer, value, sections, now))

        result = self._assignment_action(assignment_id, writer_id, None, mutate)
        if not result.success:
            return result
        bid, edited = outcome
        result.data["bid"] = bid
        result.data["edited"] = edited
        kind = EventKind.BID_EDITED if edited else EventKind.BID_SUBMITTED
        result.errors += self._audit(kind, writer_id, {
            "assignment_id": assignment_id,
            "fee": str(bid.fee),
            "edit_count": bid.edit_count,
        })
        if not edited:
            a = result.data["assignment"]
            self._notify(
                a.seeker_id,
                f"A new bid was placed on \"{_short(a.title)}\"",
                _link(assignment_id),
            )
        return result

    def remove_bid(self, assignment_id: str, writer_id: str) -> ServiceResult:
        """Withdraw the writer's bid. They can never bid here again."""
        def mutate(txn: StoreTransaction, a: Assignment) -> None:
            self._bidding.withdraw_bid(a, writer_id)

        result = self._assignment_action(assignment_id, writer_id, None, mutate)
        if result.success:
            result.errors += self._audit(EventKind.BID_WITHDRAWN, writer_id, {
                "assignment_id": assignment_id,
            })
        return result

    def stop_bidding(self, assignment_id: str, seeker_id: str) -> ServiceResult:
        now = self._now()

        def mutate(txn: StoreTransaction, a: Assignment) -> None:
            self._active_user(txn, seeker_id)
            self._bidding.stop_bidding(a, seeker_id, now)

        return self._assignment_action(
            assignment_id, seeker_id, AssignmentEvent.CLOSE_BIDDING, mutate,
        )

    def select_writer(
        self, assignment_id: str, seeker_id: str, writer_id: str,
    ) -> ServiceResult:
        """Pick a bidder. A previously attached writer loses the chat history."""
        replaced: list[str] = []

        def mutate(txn: StoreTransaction, a: Assignment) -> None:
            replaced.clear()
            self._active_user(txn, seeker_id)
            previous = self._bidding.select_writer(a, seeker_id, writer_id)
            if previous is not None:
                replaced.append(previous)

        result = self._assignment_action(
            assignment_id, seeker_id, AssignmentEvent.SELECT_WRITER, mutate,
        )
        if not result.success:
            return result
        a = result.data["assignment"]
        result.errors += self._audit(EventKind.WRITER_SELECTED, seeker_id, {
            "assignment_id": assignment_id,
            "writer_id": writer_id,
            "proposed_fee": str(a.proposed_fee),
            "replaced_writer_id": replaced[0] if replaced else None,
        })
        if replaced:
            result.errors += self._purge_chat(assignment_id, seeker_id, "writer replaced")
        self._notify(
            writer_id,
            f"You have been selected to discuss the assignment: \"{_short(a.title)}\"",
            _link(assignment_id),
        )
        return result

    def bidding_range(self, assignment_id: str) -> ServiceResult:
        result = self.get_assignment(assignment_id)
        if not result.success:
            return result
        a = result.data["assignment"]
        span = self._bidding.bidding_range(a)
        return ServiceResult(success=True, errors=result.errors, data={
            "bid_count": len(a.bids),
            "min_fee": span[0] if span else None,
            "max_fee": span[1] if span else None,
        })

    def sweep_expired_bidding(self) -> ServiceResult:
        """Close every bidding phase whose deadline has passed."""
        now = self._now()
        closed: list[str] = []
        warnings: list[str] = []
        for a in self._store.all(ASSIGNMENTS):
            if not self._bidding.is_expired(a, now):
                continue
            result = self.get_assignment(a.assignment_id)
            if not result.success:
                warnings += result.errors
                continue
            if result.data["assignment"].status == AssignmentStatus.OPEN:
                closed.append(a.assignment_id)
        if closed:
            logger.info("Closed %d expired bidding phases", len(closed))
        return self._ok({"closed": closed}, warnings)

    # ------------------------------------------------------------------
    # Wallet requests
    # ------------------------------------------------------------------

    def request_deposit(self, user_id: str, amount: Any) -> ServiceResult:
        try:
            value = to_amount(amount)
        except ValidationError as e:
            return self._failure(e)
        now = self._now()

        def apply(txn: StoreTransaction) -> DepositRequest:
            user = self._active_user(txn, user_id)
            req = self._wallet.request_deposit(user, value, now)
            txn.put(DEPOSITS, req.request_id, req)
            return req

        req, failed = self._run(apply)
        if failed:
            return failed
        warnings = self._audit(EventKind.DEPOSIT_REQUESTED, user_id, {
            "request_id": req.request_id, "amount": str(value),
        })
        self._notify_admins(f"New deposit request of LKR {value:.2f}", "/admin")
        return self._ok({"request": req}, warnings)

    def confirm_deposit(self, admin_id: str, request_id: str) -> ServiceResult:
        now = self._now()

        def apply(txn: StoreTransaction) -> tuple[DepositRequest, Decimal]:
            self._require_admin(txn, admin_id)
            req: DepositRequest = txn.require(DEPOSITS, request_id, label="Deposit request")
            balance = self._wallet.confirm_deposit(txn, req, now)
            txn.put(DEPOSITS, request_id, req)
            return req, balance

        outcome, failed = self._run(apply)
        if failed:
            return failed
        req, balance = outcome
        warnings = self._audit(EventKind.DEPOSIT_RESOLVED, admin_id, {
            "request_id": request_id, "state": req.state.value, "amount": str(req.amount),
        })
        self._notify(
            req.user_id,
            f"Your deposit of LKR {req.amount:.2f} has been confirmed.",
            "/profile",
        )
        logger.info("Deposit %s confirmed: LKR %s", request_id, req.amount)
        return self._ok({"request": req, "wallet_balance": balance}, warnings)

    def reject_deposit(self, admin_id: str, request_id: str) -> ServiceResult:
        now = self._now()

        def apply(txn: StoreTransaction) -> DepositRequest:
            self._require_admin(txn, admin_id)
            req: DepositRequest = txn.require(DEPOSITS, request_id, label="Deposit request")
            self._wallet.reject_deposit(req, now)
            txn.put(DEPOSITS, request_id, req)
            return req

        req, failed = self._run(apply)
        if failed:
            return failed
        warnings = self._audit(EventKind.DEPOSIT_RESOLVED, admin_id, {
            "request_id": request_id, "state": req.state.value,
        })
        self._notify(
            req.user_id,
            f"Your deposit request of LKR {req.amount:.2f} has been rejected.",
            "/profile",
        )
        return self._ok({"request": req}, warnings)

    def request_withdrawal(
        self, user_id: str, amount: Any, bank_details: dict[str, Any],
    ) -> ServiceResult:
        try:
            value = to_amount(amount)
            if not bank_details:
                raise ValidationError("Bank details are required for a withdrawal")
        except ValidationError as e:
            return self._failure(e)
        now = self._now()

        def apply(txn: StoreTransaction) -> WithdrawalRequest:
            user = self._active_user(txn, user_id)
            req = self._wallet.request_withdrawal(user, value, bank_details, now)
            txn.put(WITHDRAWALS, req.request_id, req)
            return req

        req, failed = self._run(apply)
        if failed:
            return failed
        warnings = self._audit(EventKind.WITHDRAWAL_REQUESTED, user_id, {
            "request_id": req.request_id, "amount": str(value),
        })
        self._notify_admins(f"New withdrawal request of LKR {value:.2f}", "/admin")
        return self._ok({"request": req}, warnings)

    def confirm_withdrawal(self, admin_id: str, request_id: str) -> ServiceResult:
        """Pay out a withdrawal, withholding the service charge."""
        now = self._now()

        def apply(txn: StoreTransaction) -> WithdrawalRequest:
            self._require_admin(txn, admin_id)
            req: WithdrawalRequest = txn.require(
                WITHDRAWALS, request_id, label="Withdrawal request",
            )
            self._wallet.confirm_withdrawal(txn, req, now)
            txn.put(WITHDRAWALS, request_id, req)
            return req

        req, failed = self._run(apply)
        if failed:
            return failed
        warnings = self._audit(EventKind.WITHDRAWAL_RESOLVED, admin_id, {
            "request_id": request_id,
            "state": req.state.value,
            "amount": str(req.amount),
            "service_charge": str(req.service_charge),
            "payout_amount": str(req.payout_amount),
        })
        self._notify(
            req.user_id,
            f"Your withdrawal request of LKR {req.amount:.2f} has been processed. "
            f"The payout amount is LKR {req.payout_amount:.2f}.",
            "/profile",
        )
        logger.info(
            "Withdrawal %s completed: LKR %s (charge LKR %s)",
            request_id, req.amount, req.service_charge,
        )
        return self._ok({"request": req}, warnings)

    def reject_withdrawal(self, admin_id: str, request_id: str) -> ServiceResult:
        now = self._now()

        def apply(txn: StoreTransaction) -> WithdrawalRequest:
            self._require_admin(txn, admin_id)
            req: WithdrawalRequest = txn.require(
                WITHDRAWALS, request_id, label="Withdrawal request",
            )
            self._wallet.reject_withdrawal(req, now)
            txn.put(WITHDRAWALS, request_id, req)
            return req

        req, failed = self._run(apply)
        if failed:
            return failed
        warnings = self._audit(EventKind.WITHDRAWAL_RESOLVED, admin_id, {
            "request_id": request_id, "state": req.state.value,
        })
        self._notify(
            req.user_id,
            f"Your withdrawal request of LKR {req.amount:.2f} has been rejected. "
            f"Please contact support if you have questions.",
            "/profile",
        )
        return self._ok({"request": req}, warnings)

    # ------------------------------------------------------------------
    # Finance book
    # ------------------------------------------------------------------

    def finance_summary(self) -> ServiceResult:
        """Total profit and the transaction log, newest first."""
        summary, failed = self._run(self._finance.load)
        if failed:
            return failed
        return ServiceResult(success=True, data={
            "total_profit": summary.total_profit,
            "transactions": self._finance.newest_first(summary),
        })

    def adjust_profit(
        self, admin_id: str, amount: Any, reason: str, credit: bool = True,
    ) -> ServiceResult:
        try:
            value = to_amount(amount)
            reason = _require_text(reason, "A reason is required for a manual adjustment")
        except ValidationError as e:
            return self._failure(e)
        now = self._now()

        def apply(txn: StoreTransaction) -> Any:
            self._require_admin(txn, admin_id)
            return self._finance.manual_adjustment(txn, value, reason, credit, now)

        entry, failed = self._run(apply)
        if failed:
            return failed
        warnings = self._audit(EventKind.PROFIT_ADJUSTED, admin_id, {
            "transaction_id": entry.transaction_id,
            "amount": str(entry.amount),
            "reason": reason,
        })
        logger.info("Profit adjusted by %s: %s", admin_id, entry.amount)
        return self._ok({"transaction": entry}, warnings)

    def delete_finance_transaction(
        self, admin_id: str, transaction_id: str,
    ) -> ServiceResult:
        def apply(txn: StoreTransaction) -> Any:
            self._require_admin(txn, admin_id)
            return self._finance.delete_transaction(txn, transaction_id)

        entry, failed = self._run(apply)
        if failed:
            return failed
        warnings = self._audit(EventKind.FINANCE_TRANSACTION_DELETED, admin_id, {
            "transaction_id": transaction_id, "amount": str(entry.amount),
        })
        logger.info("Finance transaction %s deleted by %s", transaction_id, admin_id)
        return self._ok({"transaction": entry}, warnings)

    # ------------------------------------------------------------------
    # Cancellation reports
    # ------------------------------------------------------------------

    def file_cancellation_report(
        self,
        assignment_id: str,
        reporter_id: str,
        reported_user_id: str,
        reason: str,
    ) -> ServiceResult:
        """Report the other party of an assignment to the admins.

        The seeker may report a writer who holds or has left the
        assignment; a writer in that position may report the seeker.
        """
        try:
            reason = _require_text(reason, "A reason is required")
            minimum = self._resolver.cancellation_reason_min_chars()
            if len(reason) < minimum:
                raise ValidationError(
                    f"Reason must be at least {minimum} characters"
                )
        except ValidationError as e:
            return self._failure(e)
        rid = f"rpt_{uuid4().hex[:12]}"
        now = self._now()

        def apply(txn: StoreTransaction) -> CancellationReport:
            reporter = self._active_user(txn, reporter_id)
            a: Assignment = txn.require(ASSIGNMENTS, assignment_id, label="Assignment")
            reported: User = txn.require(USERS, reported_user_id, label="Reported user")
            writers = {a.writer_id} | a.given_up_by
            if reporter_id == a.seeker_id:
                allowed = reported_user_id in writers
            else:
                allowed = reporter_id in writers and reported_user_id == a.seeker_id
            if not allowed:
                raise Forbidden(
                    "Only the seeker and a writer of this assignment can report each other"
                )
            report = CancellationReport(
                report_id=rid,
                assignment_id=a.assignment_id,
                assignment_title=a.title,
                reporter_id=reporter.user_id,
                reporter_name=reporter.name,
                reporter_role=reporter.role,
                reported_user_id=reported.user_id,
                reported_user_name=reported.name,
                reason=reason,
                created_utc=now,
            )
            txn.put(REPORTS, rid, report)
            return report

        report, failed = self._run(apply)
        if failed:
            return failed
        warnings = self._audit(EventKind.CANCELLATION_REPORTED, reporter_id, {
            "assignment_id": assignment_id,
            "report_id": rid,
            "reported_user_id": reported_user_id,
        })
        self._notify_admins(
            f"Cancellation report filed by {report.reporter_name}", "/admin/reports",
        )
        logger.info("Cancellation report %s filed on %s", rid, assignment_id)
        return self._ok({"report": report}, warnings)

    def list_cancellation_reports(self, admin_id: str) -> ServiceResult:
        """Every cancellation report, newest first. Admins only."""
        def apply(txn: StoreTransaction) -> list[CancellationReport]:
            self._require_admin(txn, admin_id)
            return txn.query(REPORTS, lambda r: True)

        reports, failed = self._run(apply)
        if failed:
            return failed
        reports.sort(key=lambda r: r.created_utc, reverse=True)
        return ServiceResult(success=True, data={"reports": reports})

    # ------------------------------------------------------------------
    # System status
    # ------------------------------------------------------------------

    def status(self) -> dict[str, Any]:
        """Summary of the marketplace for operators."""
        assignments = self._store.all(ASSIGNMENTS)
        by_status: dict[str, int] = {}
        for a in assignments:
            by_status[a.status.value] = by_status.get(a.status.value, 0) + 1
        users = self._store.all(USERS)
        summary, _ = self._run(self._finance.load)
        held = sum(
            (a.fee for a in assignments
             if a.payment_confirmed and not a.paid_out and a.fee is not None),
            Decimal("0"),
        )
        return {
            "version": self._resolver.version,
            "currency": self._resolver.currency(),
            "users": {
                "total": len(users),
                "active": sum(1 for u in users if u.is_active),
                "by_role": {
                    r.value: sum(1 for u in users if u.role == r) for r in UserRole
                },
            },
            "assignments": {
                "total": len(assignments),
                "by_status": by_status,
                "escrow_held": display_balance(held),
            },
            "finance": {
                "total_profit": display_balance(summary.total_profit if summary else Decimal("0")),
                "transactions": len(summary.transactions) if summary else 0,
            },
            "events": self._event_log.count if self._event_log is not None else 0,
            "persistence_degraded": self._store.persistence_degraded,
        }

    def check_invariants(self) -> list[str]:
        """Audit committed state against the money and lifecycle rules.

        Returns one message per violation; empty means consistent.
        """
        errors: list[str] = []
        for user in self._store.all(USERS):
            if user.wallet_balance < Decimal("0"):
                errors.append(f"User {user.user_id} has a negative wallet balance")

        for a in self._store.all(ASSIGNMENTS):
            aid = a.assignment_id
            if a.fee is not None and not (
                a.fee_agreed or any(s.paid for s in a.stages.values())
            ):
                errors.append(f"{aid}: fee is set without an agreement or a paid stage")
            if a.paid_out and a.status != AssignmentStatus.COMPLETED:
                errors.append(f"{aid}: paid out but not completed")
            if a.status == AssignmentStatus.IN_PROGRESS and not a.payment_confirmed:
                errors.append(f"{aid}: in progress without escrow")
            if a.writer_id is not None and a.is_barred(a.writer_id):
                errors.append(f"{aid}: writer {a.writer_id} is barred from this assignment")
            for number, stage in sorted(a.stages.items()):
                if stage.completed and not stage.submitted:
                    errors.append(f"{aid}: stage {number} completed before submission")
                if stage.submitted and not stage.paid:
                    errors.append(f"{aid}: stage {number} submitted before payment")
            if a.is_staged_payment and a.stage_percentage_total() > Decimal("100") \
                    and self._resolver.enforce_stage_percentage_cap():
                errors.append(f"{aid}: stage percentages exceed 100")
            limit = self._resolver.bid_edit_limit()
            for bid in a.bids.values():
                if bid.edit_count > limit:
                    errors.append(f"{aid}: bid by {bid.writer_id} edited {bid.edit_count} times")

        summary, failed = self._run(self._finance.load)
        if failed is None and summary.total_profit != summary.recomputed_profit():
            errors.append(
                f"Finance total_profit {summary.total_profit} does not match "
                f"the transaction log ({summary.recomputed_profit()})"
            )
        return errors

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _now(self) -> datetime:
        return self._clock()

    def _run(
        self, fn: Callable[[StoreTransaction], T],
    ) -> tuple[Optional[T], Optional[ServiceResult]]:
        """Run fn in a retried transaction. Returns (value, failure)."""
        try:
            return self._store.run(fn), None
        except MarketplaceError as e:
            return None, self._failure(e)

    def _assignment_action(
        self,
        assignment_id: str,
        actor_id: str,
        event: Optional[AssignmentEvent],
        mutate: Callable[[StoreTransaction, Assignment], None],
    ) -> ServiceResult:
        """Load, normalize, mutate and save one assignment atomically.

        mutate may be re-run on Conflict, so it must only touch the
        transaction and the assignment it is handed.
        """
        now = self._now()

        def apply(txn: StoreTransaction) -> tuple[Assignment, AssignmentStatus]:
            a: Assignment = txn.require(ASSIGNMENTS, assignment_id, label="Assignment")
            self._bidding.expire_if_due(a, now)
            before = a.status
            mutate(txn, a)
            self._save(txn, a, now)
            return a, before

        outcome, failed = self._run(apply)
        if failed:
            return failed
        a, before = outcome
        warnings: list[str] = []
        if event is not None:
            warnings = self._audit_transition(a, before, event, actor_id)
        return self._ok({"assignment": a}, warnings)

    @staticmethod
    def _save(txn: StoreTransaction, a: Assignment, now: datetime) -> None:
        a.updated_utc = now
        txn.put(ASSIGNMENTS, a.assignment_id, a)

    @staticmethod
    def _active_user(txn: StoreTransaction, user_id: str) -> User:
        user: User = txn.require(USERS, user_id, label="User")
        if user.status == AccountStatus.BANNED:
            raise Forbidden("Your account is banned. Please contact support.")
        if user.status == AccountStatus.REMOVED:
            raise Forbidden("This account has been removed")
        return user

    def _require_admin(self, txn: StoreTransaction, admin_id: str) -> User:
        admin = self._active_user(txn, admin_id)
        if admin.role != UserRole.ADMIN:
            raise Forbidden("Only administrators can do that")
        return admin

    @staticmethod
    def _failure(error: MarketplaceError) -> ServiceResult:
        return ServiceResult(
            success=False, errors=[error.message], error_code=error.code,
        )

    @staticmethod
    def _ok(data: dict[str, Any], warnings: list[str]) -> ServiceResult:
        """Success. Post-commit warnings travel in errors and data."""
        if warnings:
            data["warnings"] = list(warnings)
        return ServiceResult(success=True, errors=list(warnings), data=data)

    # ------------------------------------------------------------------
    # Audit, notifications, chat
    # ------------------------------------------------------------------

    def _next_event_id(self) -> str:
        """Generate a monotonically increasing unique event ID."""
        self._event_counter += 1
        return f"EVT-{self._event_counter:08d}"

    def _audit(
        self, kind: EventKind, actor_id: str, payload: dict[str, Any],
    ) -> list[str]:
        """Append an audit event. Returns warnings (state is already committed)."""
        if self._event_log is None:
            return []
        try:
            event = EventRecord.create(
                event_id=self._next_event_id(),
                event_kind=kind,
                actor_id=actor_id,
                payload=payload,
                timestamp_utc=self._now(),
            )
            self._event_log.append(event)
        except (ValueError, OSError) as e:
            logger.error("Audit append failed for %s: %s", kind.value, e)
            return [f"Event log failure: {e}"]
        return []

    def _audit_transition(
        self,
        a: Assignment,
        before: AssignmentStatus,
        event: AssignmentEvent,
        actor_id: str,
    ) -> list[str]:
        return self._audit(EventKind.ASSIGNMENT_TRANSITION, actor_id, {
            "assignment_id": a.assignment_id,
            "event": event.value,
            "from": before.value,
            "to": a.status.value,
        })

    def _notify(self, user_id: Optional[str], message: str, link: Optional[str] = None) -> None:
        """Best-effort delivery. Never raises."""
        if self._notifier is None or not user_id:
            return
        try:
            self._notifier.notify(user_id, message, link)
        except Exception as e:  # noqa: BLE001 - any sink failure is non-fatal
            logger.warning("Notification to %s failed: %s", user_id, e)

    def _notify_admins(self, message: str, link: Optional[str] = None) -> None:
        if self._notifier is None:
            return
        for user in self._store.all(USERS):
            if user.role == UserRole.ADMIN and user.is_active:
                self._notify(user.user_id, message, link)

    def _purge_chat(self, assignment_id: str, actor_id: str, reason: str) -> list[str]:
        """Destroy an assignment's chat history, right after the commit
        that detached its writer. Irreversible; always logged and audited."""
        try:
            removed = self._chat.purge(assignment_id)
        except Exception as e:  # noqa: BLE001 - chat backend is external
            logger.error("Chat purge for %s failed: %s", assignment_id, e)
            return [f"Chat history could not be cleared: {e}"]
        logger.warning(
            "Purged %d chat messages for %s (%s)", removed, assignment_id, reason,
        )
        return self._audit(EventKind.CHAT_PURGED, actor_id, {
            "assignment_id": assignment_id,
            "messages_removed": removed,
            "reason": reason,
        })


def _parse_enum(enum_cls: type, value: Any, label: str) -> Any:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(f"Unknown {label} {value!r}; expected one of: {allowed}")


def _require_text(value: Optional[str], message: str) -> str:
    if not value or not value.strip():
        raise ValidationError(message)
    return value.strip()
