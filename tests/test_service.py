"""Tests for the marketplace service facade — end-to-end flows through every subsystem."""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Optional

from assignhub.models.assignment import AssignmentStatus
from assignhub.models.user import EducationLevel, UserRole
from assignhub.persistence.document_store import USERS
from assignhub.persistence.event_log import EventKind, EventLog, EventRecord
from assignhub.policy.resolver import PolicyResolver
from assignhub.ports import InMemoryChatArchive, InMemoryNotificationSink
from assignhub.service import MarketplaceService, ServiceResult


CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"

S = AssignmentStatus


def _now() -> datetime:
    return datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)


class _Clock:
    def __init__(self) -> None:
        self.now = _now()

    def __call__(self) -> datetime:
        return self.now


class _BrokenLog(EventLog):
    def append(self, event: EventRecord) -> None:
        raise OSError("disk full")


class _Harness:
    """A service with one admin, one seeker (s1) and one A/L writer (w1)."""

    def __init__(self, event_log: Optional[EventLog] = None) -> None:
        self.clock = _Clock()
        self.notifier = InMemoryNotificationSink()
        self.chat = InMemoryChatArchive()
        self.log = event_log if event_log is not None else EventLog()
        self.service = MarketplaceService(
            PolicyResolver.from_config_dir(CONFIG_DIR),
            notifier=self.notifier,
            chat=self.chat,
            event_log=self.log,
            clock=self.clock,
        )
        svc = self.service
        assert svc.register_user("admin", "Admin", UserRole.ADMIN).success
        assert svc.register_user("s1", "Nimali", UserRole.SEEKER).success
        assert svc.register_user("w1", "Kasun", UserRole.WRITER,
                                 education_level=EducationLevel.AL).success

    def balance(self, user_id: str) -> Decimal:
        return self.service.store.snapshot(USERS, user_id).wallet_balance

    def fund(self, user_id: str, amount: str) -> None:
        assert self.service.admin_credit_wallet("admin", user_id, amount).success

    def post(self, assignment_id: str = "A-1", **kwargs) -> str:
        result = self.service.post_assignment(
            "s1", "Physics essay", EducationLevel.AL,
            assignment_id=assignment_id, **kwargs,
        )
        assert result.success, result.errors
        return assignment_id

    def claimed(self, assignment_id: str = "A-1") -> str:
        aid = self.post(assignment_id)
        assert self.service.claim(aid, "w1").success
        return aid

    def add_writer(self, user_id: str) -> None:
        assert self.service.register_user(
            user_id, f"Writer {user_id}", UserRole.WRITER,
            education_level=EducationLevel.AL,
        ).success

    def bid(self, aid: str, writer_id: str, fee: str) -> ServiceResult:
        return self.service.submit_bid(
            aid, writer_id, fee,
            about_me=f"Physics tutor with five years of experience {fee}",
            qualifications="BSc in Physics, first class honours",
            work_plan="Outline on day one and a full draft within three days",
        )


@pytest.fixture
def h() -> _Harness:
    return _Harness()


class TestUsers:
    def test_register_and_get(self, h: _Harness) -> None:
        result = h.service.get_user("w1")
        assert result.success
        assert result.data["user"].education_level == EducationLevel.AL
        assert result.data["wallet_balance"] == "0.00"
        assert result.data["user"].referral_code.startswith("AH-")

    def test_duplicate_registration(self, h: _Harness) -> None:
        result = h.service.register_user("s1", "Again", UserRole.SEEKER)
        assert result.error_code == "precondition_failed"

    def test_writer_needs_education_level(self, h: _Harness) -> None:
        result = h.service.register_user("w9", "No Level", UserRole.WRITER)
        assert result.error_code == "validation"

    def test_unknown_role(self, h: _Harness) -> None:
        result = h.service.register_user("x", "X", "librarian")
        assert result.error_code == "validation"
        assert "seeker" in result.errors[0]

    def test_missing_user(self, h: _Harness) -> None:
        assert h.service.get_user("ghost").error_code == "not_found"

    def test_only_admin_credits(self, h: _Harness) -> None:
        result = h.service.admin_credit_wallet("s1", "s1", "100")
        assert result.error_code == "forbidden"
        assert h.balance("s1") == Decimal("0")

    def test_admin_debit_cannot_go_negative(self, h: _Harness) -> None:
        h.fund("s1", "100")
        result = h.service.admin_debit_wallet("admin", "s1", "150")
        assert result.error_code == "insufficient_funds"
        assert h.balance("s1") == Decimal("100")
        assert h.service.admin_debit_wallet("admin", "s1", "40").data["wallet_balance"] == Decimal("60")

    def test_banned_user_is_forbidden(self, h: _Harness) -> None:
        aid = h.post()
        assert h.service.ban_user("admin", "w1").success
        result = h.service.claim(aid, "w1")
        assert result.error_code == "forbidden"
        assert "banned" in result.errors[0]
        assert h.service.unban_user("admin", "w1").success
        assert h.service.claim(aid, "w1").success


class TestPosting:
    def test_open_post(self, h: _Harness) -> None:
        aid = h.post()
        a = h.service.get_assignment(aid).data["assignment"]
        assert a.status == S.OPEN
        assert a.seeker_name == "Nimali"
        assert a.created_utc == _now()

    def test_direct_request_notifies_writer(self, h: _Harness) -> None:
        h.post(writer_id="w1")
        a = h.service.get_assignment("A-1").data["assignment"]
        assert a.status == S.PENDING_WRITER_ACCEPTANCE
        assert any("direct assignment request" in n.message for n in h.notifier.for_user("w1"))

    def test_writer_and_bidding_are_exclusive(self, h: _Harness) -> None:
        result = h.service.post_assignment(
            "s1", "Essay", EducationLevel.AL,
            writer_id="w1", bidding_duration=timedelta(hours=1),
        )
        assert result.error_code == "validation"

    def test_writer_cannot_post(self, h: _Harness) -> None:
        result = h.service.post_assignment("w1", "Essay", EducationLevel.AL)
        assert result.error_code == "forbidden"

    def test_list_by_status(self, h: _Harness) -> None:
        h.post("A-1")
        h.claimed("A-2")
        assert [a.assignment_id for a in h.service.list_assignments(S.OPEN)] == ["A-1"]
        assert len(h.service.list_assignments()) == 2


class TestFlatFeeEscrow:
    def test_insufficient_funds_leaves_everything_unchanged(self, h: _Harness) -> None:
        h.fund("s1", "1000")
        aid = h.claimed()
        assert h.service.propose_fee(aid, "w1", "1500").success
        result = h.service.accept_and_pay(aid, "s1")
        assert result.success is False
        assert result.error_code == "insufficient_funds"
        assert h.balance("s1") == Decimal("1000")
        a = h.service.get_assignment(aid).data["assignment"]
        assert a.status == S.CLAIMED
        assert a.payment_confirmed is False
        assert a.proposed_fee == Decimal("1500")

    def test_successful_funding(self, h: _Harness) -> None:
        h.fund("s1", "2000")
        aid = h.claimed()
        h.service.propose_fee(aid, "w1", "1500")
        result = h.service.accept_and_pay(aid, "s1")
        assert result.success
        assert result.data["amount"] == Decimal("1500")
        assert h.balance("s1") == Decimal("500")
        a = result.data["assignment"]
        assert a.status == S.IN_PROGRESS
        assert a.payment_confirmed is True
        assert a.fee_agreed is True
        assert a.fee == Decimal("1500")
        assert a.proposed_fee is None

    def test_round_trip_pays_writer_minus_commission(self, h: _Harness) -> None:
        h.fund("s1", "2000")
        aid = h.claimed()
        h.service.propose_fee(aid, "w1", "1000")
        h.service.propose_fee(aid, "w1", "1500")
        assert h.service.accept_and_pay(aid, "s1").success
        assert h.service.submit_work(aid, "w1", "essay.pdf").success
        result = h.service.mark_complete(aid, "s1", rating=5, review="Great work")
        assert result.success, result.errors

        breakdown = result.data["commission"]
        assert breakdown.commission == Decimal("150.00")
        assert breakdown.writer_payout == Decimal("1350.00")
        assert h.balance("w1") == Decimal("1350.00")
        assert h.balance("s1") == Decimal("500")

        a = result.data["assignment"]
        assert a.status == S.COMPLETED
        assert a.paid_out is True
        assert a.rating == 5
        assert a.review == "Great work"

        finance = h.service.finance_summary().data
        assert finance["total_profit"] == Decimal("150.00")
        assert finance["transactions"][0].assignment_id == aid

        writer = h.service.get_user("w1").data["user"]
        assert writer.rating_count == 1
        assert writer.average_rating == 5.0
        assert h.service.check_invariants() == []

    def test_second_completion_rejected(self, h: _Harness) -> None:
        h.fund("s1", "1000")
        aid = h.claimed()
        h.service.propose_fee(aid, "w1", "1000")
        h.service.accept_and_pay(aid, "s1")
        h.service.submit_work(aid, "w1", "essay.pdf")
        assert h.service.mark_complete(aid, "s1", rating=4).success
        again = h.service.mark_complete(aid, "s1", rating=4)
        assert again.error_code == "precondition_failed"
        assert h.balance("w1") == Decimal("900.00")

    def test_zero_service_charge_writer_keeps_everything(self, h: _Harness) -> None:
        def waive(txn):
            writer = txn.get(USERS, "w1")
            writer.has_zero_service_charge = True
            txn.put(USERS, "w1", writer)

        h.service.store.run(waive)
        h.fund("s1", "1000")
        aid = h.claimed()
        h.service.propose_fee(aid, "w1", "1000")
        h.service.accept_and_pay(aid, "s1")
        h.service.submit_work(aid, "w1", "essay.pdf")
        result = h.service.mark_complete(aid, "s1", rating=5)
        assert result.data["commission"].waived is True
        assert h.balance("w1") == Decimal("1000")
        assert h.service.finance_summary().data["total_profit"] == Decimal("0")

    def test_invalid_rating(self, h: _Harness) -> None:
        h.fund("s1", "1000")
        aid = h.claimed()
        h.service.propose_fee(aid, "w1", "1000")
        h.service.accept_and_pay(aid, "s1")
        h.service.submit_work(aid, "w1", "essay.pdf")
        assert h.service.mark_complete(aid, "s1", rating=6).error_code == "validation"
        assert h.balance("w1") == Decimal("0")

    def test_other_seeker_cannot_pay(self, h: _Harness) -> None:
        h.service.register_user("s2", "Other", UserRole.SEEKER)
        h.fund("s2", "5000")
        aid = h.claimed()
        h.service.propose_fee(aid, "w1", "1000")
        assert h.service.accept_and_pay(aid, "s2").error_code == "forbidden"


    def test_sub_cent_fee_rejected(self, h: _Harness) -> None:
        aid = h.claimed()
        result = h.service.propose_fee(aid, "w1", "1500.005")
        assert result.error_code == "validation"
        assert "fractions of a cent" in result.errors[0]
        assert h.service.get_assignment(aid).data["assignment"].proposed_fee is None
        assert h.service.admin_credit_wallet("admin", "s1", "10.001").error_code == "validation"
        assert h.balance("s1") == Decimal("0")

class TestStagedEscrow:
    def test_first_stage_payment(self, h: _Harness) -> None:
        h.fund("s1", "1000")
        aid = h.claimed()
        assert h.service.propose_stage(aid, "w1", 1, "1000", "10").success
        result = h.service.accept_and_pay(aid, "s1", stage=1)
        assert result.success, result.errors
        assert h.balance("s1") == Decimal("900.00")
        a = result.data["assignment"]
        assert a.stages[1].paid is True
        assert a.current_stage == 2
        assert a.status == S.IN_PROGRESS

    def test_three_stage_round_trip(self, h: _Harness) -> None:
        h.fund("s1", "1000")
        aid = h.claimed()
        svc = h.service
        for stage, pct in ((1, "10"), (2, "40"), (3, "50")):
            assert svc.propose_stage(aid, "w1", stage, "1000", pct).success
            assert svc.accept_and_pay(aid, "s1", stage=stage).success
            assert svc.submit_stage(aid, "w1", stage, f"part{stage}.pdf").success
            if stage < 3:
                assert svc.mark_stage_complete(aid, "s1", stage).success

        assert h.balance("s1") == Decimal("0.00")
        final = svc.mark_stage_complete(aid, "s1", 3)
        assert final.error_code == "validation"

        result = svc.mark_stage_complete(aid, "s1", 3, rating=4)
        assert result.success, result.errors
        assert result.data["assignment"].status == S.COMPLETED
        assert h.balance("w1") == Decimal("900.00")
        assert svc.check_invariants() == []

    def test_percentage_cap(self, h: _Harness) -> None:
        h.fund("s1", "1000")
        aid = h.claimed()
        h.service.propose_stage(aid, "w1", 1, "1000", "60")
        h.service.accept_and_pay(aid, "s1", stage=1)
        h.service.submit_stage(aid, "w1", 1, "part1.pdf")
        h.service.mark_stage_complete(aid, "s1", 1)
        result = h.service.propose_stage(aid, "w1", 2, "1000", "50")
        assert result.error_code == "precondition_failed"
        assert "above 100" in result.errors[0]


class TestWriterAttachment:
    def test_given_up_writer_cannot_reclaim(self, h: _Harness) -> None:
        aid = h.claimed()
        h.chat.post(aid, "s1", "Hello")
        assert h.service.give_up(aid, "w1").success
        assert h.chat.messages(aid) == []
        result = h.service.claim(aid, "w1")
        assert result.success is False
        assert result.error_code == "precondition_failed"

    def test_other_writer_can_claim_after_give_up(self, h: _Harness) -> None:
        aid = h.claimed()
        h.service.give_up(aid, "w1")
        h.add_writer("w2")
        assert h.service.claim(aid, "w2").success

    def test_make_public_is_idempotent(self, h: _Harness) -> None:
        aid = h.post()
        first = h.service.make_public(aid, "s1")
        second = h.service.make_public(aid, "s1")
        assert first.success and second.success
        a = second.data["assignment"]
        assert a.status == S.OPEN
        assert a.writer_id is None

    def test_decline_then_make_public(self, h: _Harness) -> None:
        aid = h.post(writer_id="w1")
        assert h.service.decline_request(aid, "w1").success
        assert h.service.get_assignment(aid).data["assignment"].status == S.REJECTED
        assert h.service.make_public(aid, "s1").success
        assert h.service.claim(aid, "w1").error_code == "precondition_failed"

    def test_accept_request(self, h: _Harness) -> None:
        aid = h.post(writer_id="w1")
        assert h.service.accept_request(aid, "w1").success
        assert any("accepted" in n.message for n in h.notifier.for_user("s1"))

    def test_re_request_writer(self, h: _Harness) -> None:
        aid = h.post(writer_id="w1")
        h.service.decline_request(aid, "w1")
        h.add_writer("w2")
        result = h.service.re_request_writer(aid, "s1", "w2")
        assert result.success
        assert result.data["assignment"].writer_id == "w2"

    def test_cancel_purges_chat_and_bars_writer(self, h: _Harness) -> None:
        aid = h.claimed()
        h.chat.post(aid, "w1", "Draft soon")
        assert h.service.cancel(aid, "s1").success
        assert h.chat.messages(aid) == []
        assert h.service.claim(aid, "w1").error_code == "precondition_failed"

    def test_paid_assignment_cannot_be_cancelled(self, h: _Harness) -> None:
        h.fund("s1", "1000")
        aid = h.claimed()
        h.service.propose_fee(aid, "w1", "1000")
        h.service.accept_and_pay(aid, "s1")
        result = h.service.cancel(aid, "s1")
        assert result.error_code == "precondition_failed"
        assert "contact support" in result.errors[0]

    def test_delete_unclaimed(self, h: _Harness) -> None:
        aid = h.post()
        assert h.service.delete_assignment(aid, "s1").success
        assert h.service.get_assignment(aid).error_code == "not_found"

    def test_bidding_writer_cannot_give_up(self, h: _Harness) -> None:
        aid = h.post(bidding_duration=timedelta(hours=24), budget="2000")
        h.bid(aid, "w1", "900")
        h.service.stop_bidding(aid, "s1")
        assert h.service.select_writer(aid, "s1", "w1").success
        h.chat.post(aid, "w1", "Hi")
        result = h.service.give_up(aid, "w1")
        assert result.error_code == "precondition_failed"
        assert h.service.get_assignment(aid).data["assignment"].writer_id == "w1"
        assert len(h.chat.messages(aid)) == 1
        assert h.service.cancel(aid, "s1").success
        assert h.service.get_assignment(aid).data["assignment"].writer_id is None


class TestEditAssignment:
    def test_seeker_edits_open_assignment(self, h: _Harness) -> None:
        aid = h.post()
        result = h.service.edit_assignment(
            aid, "s1", title="Physics essay on optics",
            description="Two thousand words", education_level="University",
        )
        assert result.success, result.errors
        a = h.service.get_assignment(aid).data["assignment"]
        assert a.title == "Physics essay on optics"
        assert a.description == "Two thousand words"
        assert a.education_level == EducationLevel.UNIVERSITY
        assert a.subject == ""
        edits = h.log.events(EventKind.ASSIGNMENT_EDITED)
        assert edits[-1].payload["fields"] == ["description", "education_level", "title"]

    def test_bidding_assignment_is_editable(self, h: _Harness) -> None:
        aid = h.post(bidding_duration=timedelta(hours=24))
        assert h.service.edit_assignment(aid, "s1", subject="Physics").success

    def test_other_seeker_forbidden(self, h: _Harness) -> None:
        h.service.register_user("s2", "Other", UserRole.SEEKER)
        aid = h.post()
        result = h.service.edit_assignment(aid, "s2", title="Mine now")
        assert result.error_code == "forbidden"
        assert h.service.get_assignment(aid).data["assignment"].title == "Physics essay"

    def test_claimed_assignment_locked(self, h: _Harness) -> None:
        aid = h.claimed()
        result = h.service.edit_assignment(aid, "s1", title="Changed after claim")
        assert result.error_code == "precondition_failed"
        assert h.service.get_assignment(aid).data["assignment"].title == "Physics essay"

    def test_blank_title_and_unknown_level(self, h: _Harness) -> None:
        aid = h.post()
        assert h.service.edit_assignment(aid, "s1", title="  ").error_code == "validation"
        assert h.service.edit_assignment(aid, "s1", education_level="PhD").error_code == "validation"


class TestCancellationReports:
    REASON = "The writer stopped replying for a week after claiming."

    def test_seeker_reports_cancelled_writer(self, h: _Harness) -> None:
        aid = h.claimed()
        assert h.service.cancel(aid, "s1").success
        result = h.service.file_cancellation_report(aid, "s1", "w1", self.REASON)
        assert result.success, result.errors
        report = result.data["report"]
        assert report.reporter_role == UserRole.SEEKER
        assert report.reported_user_name == "Kasun"
        assert report.assignment_title == "Physics essay"
        assert report.created_utc == _now()
        admin_notes = h.notifier.for_user("admin")
        assert admin_notes[-1].message == "Cancellation report filed by Nimali"
        assert admin_notes[-1].link == "/admin/reports"
        reported = h.log.events(EventKind.CANCELLATION_REPORTED)
        assert reported[-1].payload["reported_user_id"] == "w1"

    def test_writer_reports_seeker(self, h: _Harness) -> None:
        aid = h.claimed()
        result = h.service.file_cancellation_report(aid, "w1", "s1", self.REASON)
        assert result.success, result.errors
        assert result.data["report"].reporter_role == UserRole.WRITER

    def test_short_reason_rejected(self, h: _Harness) -> None:
        aid = h.claimed()
        result = h.service.file_cancellation_report(aid, "s1", "w1", "He left.")
        assert result.error_code == "validation"
        assert "20 characters" in result.errors[0]

    def test_outsider_cannot_report(self, h: _Harness) -> None:
        h.add_writer("w2")
        aid = h.claimed()
        assert h.service.file_cancellation_report(aid, "w2", "s1", self.REASON).error_code == "forbidden"
        assert h.service.file_cancellation_report(aid, "s1", "w2", self.REASON).error_code == "forbidden"
        assert h.service.file_cancellation_report(aid, "s1", "ghost", self.REASON).error_code == "not_found"

    def test_admin_listing_newest_first(self, h: _Harness) -> None:
        aid = h.claimed()
        first = h.service.file_cancellation_report(aid, "s1", "w1", self.REASON).data["report"]
        h.clock.now = _now() + timedelta(hours=1)
        second = h.service.file_cancellation_report(aid, "w1", "s1", self.REASON).data["report"]
        result = h.service.list_cancellation_reports("admin")
        assert [r.report_id for r in result.data["reports"]] == [second.report_id, first.report_id]
        assert h.service.list_cancellation_reports("s1").error_code == "forbidden"


class TestBidding:
    def _bidding(self, h: _Harness, hours: int = 24) -> str:
        return h.post(bidding_duration=timedelta(hours=hours), budget="2000")

    def test_fourth_edit_rejected(self, h: _Harness) -> None:
        aid = self._bidding(h)
        assert h.bid(aid, "w1", "900").data["edited"] is False
        for fee in ("880", "860", "840"):
            assert h.bid(aid, "w1", fee).data["edited"] is True
        result = h.bid(aid, "w1", "800")
        assert result.error_code == "precondition_failed"
        bid = h.service.get_assignment(aid).data["assignment"].bids["w1"]
        assert bid.fee == Decimal("840")
        assert bid.edit_count == 3

    def test_select_writer_replaces_and_purges(self, h: _Harness) -> None:
        aid = self._bidding(h)
        h.add_writer("w2")
        h.bid(aid, "w1", "900")
        h.bid(aid, "w2", "950")
        assert h.service.stop_bidding(aid, "s1").success
        assert h.service.select_writer(aid, "s1", "w1").success
        h.chat.post(aid, "w1", "Hi")
        result = h.service.select_writer(aid, "s1", "w2")
        assert result.success
        assert result.data["assignment"].proposed_fee == Decimal("950")
        assert h.chat.messages(aid) == []
        purges = h.log.events(EventKind.CHAT_PURGED)
        assert purges[-1].payload["reason"] == "writer replaced"

    def test_bidding_range(self, h: _Harness) -> None:
        aid = self._bidding(h)
        h.add_writer("w2")
        h.bid(aid, "w1", "900")
        h.bid(aid, "w2", "1200")
        data = h.service.bidding_range(aid).data
        assert data["bid_count"] == 2
        assert (data["min_fee"], data["max_fee"]) == (Decimal("900"), Decimal("1200"))

    def test_remove_bid_is_final(self, h: _Harness) -> None:
        aid = self._bidding(h)
        h.bid(aid, "w1", "900")
        assert h.service.remove_bid(aid, "w1").success
        assert h.bid(aid, "w1", "900").error_code == "precondition_failed"

    def test_deadline_closes_lazily(self, h: _Harness) -> None:
        aid = self._bidding(h, hours=1)
        h.clock.now = _now() + timedelta(hours=2)
        a = h.service.get_assignment(aid).data["assignment"]
        assert a.status == S.OPEN
        assert h.bid(aid, "w1", "900").error_code == "precondition_failed"

    def test_sweep_closes_expired(self, h: _Harness) -> None:
        self._bidding(h, hours=1)
        h.post("A-2", bidding_duration=timedelta(hours=48))
        h.clock.now = _now() + timedelta(hours=2)
        result = h.service.sweep_expired_bidding()
        assert result.data["closed"] == ["A-1"]
        assert h.service.sweep_expired_bidding().data["closed"] == []

    def test_reopen_then_claim(self, h: _Harness) -> None:
        aid = self._bidding(h)
        assert h.service.claim(aid, "w1").error_code == "precondition_failed"
        assert h.service.reopen(aid, "s1").success
        assert h.service.claim(aid, "w1").success


class TestWalletRequests:
    def test_deposit_confirmed(self, h: _Harness) -> None:
        req = h.service.request_deposit("s1", "2500").data["request"]
        result = h.service.confirm_deposit("admin", req.request_id)
        assert result.success
        assert result.data["wallet_balance"] == Decimal("2500")
        assert h.service.confirm_deposit("admin", req.request_id).error_code == "precondition_failed"
        assert h.balance("s1") == Decimal("2500")

    def test_deposit_rejected(self, h: _Harness) -> None:
        req = h.service.request_deposit("s1", "2500").data["request"]
        assert h.service.reject_deposit("admin", req.request_id).success
        assert h.balance("s1") == Decimal("0")

    def test_withdrawal_confirmed(self, h: _Harness) -> None:
        h.fund("w1", "1000")
        req = h.service.request_withdrawal("w1", "500", {"bank": "BOC", "account": "123"}).data["request"]
        result = h.service.confirm_withdrawal("admin", req.request_id)
        assert result.success
        assert result.data["request"].payout_amount == Decimal("475.00")
        assert h.balance("w1") == Decimal("500")

    def test_withdrawal_over_balance(self, h: _Harness) -> None:
        h.fund("w1", "100")
        result = h.service.request_withdrawal("w1", "500", {"bank": "BOC"})
        assert result.error_code == "insufficient_funds"

    def test_withdrawal_needs_bank_details(self, h: _Harness) -> None:
        assert h.service.request_withdrawal("w1", "500", {}).error_code == "validation"


class TestFinance:
    def test_manual_adjustment_and_delete(self, h: _Harness) -> None:
        entry = h.service.adjust_profit("admin", "250", "Bank interest").data["transaction"]
        assert h.service.finance_summary().data["total_profit"] == Decimal("250")
        assert h.service.delete_finance_transaction("admin", entry.transaction_id).success
        assert h.service.finance_summary().data["total_profit"] == Decimal("0")

    def test_adjustment_needs_reason(self, h: _Harness) -> None:
        assert h.service.adjust_profit("admin", "250", "  ").error_code == "validation"


class TestRemoveUser:
    def test_cascade(self, h: _Harness) -> None:
        h.service.register_user("s2", "Other", UserRole.SEEKER)
        h.post("A-1")
        h.service.post_assignment("s2", "History essay", EducationLevel.AL, assignment_id="B-1")
        h.service.claim("B-1", "w1")
        h.fund("w1", "100")
        h.service.request_withdrawal("w1", "50", {"bank": "BOC"})

        result = h.service.remove_user("admin", "w1")
        assert result.success
        assert result.data["released_assignments"] == ["B-1"]
        assert result.data["rejected_requests"] == 1
        assert h.service.get_assignment("B-1").data["assignment"].status == S.OPEN

        seeker = h.service.remove_user("admin", "s1")
        assert seeker.data["deleted_assignments"] == ["A-1"]
        assert h.service.post_assignment("s1", "x", EducationLevel.AL).error_code == "forbidden"

    def test_cascade_releases_bidding_writer(self, h: _Harness) -> None:
        aid = h.post(bidding_duration=timedelta(hours=24))
        h.bid(aid, "w1", "900")
        h.service.stop_bidding(aid, "s1")
        h.service.select_writer(aid, "s1", "w1")
        result = h.service.remove_user("admin", "w1")
        assert result.success, result.errors
        assert result.data["released_assignments"] == [aid]
        a = h.service.get_assignment(aid).data["assignment"]
        assert a.writer_id is None
        assert a.status == S.OPEN

    def test_admin_cannot_be_removed(self, h: _Harness) -> None:
        assert h.service.remove_user("admin", "admin").error_code == "forbidden"


class TestReferrals:
    def test_fifth_referral_wins(self, h: _Harness) -> None:
        h.service.register_user("r1", "Referrer", UserRole.WRITER,
                                education_level=EducationLevel.UNIVERSITY,
                                referral_code="CODE-R1")
        for i in range(5):
            h.service.register_user(f"n{i}", f"New {i}", UserRole.SEEKER, referred_by="CODE-R1")
        outcomes = [h.service.verify_user(f"n{i}").data["outcome"] for i in range(5)]
        assert [o.won for o in outcomes] == [False, False, False, False, True]
        assert h.service.get_user("r1").data["user"].has_zero_service_charge is True
        assert any("referral challenge" in n.message for n in h.notifier.for_user("r1"))
        assert any("won the referral promotion" in n.message for n in h.notifier.for_user("admin"))

    def test_verify_twice_credits_once(self, h: _Harness) -> None:
        h.service.register_user("r1", "Referrer", UserRole.SEEKER, referral_code="CODE-R1")
        h.service.register_user("n1", "New", UserRole.SEEKER, referred_by="CODE-R1")
        assert h.service.verify_user("n1").data["credited"] is True
        assert h.service.verify_user("n1").data["credited"] is False
        assert h.service.get_user("r1").data["user"].referral_count == 1


class TestAuditAndStatus:
    def test_transitions_are_audited(self, h: _Harness) -> None:
        h.fund("s1", "1000")
        aid = h.claimed()
        h.service.propose_fee(aid, "w1", "1000")
        h.service.accept_and_pay(aid, "s1")
        kinds = [e.event_kind for e in h.log.events_for_assignment(aid)]
        assert EventKind.ASSIGNMENT_POSTED in kinds
        assert EventKind.FEE_PROPOSED in kinds
        assert EventKind.ESCROW_FUNDED in kinds
        transitions = h.log.events(EventKind.ASSIGNMENT_TRANSITION)
        assert transitions[-1].payload["to"] == S.IN_PROGRESS.value

    def test_event_ids_are_sequential(self, h: _Harness) -> None:
        ids = [e.event_id for e in h.log.events()]
        assert ids[:2] == ["EVT-00000001", "EVT-00000002"]

    def test_audit_failure_is_a_warning(self) -> None:
        h = _Harness(event_log=_BrokenLog())
        h.fund("s1", "1000")
        result = h.service.post_assignment("s1", "Essay", EducationLevel.AL)
        assert result.success is True
        assert any("Event log failure" in w for w in result.data["warnings"])
        assert h.service.get_assignment(result.data["assignment"].assignment_id).success

    def test_failing_notifier_never_fails_an_action(self, h: _Harness) -> None:
        class Exploding:
            def notify(self, user_id, message, link=None):
                raise RuntimeError("smtp down")

        h.service._notifier = Exploding()
        aid = h.post()
        assert h.service.claim(aid, "w1").success

    def test_status(self, h: _Harness) -> None:
        h.fund("s1", "1000")
        aid = h.claimed()
        h.service.propose_fee(aid, "w1", "1000")
        h.service.accept_and_pay(aid, "s1")
        status = h.service.status()
        assert status["currency"] == "LKR"
        assert status["users"]["total"] == 3
        assert status["users"]["by_role"]["writer"] == 1
        assert status["assignments"]["by_status"] == {"in-progress": 1}
        assert status["assignments"]["escrow_held"] == "1000.00"
        assert status["persistence_degraded"] is False
        assert status["events"] == h.log.count
