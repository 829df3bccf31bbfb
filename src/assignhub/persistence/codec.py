"""JSON codec for marketplace documents.

Decimals are written as strings and datetimes as ISO-8601 UTC so that a
snapshot round-trips without float drift. Sets are written as sorted
lists.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Optional

from assignhub.models.assignment import Assignment, AssignmentStatus, Bid, Stage
from assignhub.models.finance import (
    DepositRequest,
    FinanceSummary,
    FinanceTransaction,
    RequestState,
    TransactionType,
    WithdrawalRequest,
)
from assignhub.models.promotion import PromotionStatus
from assignhub.models.report import CancellationReport
from assignhub.models.user import AccountStatus, EducationLevel, User, UserRole


def _dec(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else str(value)


def _undec(value: Optional[str]) -> Optional[Decimal]:
    return None if value is None else Decimal(value)


def _dt(value: Optional[datetime]) -> Optional[str]:
    return None if value is None else value.isoformat()


def _undt(value: Optional[str]) -> Optional[datetime]:
    return None if value is None else datetime.fromisoformat(value)


# ------------------------------------------------------------------
# Users
# ------------------------------------------------------------------

def encode_user(user: User) -> dict[str, Any]:
    return {
        "user_id": user.user_id,
        "name": user.name,
        "role": user.role.value,
        "wallet_balance": _dec(user.wallet_balance),
        "status": user.status.value,
        "education_level": user.education_level.value if user.education_level else None,
        "average_rating": user.average_rating,
        "rating_count": user.rating_count,
        "referral_code": user.referral_code,
        "referred_by": user.referred_by,
        "referral_count": user.referral_count,
        "referral_credited": user.referral_credited,
        "has_zero_service_charge": user.has_zero_service_charge,
        "created_utc": _dt(user.created_utc),
    }


def decode_user(data: dict[str, Any]) -> User:
    level = data.get("education_level")
    return User(
        user_id=data["user_id"],
        name=data["name"],
        role=UserRole(data["role"]),
        wallet_balance=Decimal(data["wallet_balance"]),
        status=AccountStatus(data["status"]),
        education_level=EducationLevel(level) if level else None,
        average_rating=data.get("average_rating", 0.0),
        rating_count=data.get("rating_count", 0),
        referral_code=data.get("referral_code"),
        referred_by=data.get("referred_by"),
        referral_count=data.get("referral_count", 0),
        referral_credited=data.get("referral_credited", False),
        has_zero_service_charge=data.get("has_zero_service_charge", False),
        created_utc=_undt(data.get("created_utc")),
    )


# ------------------------------------------------------------------
# Assignments
# ------------------------------------------------------------------

def _encode_stage(stage: Stage) -> dict[str, Any]:
    return {
        "percentage": _dec(stage.percentage),
        "amount": _dec(stage.amount),
        "paid": stage.paid,
        "submitted": stage.submitted,
        "completed": stage.completed,
        "submission_name": stage.submission_name,
    }


def _decode_stage(data: dict[str, Any]) -> Stage:
    return Stage(
        percentage=Decimal(data["percentage"]),
        amount=Decimal(data["amount"]),
        paid=data["paid"],
        submitted=data["submitted"],
        completed=data["completed"],
        submission_name=data.get("submission_name"),
    )


def _encode_bid(bid: Bid) -> dict[str, Any]:
    return {
        "writer_id": bid.writer_id,
        "writer_name": bid.writer_name,
        "fee": _dec(bid.fee),
        "proposal": bid.proposal,
        "edit_count": bid.edit_count,
        "created_utc": _dt(bid.created_utc),
        "updated_utc": _dt(bid.updated_utc),
    }


def _decode_bid(data: dict[str, Any]) -> Bid:
    return Bid(
        writer_id=data["writer_id"],
        writer_name=data["writer_name"],
        fee=Decimal(data["fee"]),
        proposal=data["proposal"],
        edit_count=data.get("edit_count", 0),
        created_utc=_undt(data.get("created_utc")),
        updated_utc=_undt(data.get("updated_utc")),
    )


def encode_assignment(a: Assignment) -> dict[str, Any]:
    return {
        "assignment_id": a.assignment_id,
        "title": a.title,
        "seeker_id": a.seeker_id,
        "seeker_name": a.seeker_name,
        "education_level": a.education_level.value,
        "subject": a.subject,
        "description": a.description,
        "status": a.status.value,
        "writer_id": a.writer_id,
        "writer_name": a.writer_name,
        "proposed_fee": _dec(a.proposed_fee),
        "fee": _dec(a.fee),
        "fee_agreed": a.fee_agreed,
        "payment_confirmed": a.payment_confirmed,
        "paid_out": a.paid_out,
        "is_staged_payment": a.is_staged_payment,
        "current_stage": a.current_stage,
        # JSON object keys are strings; stage numbers are restored on load
        "stages": {str(n): _encode_stage(s) for n, s in a.stages.items()},
        "is_bidding": a.is_bidding,
        "bidding_deadline": _dt(a.bidding_deadline),
        "budget": _dec(a.budget),
        "bids": {wid: _encode_bid(b) for wid, b in a.bids.items()},
        "withdrawn_bids": sorted(a.withdrawn_bids),
        "given_up_by": sorted(a.given_up_by),
        "submission_name": a.submission_name,
        "rating": a.rating,
        "review": a.review,
        "review_submitted": a.review_submitted,
        "admin_feedback_submitted": a.admin_feedback_submitted,
        "created_utc": _dt(a.created_utc),
        "updated_utc": _dt(a.updated_utc),
    }


def decode_assignment(data: dict[str, Any]) -> Assignment:
    return Assignment(
        assignment_id=data["assignment_id"],
        title=data["title"],
        seeker_id=data["seeker_id"],
        seeker_name=data["seeker_name"],
        education_level=EducationLevel(data["education_level"]),
        subject=data.get("subject", ""),
        description=data.get("description", ""),
        status=AssignmentStatus(data["status"]),
        writer_id=data.get("writer_id"),
        writer_name=data.get("writer_name"),
        proposed_fee=_undec(data.get("proposed_fee")),
        fee=_undec(data.get("fee")),
        fee_agreed=data.get("fee_agreed", False),
        payment_confirmed=data.get("payment_confirmed", False),
        paid_out=data.get("paid_out", False),
        is_staged_payment=data.get("is_staged_payment", False),
        current_stage=data.get("current_stage"),
        stages={int(n): _decode_stage(s) for n, s in data.get("stages", {}).items()},
        is_bidding=data.get("is_bidding", False),
        bidding_deadline=_undt(data.get("bidding_deadline")),
        budget=_undec(data.get("budget")),
        bids={wid: _decode_bid(b) for wid, b in data.get("bids", {}).items()},
        withdrawn_bids=set(data.get("withdrawn_bids", [])),
        given_up_by=set(data.get("given_up_by", [])),
        submission_name=data.get("submission_name"),
        rating=data.get("rating"),
        review=data.get("review"),
        review_submitted=data.get("review_submitted", False),
        admin_feedback_submitted=data.get("admin_feedback_submitted", False),
        created_utc=_undt(data.get("created_utc")),
        updated_utc=_undt(data.get("updated_utc")),
    )


# ------------------------------------------------------------------
# Finance and wallet requests
# ------------------------------------------------------------------

def encode_finance(summary: FinanceSummary) -> dict[str, Any]:
    return {
        "total_profit": _dec(summary.total_profit),
        "transactions": [
            {
                "transaction_id": t.transaction_id,
                "amount": _dec(t.amount),
                "transaction_type": t.transaction_type.value,
                "description": t.description,
                "timestamp_utc": _dt(t.timestamp_utc),
                "assignment_id": t.assignment_id,
            }
            for t in summary.transactions
        ],
    }


def decode_finance(data: dict[str, Any]) -> FinanceSummary:
    return FinanceSummary(
        total_profit=Decimal(data["total_profit"]),
        transactions=[
            FinanceTransaction(
                transaction_id=t["transaction_id"],
                amount=Decimal(t["amount"]),
                transaction_type=TransactionType(t["transaction_type"]),
                description=t["description"],
                timestamp_utc=datetime.fromisoformat(t["timestamp_utc"]),
                assignment_id=t.get("assignment_id"),
            )
            for t in data.get("transactions", [])
        ],
    )


def encode_deposit(req: DepositRequest) -> dict[str, Any]:
    return {
        "request_id": req.request_id,
        "user_id": req.user_id,
        "amount": _dec(req.amount),
        "state": req.state.value,
        "created_utc": _dt(req.created_utc),
        "resolved_utc": _dt(req.resolved_utc),
    }


def decode_deposit(data: dict[str, Any]) -> DepositRequest:
    return DepositRequest(
        request_id=data["request_id"],
        user_id=data["user_id"],
        amount=Decimal(data["amount"]),
        state=RequestState(data["state"]),
        created_utc=_undt(data.get("created_utc")),
        resolved_utc=_undt(data.get("resolved_utc")),
    )


def encode_withdrawal(req: WithdrawalRequest) -> dict[str, Any]:
    return {
        "request_id": req.request_id,
        "user_id": req.user_id,
        "amount": _dec(req.amount),
        "bank_details": dict(req.bank_details),
        "state": req.state.value,
        "requested_utc": _dt(req.requested_utc),
        "resolved_utc": _dt(req.resolved_utc),
        "service_charge": _dec(req.service_charge),
        "payout_amount": _dec(req.payout_amount),
        "wallet_balance_at_request": _dec(req.wallet_balance_at_request),
    }


def decode_withdrawal(data: dict[str, Any]) -> WithdrawalRequest:
    return WithdrawalRequest(
        request_id=data["request_id"],
        user_id=data["user_id"],
        amount=Decimal(data["amount"]),
        bank_details=dict(data.get("bank_details", {})),
        state=RequestState(data["state"]),
        requested_utc=_undt(data.get("requested_utc")),
        resolved_utc=_undt(data.get("resolved_utc")),
        service_charge=_undec(data.get("service_charge")),
        payout_amount=_undec(data.get("payout_amount")),
        wallet_balance_at_request=_undec(data.get("wallet_balance_at_request")),
    )


def encode_promotion(status: PromotionStatus) -> dict[str, Any]:
    return {"winner_count": status.winner_count}


def decode_promotion(data: dict[str, Any]) -> PromotionStatus:
    return PromotionStatus(winner_count=int(data.get("winner_count", 0)))


def encode_report(report: CancellationReport) -> dict[str, Any]:
    return {
        "report_id": report.report_id,
        "assignment_id": report.assignment_id,
        "assignment_title": report.assignment_title,
        "reporter_id": report.reporter_id,
        "reporter_name": report.reporter_name,
        "reporter_role": report.reporter_role.value,
        "reported_user_id": report.reported_user_id,
        "reported_user_name": report.reported_user_name,
        "reason": report.reason,
        "created_utc": _dt(report.created_utc),
    }


def decode_report(data: dict[str, Any]) -> CancellationReport:
    return CancellationReport(
        report_id=data["report_id"],
        assignment_id=data["assignment_id"],
        assignment_title=data["assignment_title"],
        reporter_id=data["reporter_id"],
        reporter_name=data["reporter_name"],
        reporter_role=UserRole(data["reporter_role"]),
        reported_user_id=data["reported_user_id"],
        reported_user_name=data["reported_user_name"],
        reason=data["reason"],
        created_utc=datetime.fromisoformat(data["created_utc"]),
    )


# collection name → (encoder, decoder)
CODECS: dict[str, tuple[Callable[[Any], dict[str, Any]], Callable[[dict[str, Any]], Any]]] = {
    "users": (encode_user, decode_user),
    "assignments": (encode_assignment, decode_assignment),
    "finance": (encode_finance, decode_finance),
    "deposits": (encode_deposit, decode_deposit),
    "withdrawals": (encode_withdrawal, decode_withdrawal),
    "promotions": (encode_promotion, decode_promotion),
    "reports": (encode_report, decode_report),
}
