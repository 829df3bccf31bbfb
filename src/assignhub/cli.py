"""AssignHub CLI — command-line interface for the marketplace core.

Usage:
    python -m assignhub.cli status
    python -m assignhub.cli register-user --id admin --name Ops --role admin
    python -m assignhub.cli register-user --id s1 --name Nimali --role seeker
    python -m assignhub.cli register-user --id w1 --name Kasun --role writer --education A/L
    python -m assignhub.cli credit --admin admin --user s1 --amount 2000
    python -m assignhub.cli post-assignment --seeker s1 --title "Essay" --education A/L --id A-1
    python -m assignhub.cli claim --id A-1 --writer w1
    python -m assignhub.cli propose-fee --id A-1 --writer w1 --fee 1500
    python -m assignhub.cli pay --id A-1 --seeker s1
    python -m assignhub.cli submit --id A-1 --writer w1 --file essay.pdf
    python -m assignhub.cli complete --id A-1 --seeker s1 --rating 5
    python -m assignhub.cli finance
    python -m assignhub.cli check-invariants
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import timedelta
from pathlib import Path

from assignhub.models.user import EducationLevel, UserRole
from assignhub.persistence.document_store import DocumentStore
from assignhub.persistence.event_log import EventLog
from assignhub.policy.resolver import PolicyResolver
from assignhub.service import MarketplaceService, ServiceResult


DEFAULT_CONFIG = Path(__file__).resolve().parents[2] / "config"
DEFAULT_DATA = Path(__file__).resolve().parents[2] / "data"


def _make_service(config_dir: Path, data_dir: Path = DEFAULT_DATA) -> MarketplaceService:
    """Create a MarketplaceService with durable persistence."""
    data_dir.mkdir(parents=True, exist_ok=True)
    resolver = PolicyResolver.from_config_dir(config_dir)
    event_log = EventLog(storage_path=data_dir / "events.jsonl")
    store = DocumentStore(
        storage_path=data_dir / "state.json",
        max_attempts=resolver.transaction_max_attempts(),
    )
    return MarketplaceService(resolver, store=store, event_log=event_log)


def _report(result: ServiceResult, message: str) -> int:
    if result.success:
        print(message)
        for warning in result.data.get("warnings", []):
            print(f"Warning: {warning}", file=sys.stderr)
        return 0
    print(f"Failed [{result.error_code}]: {'; '.join(result.errors)}", file=sys.stderr)
    return 1


def cmd_status(args: argparse.Namespace) -> int:
    service = _make_service(args.config, args.data)
    print(json.dumps(service.status(), indent=2))
    return 0


def cmd_register_user(args: argparse.Namespace) -> int:
    service = _make_service(args.config, args.data)
    result = service.register_user(
        user_id=args.id,
        name=args.name,
        role=UserRole(args.role),
        education_level=EducationLevel(args.education) if args.education else None,
        referral_code=args.referral_code,
        referred_by=args.referred_by,
    )
    return _report(result, f"Registered {args.role}: {args.id}")


def cmd_credit(args: argparse.Namespace) -> int:
    service = _make_service(args.config, args.data)
    if args.debit:
        result = service.admin_debit_wallet(args.admin, args.user, args.amount)
    else:
        result = service.admin_credit_wallet(args.admin, args.user, args.amount)
    balance = result.data.get("wallet_balance")
    return _report(result, f"Wallet of {args.user}: LKR {balance}")


def cmd_post_assignment(args: argparse.Namespace) -> int:
    service = _make_service(args.config, args.data)
    duration = (
        timedelta(hours=args.bidding_hours) if args.bidding_hours is not None else None
    )
    result = service.post_assignment(
        seeker_id=args.seeker,
        title=args.title,
        education_level=EducationLevel(args.education),
        subject=args.subject,
        writer_id=args.writer,
        bidding_duration=duration,
        budget=args.budget,
        assignment_id=args.id,
    )
    if not result.success:
        return _report(result, "")
    a = result.data["assignment"]
    return _report(result, f"Posted assignment: {a.assignment_id} ({a.status.value})")


def cmd_claim(args: argparse.Namespace) -> int:
    service = _make_service(args.config, args.data)
    result = service.claim(args.id, args.writer)
    return _report(result, f"Claimed {args.id} for {args.writer}")


def cmd_propose_fee(args: argparse.Namespace) -> int:
    service = _make_service(args.config, args.data)
    if args.stage is not None:
        result = service.propose_stage(
            args.id, args.writer, args.stage, args.fee, args.percentage,
        )
        return _report(result, f"Proposed stage {args.stage} for {args.id}")
    result = service.propose_fee(args.id, args.writer, args.fee)
    return _report(result, f"Proposed LKR {args.fee} for {args.id}")


def cmd_pay(args: argparse.Namespace) -> int:
    service = _make_service(args.config, args.data)
    result = service.accept_and_pay(args.id, args.seeker, stage=args.stage)
    return _report(result, f"Escrow funded for {args.id}: LKR {result.data.get('amount')}")


def cmd_submit(args: argparse.Namespace) -> int:
    service = _make_service(args.config, args.data)
    if args.stage is not None:
        result = service.submit_stage(args.id, args.writer, args.stage, args.file)
    else:
        result = service.submit_work(args.id, args.writer, args.file)
    return _report(result, f"Submitted {args.file} for {args.id}")


def cmd_complete(args: argparse.Namespace) -> int:
    service = _make_service(args.config, args.data)
    result = service.mark_complete(args.id, args.seeker, args.rating, args.review)
    if not result.success:
        return _report(result, "")
    breakdown = result.data["commission"]
    return _report(
        result,
        f"Completed {args.id}: writer paid LKR {breakdown.writer_payout}, "
        f"commission LKR {breakdown.commission}",
    )


def cmd_finance(args: argparse.Namespace) -> int:
    service = _make_service(args.config, args.data)
    result = service.finance_summary()
    if not result.success:
        return _report(result, "")
    print(json.dumps(
        {
            "total_profit": result.data["total_profit"],
            "transactions": [
                {
                    "id": t.transaction_id,
                    "amount": t.amount,
                    "type": t.transaction_type.value,
                    "description": t.description,
                    "timestamp": t.timestamp_utc.isoformat(),
                }
                for t in result.data["transactions"]
            ],
        },
        indent=2,
        default=str,
    ))
    return 0


def cmd_sweep_bidding(args: argparse.Namespace) -> int:
    service = _make_service(args.config, args.data)
    result = service.sweep_expired_bidding()
    closed = result.data.get("closed", [])
    return _report(result, f"Closed {len(closed)} expired bidding phase(s)")


def cmd_check_invariants(args: argparse.Namespace) -> int:
    """Run config and state invariant checks."""
    # Import and run the existing check_invariants tool
    tools_dir = Path(__file__).resolve().parents[2] / "tools"
    sys.path.insert(0, str(tools_dir))
    from check_invariants import check

    code = check(args.config / "marketplace_params.json")
    errors = _make_service(args.config, args.data).check_invariants()
    if errors:
        print("State check failed:")
        for err in errors:
            print(f"- {err}")
        return 1
    print("State check passed.")
    return code


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="assignhub",
        description="AssignHub — assignment marketplace CLI",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG,
        help="Path to config directory (default: config/)",
    )
    parser.add_argument(
        "--data",
        type=Path,
        default=DEFAULT_DATA,
        help="Path to data directory holding state.json and events.jsonl",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command")

    # status
    sub.add_parser("status", help="Show marketplace status")

    # register-user
    p_reg = sub.add_parser("register-user", help="Register a user")
    p_reg.add_argument("--id", required=True, help="User ID")
    p_reg.add_argument("--name", required=True, help="Display name")
    p_reg.add_argument("--role", required=True, choices=[r.value for r in UserRole])
    p_reg.add_argument(
        "--education", choices=[e.value for e in EducationLevel],
        help="Education level (required for writers)",
    )
    p_reg.add_argument("--referral-code", help="Referral code to hand out")
    p_reg.add_argument("--referred-by", help="Referral code used at sign-up")

    # credit
    p_credit = sub.add_parser("credit", help="Admin wallet credit (or --debit)")
    p_credit.add_argument("--admin", required=True, help="Admin user ID")
    p_credit.add_argument("--user", required=True, help="User ID")
    p_credit.add_argument("--amount", required=True, help="Amount (Decimal)")
    p_credit.add_argument("--debit", action="store_true", help="Debit instead of credit")

    # post-assignment
    p_post = sub.add_parser("post-assignment", help="Post a new assignment")
    p_post.add_argument("--seeker", required=True, help="Seeker user ID")
    p_post.add_argument("--title", required=True, help="Assignment title")
    p_post.add_argument(
        "--education", required=True, choices=[e.value for e in EducationLevel],
    )
    p_post.add_argument("--subject", default="", help="Subject")
    p_post.add_argument("--id", help="Assignment ID (default: generated)")
    p_post.add_argument("--writer", help="Send directly to this writer")
    p_post.add_argument("--bidding-hours", type=float, help="Put up for bidding for N hours")
    p_post.add_argument("--budget", help="Optional bidding budget (Decimal)")

    # claim
    p_claim = sub.add_parser("claim", help="Writer claims an open assignment")
    p_claim.add_argument("--id", required=True, help="Assignment ID")
    p_claim.add_argument("--writer", required=True, help="Writer user ID")

    # propose-fee
    p_fee = sub.add_parser("propose-fee", help="Writer proposes a flat fee or a stage")
    p_fee.add_argument("--id", required=True, help="Assignment ID")
    p_fee.add_argument("--writer", required=True, help="Writer user ID")
    p_fee.add_argument("--fee", required=True, help="Flat fee, or total fee for stages")
    p_fee.add_argument("--stage", type=int, help="Stage number for staged payment")
    p_fee.add_argument("--percentage", help="Stage percentage of the total fee")

    # pay
    p_pay = sub.add_parser("pay", help="Seeker accepts the fee and funds escrow")
    p_pay.add_argument("--id", required=True, help="Assignment ID")
    p_pay.add_argument("--seeker", required=True, help="Seeker user ID")
    p_pay.add_argument("--stage", type=int, help="Stage to fund")

    # submit
    p_sub = sub.add_parser("submit", help="Writer submits work")
    p_sub.add_argument("--id", required=True, help="Assignment ID")
    p_sub.add_argument("--writer", required=True, help="Writer user ID")
    p_sub.add_argument("--file", required=True, help="Submission file name")
    p_sub.add_argument("--stage", type=int, help="Stage being delivered")

    # complete
    p_done = sub.add_parser("complete", help="Seeker completes and releases payment")
    p_done.add_argument("--id", required=True, help="Assignment ID")
    p_done.add_argument("--seeker", required=True, help="Seeker user ID")
    p_done.add_argument("--rating", required=True, type=int, help="Writer rating")
    p_done.add_argument("--review", help="Optional review")

    # finance
    sub.add_parser("finance", help="Show platform profit and transactions")

    # sweep-bidding
    sub.add_parser("sweep-bidding", help="Close bidding phases past their deadline")

    # check-invariants
    sub.add_parser("check-invariants", help="Run config and state invariant checks")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command is None:
        parser.print_help()
        return 0

    commands = {
        "status": cmd_status,
        "register-user": cmd_register_user,
        "credit": cmd_credit,
        "post-assignment": cmd_post_assignment,
        "claim": cmd_claim,
        "propose-fee": cmd_propose_fee,
        "pay": cmd_pay,
        "submit": cmd_submit,
        "complete": cmd_complete,
        "finance": cmd_finance,
        "sweep-bidding": cmd_sweep_bidding,
        "check-invariants": cmd_check_invariants,
    }

    handler = commands.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 1

    return handler(args)


if __name__ == "__main__":
    raise SystemExit(main())
