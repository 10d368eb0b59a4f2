"""SafeSwap CLI: command-line access to the escrow and trust core.

Usage:
    safeswap check-config
    safeswap quote --amount 1000
    safeswap score --completed 8 --total 10 --volume 25000 --rating 4.5 --kyc approved --days 40
    safeswap demo --events data/events.jsonl

The config directory comes from --config-dir, then SAFESWAP_CONFIG_DIR
(a .env file in the working directory is honoured), then config/.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from safeswap.escrow.provider import MockPaymentProvider
from safeswap.models.deal import MilestoneSpec
from safeswap.models.trust import TrustHistory
from safeswap.models.user import Actor, KYCStatus, User, UserRole
from safeswap.notifications import RecordingDispatcher
from safeswap.persistence.event_log import EventLog
from safeswap.policy.resolver import DEFAULT_CONFIG_DIR, PolicyResolver
from safeswap.service import SafeSwapService
from safeswap.trust.engine import TrustEngine

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "SAFESWAP_CONFIG_DIR"


def _config_dir(args: argparse.Namespace) -> Path:
    if args.config_dir is not None:
        return args.config_dir
    from_env = os.getenv(CONFIG_ENV_VAR)
    return Path(from_env) if from_env else DEFAULT_CONFIG_DIR


def _load_resolver(args: argparse.Namespace) -> PolicyResolver:
    return PolicyResolver.from_config_dir(_config_dir(args))


def _print_json(data: object) -> None:
    print(json.dumps(data, indent=2, default=str))


def cmd_check_config(args: argparse.Namespace) -> int:
    """Load and validate the parameter file."""
    try:
        resolver = _load_resolver(args)
    except ValueError as exc:
        print(f"Invalid config: {exc}", file=sys.stderr)
        return 1
    limits = resolver.deal_limits()
    initial, low, high = resolver.trust_bounds()
    _print_json({
        "config_dir": str(_config_dir(args)),
        "version": resolver.version,
        "escrow_fee_rate": resolver.fee_rate(),
        "deal_amount_range": [limits.min_amount, limits.max_amount],
        "currencies": list(limits.currencies),
        "max_milestones": limits.max_milestones,
        "trust_score_range": [low, high],
        "initial_trust_score": initial,
    })
    return 0


def cmd_quote(args: argparse.Namespace) -> int:
    resolver = _load_resolver(args)
    service = SafeSwapService(resolver)
    try:
        result = service.quote_fee(args.amount)
    finally:
        service.close()
    if result.success:
        q = result.value
        _print_json({"amount": q.amount, "fee": q.fee, "total": q.total, "rate": q.rate})
        return 0
    print(f"Failed: {'; '.join(result.errors)}", file=sys.stderr)
    return 1


def cmd_score(args: argparse.Namespace) -> int:
    """Compute a trust score from raw history figures."""
    if args.total < args.completed:
        print("Failed: completed deals cannot exceed total deals", file=sys.stderr)
        return 1
    try:
        volume = Decimal(args.volume)
    except InvalidOperation:
        print(f"Failed: volume is not a number: {args.volume}", file=sys.stderr)
        return 1

    engine = TrustEngine(_load_resolver(args))
    kyc = KYCStatus(args.kyc)
    user = User(
        user_id="cli",
        email="cli@localhost",
        is_verified=args.verified or kyc == KYCStatus.APPROVED,
        kyc_status=kyc,
        average_rating=args.rating,
    )
    history = TrustHistory(
        completed_deals=args.completed,
        total_deals=args.total,
        total_volume=volume,
        days_active=args.days,
    )
    breakdown = engine.compute_breakdown(user, history)
    score = engine.compute_score(user, history)
    _print_json({
        "score": score,
        "rank": engine.rank(score).value,
        "breakdown": breakdown.as_dict(),
        "suggestions": engine.suggestions(breakdown),
    })
    return 0


def cmd_demo(args: argparse.Namespace) -> int:
    """Run a two-milestone deal from creation to completion."""
    resolver = _load_resolver(args)
    event_log = EventLog(storage_path=args.events) if args.events else EventLog()
    dispatcher = RecordingDispatcher()
    service = SafeSwapService(
        resolver,
        provider=MockPaymentProvider(),
        event_log=event_log,
        dispatcher=dispatcher,
    )
    start = datetime.now(timezone.utc)
    buyer, seller = Actor("demo_buyer"), Actor("demo_seller")

    try:
        service.register_user("demo_buyer", "buyer@demo.safeswap", now=start)
        service.register_user("demo_seller", "seller@demo.safeswap", now=start)
        service.register_user("demo_admin", "admin@demo.safeswap", role=UserRole.ADMIN, now=start)

        created = service.create_deal(
            buyer,
            title="Logo and brand kit",
            description="Logo concepts followed by the final brand kit files.",
            category="design",
            amount=Decimal(args.amount),
            seller_id="demo_seller",
            milestones=_demo_milestones(Decimal(args.amount)),
            now=start,
        )
        if not created.success:
            print(f"Failed: {'; '.join(created.errors)}", file=sys.stderr)
            return 1
        deal = created.value
        m1, m2 = (m.milestone_id for m in deal.milestones)

        steps = [
            ("accept", lambda t: service.accept_deal(seller, deal.deal_id, now=t)),
            ("fund", lambda t: service.fund_deal(buyer, deal.deal_id, "pm_card_visa", now=t)),
            ("complete 1", lambda t: service.complete_milestone(seller, deal.deal_id, m1, now=t)),
            ("approve 1", lambda t: service.approve_milestone(buyer, deal.deal_id, m1, now=t)),
            ("complete 2", lambda t: service.complete_milestone(seller, deal.deal_id, m2, now=t)),
            ("approve 2", lambda t: service.approve_milestone(buyer, deal.deal_id, m2, now=t)),
        ]
        for offset, (name, step) in enumerate(steps, start=1):
            result = step(start + timedelta(minutes=offset))
            if not result.success:
                print(f"Failed at {name}: {'; '.join(result.errors)}", file=sys.stderr)
                return 1
            logger.info("demo step %s → %s", name, result.value.status.value)

        final = service.get_deal(buyer, deal.deal_id).value
        _print_json({
            "deal_id": final.deal_id,
            "status": final.status.value,
            "escrow_amount": final.escrow_amount,
            "fee": final.escrow_fee,
            "transactions": [
                {"type": t.transaction_type.value, "amount": t.amount, "status": t.status.value}
                for t in service.escrow.transactions(final.deal_id)
            ],
            "trust_scores": {
                uid: service.get_user(Actor(uid), uid).value.trust_score
                for uid in ("demo_buyer", "demo_seller")
            },
            "events": event_log.count,
            "notifications": dispatcher.names(),
        })
        return 0
    finally:
        service.close()


def _demo_milestones(amount: Decimal) -> list[MilestoneSpec]:
    first = (amount * Decimal("0.4")).quantize(Decimal("0.01"))
    return [
        MilestoneSpec("Logo concepts", first),
        MilestoneSpec("Final brand kit", amount - first),
    ]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="safeswap",
        description="SafeSwap escrow and trust core CLI",
    )
    parser.add_argument(
        "--config-dir",
        type=Path,
        default=None,
        help=f"Path to config directory (default: ${CONFIG_ENV_VAR} or config/)",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: WARNING)",
    )
    sub = parser.add_subparsers(dest="command")

    # check-config
    sub.add_parser("check-config", help="Validate the parameter file")

    # quote
    p_quote = sub.add_parser("quote", help="Quote the escrow fee for an amount")
    p_quote.add_argument("--amount", required=True, help="Deal amount (Decimal)")

    # score
    p_score = sub.add_parser("score", help="Compute a trust score from history figures")
    p_score.add_argument("--completed", type=int, default=0, help="Completed deals")
    p_score.add_argument("--total", type=int, default=0, help="Closed deals (completed + failed)")
    p_score.add_argument("--volume", default="0", help="Completed deal volume (Decimal)")
    p_score.add_argument("--rating", type=float, default=None, help="Average rating 0-5")
    p_score.add_argument(
        "--kyc", default=KYCStatus.NOT_SUBMITTED.value,
        choices=[k.value for k in KYCStatus],
        help="KYC status (default: not_submitted)",
    )
    p_score.add_argument("--verified", action="store_true", help="Email/phone verified")
    p_score.add_argument("--days", type=int, default=0, help="Days active")

    # demo
    p_demo = sub.add_parser("demo", help="Run a deal end to end against the mock provider")
    p_demo.add_argument("--amount", default="1000", help="Deal amount (default: 1000)")
    p_demo.add_argument("--events", type=Path, help="Append audit events to this JSONL file")

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command is None:
        parser.print_help()
        return 0

    commands = {
        "check-config": cmd_check_config,
        "quote": cmd_quote,
        "score": cmd_score,
        "demo": cmd_demo,
    }

    handler = commands.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 1

    return handler(args)


if __name__ == "__main__":
    raise SystemExit(main())
