import argparse
import asyncio
import json
import sys
import uuid
from typing import Any, Sequence

from promo_engine.core.errors import ConditionSyntaxError, EngineError
from promo_engine.db.session import SessionLocal
from promo_engine.services import audit_trail, coupon_pool, housekeeping_scheduler
from promo_engine.services.conditions import compile_condition, dump


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


def check_condition(expression: str) -> int:
    try:
        predicate = compile_condition(expression)
    except ConditionSyntaxError as exc:
        print(f"error: {exc.detail}", file=sys.stderr)
        return 1
    _print_json({"source": predicate.source, "size": predicate.size, "tree": dump(predicate.root)})
    return 0


async def run_housekeeping() -> dict[str, int]:
    return await housekeeping_scheduler.run_once(SessionLocal)


async def prune_audit(days: int | None) -> int:
    async with SessionLocal() as session:
        return await audit_trail.prune(session, retention_days=days)


async def create_pool(
    campaign_id: uuid.UUID,
    *,
    size: int | None,
    per_customer_limit: int | None,
    prefix: str | None,
) -> coupon_pool.PoolStats:
    async with SessionLocal() as session:
        return await coupon_pool.create_pool(
            session,
            campaign_id,
            size=size,
            per_customer_limit=per_customer_limit,
            code_prefix=prefix,
        )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="promo-engine", description="Campaign engine maintenance utilities")
    subparsers = parser.add_subparsers(dest="command")

    check = subparsers.add_parser("check-condition", help="Compile a condition expression and print its tree")
    check.add_argument("expression", help="Condition text, e.g. 'subtotal >= 100 and first_order = true'")

    subparsers.add_parser("housekeeping", help="Run one housekeeping sweep")

    prune = subparsers.add_parser("prune-audit", help="Delete audit records past the retention window")
    prune.add_argument("--days", type=int, default=None, help="Retention in days (default from settings)")

    pool = subparsers.add_parser("create-pool", help="Generate the coupon pool of a campaign")
    pool.add_argument("--campaign-id", required=True, type=uuid.UUID, help="Campaign id")
    pool.add_argument("--size", type=int, default=None, help="Number of codes (default: campaign coupon_pool_size)")
    pool.add_argument("--per-customer-limit", type=int, default=None, help="Codes one customer may hold or redeem")
    pool.add_argument("--prefix", default=None, help="Code prefix")
    return parser


def _run_cli_command(args: argparse.Namespace) -> int | None:
    if args.command == "check-condition":
        return check_condition(args.expression)

    if args.command == "housekeeping":
        _print_json(asyncio.run(run_housekeeping()))
        return 0

    if args.command == "prune-audit":
        removed = asyncio.run(prune_audit(args.days))
        print(f"Pruned {removed} audit record(s)")
        return 0

    if args.command == "create-pool":
        stats = asyncio.run(
            create_pool(
                args.campaign_id,
                size=args.size,
                per_customer_limit=args.per_customer_limit,
                prefix=args.prefix,
            )
        )
        _print_json({"campaign_id": stats.campaign_id, "pool_id": stats.pool_id, "total": stats.total})
        return 0

    return None


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    try:
        code = _run_cli_command(args)
    except EngineError as exc:
        print(f"error: {exc.detail}", file=sys.stderr)
        return 1
    if code is None:
        parser.print_help()
        return 2
    return code


if __name__ == "__main__":
    sys.exit(main())
