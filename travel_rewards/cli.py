"""
Operator commands for the rewards service.

Usage:
    travel-rewards expire-redemptions
    travel-rewards check-badges [--user-id UUID]
    travel-rewards audit-ledger
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import uuid

from sqlalchemy import select

from .core.config import get_settings
from .db import async_session_maker, init_db
from .models import UserAccount
from .services.badges import check_badges
from .services.expiry import run_expiry_sweep
from .services.ledger import find_drift

logger = logging.getLogger("travel_rewards.cli")


async def _expire_redemptions() -> int:
    summary = await run_expiry_sweep(async_session_maker)
    if summary is None:
        print("Another sweep is running; nothing done.")
        return 0
    print(f"Expired {summary.succeeded} redemption(s), {summary.failed} failed, {summary.skipped} skipped.")
    for rid, reason in summary.failures:
        print(f"  {rid}: {reason}")
    return 1 if summary.failed else 0


async def _check_badges(user_id: uuid.UUID | None) -> int:
    if user_id is not None:
        user_ids = [user_id]
    else:
        async with async_session_maker() as db:
            user_ids = list((await db.execute(select(UserAccount.id))).scalars().all())

    awarded = 0
    for uid in user_ids:
        async with async_session_maker() as db:
            badges = await check_badges(db, uid)
        for b in badges:
            print(f"{uid}: awarded {b.slug}")
        awarded += len(badges)
    print(f"Checked {len(user_ids)} user(s), awarded {awarded} badge(s).")
    return 0


async def _audit_ledger() -> int:
    async with async_session_maker() as db:
        drift = await find_drift(db)
    for uid, balance, total in drift:
        print(f"{uid}: balance={balance} ledger={total} diff={balance - total}")
    print("Ledger consistent." if not drift else f"{len(drift)} account(s) out of balance.")
    return 1 if drift else 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="travel-rewards", description="Travel rewards maintenance commands")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("expire-redemptions", help="Expire lapsed redemptions, refund points and restore stock")
    badges = sub.add_parser("check-badges", help="Re-evaluate badge progress and award earned badges")
    badges.add_argument("--user-id", type=uuid.UUID, default=None, help="Only this user")
    sub.add_parser("audit-ledger", help="Report accounts whose balance differs from their ledger")
    return parser


async def _run(args: argparse.Namespace) -> int:
    await init_db()
    if args.command == "expire-redemptions":
        return await _expire_redemptions()
    if args.command == "check-badges":
        return await _check_badges(args.user_id)
    return await _audit_ledger()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=get_settings().log_level.upper(), format="%(levelname)s %(name)s: %(message)s")
    return asyncio.run(_run(args))


if __name__ == "__main__":
    raise SystemExit(main())
