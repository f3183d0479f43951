from __future__ import annotations
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Tuple
from redis.exceptions import LockNotOwnedError, RedisError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy import select

from ..core.cache import get_catalog_cache
from ..core.config import get_settings
from ..core.redis import get_redis
from ..db import async_session_maker, atomic
from ..models import Redemption, RedemptionStatus, Reward, TransactionType, utcnow
from .ledger import LedgerRef, append, lock_account
from .redemptions import OPEN_STATUSES, is_overdue, restore_stock, transition

settings = get_settings()
logger = logging.getLogger(__name__)

SWEEP_LOCK = "lock:expiry-sweep"

@dataclass
class SweepSummary:
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    failures: List[Tuple[uuid.UUID, str]] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {"succeeded": self.succeeded, "failed": self.failed, "skipped": self.skipped}

async def due_redemption_ids(db: AsyncSession, now: datetime) -> List[uuid.UUID]:
    rows = (await db.execute(
        select(Redemption.id).where(Redemption.status.in_(OPEN_STATUSES), Redemption.valid_until < now)
        .order_by(Redemption.valid_until.asc())
    )).scalars().all()
    return list(rows)

async def expire_one(db: AsyncSession, redemption_id: uuid.UUID, *, now: datetime) -> bool:
    """Expire one lapsed redemption, restoring stock and refunding points. False if nothing to do."""
    async with atomic(db):
        redemption = (await db.execute(
            select(Redemption).where(Redemption.id == redemption_id).with_for_update()
        )).scalar_one_or_none()
        # re-checked under lock: a claim may have landed since the scan
        if redemption is None or not is_overdue(redemption, now):
            return False
        reward = (await db.execute(
            select(Reward).where(Reward.id == redemption.reward_id).with_for_update()
        )).scalar_one()
        account = await lock_account(db, redemption.user_id)

        transition(redemption, RedemptionStatus.EXPIRED)
        restore_stock(reward)
        append(
            db, account=account, delta=redemption.points_spent, kind=TransactionType.REFUNDED,
            ref=LedgerRef.redemption(redemption.id), description=f"Expired: {reward.title}",
        )
    return True

async def expire_redemptions(
    session_maker: async_sessionmaker[AsyncSession],
    *,
    now: datetime | None = None,
) -> SweepSummary:
    """Expire every lapsed open redemption, each in its own transaction."""
    now = now or utcnow()
    summary = SweepSummary()
    async with session_maker() as db:
        ids = await due_redemption_ids(db, now)

    for rid in ids:
        try:
            async with session_maker() as db:
                done = await expire_one(db, rid, now=now)
        except Exception as exc:
            logger.exception("failed to expire redemption %s", rid)
            summary.failed += 1
            summary.failures.append((rid, str(exc)))
            continue
        if done:
            summary.succeeded += 1
        else:
            summary.skipped += 1
    return summary

async def run_expiry_sweep(
    session_maker: async_sessionmaker[AsyncSession] | None = None,
    r=None,
    *,
    now: datetime | None = None,
) -> SweepSummary | None:
    """
    Scheduled entry point. Only one sweep runs at a time across replicas;
    returns None when another instance holds the lock.
    """
    session_maker = session_maker or async_session_maker
    r = r or get_redis()
    lock = r.lock(SWEEP_LOCK, timeout=settings.sweep_lock_ttl_seconds, blocking=False)
    held = False
    try:
        held = await lock.acquire()
        if not held:
            logger.info("expiry sweep already running elsewhere, skipping")
            return None
    except RedisError as exc:
        logger.warning("sweep lock unavailable (%s); running without it", exc)

    try:
        summary = await expire_redemptions(session_maker, now=now)
    finally:
        if held:
            try:
                await lock.release()
            except LockNotOwnedError:
                logger.warning("sweep lock expired before the sweep finished")
            except RedisError as exc:
                logger.warning("failed to release sweep lock: %s", exc)

    if summary.succeeded:
        await get_catalog_cache().invalidate_rewards()
    logger.info(
        "expiry sweep: %d expired, %d failed, %d skipped",
        summary.succeeded, summary.failed, summary.skipped,
    )
    return summary
