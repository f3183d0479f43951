from __future__ import annotations
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, func

from ..core.config import get_settings
from ..core.errors import (
    DuplicateCheckInError, InvalidCodeError, NotFoundError, OutOfRangeError, ValidationError,
)
from ..core.geo import distance_meters, validate_coordinates
from ..core.qr import normalize_code
from ..db import atomic
from ..models import (
    Badge, CheckIn, CheckinMethod, Destination, DestinationStatus, TransactionType, UserBadge, utcnow,
)
from ..schemas import CheckinStatsRead
from .badges import current_streak, evaluate_and_award, load_activity
from .ledger import LedgerRef, append, ensure_active, level_for, lifetime_earned, lock_account
from .promotions import bonus_points_for

settings = get_settings()
logger = logging.getLogger(__name__)

@dataclass
class CheckinOutcome:
    checkin: CheckIn
    points_earned: int
    total_points: int
    new_badges: List[Badge] = field(default_factory=list)

async def _resolve_destination(db: AsyncSession, code: str, destination_id: uuid.UUID | None) -> Destination:
    if destination_id is not None:
        dest = await db.get(Destination, destination_id)
        if dest is None or dest.status != DestinationStatus.ACTIVE:
            raise NotFoundError("Destination not found", destination_id=str(destination_id))
        if normalize_code(dest.qr_code) != code:
            raise InvalidCodeError("The scanned QR code does not belong to this destination")
        return dest

    dest = (await db.execute(
        select(Destination).where(func.lower(Destination.qr_code) == code)
    )).scalar_one_or_none()
    if dest is None or dest.status != DestinationStatus.ACTIVE:
        raise NotFoundError("No destination matches this QR code")
    return dest

async def _last_checkin_within(db: AsyncSession, user_id: uuid.UUID, destination_id: uuid.UUID, since: datetime) -> CheckIn | None:
    return (await db.execute(
        select(CheckIn).where(
            CheckIn.user_id == user_id,
            CheckIn.destination_id == destination_id,
            CheckIn.checked_in_at >= since,
        ).order_by(CheckIn.checked_in_at.desc()).limit(1)
    )).scalars().first()

async def settle_checkin(
    db: AsyncSession,
    *,
    user_id: uuid.UUID,
    scanned_code: str,
    user_lat: float,
    user_lon: float,
    destination_id: uuid.UUID | None = None,
    now: datetime | None = None,
) -> CheckinOutcome:
    """
    Verify a QR scan and GPS position, then record the visit and its points.

    The check-in row, the earned ledger entry, badge progress and any badge
    bonuses are committed together; any failure leaves no trace.
    """
    validate_coordinates(user_lat, user_lon)
    code = normalize_code(scanned_code)
    if not code:
        raise ValidationError("QR code is required", field="destination_code")
    now = now or utcnow()

    async with atomic(db):
        account = await lock_account(db, user_id)
        ensure_active(account)

        dest = await _resolve_destination(db, code, destination_id)

        radius = dest.visit_radius or settings.default_visit_radius_m
        distance = distance_meters(dest.latitude, dest.longitude, user_lat, user_lon)
        if distance > radius:
            raise OutOfRangeError(distance, radius)

        since = now - timedelta(hours=settings.checkin_cooldown_hours)
        previous = await _last_checkin_within(db, user_id, dest.id, since)
        if previous is not None:
            raise DuplicateCheckInError(
                f"You already checked in at {dest.name} in the last {settings.checkin_cooldown_hours} hours",
                last_checked_in_at=previous.checked_in_at.isoformat(),
            )

        bonus = await bonus_points_for(db, dest, now)
        checkin = CheckIn(
            user_id=user_id,
            destination_id=dest.id,
            checkin_method=CheckinMethod.QR,
            user_latitude=user_lat,
            user_longitude=user_lon,
            distance_from_destination=round(distance, 2),
            points_earned=dest.points_reward,
            bonus_points=bonus,
            is_verified=True,
            checked_in_at=now,
        )
        db.add(checkin)
        await db.flush()

        earned = dest.points_reward + bonus
        if earned > 0:
            append(
                db, account=account, delta=earned, kind=TransactionType.EARNED,
                ref=LedgerRef.checkin(checkin.id), description=f"Check-in at {dest.name}",
            )
        await db.execute(
            update(Destination).where(Destination.id == dest.id)
            .values(total_visits=Destination.total_visits + 1)
        )
        account.level = level_for(await lifetime_earned(db, user_id))

        new_badges = await evaluate_and_award(db, user_id, now=now)
        total = account.total_points

    logger.info(
        "check-in %s: user %s at %s (%.1f m) +%d pts, %d new badge(s)",
        checkin.id, user_id, dest.id, distance, earned, len(new_badges),
    )
    return CheckinOutcome(checkin=checkin, points_earned=earned, total_points=total, new_badges=new_badges)

async def checkin_stats(db: AsyncSession, user_id: uuid.UUID, *, now: datetime | None = None) -> CheckinStatsRead:
    """Visit counts for the current UTC day, ISO week and month, plus running totals."""
    today = (now or utcnow()).date()
    week_start = today - timedelta(days=today.weekday())
    month_start = today.replace(day=1)

    activity = await load_activity(db, user_id)
    days = [v.day for v in activity.visits]
    badges_earned = (await db.execute(
        select(func.count(UserBadge.id)).where(UserBadge.user_id == user_id, UserBadge.is_earned == True)
    )).scalar_one()
    return CheckinStatsRead(
        today=sum(1 for d in days if d == today),
        this_week=sum(1 for d in days if d >= week_start),
        this_month=sum(1 for d in days if d >= month_start),
        all_time=len(days),
        total_points=activity.lifetime_points,
        badges_earned=int(badges_earned),
        current_streak=current_streak(days, today),
    )
