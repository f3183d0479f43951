"""
Badge evaluation.

Each requirement type maps to a pure rule function that reads a
``UserActivity`` snapshot and returns the user's current progress value.
``evaluate_and_award`` loads the snapshot once, refreshes progress for every
active badge the user has not earned yet, and awards the ones whose
threshold is met. Earned badges are never revoked and their
``points_awarded`` snapshot is never rewritten.
"""
from __future__ import annotations
import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Callable, Dict, Iterable, List
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func

from ..core.errors import NotFoundError, ValidationError
from ..db import atomic
from ..models import (
    Badge, UserBadge, CheckIn, Destination, RequirementType, TransactionType, utcnow,
)
from .ledger import LedgerRef, append, lifetime_earned, lock_account

logger = logging.getLogger(__name__)

MAX_DISPLAYED_BADGES = 3

@dataclass(frozen=True)
class Visit:
    destination_id: uuid.UUID
    category: str | None
    city: str | None
    day: date

@dataclass(frozen=True)
class UserActivity:
    visits: tuple[Visit, ...]
    lifetime_points: int

RequirementRule = Callable[[UserActivity, dict], int]

# --- rules

def checkin_count(activity: UserActivity, details: dict) -> int:
    return len(activity.visits)

def points_total(activity: UserActivity, details: dict) -> int:
    return activity.lifetime_points

def destination_count(activity: UserActivity, details: dict) -> int:
    return len({v.destination_id for v in activity.visits})

def category_count(activity: UserActivity, details: dict) -> int:
    return len({v.category for v in activity.visits if v.category})

def longest_streak(days: Iterable[date]) -> int:
    best = run = 0
    prev: date | None = None
    for d in sorted(set(days)):
        run = run + 1 if prev is not None and d - prev == timedelta(days=1) else 1
        best = max(best, run)
        prev = d
    return best

def current_streak(days: Iterable[date], today: date) -> int:
    """Consecutive visit days ending today, or yesterday when today has no visit yet."""
    seen = set(days)
    d = today if today in seen else today - timedelta(days=1)
    run = 0
    while d in seen:
        run += 1
        d -= timedelta(days=1)
    return run

def streak(activity: UserActivity, details: dict) -> int:
    return longest_streak(v.day for v in activity.visits)

def custom(activity: UserActivity, details: dict) -> int:
    """Visits matching every filter present in ``requirement_details``."""
    dest_ids = {str(x) for x in details.get("destination_ids") or []}
    city = (details.get("city") or "").strip().lower()
    category = details.get("category")
    if not (dest_ids or city or category):
        return 0
    count = 0
    for v in activity.visits:
        if dest_ids and str(v.destination_id) not in dest_ids:
            continue
        if city and (v.city or "").strip().lower() != city:
            continue
        if category and v.category != category:
            continue
        count += 1
    return count

REQUIREMENT_RULES: Dict[RequirementType, RequirementRule] = {
    RequirementType.CHECKIN_COUNT: checkin_count,
    RequirementType.POINTS_TOTAL: points_total,
    RequirementType.DESTINATION_COUNT: destination_count,
    RequirementType.CATEGORY_COUNT: category_count,
    RequirementType.STREAK: streak,
    RequirementType.CUSTOM: custom,
}

def measure(badge: Badge, activity: UserActivity) -> int:
    rule = REQUIREMENT_RULES.get(badge.requirement_type)
    if rule is None:
        return 0
    return rule(activity, badge.requirement_details or {})

# --- evaluation

async def load_activity(db: AsyncSession, user_id: uuid.UUID) -> UserActivity:
    rows = (await db.execute(
        select(CheckIn.destination_id, CheckIn.checked_in_at, Destination.category, Destination.city)
        .join(Destination, Destination.id == CheckIn.destination_id)
        .where(CheckIn.user_id == user_id, CheckIn.is_verified == True)
    )).all()
    visits = tuple(
        Visit(destination_id=dest_id, category=category, city=city, day=checked_at.date())
        for dest_id, checked_at, category, city in rows
    )
    return UserActivity(visits=visits, lifetime_points=await lifetime_earned(db, user_id))

async def evaluate_and_award(db: AsyncSession, user_id: uuid.UUID, *, now: datetime | None = None) -> List[Badge]:
    """
    Refresh badge progress for ``user_id`` and award newly satisfied badges.

    Returns only the badges earned by this call. Does not commit: run it
    inside the caller's ``atomic`` block so awards and their bonus ledger
    entries land together with whatever triggered the evaluation.
    """
    now = now or utcnow()
    account = await lock_account(db, user_id)

    earned_ids = select(UserBadge.badge_id).where(UserBadge.user_id == user_id, UserBadge.is_earned == True)
    badges = (await db.execute(
        select(Badge).where(Badge.is_active == True, Badge.id.not_in(earned_ids))
        .order_by(Badge.display_order.asc(), Badge.name.asc())
    )).scalars().all()
    if not badges:
        return []

    existing = {
        ub.badge_id: ub for ub in (await db.execute(
            select(UserBadge).where(UserBadge.user_id == user_id, UserBadge.badge_id.in_([b.id for b in badges]))
        )).scalars().all()
    }
    activity = await load_activity(db, user_id)

    newly_earned: List[Badge] = []
    for badge in badges:
        progress = measure(badge, activity)
        ub = existing.get(badge.id)
        if ub is None:
            ub = UserBadge(user_id=user_id, badge_id=badge.id, progress=0, is_earned=False, points_awarded=0)
            db.add(ub)
        ub.progress = progress
        if progress < badge.requirement_value or ub.is_earned:
            continue
        ub.is_earned = True
        ub.earned_at = now
        ub.points_awarded = badge.points_reward
        if badge.points_reward > 0:
            append(
                db, account=account, delta=badge.points_reward, kind=TransactionType.BONUS,
                ref=LedgerRef.badge(badge.id), description=f"Earned badge: {badge.name}",
            )
        newly_earned.append(badge)
        logger.info("badge %s awarded to user %s (+%d pts)", badge.slug, user_id, badge.points_reward)

    await db.flush()
    return newly_earned

async def check_badges(db: AsyncSession, user_id: uuid.UUID) -> List[Badge]:
    """On-demand evaluation outside a check-in, committed on its own."""
    async with atomic(db):
        return await evaluate_and_award(db, user_id)

# --- profile flags on earned badges

async def _earned_badge(db: AsyncSession, user_id: uuid.UUID, badge_id: uuid.UUID) -> UserBadge:
    ub = (await db.execute(
        select(UserBadge).where(
            UserBadge.user_id == user_id, UserBadge.badge_id == badge_id, UserBadge.is_earned == True,
        ).with_for_update()
    )).scalar_one_or_none()
    if ub is None:
        raise NotFoundError("Badge not found or not earned yet", badge_id=str(badge_id))
    return ub

async def toggle_favorite(db: AsyncSession, user_id: uuid.UUID, badge_id: uuid.UUID) -> UserBadge:
    async with atomic(db):
        ub = await _earned_badge(db, user_id, badge_id)
        ub.is_favorited = not ub.is_favorited
    return ub

async def toggle_display(db: AsyncSession, user_id: uuid.UUID, badge_id: uuid.UUID) -> UserBadge:
    """Show or hide an earned badge on the profile; at most MAX_DISPLAYED_BADGES are shown."""
    async with atomic(db):
        # serializes concurrent toggles so the display cap holds
        await lock_account(db, user_id)
        ub = await _earned_badge(db, user_id, badge_id)
        if not ub.is_displayed:
            shown = (await db.execute(
                select(func.count(UserBadge.id)).where(
                    UserBadge.user_id == user_id, UserBadge.is_earned == True, UserBadge.is_displayed == True,
                )
            )).scalar_one()
            if shown >= MAX_DISPLAYED_BADGES:
                raise ValidationError(
                    f"You can only display up to {MAX_DISPLAYED_BADGES} badges on your profile",
                    limit=MAX_DISPLAYED_BADGES,
                )
        ub.is_displayed = not ub.is_displayed
    return ub
