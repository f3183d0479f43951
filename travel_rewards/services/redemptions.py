"""
Reward redemption lifecycle.

    pending -> active -> used
    pending | active -> expired

``used`` and ``expired`` are terminal. Every status change goes through
``transition`` so the allowed moves live in one table. Points move only
through the ledger and stock is only touched while the reward row is
locked, inside the caller's ``atomic`` block.
"""
from __future__ import annotations
import logging
import uuid
from datetime import datetime, timedelta
from typing import Dict, FrozenSet, Iterable
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func

from ..core.config import get_settings
from ..core.errors import (
    AlreadyExpiredError, AlreadyUsedError, InsufficientPointsError, InvalidTransitionError,
    NotFoundError, OutOfRangeError, OutOfStockError, PermissionDeniedError, RedemptionLimitError,
    RewardUnavailableError, TransactionFailure, ValidationError,
)
from ..core.geo import distance_meters, validate_coordinates
from ..core.qr import new_redemption_code
from ..db import atomic
from ..models import (
    Destination, DestinationStatus, Redemption, RedemptionStatus, Reward, TransactionType,
    UserAccount, reward_destinations, utcnow,
)
from .ledger import LedgerRef, append, ensure_active, lock_account

settings = get_settings()
logger = logging.getLogger(__name__)

OPEN_STATUSES = (RedemptionStatus.PENDING, RedemptionStatus.ACTIVE)
# statuses that count against max_redemptions_per_user
HELD_STATUSES = (RedemptionStatus.PENDING, RedemptionStatus.ACTIVE, RedemptionStatus.USED)

_TRANSITIONS: Dict[RedemptionStatus, FrozenSet[RedemptionStatus]] = {
    RedemptionStatus.PENDING: frozenset({RedemptionStatus.ACTIVE, RedemptionStatus.USED, RedemptionStatus.EXPIRED}),
    RedemptionStatus.ACTIVE: frozenset({RedemptionStatus.USED, RedemptionStatus.EXPIRED}),
    RedemptionStatus.USED: frozenset(),
    RedemptionStatus.EXPIRED: frozenset(),
}

_TERMINAL_ERRORS = {
    RedemptionStatus.USED: (AlreadyUsedError, "This redemption has already been used"),
    RedemptionStatus.EXPIRED: (AlreadyExpiredError, "This redemption has expired"),
}

_CODE_ATTEMPTS = 10

def ensure_open(redemption: Redemption) -> None:
    if redemption.status in _TERMINAL_ERRORS:
        exc, msg = _TERMINAL_ERRORS[redemption.status]
        raise exc(msg, status=redemption.status.value)

def transition(redemption: Redemption, target: RedemptionStatus) -> None:
    ensure_open(redemption)
    if target not in _TRANSITIONS[redemption.status]:
        raise InvalidTransitionError(
            f"Cannot move a redemption from {redemption.status.value} to {target.value}",
            status=redemption.status.value, target=target.value,
        )
    redemption.status = target

def is_overdue(redemption: Redemption, now: datetime) -> bool:
    return redemption.status in OPEN_STATUSES and redemption.valid_until < now

# --- lookups

async def _lock_rewards(db: AsyncSession, ids: Iterable[uuid.UUID]) -> Dict[uuid.UUID, Reward]:
    # fixed lock order so concurrent swaps between the same rewards cannot deadlock
    locked: Dict[uuid.UUID, Reward] = {}
    for rid in sorted(set(ids), key=str):
        reward = (await db.execute(
            select(Reward).where(Reward.id == rid).with_for_update()
            .execution_options(populate_existing=True)
        )).scalar_one_or_none()
        if reward is None:
            raise NotFoundError("Reward not found", reward_id=str(rid))
        locked[rid] = reward
    return locked

async def reward_destination_ids(db: AsyncSession, reward_id: uuid.UUID) -> set[uuid.UUID]:
    rows = (await db.execute(
        select(reward_destinations.c.destination_id).where(reward_destinations.c.reward_id == reward_id)
    )).scalars().all()
    return set(rows)

async def is_usable_at(db: AsyncSession, reward_id: uuid.UUID, destination_id: uuid.UUID) -> bool:
    """A reward without destination links is usable everywhere."""
    linked = await reward_destination_ids(db, reward_id)
    return not linked or destination_id in linked

async def _held_count(db: AsyncSession, user_id: uuid.UUID, reward_id: uuid.UUID, exclude_id: uuid.UUID | None = None) -> int:
    q = select(func.count(Redemption.id)).where(
        Redemption.user_id == user_id,
        Redemption.reward_id == reward_id,
        Redemption.status.in_(HELD_STATUSES),
    )
    if exclude_id is not None:
        q = q.where(Redemption.id != exclude_id)
    return int((await db.execute(q)).scalar_one())

async def _unique_code(db: AsyncSession) -> str:
    for _ in range(_CODE_ATTEMPTS):
        code = new_redemption_code(settings.redemption_code_length)
        taken = (await db.execute(
            select(Redemption.id).where(Redemption.redemption_code == code)
        )).first()
        if taken is None:
            return code
    raise TransactionFailure("Could not allocate a redemption code, please retry")

# --- checks

async def _check_redeemable(
    db: AsyncSession,
    account: UserAccount,
    reward: Reward,
    now: datetime,
    *,
    exclude_id: uuid.UUID | None = None,
) -> None:
    if not reward.is_active:
        raise RewardUnavailableError("This reward is no longer available")
    if reward.valid_from is not None and now < reward.valid_from:
        raise RewardUnavailableError("This reward is not available yet", valid_from=reward.valid_from.isoformat())
    if reward.valid_until is not None and now > reward.valid_until:
        raise RewardUnavailableError("This reward has ended", valid_until=reward.valid_until.isoformat())
    if not reward.stock_unlimited and reward.stock_quantity <= 0:
        raise OutOfStockError("This reward is out of stock")
    held = await _held_count(db, account.id, reward.id, exclude_id)
    if held >= reward.max_redemptions_per_user:
        raise RedemptionLimitError(
            "You have reached the redemption limit for this reward",
            limit=reward.max_redemptions_per_user,
        )
    if account.total_points < reward.points_required:
        raise InsufficientPointsError(
            f"Insufficient points. You need {reward.points_required} points.",
            required=reward.points_required, available=account.total_points,
        )

async def _check_location(
    db: AsyncSession,
    reward: Reward,
    destination_id: uuid.UUID | None,
    lat: float | None,
    lon: float | None,
) -> Destination | None:
    if destination_id is None:
        return None
    # redeeming at a destination always needs the caller's position
    if lat is None or lon is None:
        raise ValidationError("Your location is required to redeem at a destination", field="lat")
    validate_coordinates(lat, lon)
    dest = await db.get(Destination, destination_id)
    if dest is None or dest.status != DestinationStatus.ACTIVE:
        raise NotFoundError("Destination not found", destination_id=str(destination_id))
    if not await is_usable_at(db, reward.id, dest.id):
        raise RewardUnavailableError("This reward cannot be redeemed at this destination")
    distance = distance_meters(dest.latitude, dest.longitude, lat, lon)
    if distance > settings.redemption_radius_m:
        raise OutOfRangeError(
            distance, settings.redemption_radius_m,
            f"You must be within {settings.redemption_radius_m} m of {dest.name} to redeem this reward",
        )
    return dest

# --- stock

def _take_stock(reward: Reward) -> None:
    if not reward.stock_unlimited:
        reward.stock_quantity -= 1
    reward.total_redeemed += 1

def restore_stock(reward: Reward) -> None:
    if not reward.stock_unlimited:
        reward.stock_quantity += 1
    reward.total_redeemed = max(0, reward.total_redeemed - 1)

# --- flows

async def redeem_reward(
    db: AsyncSession,
    *,
    user_id: uuid.UUID,
    reward_id: uuid.UUID,
    destination_id: uuid.UUID | None = None,
    lat: float | None = None,
    lon: float | None = None,
    now: datetime | None = None,
) -> Redemption:
    now = now or utcnow()
    async with atomic(db):
        account = await lock_account(db, user_id)
        ensure_active(account)
        reward = (await _lock_rewards(db, [reward_id]))[reward_id]
        await _check_redeemable(db, account, reward, now)
        dest = await _check_location(db, reward, destination_id, lat, lon)

        redemption = Redemption(
            id=uuid.uuid4(),
            user_id=user_id,
            reward_id=reward.id,
            destination_id=dest.id if dest else None,
            points_spent=reward.points_required,
            redemption_code=await _unique_code(db),
            status=RedemptionStatus.ACTIVE,
            valid_until=now + timedelta(days=reward.redemption_period_days),
            redeemed_at=now,
        )
        db.add(redemption)
        await db.flush()
        append(
            db, account=account, delta=-reward.points_required, kind=TransactionType.REDEEMED,
            ref=LedgerRef.redemption(redemption.id), description=f"Redeemed: {reward.title}",
        )
        _take_stock(reward)

    logger.info("redemption %s: user %s reward %s -%d pts", redemption.id, user_id, reward.id, redemption.points_spent)
    return redemption

async def change_redemption(
    db: AsyncSession,
    *,
    user_id: uuid.UUID,
    redemption_id: uuid.UUID,
    new_reward_id: uuid.UUID,
    destination_id: uuid.UUID | None = None,
    lat: float | None = None,
    lon: float | None = None,
    now: datetime | None = None,
) -> Redemption:
    """
    Swap an open redemption to another reward.

    The old reward's points and stock are returned and the new reward is
    redeemed in the same transaction; if the new reward cannot be redeemed
    the original redemption is left untouched.
    """
    now = now or utcnow()
    async with atomic(db):
        account = await lock_account(db, user_id)
        ensure_active(account)
        redemption = (await db.execute(
            select(Redemption).where(Redemption.id == redemption_id, Redemption.user_id == user_id).with_for_update()
        )).scalar_one_or_none()
        if redemption is None:
            raise NotFoundError("Redemption not found", redemption_id=str(redemption_id))
        ensure_open(redemption)
        if is_overdue(redemption, now):
            raise AlreadyExpiredError("This redemption has expired", status=redemption.status.value)
        if redemption.reward_id == new_reward_id:
            raise ValidationError("Choose a different reward to change to", field="new_reward_id")

        rewards = await _lock_rewards(db, [redemption.reward_id, new_reward_id])
        old, new = rewards[redemption.reward_id], rewards[new_reward_id]

        append(
            db, account=account, delta=redemption.points_spent, kind=TransactionType.REFUNDED,
            ref=LedgerRef.redemption(redemption.id), description=f"Changed from: {old.title}",
        )
        restore_stock(old)

        await _check_redeemable(db, account, new, now, exclude_id=redemption.id)
        dest = await _check_location(db, new, destination_id, lat, lon)

        append(
            db, account=account, delta=-new.points_required, kind=TransactionType.REDEEMED,
            ref=LedgerRef.redemption(redemption.id), description=f"Redeemed: {new.title}",
        )
        _take_stock(new)

        redemption.reward_id = new.id
        redemption.destination_id = dest.id if dest else None
        redemption.points_spent = new.points_required
        redemption.redemption_code = await _unique_code(db)
        redemption.valid_until = now + timedelta(days=new.redemption_period_days)
        redemption.redeemed_at = now
        redemption.notes = f"Changed from reward {old.id}"

    logger.info("redemption %s changed: reward %s -> %s", redemption.id, old.id, new.id)
    return redemption

async def claim_redemption(
    db: AsyncSession,
    *,
    code: str,
    staff_id: uuid.UUID,
    is_admin: bool = False,
    destination_id: uuid.UUID | None = None,
    now: datetime | None = None,
) -> Redemption:
    """Mark a redemption used at a partner venue. Owners must claim at a destination they own."""
    now = now or utcnow()
    normalized = (code or "").strip().upper()
    if not normalized:
        raise ValidationError("Redemption code is required", field="code")
    if destination_id is None and not is_admin:
        raise ValidationError("destination_id is required to claim a redemption", field="destination_id")

    async with atomic(db):
        redemption = (await db.execute(
            select(Redemption).where(Redemption.redemption_code == normalized).with_for_update()
        )).scalar_one_or_none()
        if redemption is None:
            raise NotFoundError("Invalid redemption code")

        dest = None
        if destination_id is not None:
            dest = await db.get(Destination, destination_id)
            if dest is None:
                raise NotFoundError("Destination not found", destination_id=str(destination_id))
            if not is_admin and dest.owner_id != staff_id:
                raise PermissionDeniedError("You can only claim redemptions at destinations you manage")
            if redemption.destination_id is not None and redemption.destination_id != dest.id:
                raise PermissionDeniedError("This redemption was issued for a different destination")
            if not await is_usable_at(db, redemption.reward_id, dest.id):
                raise RewardUnavailableError("This reward cannot be claimed at this destination")

        ensure_open(redemption)
        if is_overdue(redemption, now):
            raise AlreadyExpiredError("This redemption has expired", status=redemption.status.value)

        transition(redemption, RedemptionStatus.USED)
        redemption.used_at = now
        redemption.verified_by = staff_id
        redemption.used_location = dest.name if dest else None

    logger.info("redemption %s claimed by %s", redemption.id, staff_id)
    return redemption

async def find_redemption_for_staff(
    db: AsyncSession,
    *,
    code: str,
    staff_id: uuid.UUID,
    is_admin: bool = False,
) -> Redemption:
    """Look up a redemption before claiming it. Owners only see codes claimable at a destination they own."""
    normalized = (code or "").strip().upper()
    if not normalized:
        raise ValidationError("Redemption code is required", field="code")
    redemption = (await db.execute(
        select(Redemption).where(Redemption.redemption_code == normalized)
    )).scalar_one_or_none()
    if redemption is None:
        raise NotFoundError("Redemption code not found")
    if is_admin:
        return redemption

    owned = set((await db.execute(
        select(Destination.id).where(Destination.owner_id == staff_id)
    )).scalars().all())
    if redemption.destination_id is not None:
        owned &= {redemption.destination_id}
    linked = await reward_destination_ids(db, redemption.reward_id)
    if linked:
        owned &= linked
    if not owned:
        raise PermissionDeniedError("This reward cannot be claimed at your destinations")
    return redemption
