"""Reward and destination catalog: cached listings and staff-side maintenance."""
from __future__ import annotations
import logging
import uuid
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Sequence
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, delete, insert, func

from ..core.cache import CatalogCache, get_catalog_cache
from ..core.config import get_settings
from ..core.errors import NotFoundError, ValidationError
from ..core.geo import distance_meters, validate_coordinates
from ..core.qr import new_destination_code
from ..db import atomic
from ..models import Destination, DestinationStatus, Reward, reward_destinations, utcnow
from ..schemas import (
    DestinationCreate, DestinationRead, DestinationUpdate, NearbyRewardRead, RewardCreate,
    RewardRead, RewardUpdate,
)

settings = get_settings()
logger = logging.getLogger(__name__)

async def _links(db: AsyncSession, reward_ids: Sequence[uuid.UUID]) -> Dict[uuid.UUID, List[uuid.UUID]]:
    out: Dict[uuid.UUID, List[uuid.UUID]] = defaultdict(list)
    if not reward_ids:
        return out
    rows = (await db.execute(
        select(reward_destinations.c.reward_id, reward_destinations.c.destination_id)
        .where(reward_destinations.c.reward_id.in_(reward_ids))
    )).all()
    for rid, did in rows:
        out[rid].append(did)
    return out

async def reward_read(db: AsyncSession, reward: Reward) -> RewardRead:
    links = await _links(db, [reward.id])
    return RewardRead.model_validate(reward).model_copy(update={"destination_ids": links.get(reward.id, [])})

def is_available(r: RewardRead, now: datetime) -> bool:
    if not r.is_active:
        return False
    if r.valid_from is not None and now < r.valid_from:
        return False
    if r.valid_until is not None and now > r.valid_until:
        return False
    return r.stock_unlimited or r.stock_quantity > 0

# --- listings

async def load_rewards(db: AsyncSession) -> List[dict]:
    rows = (await db.execute(
        select(Reward).where(Reward.is_active == True).order_by(Reward.points_required.asc(), Reward.title.asc())
    )).scalars().all()
    links = await _links(db, [r.id for r in rows])
    return [
        RewardRead.model_validate(r).model_copy(update={"destination_ids": links.get(r.id, [])}).model_dump(mode="json")
        for r in rows
    ]

async def list_available_rewards(db: AsyncSession, *, now: datetime | None = None, cache: CatalogCache | None = None) -> List[RewardRead]:
    """Active rewards inside their validity window. The window is applied after the cache."""
    now = now or utcnow()
    cache = cache or get_catalog_cache()
    data = await cache.get_or_load(CatalogCache.REWARDS, lambda: load_rewards(db))
    return [r for r in (RewardRead.model_validate(d) for d in data) if is_available(r, now)]

async def load_destinations(db: AsyncSession) -> List[dict]:
    rows = (await db.execute(
        select(Destination).where(Destination.status == DestinationStatus.ACTIVE).order_by(Destination.name.asc())
    )).scalars().all()
    return [DestinationRead.model_validate(d).model_dump(mode="json") for d in rows]

async def list_destinations(db: AsyncSession, *, cache: CatalogCache | None = None) -> List[DestinationRead]:
    cache = cache or get_catalog_cache()
    data = await cache.get_or_load(CatalogCache.DESTINATIONS, lambda: load_destinations(db))
    return [DestinationRead.model_validate(d) for d in data]

async def nearby_rewards(
    db: AsyncSession,
    lat: float,
    lon: float,
    *,
    now: datetime | None = None,
    radius_m: float | None = None,
) -> List[NearbyRewardRead]:
    """Rewards redeemable at an active destination within ``radius_m``, nearest first."""
    validate_coordinates(lat, lon)
    now = now or utcnow()
    radius_m = radius_m or settings.redemption_radius_m

    dests = (await db.execute(
        select(Destination).where(Destination.status == DestinationStatus.ACTIVE)
    )).scalars().all()
    near = {}
    for d in dests:
        dist = distance_meters(d.latitude, d.longitude, lat, lon)
        if dist <= radius_m:
            near[d.id] = dist
    if not near:
        return []

    rows = (await db.execute(
        select(Reward, reward_destinations.c.destination_id)
        .join(reward_destinations, reward_destinations.c.reward_id == Reward.id)
        .where(reward_destinations.c.destination_id.in_(list(near)), Reward.is_active == True)
    )).all()
    links = await _links(db, list({r.id for r, _ in rows}))

    best: Dict[uuid.UUID, NearbyRewardRead] = {}
    for reward, dest_id in rows:
        base = RewardRead.model_validate(reward).model_copy(update={"destination_ids": links.get(reward.id, [])})
        if not is_available(base, now):
            continue
        dist = near[dest_id]
        current = best.get(reward.id)
        if current is None or dist < current.distance_m:
            best[reward.id] = NearbyRewardRead(**base.model_dump(), destination_id=dest_id, distance_m=round(dist, 1))
    return sorted(best.values(), key=lambda r: (r.distance_m, r.points_required))

# --- maintenance

async def _require_destinations(db: AsyncSession, ids: Sequence[uuid.UUID]) -> List[uuid.UUID]:
    wanted = list(dict.fromkeys(ids))
    if not wanted:
        return []
    found = set((await db.execute(select(Destination.id).where(Destination.id.in_(wanted)))).scalars().all())
    missing = [str(i) for i in wanted if i not in found]
    if missing:
        raise NotFoundError("Unknown destination(s)", destination_ids=missing)
    return wanted

def _check_window(valid_from: datetime | None, valid_until: datetime | None) -> None:
    if valid_from is not None and valid_until is not None and valid_until < valid_from:
        raise ValidationError("valid_until must be after valid_from", field="valid_until")

async def _set_links(db: AsyncSession, reward_id: uuid.UUID, destination_ids: List[uuid.UUID]) -> None:
    await db.execute(delete(reward_destinations).where(reward_destinations.c.reward_id == reward_id))
    if destination_ids:
        await db.execute(insert(reward_destinations), [
            {"reward_id": reward_id, "destination_id": did} for did in destination_ids
        ])

async def create_reward(db: AsyncSession, payload: RewardCreate, *, created_by: uuid.UUID | None = None) -> RewardRead:
    _check_window(payload.valid_from, payload.valid_until)
    async with atomic(db):
        dest_ids = await _require_destinations(db, payload.destination_ids)
        reward = Reward(
            id=uuid.uuid4(),
            created_by=created_by,
            **payload.model_dump(exclude={"destination_ids"}),
        )
        db.add(reward)
        await db.flush()
        await _set_links(db, reward.id, dest_ids)
    await get_catalog_cache().invalidate_rewards()
    logger.info("reward %s created (%s)", reward.id, reward.title)
    return await reward_read(db, reward)

async def update_reward(db: AsyncSession, reward_id: uuid.UUID, payload: RewardUpdate) -> RewardRead:
    changes = payload.model_dump(exclude_unset=True)
    dest_ids = changes.pop("destination_ids", None)
    async with atomic(db):
        reward = (await db.execute(
            select(Reward).where(Reward.id == reward_id).with_for_update()
        )).scalar_one_or_none()
        if reward is None:
            raise NotFoundError("Reward not found", reward_id=str(reward_id))
        _check_window(changes.get("valid_from", reward.valid_from), changes.get("valid_until", reward.valid_until))
        for k, v in changes.items():
            if v is None and k not in ("description", "partner_name", "valid_from", "valid_until"):
                continue
            setattr(reward, k, v)
        if dest_ids is not None:
            await _set_links(db, reward.id, await _require_destinations(db, dest_ids))
    await get_catalog_cache().invalidate_rewards()
    return await reward_read(db, reward)

async def _code_taken(db: AsyncSession, code: str, exclude_id: uuid.UUID | None = None) -> bool:
    q = select(func.count(Destination.id)).where(func.lower(Destination.qr_code) == code.strip().lower())
    if exclude_id is not None:
        q = q.where(Destination.id != exclude_id)
    return int((await db.execute(q)).scalar_one()) > 0

async def create_destination(db: AsyncSession, payload: DestinationCreate) -> Destination:
    async with atomic(db):
        code = (payload.qr_code or "").strip() or new_destination_code()
        if await _code_taken(db, code):
            raise ValidationError("This QR code is already assigned to another destination", field="qr_code")
        dest = Destination(
            **payload.model_dump(exclude={"qr_code", "status"}),
            status=DestinationStatus(payload.status),
            qr_code=code,
        )
        db.add(dest)
    await get_catalog_cache().invalidate_destinations()
    logger.info("destination %s created (%s)", dest.id, dest.name)
    return dest

async def update_destination(db: AsyncSession, destination_id: uuid.UUID, payload: DestinationUpdate) -> Destination:
    changes = payload.model_dump(exclude_unset=True)
    async with atomic(db):
        dest = await db.get(Destination, destination_id)
        if dest is None:
            raise NotFoundError("Destination not found", destination_id=str(destination_id))
        for k, v in changes.items():
            if k == "status":
                if v is not None:
                    dest.status = DestinationStatus(v)
            elif v is not None or k in ("category", "city", "owner_id", "visit_radius"):
                setattr(dest, k, v)
    await get_catalog_cache().invalidate_destinations()
    return dest
