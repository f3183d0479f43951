from __future__ import annotations
import uuid
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ..deps import get_db, get_claims, current_user_id, require_roles
from ..schemas import (
    RewardCreate, RewardUpdate, RewardRead, NearbyRewardRead, RedeemRequest, RedemptionRead, Lat, Lon,
)
from ..services import catalog
from ..services.redemptions import redeem_reward
from ..core.cache import get_catalog_cache

router = APIRouter(prefix="/rewards", tags=["rewards"])

@router.get("", response_model=list[RewardRead])
async def list_rewards(claims: dict = Depends(get_claims), db: AsyncSession = Depends(get_db)):
    return await catalog.list_available_rewards(db)

@router.get("/nearby", response_model=list[NearbyRewardRead])
async def list_nearby_rewards(
    lat: Lat = Query(...),
    lon: Lon = Query(...),
    claims: dict = Depends(get_claims),
    db: AsyncSession = Depends(get_db),
):
    return await catalog.nearby_rewards(db, lat, lon)

@router.post("", response_model=RewardRead, status_code=201)
async def create_reward(payload: RewardCreate, claims: dict = Depends(get_claims), db: AsyncSession = Depends(get_db)):
    require_roles(claims, "owner", "admin")
    return await catalog.create_reward(db, payload, created_by=current_user_id(claims))

@router.patch("/{reward_id}", response_model=RewardRead)
async def update_reward(reward_id: uuid.UUID, payload: RewardUpdate, claims: dict = Depends(get_claims), db: AsyncSession = Depends(get_db)):
    require_roles(claims, "owner", "admin")
    return await catalog.update_reward(db, reward_id, payload)

@router.post("/{reward_id}/redeem", response_model=RedemptionRead, status_code=201)
async def redeem(
    reward_id: uuid.UUID,
    payload: RedeemRequest | None = None,
    claims: dict = Depends(get_claims),
    db: AsyncSession = Depends(get_db),
):
    payload = payload or RedeemRequest()
    red = await redeem_reward(
        db,
        user_id=current_user_id(claims),
        reward_id=reward_id,
        destination_id=payload.destination_id,
        lat=payload.lat,
        lon=payload.lon,
    )
    await get_catalog_cache().invalidate_rewards()
    return RedemptionRead.model_validate(red)
