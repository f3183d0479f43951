from __future__ import annotations
import uuid
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from ..deps import get_db, get_claims, get_session_maker, current_user_id, has_role, require_roles
from ..models import Redemption
from ..schemas import RedemptionRead, ChangeRedemptionRequest, ClaimRequest, SweepResult
from ..services.redemptions import change_redemption, claim_redemption, find_redemption_for_staff
from ..services.expiry import run_expiry_sweep
from ..core.cache import get_catalog_cache

router = APIRouter(prefix="/redemptions", tags=["redemptions"])

@router.get("/users/me", response_model=list[RedemptionRead])
async def my_redemptions(claims: dict = Depends(get_claims), db: AsyncSession = Depends(get_db)):
    uid = current_user_id(claims)
    rows = (await db.execute(
        select(Redemption).where(Redemption.user_id == uid).order_by(Redemption.redeemed_at.desc())
    )).scalars().all()
    return [RedemptionRead.model_validate(r) for r in rows]

@router.get("/code/{code}", response_model=RedemptionRead)
async def lookup_by_code(code: str, claims: dict = Depends(get_claims), db: AsyncSession = Depends(get_db)):
    require_roles(claims, "owner", "admin")
    red = await find_redemption_for_staff(
        db, code=code, staff_id=current_user_id(claims), is_admin=has_role(claims, "admin"),
    )
    return RedemptionRead.model_validate(red)

@router.post("/claim", response_model=RedemptionRead)
async def claim(payload: ClaimRequest, claims: dict = Depends(get_claims), db: AsyncSession = Depends(get_db)):
    require_roles(claims, "owner", "admin")
    red = await claim_redemption(
        db,
        code=payload.code,
        staff_id=current_user_id(claims),
        is_admin=has_role(claims, "admin"),
        destination_id=payload.destination_id,
    )
    return RedemptionRead.model_validate(red)

@router.post("/expire", response_model=SweepResult)
async def expire_now(claims: dict = Depends(get_claims), session_maker=Depends(get_session_maker)):
    require_roles(claims, "admin", "service")
    summary = await run_expiry_sweep(session_maker)
    if summary is None:
        return SweepResult(succeeded=0, failed=0, skipped=0)
    return SweepResult(**summary.as_dict())

@router.post("/{redemption_id}/change", response_model=RedemptionRead)
async def change(
    redemption_id: uuid.UUID,
    payload: ChangeRedemptionRequest,
    claims: dict = Depends(get_claims),
    db: AsyncSession = Depends(get_db),
):
    red = await change_redemption(
        db,
        user_id=current_user_id(claims),
        redemption_id=redemption_id,
        new_reward_id=payload.new_reward_id,
        destination_id=payload.destination_id,
        lat=payload.lat,
        lon=payload.lon,
    )
    await get_catalog_cache().invalidate_rewards()
    return RedemptionRead.model_validate(red)
