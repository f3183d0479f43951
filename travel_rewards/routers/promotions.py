from __future__ import annotations
import uuid
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from ..deps import get_db, get_claims, require_roles
from ..models import Promotion, Destination
from ..schemas import PromotionCreate, PromotionUpdate, PromotionRead

router = APIRouter(prefix="/promotions", tags=["promotions"])

STAFF = ("organiser", "admin")
CLEARABLE = ("description", "starts_at", "ends_at")

@router.get("", response_model=list[PromotionRead])
async def list_promotions(claims: dict = Depends(get_claims), db: AsyncSession = Depends(get_db)):
    require_roles(claims, *STAFF)
    rows = (await db.execute(select(Promotion).order_by(Promotion.created_at.desc()))).scalars().all()
    return [PromotionRead.model_validate(p) for p in rows]

@router.post("", response_model=PromotionRead, status_code=201)
async def create_promotion(payload: PromotionCreate, claims: dict = Depends(get_claims), db: AsyncSession = Depends(get_db)):
    require_roles(claims, *STAFF)
    if payload.starts_at and payload.ends_at and payload.ends_at < payload.starts_at:
        raise HTTPException(status_code=422, detail="ends_at must be after starts_at")
    if payload.destination_id and not await db.get(Destination, payload.destination_id):
        raise HTTPException(status_code=404, detail="Destination not found")
    p = Promotion(**payload.model_dump())
    db.add(p); await db.commit(); await db.refresh(p)
    return PromotionRead.model_validate(p)

@router.patch("/{promotion_id}", response_model=PromotionRead)
async def update_promotion(promotion_id: uuid.UUID, payload: PromotionUpdate, claims: dict = Depends(get_claims), db: AsyncSession = Depends(get_db)):
    require_roles(claims, *STAFF)
    p = await db.get(Promotion, promotion_id)
    if not p: raise HTTPException(status_code=404, detail="Promotion not found")
    for k, v in payload.model_dump(exclude_unset=True).items():
        if v is None and k not in CLEARABLE:
            continue
        setattr(p, k, v)
    await db.commit(); await db.refresh(p)
    return PromotionRead.model_validate(p)
