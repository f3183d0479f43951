from __future__ import annotations
import uuid
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from ..deps import get_db, get_claims, current_user_id
from ..models import Badge, UserBadge
from ..schemas import BadgeCheckResult, BadgeFlagsRead, BadgeRead, UserBadgeRead
from ..services.badges import check_badges, toggle_display, toggle_favorite

router = APIRouter(prefix="/badges", tags=["badges"])

@router.get("", response_model=list[BadgeRead])
async def list_badges(claims: dict = Depends(get_claims), db: AsyncSession = Depends(get_db)):
    rows = (await db.execute(
        select(Badge).where(Badge.is_active == True, Badge.is_hidden == False)
        .order_by(Badge.display_order.asc(), Badge.name.asc())
    )).scalars().all()
    return [BadgeRead.model_validate(b) for b in rows]

@router.get("/users/me", response_model=list[UserBadgeRead])
async def my_badges(claims: dict = Depends(get_claims), db: AsyncSession = Depends(get_db)):
    uid = current_user_id(claims)
    rows = (await db.execute(
        select(UserBadge, Badge).join(Badge, Badge.id == UserBadge.badge_id)
        .where(UserBadge.user_id == uid)
        # hidden badges show up once earned
        .where((Badge.is_hidden == False) | (UserBadge.is_earned == True))
        .order_by(UserBadge.is_earned.desc(), Badge.display_order.asc())
    )).all()
    return [UserBadgeRead(
        badge=BadgeRead.model_validate(b), progress=ub.progress, is_earned=ub.is_earned, earned_at=ub.earned_at,
        points_awarded=ub.points_awarded, is_favorited=ub.is_favorited, is_displayed=ub.is_displayed,
    ) for ub, b in rows]

# --- Re-run badge rules without a new check-in
@router.post("/users/me/check", response_model=BadgeCheckResult)
async def check_my_badges(claims: dict = Depends(get_claims), db: AsyncSession = Depends(get_db)):
    new = await check_badges(db, current_user_id(claims))
    return BadgeCheckResult(new_badges_count=len(new), new_badges=[BadgeRead.model_validate(b) for b in new])

@router.post("/users/me/{badge_id}/favorite", response_model=BadgeFlagsRead)
async def favorite_badge(badge_id: uuid.UUID, claims: dict = Depends(get_claims), db: AsyncSession = Depends(get_db)):
    ub = await toggle_favorite(db, current_user_id(claims), badge_id)
    return BadgeFlagsRead.model_validate(ub)

@router.post("/users/me/{badge_id}/display", response_model=BadgeFlagsRead)
async def display_badge(badge_id: uuid.UUID, claims: dict = Depends(get_claims), db: AsyncSession = Depends(get_db)):
    ub = await toggle_display(db, current_user_id(claims), badge_id)
    return BadgeFlagsRead.model_validate(ub)
