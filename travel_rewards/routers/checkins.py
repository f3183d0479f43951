from __future__ import annotations
import logging
from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from ..deps import get_db, get_claims, current_user_id
from ..schemas import CheckinCreate, CheckinRead, CheckinResult, CheckinStatsRead, BadgeRead
from ..models import CheckIn
from ..services.checkins import settle_checkin, checkin_stats, CheckinOutcome
from ..core.redis import allow_request
from ..core.nats import publish_checkin
from ..core.config import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)
router = APIRouter(prefix="/checkins", tags=["checkins"])

def _checkin_event(outcome: CheckinOutcome) -> dict:
    c = outcome.checkin
    return {
        "checkin_id": str(c.id),
        "destination_id": str(c.destination_id),
        "user_id": str(c.user_id),
        "points_earned": outcome.points_earned,
        "new_badge_ids": [str(b.id) for b in outcome.new_badges],
        "checked_in_at": c.checked_in_at.isoformat().replace("+00:00", "Z"),
        "idempotency_key": f"checkin:{c.id}",
    }

# --- Scan a destination's QR code at the destination
@router.post("", response_model=CheckinResult, status_code=201)
async def check_in(
    payload: CheckinCreate,
    request: Request,
    claims: dict = Depends(get_claims),
    db: AsyncSession = Depends(get_db),
):
    # basic rate-limit per IP on scan
    ip = request.client.host if request.client else "unknown"
    if not await allow_request(ip, "checkins.scan"):
        raise HTTPException(status_code=429, detail="Too many requests")

    outcome = await settle_checkin(
        db,
        user_id=current_user_id(claims),
        scanned_code=payload.destination_code,
        user_lat=payload.lat,
        user_lon=payload.lon,
        destination_id=payload.destination_id,
    )

    if settings.enable_nats:
        try:
            await publish_checkin(_checkin_event(outcome))
        except Exception as exc:
            # the check-in is committed; consumers can backfill from the table
            logger.warning("checkin event not published for %s: %s", outcome.checkin.id, exc)

    return CheckinResult(
        checkin=CheckinRead.model_validate(outcome.checkin),
        points_earned=outcome.points_earned,
        total_points=outcome.total_points,
        new_badges=[BadgeRead.model_validate(b) for b in outcome.new_badges],
    )

# --- Own history
@router.get("/users/me", response_model=list[CheckinRead])
async def my_checkins(claims: dict = Depends(get_claims), db: AsyncSession = Depends(get_db)):
    uid = current_user_id(claims)
    rows = (await db.execute(select(CheckIn).where(CheckIn.user_id == uid).order_by(CheckIn.checked_in_at.desc()))).scalars().all()
    return [CheckinRead.model_validate(r) for r in rows]

@router.get("/users/me/stats", response_model=CheckinStatsRead)
async def my_checkin_stats(claims: dict = Depends(get_claims), db: AsyncSession = Depends(get_db)):
    return await checkin_stats(db, current_user_id(claims))
