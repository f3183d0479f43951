from __future__ import annotations
from datetime import datetime
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, or_

from ..models import Destination, Promotion

async def bonus_points_for(db: AsyncSession, destination: Destination, now: datetime) -> int:
    """Largest active promotion applying to this destination at ``now``; bonuses do not stack."""
    rows = (await db.execute(
        select(Promotion).where(
            Promotion.active == True,
            or_(Promotion.destination_id.is_(None), Promotion.destination_id == destination.id),
            or_(Promotion.category.is_(None), Promotion.category == destination.category),
            or_(Promotion.starts_at.is_(None), Promotion.starts_at <= now),
            or_(Promotion.ends_at.is_(None), Promotion.ends_at >= now),
        )
    )).scalars().all()
    return max((p.bonus_points for p in rows), default=0)
