from __future__ import annotations
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from ..deps import get_db, get_claims, current_user_id
from ..models import UserAccount, PointsTransaction
from ..schemas import BalanceRead, LedgerRead
from ..services.ledger import lifetime_earned, level_for

router = APIRouter(prefix="/points", tags=["points"])

@router.get("/users/me/balance", response_model=BalanceRead)
async def my_balance(claims: dict = Depends(get_claims), db: AsyncSession = Depends(get_db)):
    uid = current_user_id(claims)
    acct = await db.get(UserAccount, uid)
    lifetime = await lifetime_earned(db, uid)
    if not acct:
        return BalanceRead(user_id=uid, total_points=0, level=level_for(lifetime), lifetime_points=lifetime)
    return BalanceRead(user_id=uid, total_points=acct.total_points, level=acct.level, lifetime_points=lifetime)

@router.get("/users/me/ledger", response_model=list[LedgerRead])
async def my_ledger(
    limit: int = Query(50, ge=1, le=500),
    claims: dict = Depends(get_claims),
    db: AsyncSession = Depends(get_db),
):
    uid = current_user_id(claims)
    rows = (await db.execute(
        select(PointsTransaction).where(PointsTransaction.user_id == uid)
        .order_by(PointsTransaction.occurred_at.desc()).limit(limit)
    )).scalars().all()
    return [LedgerRead.model_validate(r) for r in rows]
