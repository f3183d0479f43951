"""
Points ledger: the only code path that changes ``UserAccount.total_points``.

Each balance change appends one ``PointsTransaction`` whose ``balance_after``
is the account balance once the change is applied, so for every account the
sum of ledger deltas equals ``total_points``. Rows are never updated or
deleted.
"""
from __future__ import annotations
import uuid
from dataclasses import dataclass
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from ..core.config import get_settings
from ..core.errors import AccountInactiveError, InsufficientPointsError
from ..models import UserAccount, UserStatus, PointsTransaction, TransactionType, ReferenceKind

settings = get_settings()

@dataclass(frozen=True)
class LedgerRef:
    """What caused a ledger entry: a check-in, a badge award or a redemption."""
    kind: ReferenceKind
    id: uuid.UUID

    @classmethod
    def checkin(cls, checkin_id: uuid.UUID) -> "LedgerRef":
        return cls(ReferenceKind.CHECKIN, checkin_id)

    @classmethod
    def badge(cls, badge_id: uuid.UUID) -> "LedgerRef":
        return cls(ReferenceKind.BADGE, badge_id)

    @classmethod
    def redemption(cls, redemption_id: uuid.UUID) -> "LedgerRef":
        return cls(ReferenceKind.REDEMPTION, redemption_id)

def _insert_if_missing(db: AsyncSession):
    if db.bind.dialect.name == "postgresql":
        return pg_insert(UserAccount)
    return sqlite_insert(UserAccount)

async def _select_for_update(db: AsyncSession, user_id: uuid.UUID) -> UserAccount | None:
    return (await db.execute(
        select(UserAccount).where(UserAccount.id == user_id)
        .with_for_update().execution_options(populate_existing=True)
    )).scalar_one_or_none()

async def lock_account(db: AsyncSession, user_id: uuid.UUID) -> UserAccount:
    """Load the account row FOR UPDATE, creating it on first use."""
    acct = await _select_for_update(db, user_id)
    if acct:
        return acct
    # a concurrent first request may create the row first; the loser waits on it
    await db.execute(
        _insert_if_missing(db)
        .values(id=user_id, total_points=0, level=1, status=UserStatus.ACTIVE)
        .on_conflict_do_nothing(index_elements=[UserAccount.id])
    )
    return await _select_for_update(db, user_id)

def ensure_active(acct: UserAccount) -> None:
    if acct.status != UserStatus.ACTIVE:
        raise AccountInactiveError(f"Your account is {acct.status.value}", status=acct.status.value)

def append(
    db: AsyncSession,
    *,
    account: UserAccount,
    delta: int,
    kind: TransactionType,
    ref: LedgerRef,
    description: str | None = None,
) -> PointsTransaction:
    """Apply ``delta`` to a locked account and record it. Caller owns the transaction."""
    new_balance = account.total_points + delta
    if new_balance < 0:
        raise InsufficientPointsError(
            f"Insufficient points. You need {-delta} points.",
            required=-delta, available=account.total_points,
        )
    account.total_points = new_balance
    tx = PointsTransaction(
        user_id=account.id,
        points=delta,
        balance_after=new_balance,
        transaction_type=kind,
        reference_type=ref.kind,
        reference_id=ref.id,
        description=description,
    )
    db.add(tx)
    return tx

async def ledger_sum(db: AsyncSession, user_id: uuid.UUID) -> int:
    q = select(func.coalesce(func.sum(PointsTransaction.points), 0)).where(PointsTransaction.user_id == user_id)
    return int((await db.execute(q)).scalar_one())

async def lifetime_earned(db: AsyncSession, user_id: uuid.UUID) -> int:
    q = select(func.coalesce(func.sum(PointsTransaction.points), 0)).where(
        PointsTransaction.user_id == user_id,
        PointsTransaction.transaction_type == TransactionType.EARNED,
    )
    return int((await db.execute(q)).scalar_one())

def level_for(lifetime_points: int, step: int | None = None) -> int:
    step = step or settings.level_step_points
    return 1 + max(lifetime_points, 0) // step

async def find_drift(db: AsyncSession) -> list[tuple[uuid.UUID, int, int]]:
    """Accounts whose balance differs from their ledger: (user_id, balance, ledger_sum)."""
    sums = (
        select(PointsTransaction.user_id, func.sum(PointsTransaction.points).label("total"))
        .group_by(PointsTransaction.user_id)
        .subquery()
    )
    rows = (await db.execute(
        select(UserAccount.id, UserAccount.total_points, func.coalesce(sums.c.total, 0))
        .outerjoin(sums, sums.c.user_id == UserAccount.id)
    )).all()
    return [(uid, int(bal), int(total)) for uid, bal, total in rows if int(bal) != int(total)]
