from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    UniqueConstraint, Index, CheckConstraint, String, Text, Integer, Float, Boolean, JSON,
    Column, Table, Enum as SqlEnum, ForeignKey,
)
from sqlalchemy.orm import declarative_base, Mapped, mapped_column
from sqlalchemy.types import DateTime, TypeDecorator

Base = declarative_base()

def utcnow():
    return datetime.now(timezone.utc)

class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend (SQLite drops tzinfo)."""
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

# --- enums

class UserStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"
    BANNED = "banned"

class DestinationStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"

class CheckinMethod(str, Enum):
    QR = "qr"
    MANUAL = "manual"

class RequirementType(str, Enum):
    CHECKIN_COUNT = "checkin_count"          # verified check-ins
    POINTS_TOTAL = "points_total"            # lifetime earned points
    DESTINATION_COUNT = "destination_count"  # distinct destinations
    CATEGORY_COUNT = "category_count"        # distinct categories
    STREAK = "streak"                        # consecutive check-in days
    CUSTOM = "custom"                        # filtered by requirement_details

class BadgeRarity(str, Enum):
    COMMON = "common"
    UNCOMMON = "uncommon"
    RARE = "rare"
    EPIC = "epic"
    LEGENDARY = "legendary"

class RedemptionStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    USED = "used"
    EXPIRED = "expired"

class TransactionType(str, Enum):
    EARNED = "earned"
    BONUS = "bonus"
    REDEEMED = "redeemed"
    REFUNDED = "refunded"

class ReferenceKind(str, Enum):
    CHECKIN = "checkin"
    BADGE = "badge"
    REDEMPTION = "redemption"

# --- accounts

class UserAccount(Base):
    """Rewards-side view of a user; identity lives in authentication-svc."""
    __tablename__ = "user_accounts"
    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    total_points: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    level: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    status: Mapped[UserStatus] = mapped_column(SqlEnum(UserStatus), default=UserStatus.ACTIVE, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("total_points >= 0", name="ck_account_points_non_negative"),
        Index("ix_accounts_points", "total_points"),
    )

# --- destinations & check-ins

class Destination(Base):
    __tablename__ = "destinations"
    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    category: Mapped[str | None] = mapped_column(String(64))
    city: Mapped[str | None] = mapped_column(String(100))
    status: Mapped[DestinationStatus] = mapped_column(SqlEnum(DestinationStatus), default=DestinationStatus.ACTIVE, nullable=False)
    owner_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)
    visit_radius: Mapped[int | None] = mapped_column(Integer)  # meters; None -> default policy
    points_reward: Mapped[int] = mapped_column(Integer, default=50, nullable=False)
    qr_code: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    total_visits: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("points_reward >= 0", name="ck_destination_points"),
        Index("ix_destinations_status", "status"),
        Index("ix_destinations_category", "category"),
        Index("ix_destinations_owner", "owner_id"),
    )

class CheckIn(Base):
    __tablename__ = "checkins"
    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("user_accounts.id", ondelete="CASCADE"), nullable=False)
    destination_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("destinations.id", ondelete="CASCADE"), nullable=False)
    checkin_method: Mapped[CheckinMethod] = mapped_column(SqlEnum(CheckinMethod), default=CheckinMethod.QR, nullable=False)
    user_latitude: Mapped[float | None] = mapped_column(Float)
    user_longitude: Mapped[float | None] = mapped_column(Float)
    distance_from_destination: Mapped[float | None] = mapped_column(Float)
    points_earned: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    bonus_points: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_verified: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    checked_in_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_checkins_user_dest_time", "user_id", "destination_id", "checked_in_at"),
        Index("ix_checkins_user_time", "user_id", "checked_in_at"),
    )

# --- badges

class Badge(Base):
    __tablename__ = "badges"
    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    slug: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    icon: Mapped[str | None] = mapped_column(String(100))
    requirement_type: Mapped[RequirementType] = mapped_column(SqlEnum(RequirementType), nullable=False)
    requirement_value: Mapped[int] = mapped_column(Integer, nullable=False)
    requirement_details: Mapped[dict | None] = mapped_column(JSON)
    points_reward: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    rarity: Mapped[BadgeRarity] = mapped_column(SqlEnum(BadgeRarity), default=BadgeRarity.COMMON, nullable=False)
    display_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_active: Mapped[bool] = mapped_column(default=True, nullable=False)
    is_hidden: Mapped[bool] = mapped_column(default=False, nullable=False)

    __table_args__ = (
        Index("ix_badges_active", "is_active"),
        Index("ix_badges_requirement", "requirement_type", "requirement_value"),
    )

class UserBadge(Base):
    __tablename__ = "user_badges"
    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("user_accounts.id", ondelete="CASCADE"), nullable=False)
    badge_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("badges.id", ondelete="CASCADE"), nullable=False)
    progress: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_earned: Mapped[bool] = mapped_column(default=False, nullable=False)
    earned_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    points_awarded: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_favorited: Mapped[bool] = mapped_column(default=False, nullable=False)
    is_displayed: Mapped[bool] = mapped_column(default=False, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "badge_id", name="uq_user_badge"),
        Index("ix_user_badges_earned", "user_id", "is_earned"),
    )

# --- rewards & redemptions

reward_destinations = Table(
    "reward_destinations",
    Base.metadata,
    Column("reward_id", ForeignKey("rewards.id", ondelete="CASCADE"), primary_key=True),
    Column("destination_id", ForeignKey("destinations.id", ondelete="CASCADE"), primary_key=True),
)

class Reward(Base):
    __tablename__ = "rewards"
    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    partner_name: Mapped[str | None] = mapped_column(String(255))
    points_required: Mapped[int] = mapped_column(Integer, nullable=False)
    stock_quantity: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    stock_unlimited: Mapped[bool] = mapped_column(default=False, nullable=False)
    max_redemptions_per_user: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    valid_from: Mapped[datetime | None] = mapped_column(UTCDateTime)
    valid_until: Mapped[datetime | None] = mapped_column(UTCDateTime)
    redemption_period_days: Mapped[int] = mapped_column(Integer, default=30, nullable=False)
    is_active: Mapped[bool] = mapped_column(default=True, nullable=False)
    total_redeemed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_by: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("points_required > 0", name="ck_reward_cost"),
        CheckConstraint("stock_quantity >= 0", name="ck_reward_stock"),
        Index("ix_rewards_active", "is_active"),
        Index("ix_rewards_window", "valid_from", "valid_until"),
    )

class Redemption(Base):
    __tablename__ = "user_reward_redemptions"
    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("user_accounts.id", ondelete="CASCADE"), nullable=False)
    reward_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("rewards.id", ondelete="RESTRICT"), nullable=False)
    destination_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("destinations.id", ondelete="SET NULL"), nullable=True)
    points_spent: Mapped[int] = mapped_column(Integer, nullable=False)
    redemption_code: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    status: Mapped[RedemptionStatus] = mapped_column(SqlEnum(RedemptionStatus), default=RedemptionStatus.ACTIVE, nullable=False)
    valid_until: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    redeemed_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    used_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    used_location: Mapped[str | None] = mapped_column(String(255))
    verified_by: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    notes: Mapped[str | None] = mapped_column(Text)

    __table_args__ = (
        Index("ix_redemptions_user", "user_id"),
        Index("ix_redemptions_reward", "reward_id"),
        Index("ix_redemptions_status_valid", "status", "valid_until"),
    )

# --- ledger

class PointsTransaction(Base):
    """Append-only. Rows are never updated or deleted."""
    __tablename__ = "points_transactions"
    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("user_accounts.id", ondelete="CASCADE"), nullable=False)
    points: Mapped[int] = mapped_column(Integer, nullable=False)  # + or -
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)
    transaction_type: Mapped[TransactionType] = mapped_column(SqlEnum(TransactionType), nullable=False)
    reference_type: Mapped[ReferenceKind] = mapped_column(SqlEnum(ReferenceKind), nullable=False)
    reference_id: Mapped[uuid.UUID] = mapped_column(nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("balance_after >= 0", name="ck_ledger_balance"),
        Index("ix_ledger_user_time", "user_id", "occurred_at"),
        Index("ix_ledger_reference", "reference_type", "reference_id"),
        Index("ix_ledger_type", "transaction_type"),
    )

# --- promotions

class Promotion(Base):
    """Check-in bonus rule; scoped to a destination and/or category when set."""
    __tablename__ = "promotions"
    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    bonus_points: Mapped[int] = mapped_column(Integer, nullable=False)
    destination_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("destinations.id", ondelete="CASCADE"), nullable=True)
    category: Mapped[str | None] = mapped_column(String(64))
    starts_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    ends_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    active: Mapped[bool] = mapped_column(default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("bonus_points > 0", name="ck_promotion_points"),
        Index("ix_promotions_active", "active"),
    )
