from __future__ import annotations
from pydantic import BaseModel, ConfigDict, Field, model_validator
from typing import Annotated, Literal
from uuid import UUID
from datetime import datetime

from .models import (
    BadgeRarity, CheckinMethod, DestinationStatus, RedemptionStatus, ReferenceKind, RequirementType, TransactionType,
)

PosInt     = Annotated[int, Field(gt=0)]
NonNegInt  = Annotated[int, Field(ge=0)]
Name128    = Annotated[str, Field(min_length=1, max_length=128)]
Title255   = Annotated[str, Field(min_length=1, max_length=255)]
Code100    = Annotated[str, Field(min_length=1, max_length=100)]
Lat        = Annotated[float, Field(ge=-90, le=90)]
Lon        = Annotated[float, Field(ge=-180, le=180)]

OptStr     = str | None

class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)

# --- check-ins
class CheckinCreate(BaseModel):
    destination_code: Code100  # token encoded in the destination's QR poster
    lat: Lat
    lon: Lon
    destination_id: UUID | None = None

class CheckinRead(ORMModel):
    id: UUID
    user_id: UUID
    destination_id: UUID
    checkin_method: CheckinMethod
    user_latitude: float | None
    user_longitude: float | None
    distance_from_destination: float | None
    points_earned: int
    bonus_points: int
    is_verified: bool
    checked_in_at: datetime

# --- badges
class BadgeRead(ORMModel):
    id: UUID
    name: str
    slug: str
    description: OptStr = None
    icon: OptStr = None
    requirement_type: RequirementType
    requirement_value: int
    points_reward: int
    rarity: BadgeRarity
    display_order: int

class UserBadgeRead(BaseModel):
    badge: BadgeRead
    progress: int
    is_earned: bool
    earned_at: datetime | None = None
    points_awarded: int
    is_favorited: bool
    is_displayed: bool

class CheckinResult(BaseModel):
    checkin: CheckinRead
    points_earned: int
    total_points: int
    new_badges: list[BadgeRead]

class CheckinStatsRead(BaseModel):
    today: int
    this_week: int
    this_month: int
    all_time: int
    total_points: int
    badges_earned: int
    current_streak: int

class BadgeCheckResult(BaseModel):
    new_badges_count: int
    new_badges: list[BadgeRead]

class BadgeFlagsRead(ORMModel):
    badge_id: UUID
    is_favorited: bool
    is_displayed: bool

# --- points
class BalanceRead(BaseModel):
    user_id: UUID
    total_points: int
    level: int
    lifetime_points: int

class LedgerRead(ORMModel):
    id: UUID
    points: int
    balance_after: int
    transaction_type: TransactionType
    reference_type: ReferenceKind
    reference_id: UUID
    description: OptStr = None
    occurred_at: datetime

# --- destinations
class DestinationCreate(BaseModel):
    name: Title255
    category: OptStr = None
    city: OptStr = None
    owner_id: UUID | None = None
    latitude: Lat
    longitude: Lon
    visit_radius: PosInt | None = None  # meters
    points_reward: NonNegInt = 50
    qr_code: Code100 | None = None  # generated when omitted
    status: Literal["active", "inactive"] = "active"

class DestinationUpdate(BaseModel):
    name: Title255 | None = None
    category: OptStr = None
    city: OptStr = None
    owner_id: UUID | None = None
    latitude: Lat | None = None
    longitude: Lon | None = None
    visit_radius: PosInt | None = None
    points_reward: NonNegInt | None = None
    status: Literal["active", "inactive"] | None = None

class DestinationRead(ORMModel):
    id: UUID
    name: str
    category: OptStr = None
    city: OptStr = None
    status: DestinationStatus
    owner_id: UUID | None = None
    latitude: float
    longitude: float
    visit_radius: int | None = None
    points_reward: int
    total_visits: int

class DestinationAdminRead(DestinationRead):
    qr_code: str

# --- rewards
class RewardCreate(BaseModel):
    title: Title255
    description: OptStr = None
    partner_name: OptStr = None
    points_required: PosInt
    stock_quantity: NonNegInt = 0
    stock_unlimited: bool = False
    max_redemptions_per_user: PosInt = 1
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    redemption_period_days: PosInt = 30
    is_active: bool = True
    destination_ids: list[UUID] = []

class RewardUpdate(BaseModel):
    title: Title255 | None = None
    description: OptStr = None
    partner_name: OptStr = None
    points_required: PosInt | None = None
    stock_quantity: NonNegInt | None = None
    stock_unlimited: bool | None = None
    max_redemptions_per_user: PosInt | None = None
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    redemption_period_days: PosInt | None = None
    is_active: bool | None = None
    destination_ids: list[UUID] | None = None

class RewardRead(ORMModel):
    id: UUID
    title: str
    description: OptStr = None
    partner_name: OptStr = None
    points_required: int
    stock_quantity: int
    stock_unlimited: bool
    max_redemptions_per_user: int
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    redemption_period_days: int
    is_active: bool
    total_redeemed: int
    destination_ids: list[UUID] = []

# --- redemptions
class RedeemRequest(BaseModel):
    destination_id: UUID | None = None
    lat: Lat | None = None
    lon: Lon | None = None

    @model_validator(mode="after")
    def _location_with_destination(self):
        if self.destination_id is not None and (self.lat is None or self.lon is None):
            raise ValueError("lat and lon are required when destination_id is given")
        return self

class ChangeRedemptionRequest(RedeemRequest):
    new_reward_id: UUID

class ClaimRequest(BaseModel):
    code: Code100
    destination_id: UUID | None = None

class RedemptionRead(ORMModel):
    id: UUID
    user_id: UUID
    reward_id: UUID
    destination_id: UUID | None = None
    points_spent: int
    redemption_code: str
    status: RedemptionStatus
    valid_until: datetime
    redeemed_at: datetime
    used_at: datetime | None = None
    used_location: OptStr = None
    verified_by: UUID | None = None
    notes: OptStr = None

class SweepResult(BaseModel):
    succeeded: int
    failed: int
    skipped: int

# --- promotions
class PromotionCreate(BaseModel):
    name: Name128
    description: OptStr = None
    bonus_points: PosInt
    destination_id: UUID | None = None
    category: OptStr = None
    starts_at: datetime | None = None
    ends_at: datetime | None = None
    active: bool = True

class PromotionUpdate(BaseModel):
    name: Name128 | None = None
    description: OptStr = None
    bonus_points: PosInt | None = None
    starts_at: datetime | None = None
    ends_at: datetime | None = None
    active: bool | None = None

class PromotionRead(ORMModel):
    id: UUID
    name: str
    description: OptStr = None
    bonus_points: int
    destination_id: UUID | None = None
    category: OptStr = None
    starts_at: datetime | None = None
    ends_at: datetime | None = None
    active: bool

class NearbyRewardRead(RewardRead):
    destination_id: UUID
    distance_m: float
