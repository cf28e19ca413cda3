from datetime import datetime
from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel, Field, ConfigDict


class TokenStatus(str, Enum):
    ISSUED = "issued"
    USED = "used"
    EXPIRED = "expired"
    DELETED = "deleted"


class EventType(str, Enum):
    COUPON_AWARDED = "coupon_awarded"
    REDEMPTION_ATTEMPT = "redemption_attempt"
    REDEMPTION_GRANTED = "redemption_granted"
    REDEMPTION_BLOCKED = "redemption_blocked"
    BALANCE_CHECKED = "balance_checked"
    OPT_OUT = "opt_out"


class Token(BaseModel):
    code: str
    phone: Optional[str] = None
    status: TokenStatus = TokenStatus.ISSUED
    created_at: datetime
    expires_at: datetime
    used_at: Optional[datetime] = None
    updated_at: datetime
    issued_for: Optional[str] = None
    kiosk_id: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)

    def is_past_expiry(self, now: datetime) -> bool:
        return now >= self.expires_at

    def can_delete(self) -> bool:
        return self.status in (TokenStatus.ISSUED, TokenStatus.EXPIRED)


class IssuedToken(BaseModel):
    token: Token
    wa_text: Optional[str] = None
    wa_url: Optional[str] = None


class Event(BaseModel):
    id: int
    phone: Optional[str] = None
    event: EventType
    token: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime

    model_config = ConfigDict(from_attributes=True, frozen=True)


class WalletEntry(BaseModel):
    phone: str
    coupon_count: int = 0
    total_earned: int = 0
    total_redeemed: int = 0
    last_message_at: Optional[datetime] = None
    opted_in_marketing: bool = True


class RewardTier(BaseModel):
    id: Optional[int] = None
    name: str = Field(..., min_length=1, max_length=120)
    description: Optional[str] = None
    coupons_required: int = Field(..., ge=1)
    is_active: bool = True
    sort_order: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True, frozen=True)

    @property
    def is_base(self) -> bool:
        return self.id is None

    def snapshot(self) -> dict[str, Any]:
        return {
            "tier_id": self.id,
            "tier_name": self.name,
            "coupons_required": self.coupons_required,
        }


class PolicySettings(BaseModel):
    default_redemption_threshold: int = Field(default=4, ge=1, le=100)
    token_expiration_hours: int = Field(default=24, ge=1, le=168)
    max_coupons_per_day: int = Field(default=10, ge=1, le=50)
    burn_token_on_ineligible: bool = True

    model_config = ConfigDict(frozen=True)


class Policy(PolicySettings):
    reward_tiers: tuple[RewardTier, ...] = ()

    def active_tiers(self) -> list[RewardTier]:
        return [t for t in self.reward_tiers if t.is_active]


class SettingsUpdate(BaseModel):
    default_redemption_threshold: Optional[int] = Field(default=None, ge=1, le=100)
    token_expiration_hours: Optional[int] = Field(default=None, ge=1, le=168)
    max_coupons_per_day: Optional[int] = Field(default=None, ge=1, le=50)
    burn_token_on_ineligible: Optional[bool] = None

    model_config = ConfigDict(extra="forbid")


class TierCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    description: Optional[str] = None
    coupons_required: int = Field(..., ge=1)
    is_active: bool = True
    sort_order: int = 0

    model_config = ConfigDict(extra="forbid", json_schema_extra={
        "example": {
            "name": "Premium Massage",
            "description": "Redeem 8 coupons for a premium session",
            "coupons_required": 8,
            "is_active": True,
            "sort_order": 2,
        }
    })


class TierUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    description: Optional[str] = None
    coupons_required: Optional[int] = Field(default=None, ge=1)
    is_active: Optional[bool] = None
    sort_order: Optional[int] = None

    model_config = ConfigDict(extra="forbid")


class AwardResult(BaseModel):
    awarded: bool
    wallet: WalletEntry
    event: Optional[Event] = None
    reason: Optional[str] = None
    message: Optional[str] = None


class RedemptionResult(BaseModel):
    granted: bool
    wallet: WalletEntry
    event: Event
    tier: Optional[RewardTier] = None
    token: Optional[Token] = None
    reason: Optional[str] = None
    message: Optional[str] = None


class RewardProgress(BaseModel):
    phone: str
    balance: int
    needed: int
    next_tier: Optional[RewardTier] = None
    available: list[RewardTier] = Field(default_factory=list)
