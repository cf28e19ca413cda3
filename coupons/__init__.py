"""
Coupon Token & Wallet Ledger for kiosk loyalty rewards

This module provides:
- Single-use redemption tokens with lazy expiry and exactly-once redemption
- Per-phone wallets derived from an append-only event log
- A configurable redemption policy: threshold, daily cap, reward tiers
- Typed outcomes for award and redemption, recorded for audit
"""

from .errors import (
    CouponError,
    ValidationError,
    NotFound,
    AlreadyRedeemed,
    TokenExpired,
    InvalidState,
    DailyCapExceeded,
    GenerationExhausted,
    InsufficientBalance,
)
from .models import (
    TokenStatus,
    EventType,
    Token,
    IssuedToken,
    Event,
    WalletEntry,
    RewardTier,
    Policy,
    AwardResult,
    RedemptionResult,
    RewardProgress,
)
from .service import CouponService, build_service

__all__ = [
    "CouponError",
    "ValidationError",
    "NotFound",
    "AlreadyRedeemed",
    "TokenExpired",
    "InvalidState",
    "DailyCapExceeded",
    "GenerationExhausted",
    "InsufficientBalance",
    "TokenStatus",
    "EventType",
    "Token",
    "IssuedToken",
    "Event",
    "WalletEntry",
    "RewardTier",
    "Policy",
    "AwardResult",
    "RedemptionResult",
    "RewardProgress",
    "CouponService",
    "build_service",
]
