from __future__ import annotations

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class CouponTokenRow(Base):
    __tablename__ = "coupon_tokens"

    code = Column(String(32), primary_key=True)

    # issued / used / expired / deleted
    status = Column(String(16), nullable=False, default="issued")

    phone = Column(String(20), nullable=True)
    issued_for = Column(String(128), nullable=True)
    kiosk_id = Column(String(64), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    used_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_coupon_tokens_status", "status"),
        Index("ix_coupon_tokens_phone", "phone"),
        Index("ix_coupon_tokens_created_at", "created_at"),
    )


class CouponEventRow(Base):
    """Append-only audit row. Never updated or deleted."""

    __tablename__ = "coupon_events"

    id = Column(Integer, primary_key=True, autoincrement=True)

    phone = Column(String(20), nullable=True)
    event = Column(String(32), nullable=False)
    token = Column(String(32), nullable=True)
    details = Column(JSON, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_coupon_events_phone_created", "phone", "created_at"),
        Index("ix_coupon_events_token", "token"),
        Index("ix_coupon_events_event", "event"),
    )


class CouponSettingRow(Base):
    __tablename__ = "coupon_settings"

    key = Column(String(64), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=True)


class CouponRewardTierRow(Base):
    __tablename__ = "coupon_reward_tiers"

    id = Column(Integer, primary_key=True, autoincrement=True)

    name = Column(String(120), nullable=False)
    description = Column(Text, nullable=True)
    coupons_required = Column(Integer, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    sort_order = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class CouponWalletRow(Base):
    """Running balance kept in step with coupon_events, one row per phone."""

    __tablename__ = "coupon_wallets"

    phone = Column(String(20), primary_key=True)
    coupon_count = Column(Integer, nullable=False, default=0)
    total_earned = Column(Integer, nullable=False, default=0)
    total_redeemed = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        CheckConstraint("coupon_count >= 0", name="ck_coupon_wallets_non_negative"),
    )


class CouponPolicyRevisionRow(Base):
    __tablename__ = "coupon_policy_revision"

    id = Column(Integer, primary_key=True)
    revision = Column(Integer, nullable=False, default=0)
