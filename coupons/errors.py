from typing import Optional


REASON_MESSAGES = {
    "validation_error": "The submitted settings are not valid.",
    "not_found": "No coupon token with this code exists.",
    "tier_not_found": "No reward tier with this id exists.",
    "already_redeemed": "This coupon token has already been used.",
    "token_expired": "This coupon token has expired.",
    "invalid_state": "This coupon token can no longer be used.",
    "phone_mismatch": "This coupon token was issued to a different phone number.",
    "insufficient_balance": "Not enough coupons collected for a reward yet.",
    "daily_cap_exceeded": "The daily coupon limit for this phone has been reached.",
    "generation_exhausted": "Could not generate a unique coupon code.",
    "duplicate_code": "A coupon token with this code already exists.",
}


def describe(reason: str) -> str:
    return REASON_MESSAGES.get(reason, reason.replace("_", " ").capitalize())


class CouponError(Exception):
    reason = "coupon_error"

    def __init__(self, message: Optional[str] = None, reason: Optional[str] = None):
        if reason:
            self.reason = reason
        super().__init__(message or describe(self.reason))

    @property
    def message(self) -> str:
        return describe(self.reason)


class ValidationError(CouponError):
    reason = "validation_error"

    def __init__(self, message: Optional[str] = None, errors: Optional[list] = None):
        super().__init__(message)
        self.errors = errors or []


class NotFound(CouponError):
    reason = "not_found"


class AlreadyRedeemed(CouponError):
    reason = "already_redeemed"


class TokenExpired(CouponError):
    reason = "token_expired"


class InvalidState(CouponError):
    reason = "invalid_state"


class DailyCapExceeded(CouponError):
    reason = "daily_cap_exceeded"


class GenerationExhausted(CouponError):
    reason = "generation_exhausted"


class DuplicateCode(CouponError):
    reason = "duplicate_code"


class InsufficientBalance(CouponError):
    reason = "insufficient_balance"
