import logging
import secrets
import string
from datetime import timedelta
from typing import Callable, Optional

from .clock import SystemClock
from .errors import (
    AlreadyRedeemed,
    DuplicateCode,
    GenerationExhausted,
    InvalidState,
    NotFound,
    TokenExpired,
    ValidationError,
)
from .masking import mask_phone, mask_token
from .models import Token, TokenStatus
from .policy import PolicyStore
from .storage import CouponStore

logger = logging.getLogger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits
DEFAULT_CODE_LENGTH = 8
MAX_GENERATION_ATTEMPTS = 10


def generate_code(length: int = DEFAULT_CODE_LENGTH) -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


class TokenLedger:
    """Single-use token lifecycle.

    issued -> used       redeem(), exactly once, via the store's compare-and-set
    issued -> expired    lazily, the first time a read notices expires_at passed
    issued -> deleted    delete()
    expired -> deleted   delete()
    """

    def __init__(
        self,
        storage: CouponStore,
        policy: PolicyStore,
        clock=None,
        code_length: int = DEFAULT_CODE_LENGTH,
        max_attempts: int = MAX_GENERATION_ATTEMPTS,
        code_factory: Optional[Callable[[int], str]] = None,
    ):
        if not 1 <= max_attempts <= MAX_GENERATION_ATTEMPTS:
            raise ValueError(f"max_attempts must be between 1 and {MAX_GENERATION_ATTEMPTS}")
        self.storage = storage
        self.policy = policy
        self.clock = clock or SystemClock()
        self.code_length = code_length
        self.max_attempts = max_attempts
        self.code_factory = code_factory or generate_code

    def issue(
        self,
        phone: Optional[str] = None,
        issued_for: Optional[str] = None,
        kiosk_id: Optional[str] = None,
    ) -> Token:
        hours = self.policy.get_policy().token_expiration_hours

        for attempt in range(1, self.max_attempts + 1):
            now = self.clock.now()
            token = Token(
                code=self.code_factory(self.code_length),
                phone=phone,
                status=TokenStatus.ISSUED,
                created_at=now,
                expires_at=now + timedelta(hours=hours),
                updated_at=now,
                issued_for=issued_for,
                kiosk_id=kiosk_id,
            )
            try:
                self.storage.insert_token(token)
            except DuplicateCode:
                logger.warning("Token code collision on attempt %d/%d", attempt, self.max_attempts)
                continue
            logger.info(
                "Issued token %s (phone=%s, expires %s)",
                mask_token(token.code), mask_phone(phone) or "unbound", token.expires_at.isoformat(),
            )
            return token

        logger.error("Token generation exhausted after %d attempts", self.max_attempts)
        raise GenerationExhausted(
            f"Failed to generate a unique token code after {self.max_attempts} attempts"
        )

    def get(self, code: str) -> Token:
        code = normalize_code(code)
        token = self.storage.get_token(code)
        if token is None:
            raise NotFound(f"Token {code} not found")
        return self._observe(token)

    def _observe(self, token: Token) -> Token:
        now = self.clock.now()
        if token.status != TokenStatus.ISSUED or not token.is_past_expiry(now):
            return token
        self.storage.transition_token(token.code, TokenStatus.ISSUED, TokenStatus.EXPIRED, now)
        return self.storage.get_token(token.code) or token

    def _check(self, token: Token, presented_phone: Optional[str]) -> None:
        if token.status == TokenStatus.USED:
            raise AlreadyRedeemed(f"Token {token.code} was already redeemed")
        if token.status == TokenStatus.EXPIRED:
            raise TokenExpired(f"Token {token.code} expired at {token.expires_at.isoformat()}")
        if token.status == TokenStatus.DELETED:
            raise InvalidState(f"Token {token.code} was deleted")
        if token.phone and presented_phone and token.phone != presented_phone:
            raise InvalidState(f"Token {token.code} is bound to another phone", reason="phone_mismatch")

    def check_redeemable(self, code: str, presented_phone: Optional[str] = None) -> Token:
        token = self.get(code)
        self._check(token, presented_phone)
        return token

    def redeem(self, code: str, presented_phone: Optional[str] = None) -> Token:
        token = self.check_redeemable(code, presented_phone)

        now = self.clock.now()
        won = self.storage.transition_token(
            token.code,
            TokenStatus.ISSUED,
            TokenStatus.USED,
            now,
            valid_at=now,
            phone=presented_phone or token.phone,
        )
        if won:
            logger.info("Token %s redeemed by %s", mask_token(token.code), mask_phone(presented_phone))
            return self.storage.get_token(token.code)

        current = self.get(token.code)
        self._check(current, presented_phone)
        raise InvalidState(f"Token {token.code} changed state during redemption")

    def delete(self, code: str) -> Token:
        token = self.get(code)
        if not token.can_delete():
            raise InvalidState(f"Cannot delete token in {token.status.value} state")

        now = self.clock.now()
        if not self.storage.transition_token(token.code, token.status, TokenStatus.DELETED, now):
            current = self.get(token.code)
            raise InvalidState(f"Cannot delete token in {current.status.value} state")
        logger.info("Token %s deleted", mask_token(token.code))
        return self.storage.get_token(token.code)

    def list(
        self,
        status: Optional[TokenStatus] = None,
        phone: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Token]:
        if limit < 1 or offset < 0:
            raise ValidationError("limit must be positive and offset non-negative")

        self.storage.expire_tokens(self.clock.now())
        return self.storage.list_tokens(status, phone, limit, offset)

    def expire_stale(self) -> int:
        count = self.storage.expire_tokens(self.clock.now())
        if count:
            logger.info("Expired %d stale tokens", count)
        return count
