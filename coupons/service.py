import logging
import threading
import weakref
from datetime import datetime
from typing import Any, Iterable, Optional

from .clock import SystemClock, utc_day_bounds
from .config import Settings, configure_logging
from .config import settings as default_settings
from .database import get_engine, get_sessionmaker, init_db
from .deeplink import with_deep_link
from .errors import (
    AlreadyRedeemed,
    CouponError,
    DailyCapExceeded,
    InsufficientBalance,
    InvalidState,
    NotFound,
    TokenExpired,
    describe,
)
from .events import EventLog
from .masking import mask_phone, mask_token
from .models import (
    AwardResult,
    Event,
    EventType,
    IssuedToken,
    Policy,
    RedemptionResult,
    RewardProgress,
    RewardTier,
    Token,
    TokenStatus,
    WalletEntry,
)
from .phone import normalize_phone
from .policy import PolicyStore
from .storage import CouponStore, InMemoryStorage, SqlAlchemyStorage
from .tokens import TokenLedger, normalize_code
from .wallet import WalletLedger

logger = logging.getLogger(__name__)

TOKEN_FAILURES = (NotFound, AlreadyRedeemed, TokenExpired, InvalidState)


def select_tier(policy: Policy, balance: int, base_name: str) -> Optional[RewardTier]:
    """Highest reward the balance pays for, or None below the base threshold.

    The base reward competes with the active tiers; on equal coupon counts a
    named tier wins over the base reward.
    """
    threshold = policy.default_redemption_threshold
    if balance < threshold:
        return None

    candidates = [RewardTier(name=base_name, coupons_required=threshold)]
    candidates += [t for t in policy.active_tiers() if t.coupons_required <= balance]
    return max(
        candidates,
        key=lambda t: (t.coupons_required, not t.is_base, -t.sort_order, -(t.id or 0)),
    )


class CouponService:
    def __init__(
        self,
        storage: Optional[CouponStore] = None,
        clock=None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or Settings()
        self.storage = storage or InMemoryStorage()
        self.clock = clock or SystemClock()

        self.policy = PolicyStore(
            self.storage,
            defaults=self.settings.policy_defaults(),
            clock=self.clock,
            cache_ttl=self.settings.POLICY_CACHE_TTL_SECONDS,
        )
        self.tokens = TokenLedger(
            self.storage,
            self.policy,
            clock=self.clock,
            code_length=self.settings.TOKEN_CODE_LENGTH,
            max_attempts=self.settings.TOKEN_MAX_ATTEMPTS,
        )
        self.events = EventLog(self.storage, clock=self.clock)
        self.wallets = WalletLedger(self.events)

        self._phone_locks: weakref.WeakValueDictionary[str, threading.Lock] = weakref.WeakValueDictionary()
        self._phone_locks_guard = threading.Lock()

    def _lock_for(self, phone: str) -> threading.Lock:
        with self._phone_locks_guard:
            lock = self._phone_locks.get(phone)
            if lock is None:
                lock = threading.Lock()
                self._phone_locks[phone] = lock
            return lock

    def _phone(self, phone: str) -> str:
        return normalize_phone(phone, self.settings.DEFAULT_COUNTRY_CODE)

    # tokens

    def issue_token(
        self,
        phone: Optional[str] = None,
        issued_for: Optional[str] = None,
        kiosk_id: Optional[str] = None,
    ) -> IssuedToken:
        bound = self._phone(phone) if phone else None
        token = self.tokens.issue(bound, issued_for=issued_for, kiosk_id=kiosk_id)
        return with_deep_link(token, self.settings.WHATSAPP_NUMBER)

    def get_token(self, code: str) -> Token:
        return self.tokens.get(code)

    def list_tokens(
        self,
        status: Optional[TokenStatus] = None,
        phone: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Token]:
        return self.tokens.list(
            status=TokenStatus(status) if status else None,
            phone=self._phone(phone) if phone else None,
            limit=limit,
            offset=offset,
        )

    def delete_token(self, code: str) -> Token:
        return self.tokens.delete(code)

    def expire_stale_tokens(self) -> int:
        return self.tokens.expire_stale()

    # wallet

    def award(
        self,
        phone: str,
        token: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> AwardResult:
        phone = self._phone(phone)
        with self._lock_for(phone):
            policy = self.policy.get_policy()
            start, end = utc_day_bounds(self.clock.now())
            awarded_today = self.events.count(phone, EventType.COUPON_AWARDED, since=start, until=end)
            wallet = self.wallets.get_wallet(phone)

            if awarded_today >= policy.max_coupons_per_day:
                cap = DailyCapExceeded(
                    f"Daily coupon cap reached for {mask_phone(phone)} "
                    f"({awarded_today}/{policy.max_coupons_per_day})"
                )
                logger.warning("%s", cap)
                return AwardResult(awarded=False, wallet=wallet, reason=cap.reason, message=cap.message)

            event = self.events.append(
                EventType.COUPON_AWARDED,
                phone=phone,
                token=normalize_code(token) if token else None,
                details={
                    **(details or {}),
                    "new_balance": wallet.coupon_count + 1,
                    "awarded_today": awarded_today + 1,
                    "max_coupons_per_day": policy.max_coupons_per_day,
                },
                balance_delta=1,
            )
            return AwardResult(awarded=True, wallet=self.wallets.get_wallet(phone), event=event)

    def redeem(self, code: str, phone: str) -> RedemptionResult:
        phone = self._phone(phone)
        code = normalize_code(code)

        with self._lock_for(phone):
            policy = self.policy.get_policy()
            base_name = self.settings.BASE_REWARD_NAME
            burn = policy.burn_token_on_ineligible
            balance = self.wallets.get_wallet(phone).coupon_count
            snapshot = {
                "threshold": policy.default_redemption_threshold,
                "balance": balance,
                "burn_token_on_ineligible": burn,
            }

            self.events.append(EventType.REDEMPTION_ATTEMPT, phone=phone, token=code, details=snapshot)

            try:
                token = self.tokens.redeem(code, phone) if burn else self.tokens.check_redeemable(code, phone)
            except TOKEN_FAILURES as e:
                return self._blocked(phone, code, e, snapshot)

            tier = select_tier(policy, balance, base_name)
            if tier is None:
                return self._blocked(
                    phone, code, None, {**snapshot, "needed": policy.default_redemption_threshold - balance},
                    token=token,
                )

            if not burn:
                try:
                    token = self.tokens.redeem(code, phone)
                except TOKEN_FAILURES as e:
                    return self._blocked(phone, code, e, snapshot)

            try:
                event = self.events.append(
                    EventType.REDEMPTION_GRANTED,
                    phone=phone,
                    token=code,
                    details={
                        **snapshot,
                        **tier.snapshot(),
                        "coupons_used": tier.coupons_required,
                        "new_balance": balance - tier.coupons_required,
                    },
                    balance_delta=-tier.coupons_required,
                )
            except InsufficientBalance as e:
                return self._blocked(phone, code, e, snapshot, token=token)

            logger.info(
                "Redemption granted for %s with %s: %s (%d coupons)",
                mask_phone(phone), mask_token(code), tier.name, tier.coupons_required,
            )
            return RedemptionResult(
                granted=True,
                tier=tier,
                token=token,
                wallet=self.wallets.get_wallet(phone),
                event=event,
            )

    def _blocked(
        self,
        phone: str,
        code: str,
        error: Optional[CouponError],
        snapshot: dict[str, Any],
        token: Optional[Token] = None,
    ) -> RedemptionResult:
        reason = error.reason if error else "insufficient_balance"
        details = {**snapshot, "reason": reason}
        if error:
            details["error"] = str(error)
        event = self.events.append(EventType.REDEMPTION_BLOCKED, phone=phone, token=code, details=details)
        logger.info("Redemption blocked for %s with %s: %s", mask_phone(phone), mask_token(code), reason)
        return RedemptionResult(
            granted=False,
            token=token,
            reason=reason,
            message=describe(reason),
            wallet=self.wallets.get_wallet(phone),
            event=event,
        )

    def get_wallet(self, phone: str) -> WalletEntry:
        return self.wallets.get_wallet(self._phone(phone))

    def check_balance(self, phone: str) -> WalletEntry:
        phone = self._phone(phone)
        wallet = self.wallets.get_wallet(phone)
        self.events.append(
            EventType.BALANCE_CHECKED,
            phone=phone,
            details={
                "balance": wallet.coupon_count,
                "threshold": self.policy.get_policy().default_redemption_threshold,
            },
        )
        return self.wallets.get_wallet(phone)

    def opt_out(self, phone: str) -> WalletEntry:
        phone = self._phone(phone)
        self.events.append(EventType.OPT_OUT, phone=phone)
        logger.info("Marketing opt-out for %s", mask_phone(phone))
        return self.wallets.get_wallet(phone)

    def reward_progress(self, phone: str) -> RewardProgress:
        wallet = self.get_wallet(phone)
        needed, next_tier = self.policy.remaining_for_next_reward(wallet.coupon_count)
        return RewardProgress(
            phone=wallet.phone,
            balance=wallet.coupon_count,
            needed=needed,
            next_tier=next_tier,
            available=self.policy.available_rewards(wallet.coupon_count),
        )

    def list_events(
        self,
        phone: str,
        event_types: Optional[Iterable[EventType]] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: Optional[int] = 100,
        newest_first: bool = True,
    ) -> list[Event]:
        return self.events.query(
            self._phone(phone),
            event_types=event_types,
            since=since,
            until=until,
            limit=limit,
            newest_first=newest_first,
        )

    # policy

    def get_policy(self) -> Policy:
        return self.policy.get_policy()

    def update_policy(self, **changes) -> Policy:
        return self.policy.update_settings(**changes)

    def list_tiers(self, include_inactive: bool = True) -> list[RewardTier]:
        return self.policy.list_tiers(include_inactive)

    def get_tier(self, tier_id: int) -> RewardTier:
        return self.policy.get_tier(tier_id)

    def create_tier(self, **fields) -> RewardTier:
        return self.policy.create_tier(**fields)

    def update_tier(self, tier_id: int, **changes) -> RewardTier:
        return self.policy.update_tier(tier_id, **changes)

    def delete_tier(self, tier_id: int) -> None:
        self.policy.delete_tier(tier_id)


def build_service(settings: Optional[Settings] = None, clock=None) -> CouponService:
    settings = settings or default_settings
    configure_logging(settings)

    storage: CouponStore
    if settings.DATABASE_URL:
        engine = get_engine(settings.DATABASE_URL)
        init_db(engine)
        storage = SqlAlchemyStorage(get_sessionmaker(engine))
    else:
        logger.warning("DATABASE_URL is not set; coupon data lives in memory only")
        storage = InMemoryStorage()
    return CouponService(storage=storage, clock=clock, settings=settings)
