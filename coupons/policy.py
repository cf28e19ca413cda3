import logging
import threading
import time
from typing import Optional

from pydantic import ValidationError as PydanticValidationError

from .clock import SystemClock
from .errors import NotFound, ValidationError
from .models import Policy, PolicySettings, RewardTier, SettingsUpdate, TierCreate, TierUpdate
from .storage import CouponStore

logger = logging.getLogger(__name__)


def _validation_error(exc: PydanticValidationError) -> ValidationError:
    problems = "; ".join(
        f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
    )
    return ValidationError(problems, errors=exc.errors())


class PolicyStore:
    """Holds the redemption policy as an immutable snapshot.

    Writers persist first and then swap in a freshly loaded snapshot under a
    lock, so readers only ever see a whole policy. Reads compare the store's
    policy revision with the snapshot's and reload on a mismatch, which picks
    up writes made by other processes sharing the store. ``cache_ttl`` skips
    that check for the given number of seconds.
    """

    def __init__(
        self,
        storage: CouponStore,
        defaults: Optional[PolicySettings] = None,
        clock=None,
        cache_ttl: float = 0.0,
    ):
        self.storage = storage
        self.defaults = defaults or PolicySettings()
        self.clock = clock or SystemClock()
        self.cache_ttl = cache_ttl
        self._lock = threading.RLock()
        self._policy: Optional[Policy] = None
        self._revision: Optional[int] = None
        self._checked_at = 0.0

    def get_policy(self) -> Policy:
        policy = self._policy
        if policy is not None:
            now = time.monotonic()
            if now - self._checked_at < self.cache_ttl:
                return policy
            if self.storage.policy_revision() == self._revision:
                self._checked_at = now
                return policy
        with self._lock:
            return self._reload()

    def _reload(self) -> Policy:
        revision = self.storage.policy_revision()
        stored = self.storage.load_settings()
        values = self.defaults.model_dump()
        values.update({k: v for k, v in stored.items() if k in PolicySettings.model_fields})
        try:
            settings = PolicySettings(**values)
        except PydanticValidationError as e:
            raise _validation_error(e) from e
        self._policy = Policy(**settings.model_dump(), reward_tiers=tuple(self.storage.list_tiers()))
        self._revision = revision
        self._checked_at = time.monotonic()
        return self._policy

    def update_settings(self, **changes) -> Policy:
        try:
            update = SettingsUpdate(**changes)
        except PydanticValidationError as e:
            raise _validation_error(e) from e

        values = update.model_dump(exclude_none=True)
        with self._lock:
            if values:
                self.storage.save_settings(values, self.clock.now())
                logger.info("Coupon policy settings updated: %s", values)
            return self._reload()

    def list_tiers(self, include_inactive: bool = True) -> list[RewardTier]:
        tiers = self.storage.list_tiers()
        if include_inactive:
            return tiers
        return [t for t in tiers if t.is_active]

    def get_tier(self, tier_id: int) -> RewardTier:
        tier = self.storage.get_tier(tier_id)
        if tier is None:
            raise NotFound(f"Reward tier {tier_id} not found", reason="tier_not_found")
        return tier

    def create_tier(self, **fields) -> RewardTier:
        try:
            request = TierCreate(**fields)
        except PydanticValidationError as e:
            raise _validation_error(e) from e

        with self._lock:
            tier = self.storage.insert_tier(request.model_dump(), self.clock.now())
            self._reload()
        logger.info("Reward tier %s created: %s at %d coupons", tier.id, tier.name, tier.coupons_required)
        return tier

    def update_tier(self, tier_id: int, **changes) -> RewardTier:
        try:
            request = TierUpdate(**changes)
        except PydanticValidationError as e:
            raise _validation_error(e) from e

        # description may be cleared explicitly, everything else ignores None
        values = request.model_dump(exclude_unset=True)
        values = {k: v for k, v in values.items() if v is not None or k == "description"}

        with self._lock:
            tier = self.storage.update_tier(tier_id, values, self.clock.now())
            if tier is None:
                raise NotFound(f"Reward tier {tier_id} not found", reason="tier_not_found")
            self._reload()
        logger.info("Reward tier %s updated: %s", tier_id, values)
        return tier

    def delete_tier(self, tier_id: int) -> None:
        with self._lock:
            if not self.storage.delete_tier(tier_id):
                raise NotFound(f"Reward tier {tier_id} not found", reason="tier_not_found")
            self._reload()
        logger.info("Reward tier %s deleted", tier_id)

    def available_rewards(self, coupon_count: int) -> list[RewardTier]:
        return [t for t in self.get_policy().active_tiers() if coupon_count >= t.coupons_required]

    def minimum_tier(self) -> Optional[RewardTier]:
        tiers = self.get_policy().active_tiers()
        if not tiers:
            return None
        return min(tiers, key=lambda t: t.coupons_required)

    def remaining_for_next_reward(self, coupon_count: int) -> tuple[int, Optional[RewardTier]]:
        ahead = [t for t in self.get_policy().active_tiers() if t.coupons_required > coupon_count]
        if not ahead:
            return 0, self.minimum_tier()
        next_tier = min(ahead, key=lambda t: t.coupons_required)
        return next_tier.coupons_required - coupon_count, next_tier
