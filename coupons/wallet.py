import logging
import threading
from collections import OrderedDict
from typing import Iterable, Optional

from .events import EventLog
from .masking import mask_phone
from .models import Event, EventType, WalletEntry

logger = logging.getLogger(__name__)

DEFAULT_MAX_CACHED = 10_000


def fold_wallet(phone: str, events: Iterable[Event]) -> WalletEntry:
    """Left-fold a phone's events, oldest first, into its wallet."""
    earned = 0
    redeemed = 0
    opted_in = True
    last_message_at = None

    for e in events:
        if e.event == EventType.COUPON_AWARDED:
            earned += 1
        elif e.event == EventType.REDEMPTION_GRANTED:
            redeemed += int(e.details.get("coupons_used", 0))
        elif e.event == EventType.OPT_OUT:
            opted_in = False
        last_message_at = e.created_at

    return WalletEntry(
        phone=phone,
        coupon_count=earned - redeemed,
        total_earned=earned,
        total_redeemed=redeemed,
        last_message_at=last_message_at,
        opted_in_marketing=opted_in,
    )


class WalletLedger:
    """Per-phone wallet derived from the EventLog.

    A cached fold is reused only while the phone's newest event id in the
    store still matches the one it was folded up to, so writes from other
    processes sharing the store are never missed. At most ``max_cached``
    phones are kept, least recently used first out.
    """

    def __init__(self, events: EventLog, max_cached: int = DEFAULT_MAX_CACHED):
        self.events = events
        self.max_cached = max_cached
        self._cache: OrderedDict[str, tuple[Optional[int], WalletEntry]] = OrderedDict()
        self._lock = threading.Lock()
        events.subscribe(self._on_event)

    def _on_event(self, event: Event) -> None:
        if event.phone:
            self.invalidate(event.phone)

    def invalidate(self, phone: str) -> None:
        with self._lock:
            self._cache.pop(phone, None)

    def cached_phones(self) -> int:
        with self._lock:
            return len(self._cache)

    def get_wallet(self, phone: str) -> WalletEntry:
        latest = self.events.latest_id(phone)
        with self._lock:
            cached = self._cache.get(phone)
            if cached is not None and cached[0] == latest:
                self._cache.move_to_end(phone)
                return cached[1]

        history = self.events.query(phone)
        wallet = fold_wallet(phone, history)
        folded_to = max((e.id for e in history), default=None)

        with self._lock:
            self._cache[phone] = (folded_to, wallet)
            self._cache.move_to_end(phone)
            while len(self._cache) > self.max_cached:
                self._cache.popitem(last=False)
        return wallet

    def rebuild(self, phone: str) -> WalletEntry:
        self.invalidate(phone)
        wallet = self.get_wallet(phone)
        stored = self.events.stored_balance(phone)
        if stored != wallet.coupon_count:
            logger.warning(
                "Wallet drift for %s: events give %d, stored balance is %d",
                mask_phone(phone), wallet.coupon_count, stored,
            )
        logger.info(
            "Wallet rebuilt for %s: balance=%d earned=%d redeemed=%d",
            mask_phone(phone), wallet.coupon_count, wallet.total_earned, wallet.total_redeemed,
        )
        return wallet
