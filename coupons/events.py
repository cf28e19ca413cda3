import logging
import threading
from datetime import datetime
from typing import Any, Callable, Iterable, Optional

from .clock import SystemClock
from .masking import mask_phone, mask_token
from .models import Event, EventType
from .storage import CouponStore

logger = logging.getLogger(__name__)

Listener = Callable[[Event], None]


class EventLog:
    """Append-only audit trail of wallet-affecting actions.

    ``append`` is the only write. A non-zero ``balance_delta`` moves the
    stored wallet balance in the same transaction; a debit the balance
    cannot cover raises ``InsufficientBalance`` and records nothing.
    Listeners run synchronously after the row is stored, before ``append``
    returns.
    """

    def __init__(self, storage: CouponStore, clock=None):
        self.storage = storage
        self.clock = clock or SystemClock()
        self._listeners: list[Listener] = []
        self._listeners_lock = threading.Lock()

    def subscribe(self, listener: Listener) -> None:
        with self._listeners_lock:
            self._listeners.append(listener)

    def append(
        self,
        event: EventType,
        phone: Optional[str] = None,
        token: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        balance_delta: int = 0,
    ) -> Event:
        record = self.storage.insert_event(
            EventType(event), phone, token, dict(details or {}), self.clock.now(), balance_delta
        )
        logger.info(
            "Event %s #%d phone=%s token=%s",
            record.event.value, record.id, mask_phone(phone) or "-", mask_token(token) or "-",
        )
        for listener in list(self._listeners):
            listener(record)
        return record

    def query(
        self,
        phone: str,
        event_types: Optional[Iterable[EventType]] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: Optional[int] = None,
        newest_first: bool = False,
    ) -> list[Event]:
        return self.storage.query_events(
            phone=phone,
            event_types=event_types,
            since=since,
            until=until,
            limit=limit,
            newest_first=newest_first,
        )

    def count(
        self,
        phone: str,
        event_type: EventType,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> int:
        counts = self.storage.count_events(phone=phone, event_types=[event_type], since=since, until=until)
        return counts.get(EventType(event_type).value, 0)

    def by_token(self, code: str) -> list[Event]:
        return self.storage.query_events(token=code, newest_first=True)

    def recent(self, limit: int = 50) -> list[Event]:
        return self.storage.query_events(limit=limit, newest_first=True)

    def counts(self, since: Optional[datetime] = None, until: Optional[datetime] = None) -> dict[str, int]:
        return self.storage.count_events(since=since, until=until)

    def latest_id(self, phone: str) -> Optional[int]:
        return self.storage.latest_event_id(phone)

    def stored_balance(self, phone: str) -> int:
        return self.storage.get_balance(phone)
