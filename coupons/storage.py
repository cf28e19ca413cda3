import copy
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Iterable, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from .clock import as_utc
from .database import db_session
from .errors import DuplicateCode, InsufficientBalance
from .models import Event, EventType, RewardTier, Token, TokenStatus
from .tables import (
    CouponEventRow,
    CouponPolicyRevisionRow,
    CouponRewardTierRow,
    CouponSettingRow,
    CouponTokenRow,
    CouponWalletRow,
)


class CouponStore(ABC):
    """Persistence contract for tokens, events and policy."""

    # tokens

    @abstractmethod
    def insert_token(self, token: Token) -> Token: ...

    @abstractmethod
    def get_token(self, code: str) -> Optional[Token]: ...

    @abstractmethod
    def transition_token(
        self,
        code: str,
        expected: TokenStatus,
        new: TokenStatus,
        now: datetime,
        *,
        valid_at: Optional[datetime] = None,
        phone: Optional[str] = None,
    ) -> bool:
        """Compare-and-set on token status.

        Applies only while the stored status equals ``expected`` and, when
        ``valid_at`` is given, ``expires_at > valid_at``. Returns whether the
        row changed.
        """

    @abstractmethod
    def list_tokens(
        self,
        status: Optional[TokenStatus] = None,
        phone: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[Token]: ...

    @abstractmethod
    def expire_tokens(self, now: datetime) -> int: ...

    # events

    @abstractmethod
    def insert_event(
        self,
        event: EventType,
        phone: Optional[str],
        token: Optional[str],
        details: dict[str, Any],
        created_at: datetime,
        balance_delta: int = 0,
    ) -> Event:
        """Store one event and move the phone's wallet row by ``balance_delta``.

        Both happen in one transaction. A debit larger than the stored
        balance raises ``InsufficientBalance`` and writes nothing.
        """

    @abstractmethod
    def latest_event_id(self, phone: str) -> Optional[int]: ...

    @abstractmethod
    def get_balance(self, phone: str) -> int: ...

    @abstractmethod
    def query_events(
        self,
        phone: Optional[str] = None,
        token: Optional[str] = None,
        event_types: Optional[Iterable[EventType]] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: Optional[int] = None,
        newest_first: bool = False,
    ) -> list[Event]: ...

    @abstractmethod
    def count_events(
        self,
        phone: Optional[str] = None,
        event_types: Optional[Iterable[EventType]] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> dict[str, int]: ...

    # policy

    @abstractmethod
    def policy_revision(self) -> int:
        """Counter bumped by every settings or tier write."""

    @abstractmethod
    def load_settings(self) -> dict[str, str]: ...

    @abstractmethod
    def save_settings(self, values: dict[str, Any], now: datetime) -> None: ...

    @abstractmethod
    def list_tiers(self) -> list[RewardTier]: ...

    @abstractmethod
    def get_tier(self, tier_id: int) -> Optional[RewardTier]: ...

    @abstractmethod
    def insert_tier(self, values: dict[str, Any], now: datetime) -> RewardTier: ...

    @abstractmethod
    def update_tier(self, tier_id: int, changes: dict[str, Any], now: datetime) -> Optional[RewardTier]: ...

    @abstractmethod
    def delete_tier(self, tier_id: int) -> bool: ...


def _tier_sort_key(tier: RewardTier):
    return (tier.sort_order, tier.coupons_required, tier.id or 0)


def _event_types(event_types: Optional[Iterable[EventType]]) -> Optional[set[str]]:
    if event_types is None:
        return None
    return {EventType(e).value for e in event_types}


class InMemoryStorage(CouponStore):
    def __init__(self):
        self.tokens: dict[str, dict] = {}
        self.events: list[dict] = []
        self.settings: dict[str, str] = {}
        self.tiers: dict[int, dict] = {}
        self.balances: dict[str, int] = {}
        self.revision = 0
        self._event_seq = 0
        self._tier_seq = 0
        self._lock = threading.RLock()

    def insert_token(self, token: Token) -> Token:
        with self._lock:
            if token.code in self.tokens:
                raise DuplicateCode(f"Token code {token.code} already exists")
            self.tokens[token.code] = token.model_dump()
        return token

    def get_token(self, code: str) -> Optional[Token]:
        with self._lock:
            data = self.tokens.get(code)
            return Token(**data) if data else None

    def transition_token(self, code, expected, new, now, *, valid_at=None, phone=None) -> bool:
        with self._lock:
            data = self.tokens.get(code)
            if not data or data["status"] != expected:
                return False
            if valid_at is not None and data["expires_at"] <= valid_at:
                return False
            data["status"] = new
            data["updated_at"] = now
            if new == TokenStatus.USED:
                data["used_at"] = now
            if phone is not None:
                data["phone"] = phone
            return True

    def list_tokens(self, status=None, phone=None, limit=None, offset=0) -> list[Token]:
        with self._lock:
            rows = [
                d for d in self.tokens.values()
                if (status is None or d["status"] == status) and (phone is None or d["phone"] == phone)
            ]
            rows = [Token(**d) for d in rows]
        rows.sort(key=lambda t: (t.created_at, t.code), reverse=True)
        end = offset + limit if limit is not None else None
        return rows[offset:end]

    def expire_tokens(self, now: datetime) -> int:
        expired = 0
        with self._lock:
            for data in self.tokens.values():
                if data["status"] == TokenStatus.ISSUED and data["expires_at"] <= now:
                    data["status"] = TokenStatus.EXPIRED
                    data["updated_at"] = now
                    expired += 1
        return expired

    def insert_event(self, event, phone, token, details, created_at, balance_delta=0) -> Event:
        with self._lock:
            if balance_delta:
                self._move_balance(phone, balance_delta)
            self._event_seq += 1
            data = {
                "id": self._event_seq,
                "phone": phone,
                "event": EventType(event),
                "token": token,
                "details": copy.deepcopy(details),
                "created_at": created_at,
            }
            self.events.append(data)
        return Event(**copy.deepcopy(data))

    def _move_balance(self, phone: str, delta: int) -> None:
        balance = self.balances.get(phone, 0)
        if balance + delta < 0:
            raise InsufficientBalance(f"Balance {balance} cannot cover {-delta} coupons")
        self.balances[phone] = balance + delta

    def latest_event_id(self, phone: str) -> Optional[int]:
        with self._lock:
            ids = [e["id"] for e in self.events if e["phone"] == phone]
        return max(ids) if ids else None

    def get_balance(self, phone: str) -> int:
        with self._lock:
            return self.balances.get(phone, 0)

    def _matching_events(self, phone=None, token=None, event_types=None, since=None, until=None) -> list[dict]:
        types = _event_types(event_types)
        with self._lock:
            return [
                e for e in self.events
                if (phone is None or e["phone"] == phone)
                and (token is None or e["token"] == token)
                and (types is None or e["event"].value in types)
                and (since is None or e["created_at"] >= since)
                and (until is None or e["created_at"] < until)
            ]

    def query_events(self, phone=None, token=None, event_types=None, since=None, until=None,
                     limit=None, newest_first=False) -> list[Event]:
        rows = self._matching_events(phone, token, event_types, since, until)
        rows.sort(key=lambda e: (e["created_at"], e["id"]), reverse=newest_first)
        if limit is not None:
            rows = rows[:limit]
        return [Event(**copy.deepcopy(e)) for e in rows]

    def count_events(self, phone=None, event_types=None, since=None, until=None) -> dict[str, int]:
        counts: dict[str, int] = {}
        for e in self._matching_events(phone, None, event_types, since, until):
            counts[e["event"].value] = counts.get(e["event"].value, 0) + 1
        return counts

    def policy_revision(self) -> int:
        with self._lock:
            return self.revision

    def load_settings(self) -> dict[str, str]:
        with self._lock:
            return dict(self.settings)

    def save_settings(self, values, now) -> None:
        with self._lock:
            for key, value in values.items():
                self.settings[key] = str(value)
            self.revision += 1

    def list_tiers(self) -> list[RewardTier]:
        with self._lock:
            tiers = [RewardTier(**d) for d in self.tiers.values()]
        return sorted(tiers, key=_tier_sort_key)

    def get_tier(self, tier_id: int) -> Optional[RewardTier]:
        with self._lock:
            data = self.tiers.get(tier_id)
            return RewardTier(**data) if data else None

    def insert_tier(self, values, now) -> RewardTier:
        with self._lock:
            self._tier_seq += 1
            data = {**values, "id": self._tier_seq, "created_at": now, "updated_at": now}
            self.tiers[self._tier_seq] = data
            self.revision += 1
            return RewardTier(**data)

    def update_tier(self, tier_id, changes, now) -> Optional[RewardTier]:
        with self._lock:
            data = self.tiers.get(tier_id)
            if not data:
                return None
            data.update(changes)
            data["updated_at"] = now
            self.revision += 1
            return RewardTier(**data)

    def delete_tier(self, tier_id: int) -> bool:
        with self._lock:
            if self.tiers.pop(tier_id, None) is None:
                return False
            self.revision += 1
            return True


def _token_from_row(row: CouponTokenRow) -> Token:
    return Token(
        code=row.code,
        phone=row.phone,
        status=TokenStatus(row.status),
        created_at=as_utc(row.created_at),
        expires_at=as_utc(row.expires_at),
        used_at=as_utc(row.used_at),
        updated_at=as_utc(row.updated_at),
        issued_for=row.issued_for,
        kiosk_id=row.kiosk_id,
    )


def _event_from_row(row: CouponEventRow) -> Event:
    return Event(
        id=row.id,
        phone=row.phone,
        event=EventType(row.event),
        token=row.token,
        details=dict(row.details or {}),
        created_at=as_utc(row.created_at),
    )


def _tier_from_row(row: CouponRewardTierRow) -> RewardTier:
    return RewardTier(
        id=row.id,
        name=row.name,
        description=row.description,
        coupons_required=row.coupons_required,
        is_active=bool(row.is_active),
        sort_order=row.sort_order,
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
    )


class SqlAlchemyStorage(CouponStore):
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def insert_token(self, token: Token) -> Token:
        row = CouponTokenRow(
            code=token.code,
            status=token.status.value,
            phone=token.phone,
            issued_for=token.issued_for,
            kiosk_id=token.kiosk_id,
            created_at=token.created_at,
            expires_at=token.expires_at,
            used_at=token.used_at,
            updated_at=token.updated_at,
        )
        try:
            with db_session(self.session_factory) as db:
                db.add(row)
        except IntegrityError as e:
            raise DuplicateCode(f"Token code {token.code} already exists") from e
        return token

    def get_token(self, code: str) -> Optional[Token]:
        with db_session(self.session_factory) as db:
            row = db.get(CouponTokenRow, code)
            return _token_from_row(row) if row else None

    def transition_token(self, code, expected, new, now, *, valid_at=None, phone=None) -> bool:
        values: dict[str, Any] = {"status": TokenStatus(new).value, "updated_at": now}
        if new == TokenStatus.USED:
            values["used_at"] = now
        if phone is not None:
            values["phone"] = phone

        stmt = (
            update(CouponTokenRow)
            .where(CouponTokenRow.code == code, CouponTokenRow.status == TokenStatus(expected).value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if valid_at is not None:
            stmt = stmt.where(CouponTokenRow.expires_at > valid_at)

        with db_session(self.session_factory) as db:
            result = db.execute(stmt)
            return result.rowcount == 1

    def list_tokens(self, status=None, phone=None, limit=None, offset=0) -> list[Token]:
        stmt = select(CouponTokenRow).order_by(
            CouponTokenRow.created_at.desc(), CouponTokenRow.code.desc()
        )
        if status is not None:
            stmt = stmt.where(CouponTokenRow.status == TokenStatus(status).value)
        if phone is not None:
            stmt = stmt.where(CouponTokenRow.phone == phone)
        if offset:
            stmt = stmt.offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        with db_session(self.session_factory) as db:
            return [_token_from_row(r) for r in db.scalars(stmt)]

    def expire_tokens(self, now: datetime) -> int:
        stmt = (
            update(CouponTokenRow)
            .where(
                CouponTokenRow.status == TokenStatus.ISSUED.value,
                CouponTokenRow.expires_at <= now,
            )
            .values(status=TokenStatus.EXPIRED.value, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        with db_session(self.session_factory) as db:
            return db.execute(stmt).rowcount

    def insert_event(self, event, phone, token, details, created_at, balance_delta=0) -> Event:
        try:
            return self._insert_event(event, phone, token, details, created_at, balance_delta)
        except IntegrityError:
            if balance_delta <= 0:
                raise
            # another writer created this phone's wallet row first
            return self._insert_event(event, phone, token, details, created_at, balance_delta)

    def _insert_event(self, event, phone, token, details, created_at, balance_delta) -> Event:
        row = CouponEventRow(
            phone=phone,
            event=EventType(event).value,
            token=token,
            details=details,
            created_at=created_at,
        )
        with db_session(self.session_factory) as db:
            if balance_delta:
                self._move_balance(db, phone, balance_delta, created_at)
            db.add(row)
            db.flush()
            return _event_from_row(row)

    def _move_balance(self, db, phone: str, delta: int, now: datetime) -> None:
        wallet = CouponWalletRow
        stmt = update(wallet).where(wallet.phone == phone)
        if delta > 0:
            stmt = stmt.values(
                coupon_count=wallet.coupon_count + delta,
                total_earned=wallet.total_earned + delta,
                updated_at=now,
            )
        else:
            stmt = stmt.where(wallet.coupon_count >= -delta).values(
                coupon_count=wallet.coupon_count + delta,
                total_redeemed=wallet.total_redeemed - delta,
                updated_at=now,
            )
        if db.execute(stmt.execution_options(synchronize_session=False)).rowcount == 1:
            return
        if delta < 0:
            raise InsufficientBalance(f"Stored balance cannot cover {-delta} coupons")
        db.add(wallet(phone=phone, coupon_count=delta, total_earned=delta, total_redeemed=0, updated_at=now))
        db.flush()

    def latest_event_id(self, phone: str) -> Optional[int]:
        stmt = select(func.max(CouponEventRow.id)).where(CouponEventRow.phone == phone)
        with db_session(self.session_factory) as db:
            return db.scalar(stmt)

    def get_balance(self, phone: str) -> int:
        with db_session(self.session_factory) as db:
            row = db.get(CouponWalletRow, phone)
            return row.coupon_count if row else 0

    def _filtered(self, stmt, phone=None, token=None, event_types=None, since=None, until=None):
        if phone is not None:
            stmt = stmt.where(CouponEventRow.phone == phone)
        if token is not None:
            stmt = stmt.where(CouponEventRow.token == token)
        types = _event_types(event_types)
        if types is not None:
            stmt = stmt.where(CouponEventRow.event.in_(sorted(types)))
        if since is not None:
            stmt = stmt.where(CouponEventRow.created_at >= since)
        if until is not None:
            stmt = stmt.where(CouponEventRow.created_at < until)
        return stmt

    def query_events(self, phone=None, token=None, event_types=None, since=None, until=None,
                     limit=None, newest_first=False) -> list[Event]:
        stmt = self._filtered(select(CouponEventRow), phone, token, event_types, since, until)
        if newest_first:
            stmt = stmt.order_by(CouponEventRow.created_at.desc(), CouponEventRow.id.desc())
        else:
            stmt = stmt.order_by(CouponEventRow.created_at, CouponEventRow.id)
        if limit is not None:
            stmt = stmt.limit(limit)
        with db_session(self.session_factory) as db:
            return [_event_from_row(r) for r in db.scalars(stmt)]

    def count_events(self, phone=None, event_types=None, since=None, until=None) -> dict[str, int]:
        stmt = self._filtered(
            select(CouponEventRow.event, func.count(CouponEventRow.id)),
            phone, None, event_types, since, until,
        ).group_by(CouponEventRow.event)
        with db_session(self.session_factory) as db:
            return {event: count for event, count in db.execute(stmt)}

    def _bump_revision(self, db) -> None:
        rev = CouponPolicyRevisionRow
        result = db.execute(
            update(rev)
            .where(rev.id == 1)
            .values(revision=rev.revision + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            db.add(rev(id=1, revision=1))

    def policy_revision(self) -> int:
        stmt = select(CouponPolicyRevisionRow.revision).where(CouponPolicyRevisionRow.id == 1)
        with db_session(self.session_factory) as db:
            return db.scalar(stmt) or 0

    def load_settings(self) -> dict[str, str]:
        with db_session(self.session_factory) as db:
            return {row.key: row.value for row in db.scalars(select(CouponSettingRow))}

    def save_settings(self, values, now) -> None:
        with db_session(self.session_factory) as db:
            for key, value in values.items():
                db.merge(CouponSettingRow(key=key, value=str(value), updated_at=now))
            self._bump_revision(db)

    def list_tiers(self) -> list[RewardTier]:
        stmt = select(CouponRewardTierRow).order_by(
            CouponRewardTierRow.sort_order,
            CouponRewardTierRow.coupons_required,
            CouponRewardTierRow.id,
        )
        with db_session(self.session_factory) as db:
            return [_tier_from_row(r) for r in db.scalars(stmt)]

    def get_tier(self, tier_id: int) -> Optional[RewardTier]:
        with db_session(self.session_factory) as db:
            row = db.get(CouponRewardTierRow, tier_id)
            return _tier_from_row(row) if row else None

    def insert_tier(self, values, now) -> RewardTier:
        row = CouponRewardTierRow(**values, created_at=now, updated_at=now)
        with db_session(self.session_factory) as db:
            db.add(row)
            db.flush()
            self._bump_revision(db)
            return _tier_from_row(row)

    def update_tier(self, tier_id, changes, now) -> Optional[RewardTier]:
        with db_session(self.session_factory) as db:
            row = db.get(CouponRewardTierRow, tier_id)
            if row is None:
                return None
            for key, value in changes.items():
                setattr(row, key, value)
            row.updated_at = now
            db.flush()
            self._bump_revision(db)
            return _tier_from_row(row)

    def delete_tier(self, tier_id: int) -> bool:
        with db_session(self.session_factory) as db:
            result = db.execute(delete(CouponRewardTierRow).where(CouponRewardTierRow.id == tier_id))
            if result.rowcount == 0:
                return False
            self._bump_revision(db)
            return True
