"""
Unit Tests for the Token Ledger

Tests cover:
1. Code generation and collision retry
2. Exactly-once redemption
3. Lazy expiry
4. Deletion rules
"""

import threading
from datetime import datetime, timezone

import pytest

from coupons.clock import FrozenClock
from coupons.errors import (
    AlreadyRedeemed,
    GenerationExhausted,
    InvalidState,
    NotFound,
    TokenExpired,
)
from coupons.models import TokenStatus
from coupons.policy import PolicyStore
from coupons.storage import InMemoryStorage
from coupons.tokens import CODE_ALPHABET, TokenLedger, generate_code


PHONE = "+905551234567"
START = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def make_ledger(**kwargs):
    storage = InMemoryStorage()
    clock = FrozenClock(START)
    policy = PolicyStore(storage, clock=clock)
    return TokenLedger(storage, policy, clock=clock, **kwargs), clock


class TestCodeGeneration:
    """Tests for token codes."""

    def test_generated_code_format(self):
        """Test that codes are uppercase alphanumeric of the requested length."""
        code = generate_code(12)

        assert len(code) == 12
        assert all(ch in CODE_ALPHABET for ch in code)

    def test_issued_codes_are_unique(self):
        """Test that many issued tokens never share a code."""
        ledger, _ = make_ledger()

        codes = {ledger.issue().code for _ in range(500)}

        assert len(codes) == 500

    def test_collision_retries(self):
        """Test that a duplicate code is regenerated."""
        codes = iter(["SAMECODE", "SAMECODE", "SAMECODE", "FRESH001"])
        ledger, _ = make_ledger(code_factory=lambda length: next(codes))

        first = ledger.issue()
        second = ledger.issue()

        assert first.code == "SAMECODE"
        assert second.code == "FRESH001"

    def test_generation_exhausted(self):
        """Test that retries are bounded and surface a fatal error."""
        calls = []

        def always_same(length):
            calls.append(length)
            return "SAMECODE"

        ledger, _ = make_ledger(code_factory=always_same, max_attempts=5)
        ledger.issue()
        calls.clear()

        with pytest.raises(GenerationExhausted):
            ledger.issue()
        assert len(calls) == 5

    def test_attempt_bound_cannot_exceed_ten(self):
        """Test that the retry bound is capped."""
        with pytest.raises(ValueError):
            make_ledger(max_attempts=11)


class TestRedeem:
    """Tests for the issued -> used transition."""

    def test_redeem_sets_used_once(self):
        """Test that redemption stamps used_at and binds the phone."""
        ledger, _ = make_ledger()
        token = ledger.issue()

        used = ledger.redeem(token.code, PHONE)

        assert used.status == TokenStatus.USED
        assert used.used_at == START
        assert used.phone == PHONE

    def test_second_redeem_fails(self):
        """Test that a used token cannot be redeemed again."""
        ledger, clock = make_ledger()
        token = ledger.issue()
        first = ledger.redeem(token.code, PHONE)
        clock.advance(minutes=1)

        with pytest.raises(AlreadyRedeemed):
            ledger.redeem(token.code, PHONE)
        assert ledger.get(token.code).used_at == first.used_at

    def test_concurrent_redeem_exactly_once(self):
        """Test that N racing redemptions produce one winner."""
        ledger, _ = make_ledger()
        token = ledger.issue()
        outcomes = []
        lock = threading.Lock()
        barrier = threading.Barrier(16)

        def worker():
            barrier.wait()
            try:
                ledger.redeem(token.code, PHONE)
                result = "won"
            except AlreadyRedeemed:
                result = "already"
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=worker) for _ in range(16)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("won") == 1
        assert outcomes.count("already") == 15

    def test_unknown_code(self):
        """Test that an unknown code raises NotFound."""
        ledger, _ = make_ledger()

        with pytest.raises(NotFound):
            ledger.redeem("UNKNOWN1", PHONE)

    def test_check_redeemable_does_not_consume(self):
        """Test that validation alone leaves the token issued."""
        ledger, _ = make_ledger()
        token = ledger.issue()

        ledger.check_redeemable(token.code, PHONE)

        assert ledger.get(token.code).status == TokenStatus.ISSUED


class TestExpiry:
    """Tests for lazy expiry."""

    def test_expired_token_cannot_be_redeemed(self):
        """Test that expiry is enforced without any sweep."""
        ledger, clock = make_ledger()
        token = ledger.issue()

        clock.advance(hours=24, seconds=1)

        with pytest.raises(TokenExpired):
            ledger.redeem(token.code, PHONE)
        assert ledger.get(token.code).status == TokenStatus.EXPIRED

    def test_valid_just_before_expiry(self):
        """Test that a token is usable right up to expires_at."""
        ledger, clock = make_ledger()
        token = ledger.issue()

        clock.advance(hours=23, minutes=59)

        assert ledger.redeem(token.code, PHONE).status == TokenStatus.USED

    def test_read_observes_expiry(self):
        """Test that a plain lookup transitions a stale token."""
        ledger, clock = make_ledger()
        token = ledger.issue()
        clock.advance(hours=30)

        assert ledger.get(token.code).status == TokenStatus.EXPIRED

    def test_expired_stays_expired_after_clock_rewind(self):
        """Test that expiry is terminal for redemption."""
        ledger, clock = make_ledger()
        token = ledger.issue()
        clock.advance(hours=30)
        ledger.get(token.code)

        clock.set(START)

        with pytest.raises(TokenExpired):
            ledger.redeem(token.code, PHONE)

    def test_expire_stale_sweep(self):
        """Test the optional maintenance sweep."""
        ledger, clock = make_ledger()
        ledger.issue()
        ledger.issue()
        clock.advance(hours=25)
        ledger.issue()

        assert ledger.expire_stale() == 2
        assert len(ledger.list(status=TokenStatus.ISSUED)) == 1


class TestDelete:
    """Tests for administrative deletion."""

    def test_delete_issued(self):
        """Test deleting an issued token."""
        ledger, _ = make_ledger()
        token = ledger.issue()

        assert ledger.delete(token.code).status == TokenStatus.DELETED

    def test_delete_expired(self):
        """Test that expired tokens can be cleaned up."""
        ledger, clock = make_ledger()
        token = ledger.issue()
        clock.advance(hours=48)

        assert ledger.delete(token.code).status == TokenStatus.DELETED

    def test_cannot_delete_used(self):
        """Test that used tokens are permanent."""
        ledger, _ = make_ledger()
        token = ledger.issue()
        ledger.redeem(token.code, PHONE)

        with pytest.raises(InvalidState):
            ledger.delete(token.code)

    def test_cannot_delete_twice(self):
        """Test that deleted is terminal."""
        ledger, _ = make_ledger()
        token = ledger.issue()
        ledger.delete(token.code)

        with pytest.raises(InvalidState):
            ledger.delete(token.code)

    def test_deleted_token_cannot_be_redeemed(self):
        """Test that redemption of a deleted token is an invalid state."""
        ledger, _ = make_ledger()
        token = ledger.issue()
        ledger.delete(token.code)

        with pytest.raises(InvalidState):
            ledger.redeem(token.code, PHONE)


class TestList:
    """Tests for operator listing."""

    def test_newest_first_with_paging(self):
        """Test ordering and paging."""
        ledger, clock = make_ledger()
        codes = []
        for _ in range(5):
            codes.append(ledger.issue().code)
            clock.advance(minutes=1)

        page = ledger.list(limit=2, offset=1)

        assert [t.code for t in page] == [codes[3], codes[2]]

    def test_filter_by_phone(self):
        """Test listing one phone's tokens."""
        ledger, _ = make_ledger()
        ledger.issue(phone=PHONE)
        ledger.issue()

        tokens = ledger.list(phone=PHONE)

        assert len(tokens) == 1
        assert tokens[0].phone == PHONE


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
