"""
Unit Tests for phone normalization, masking and deep links
"""

from datetime import datetime, timedelta, timezone

import pytest

from coupons.clock import utc_day_bounds
from coupons.deeplink import build_whatsapp_link, build_whatsapp_text
from coupons.errors import ValidationError, describe
from coupons.masking import mask_phone, mask_token
from coupons.phone import is_e164, normalize_phone


class TestNormalizePhone:
    """Tests for E.164 normalization."""

    @pytest.mark.parametrize("raw", [
        "+905551234567",
        "905551234567",
        "05551234567",
        "5551234567",
        "+90 555 123 45 67",
        "0 (555) 123-45-67",
    ])
    def test_turkish_formats(self, raw):
        """Test the accepted local and international spellings."""
        assert normalize_phone(raw) == "+905551234567"

    def test_foreign_number_kept(self):
        """Test that an explicit country code is respected."""
        assert normalize_phone("+1 415 555 2671") == "+14155552671"

    def test_other_default_country(self):
        """Test a different default country code."""
        assert normalize_phone("07911123456", country_code="44") == "+447911123456"

    @pytest.mark.parametrize("raw", ["", "   ", "phone", "+90555123", "+1234567890123456"])
    def test_invalid(self, raw):
        """Test that malformed numbers raise ValidationError."""
        with pytest.raises(ValidationError):
            normalize_phone(raw)

    def test_is_e164(self):
        """Test the format check."""
        assert is_e164("+905551234567")
        assert not is_e164("905551234567")
        assert not is_e164("")


class TestMasking:
    """Tests for log masking."""

    def test_mask_phone(self):
        """Test that only the last four digits stay visible."""
        assert mask_phone("+905551234567") == "*********4567"
        assert mask_phone(None) == ""

    def test_mask_token(self):
        """Test the token masking widths."""
        assert mask_token("ABC123DEF456") == "ABC1****F456"
        assert mask_token("ABCD1234") == "AB****34"
        assert mask_token("ABCD") == "ABCD"
        assert mask_token(None) == ""


class TestDeepLink:
    """Tests for WhatsApp deep links."""

    def test_text(self):
        """Test the redemption message body."""
        assert build_whatsapp_text("ABCD1234") == "KUPON ABCD1234"

    def test_link(self):
        """Test the wa.me link with a formatted business number."""
        link = build_whatsapp_link("ABCD1234", "+90 555 000 00 00")

        assert link == "https://wa.me/905550000000?text=KUPON%20ABCD1234"


class TestHelpers:
    """Tests for small shared helpers."""

    def test_describe_known_and_unknown(self):
        """Test reason descriptions."""
        assert describe("already_redeemed")
        assert describe("something_else") == "Something else"

    def test_utc_day_bounds(self):
        """Test the UTC calendar day window."""
        moment = datetime(2026, 3, 10, 23, 30, tzinfo=timezone(timedelta(hours=3)))

        start, end = utc_day_bounds(moment)

        assert start == datetime(2026, 3, 10, 0, 0, tzinfo=timezone.utc)
        assert end - start == timedelta(days=1)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
