"""
Rate calculator tests.

Pure arithmetic: no app context or database needed.
"""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from cuehall.services import rate_service
from cuehall.validation import ValidationError


class TestSessionTotal:
    def test_hourly_one_hour(self):
        assert rate_service.compute_session_total("HOURLY", Decimal("30000"), 60) == Decimal("30000")

    def test_manual_uses_same_proration(self):
        assert rate_service.compute_session_total("MANUAL", Decimal("25000"), 120) == Decimal("50000")

    def test_partial_hour_rounds_up_to_whole_unit(self):
        # 10000 * 45 / 60 = 7500 exactly; 10001 * 45 / 60 = 7500.75 -> 7501
        assert rate_service.compute_session_total("HOURLY", Decimal("10000"), 45) == Decimal("7500")
        assert rate_service.compute_session_total("HOURLY", Decimal("10001"), 45) == Decimal("7501")

    def test_package_ignores_clock(self):
        total = rate_service.compute_session_total("PACKAGE", Decimal("30000"), 500, Decimal("45000"))
        assert total == Decimal("45000")

    def test_package_without_price_rejected(self):
        with pytest.raises(ValidationError):
            rate_service.compute_session_total("PACKAGE", Decimal("30000"), 60)

    def test_owner_lock_is_free(self):
        assert rate_service.compute_session_total("OWNER_LOCK", Decimal("30000"), 600) == Decimal("0")

    def test_flexible_zero_until_stopped(self):
        assert rate_service.compute_session_total("FLEXIBLE", Decimal("30000"), 95) == Decimal("0")

    def test_flexible_bills_every_started_hour_at_stop(self):
        assert rate_service.compute_session_total(
            "FLEXIBLE", Decimal("30000"), 61, stopped=True
        ) == Decimal("60000")
        assert rate_service.compute_session_total(
            "FLEXIBLE", Decimal("30000"), 60, stopped=True
        ) == Decimal("30000")

    def test_unknown_rate_type(self):
        with pytest.raises(ValidationError):
            rate_service.compute_session_total("WEEKLY", Decimal("1"), 60)


class TestExtensionCost:
    def test_prorated(self):
        assert rate_service.compute_extension_cost(Decimal("30000"), 30) == Decimal("15000")

    def test_package_price_wins(self):
        assert rate_service.compute_extension_cost(Decimal("30000"), 30, Decimal("9000")) == Decimal("9000")


class TestDurations:
    @pytest.mark.parametrize("minutes", [60, 120, 180])
    def test_valid_start(self, minutes):
        rate_service.validate_start_duration(minutes)

    @pytest.mark.parametrize("minutes", [30, 59, 90, 150])
    def test_invalid_start(self, minutes):
        with pytest.raises(ValidationError):
            rate_service.validate_start_duration(minutes)

    def test_privileged_start_skips_granularity(self):
        rate_service.validate_start_duration(7, privileged=True)

    @pytest.mark.parametrize("minutes", [15, 30, 45, 60])
    def test_valid_extension(self, minutes):
        rate_service.validate_extension_duration(minutes)

    @pytest.mark.parametrize("minutes", [5, 14, 20, 50])
    def test_invalid_extension(self, minutes):
        with pytest.raises(ValidationError):
            rate_service.validate_extension_duration(minutes)


class TestElapsedMinutes:
    def test_partial_minute_rounds_up(self):
        start = datetime(2026, 1, 1, 10, 0, 0)
        assert rate_service.elapsed_minutes(start, start + timedelta(minutes=61, seconds=1)) == 62

    def test_never_negative(self):
        start = datetime(2026, 1, 1, 10, 0, 0)
        assert rate_service.elapsed_minutes(start, start - timedelta(minutes=5)) == 0
