"""
Unit tests for settings validation.
"""
import pytest
from pydantic import ValidationError

from payment_events.config import Settings


class TestSettings:
    """Test suite for Settings."""

    @pytest.mark.unit
    def test_rejects_non_secret_stripe_key(self) -> None:
        """Test publishable keys are refused as the secret key."""
        with pytest.raises(ValidationError, match="sk_test_"):
            Settings(stripe_secret_key="pk_test_123", stripe_webhook_secret="whsec_x")

    @pytest.mark.unit
    def test_log_level_normalized(self) -> None:
        settings = Settings(
            stripe_secret_key="sk_test_123",
            stripe_webhook_secret="whsec_x",
            log_level="debug",
            database_url="sqlite+aiosqlite:///:memory:",
        )

        assert settings.log_level == "DEBUG"
        assert settings.is_test_mode is True

    @pytest.mark.unit
    def test_gateway_needs_an_attempt(self) -> None:
        with pytest.raises(ValidationError):
            Settings(
                stripe_secret_key="sk_test_123",
                stripe_webhook_secret="whsec_x",
                gateway_max_attempts=0,
            )

    @pytest.mark.unit
    def test_coupon_codes_normalized(self) -> None:
        settings = Settings(
            stripe_secret_key="sk_test_123",
            stripe_webhook_secret="whsec_x",
            charge_coupons={"tenoff": 10},
            database_url="sqlite+aiosqlite:///:memory:",
        )

        assert settings.charge_coupons == {"TENOFF": 10}

    @pytest.mark.unit
    @pytest.mark.parametrize("percent", [0, 100, -5])
    def test_coupon_percent_bounds(self, percent: int) -> None:
        """Test a coupon must leave a positive amount to charge."""
        with pytest.raises(ValidationError, match="between 1 and 99"):
            Settings(
                stripe_secret_key="sk_test_123",
                stripe_webhook_secret="whsec_x",
                charge_coupons={"FREE": percent},
            )
