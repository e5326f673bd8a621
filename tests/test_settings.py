"""
Unit tests for settings validation.
"""
from decimal import Decimal
from typing import Any

import pytest
from pydantic import ValidationError

from registration_payments.config import Settings


class TestSettings:
    """Test suite for Settings."""

    @pytest.mark.unit
    def test_defaults(self, test_settings: Settings) -> None:
        assert test_settings.platform_fee_mode == "percentage"
        assert test_settings.platform_fee_rate == Decimal("0.10")
        assert test_settings.currency == "BRL"
        assert test_settings.is_production is False
        assert test_settings.notification_url == "https://events.test/api/webhooks/mercadopago"

    @pytest.mark.unit
    def test_explicit_webhook_url(self, test_settings: Settings) -> None:
        settings = test_settings.model_copy(update={"webhook_url": "https://hooks.test/mp"})
        assert settings.notification_url == "https://hooks.test/mp"

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "overrides",
        [
            {"encryption_key": "too-short"},
            {"encryption_key": "zz" * 32},
            {"log_level": "LOUD"},
            {"platform_fee_mode": "tiered"},
            {"platform_fee_rate": "-0.01"},
        ],
    )
    def test_invalid_values(self, test_settings: Settings, overrides: Any) -> None:
        values = test_settings.model_dump()
        values.update(overrides)

        with pytest.raises(ValidationError):
            Settings(**values)

    @pytest.mark.unit
    def test_allowed_origins(self, test_settings: Settings) -> None:
        settings = test_settings.model_copy(
            update={"allowed_origins": "https://a.test, https://b.test"}
        )
        assert settings.get_allowed_origins_list() == ["https://a.test", "https://b.test"]
