"""Tests for harvest_checkout.config."""
from __future__ import annotations

from decimal import Decimal

import pytest
from pydantic import ValidationError

from harvest_checkout.config import CheckoutSettings, get_settings


class TestCheckoutSettings:
    """Tests for CheckoutSettings."""

    def test_defaults(self):
        """Should default to the marketplace's gateway and fee tiers."""
        settings = CheckoutSettings()

        assert settings.gateway_name == "payfast"
        assert settings.currency == "ZAR"
        assert settings.order_reference_aliases[:2] == ["custom_str1", "order_id"]
        assert settings.delivery_base_fee == Decimal("25.00")
        assert settings.delivery_per_km_surcharge == Decimal("5.00")
        assert settings.tax_rate == Decimal("0.15")
        assert settings.require_transaction_id is False

    def test_env_prefix(self, monkeypatch):
        """Should read HARVEST_CHECKOUT_ environment variables."""
        monkeypatch.setenv("HARVEST_CHECKOUT_DELIVERY_BASE_FEE", "30")
        monkeypatch.setenv("HARVEST_CHECKOUT_REQUIRE_TRANSACTION_ID", "true")

        settings = CheckoutSettings()

        assert settings.delivery_base_fee == Decimal("30")
        assert settings.require_transaction_id is True

    def test_comma_separated_aliases(self):
        """Should split comma-separated alias lists."""
        settings = CheckoutSettings(transaction_id_aliases="pf_payment_id, txn_id")

        assert settings.transaction_id_aliases == ["pf_payment_id", "txn_id"]

    def test_comma_separated_aliases_from_env(self, monkeypatch):
        """Should split comma-separated alias lists read from the environment."""
        monkeypatch.setenv("HARVEST_CHECKOUT_ORDER_REFERENCE_ALIASES", "custom_str1,order_id")
        monkeypatch.setenv("HARVEST_CHECKOUT_TRANSACTION_ID_ALIASES", "pf_payment_id, txn_id")
        monkeypatch.setenv("HARVEST_CHECKOUT_GROSS_AMOUNT_ALIASES", "amount_gross")

        settings = CheckoutSettings()

        assert settings.order_reference_aliases == ["custom_str1", "order_id"]
        assert settings.transaction_id_aliases == ["pf_payment_id", "txn_id"]
        assert settings.gross_amount_aliases == ["amount_gross"]

    def test_json_aliases_from_env(self, monkeypatch):
        """Should also accept a JSON array for alias lists."""
        monkeypatch.setenv("HARVEST_CHECKOUT_ORDER_REFERENCE_ALIASES", '["custom_str1", "m_payment_id"]')

        settings = CheckoutSettings()

        assert settings.order_reference_aliases == ["custom_str1", "m_payment_id"]

    def test_requires_two_order_aliases(self):
        """Should reject a single order reference alias."""
        with pytest.raises(ValidationError):
            CheckoutSettings(order_reference_aliases=["custom_str1"])

    def test_negative_fee_rejected(self):
        with pytest.raises(ValidationError):
            CheckoutSettings(delivery_base_fee=Decimal("-1"))

    def test_zero_surcharge_rejected(self):
        """Should require the fee to grow beyond the free radius."""
        with pytest.raises(ValidationError):
            CheckoutSettings(delivery_per_km_surcharge=Decimal("0"))

    def test_free_base_fee_allowed(self):
        assert CheckoutSettings(delivery_base_fee=Decimal("0")).delivery_base_fee == Decimal("0")

    def test_non_positive_timeout_rejected(self):
        with pytest.raises(ValidationError):
            CheckoutSettings(store_timeout_seconds=0)

    def test_prod_requires_passphrase(self):
        """Should require a gateway passphrase in production."""
        with pytest.raises(ValidationError):
            CheckoutSettings(environment="prod")

        settings = CheckoutSettings(environment="prod", gateway_passphrase="secret")
        assert settings.gateway_passphrase == "secret"

    def test_get_settings_is_cached(self):
        """Should return one process-wide instance."""
        get_settings.cache_clear()
        try:
            assert get_settings() is get_settings()
        finally:
            get_settings.cache_clear()
