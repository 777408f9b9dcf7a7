"""Checkout reconciliation configuration."""
from __future__ import annotations

import json
from decimal import Decimal
from functools import lru_cache
from typing import Annotated, List, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode

# Env values stay raw strings so parse_aliases can split them on commas
AliasList = Annotated[List[str], NoDecode]


class CheckoutSettings(BaseSettings):
    """Settings for the payment-callback reconciliation core."""

    environment: Literal["dev", "sandbox", "prod"] = "dev"

    # Gateway
    gateway_name: str = "payfast"
    gateway_passphrase: str = ""
    currency: str = "ZAR"
    order_reference_aliases: AliasList = Field(
        default_factory=lambda: ["custom_str1", "order_id", "m_payment_id"]
    )
    transaction_id_aliases: AliasList = Field(
        default_factory=lambda: ["pf_payment_id", "payment_id"]
    )
    gross_amount_aliases: AliasList = Field(
        default_factory=lambda: ["amount_gross", "pf_amount_gross"]
    )
    # When True, a return-URL callback without a transaction id leaves the
    # order claimed in `processing` until the webhook confirms it.
    require_transaction_id: bool = False

    # Delivery fee tiers
    delivery_base_fee: Decimal = Decimal("25.00")
    delivery_free_radius_km: int = 5
    delivery_per_km_surcharge: Decimal = Decimal("5.00")

    # Summary projection
    tax_rate: Decimal = Decimal("0.15")
    tax_inclusive: bool = True
    estimated_delivery_days: int = 2
    preparation_window: str = "4-8 hours"

    # Post-confirmation effects
    recurring_min_order_total: Decimal = Decimal("100.00")
    recurring_discount_rate: Decimal = Decimal("0.10")
    review_prompt_delay_seconds: float = 3.0
    upsell_limit: int = 6
    # Confirmation extras kept in memory for `extras_for` lookups
    retained_extras_limit: int = 500

    # Store access
    store_timeout_seconds: float = 5.0
    claim_stale_after_seconds: int = 120
    idempotency_ttl_hours: int = 24

    # PostgREST backend (optional)
    postgrest_url: str = ""
    postgrest_api_key: str = ""

    class Config:
        env_prefix = "HARVEST_CHECKOUT_"
        env_file = ".env"
        extra = "ignore"

    @field_validator(
        "order_reference_aliases",
        "transaction_id_aliases",
        "gross_amount_aliases",
        mode="before",
    )
    @classmethod
    def parse_aliases(cls, v):
        """Parse comma-separated alias lists from env vars (a JSON array also works)."""
        if isinstance(v, str):
            if v.strip().startswith("["):
                return json.loads(v)
            return [a.strip() for a in v.split(",") if a.strip()]
        return v

    @field_validator("order_reference_aliases")
    @classmethod
    def require_two_order_aliases(cls, v: List[str]) -> List[str]:
        if len(v) < 2:
            raise ValueError("at least two order reference aliases are required")
        return v

    @field_validator("delivery_base_fee", "tax_rate")
    @classmethod
    def non_negative(cls, v: Decimal) -> Decimal:
        if v < 0:
            raise ValueError("must be non-negative")
        return v

    @field_validator("delivery_per_km_surcharge")
    @classmethod
    def positive_surcharge(cls, v: Decimal) -> Decimal:
        if v <= 0:
            raise ValueError("per-km surcharge must be positive so the fee grows with distance")
        return v

    @field_validator("gateway_passphrase")
    @classmethod
    def validate_passphrase(cls, v: str, info) -> str:
        env = info.data.get("environment", "dev")
        if env == "prod" and not v:
            raise ValueError(
                "GATEWAY_PASSPHRASE is required in production so ITN "
                "signatures can be verified"
            )
        return v

    @field_validator("retained_extras_limit")
    @classmethod
    def positive_limit(cls, v: int) -> int:
        if v < 1:
            raise ValueError("retained extras limit must be at least 1")
        return v

    @field_validator("store_timeout_seconds")
    @classmethod
    def positive_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("store timeout must be positive")
        return v


@lru_cache
def get_settings() -> CheckoutSettings:
    """Return the process-wide settings instance."""
    return CheckoutSettings()
