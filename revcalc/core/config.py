from __future__ import annotations

import os
import secrets
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

POLICY_HOSTED = "hosted"
POLICY_EMBEDDED = "embedded"

DEFAULT_TAX_RATE = Decimal("0.10")  # GST
DEFAULT_MIN_MONTHLY_SPEND_CENTS = 50_000
DEFAULT_CURRENCY = "aud"
DEFAULT_PUBLIC_URL = "http://127.0.0.1:8000"


@dataclass(frozen=True)
class Settings:
    stripe_secret_key: str = ""
    stripe_publishable_key: str = ""
    stripe_webhook_secret: str = ""
    crm_webhook_url: str = ""
    crm_contract_webhook_url: str = ""
    tax_rate: Decimal = DEFAULT_TAX_RATE
    min_monthly_spend: int = DEFAULT_MIN_MONTHLY_SPEND_CENTS
    currency: str = DEFAULT_CURRENCY
    public_url: str = DEFAULT_PUBLIC_URL
    payment_policy: str = POLICY_HOSTED
    session_secret: str = ""
    booking_url: str = ""
    payment_timeout: float = 20.0
    crm_timeout: float = 5.0
    subscription_trial_days: int = 30
    checkout_ttl: int = 60 * 60 * 24 * 14

    @property
    def payments_configured(self) -> bool:
        return bool(self.stripe_secret_key)

    @property
    def contract_webhook_url(self) -> str:
        return self.crm_contract_webhook_url or self.crm_webhook_url


def _env(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


def _env_float(name: str, default: float) -> float:
    raw = _env(name)
    if not raw:
        return float(default)
    try:
        return float(raw)
    except ValueError:
        return float(default)


def _env_int(name: str, default: int) -> int:
    raw = _env(name)
    if not raw:
        return int(default)
    try:
        return int(raw)
    except ValueError:
        return int(default)


def _env_decimal(name: str, default: Decimal) -> Decimal:
    raw = _env(name)
    if not raw:
        return default
    try:
        value = Decimal(raw)
    except InvalidOperation:
        return default
    if not value.is_finite() or value < 0:
        return default
    return value


def _payment_policy() -> str:
    policy = _env("PAYMENT_POLICY", POLICY_HOSTED).lower()
    if policy not in (POLICY_HOSTED, POLICY_EMBEDDED):
        return POLICY_HOSTED
    return policy


def _session_secret() -> str:
    secret = _env("SESSION_SECRET")
    if secret:
        return secret
    return secrets.token_urlsafe(32)


def load_settings() -> Settings:
    return Settings(
        stripe_secret_key=_env("STRIPE_SECRET_KEY") or _env("STRIPE_API_KEY"),
        stripe_publishable_key=_env("STRIPE_PUBLISHABLE_KEY"),
        stripe_webhook_secret=_env("STRIPE_WEBHOOK_SECRET"),
        crm_webhook_url=_env("CRM_WEBHOOK_URL"),
        crm_contract_webhook_url=_env("CRM_CONTRACT_WEBHOOK_URL"),
        tax_rate=_env_decimal("TAX_RATE", DEFAULT_TAX_RATE),
        min_monthly_spend=_env_int("MIN_MONTHLY_SPEND_CENTS", DEFAULT_MIN_MONTHLY_SPEND_CENTS),
        currency=(_env("CURRENCY", DEFAULT_CURRENCY) or DEFAULT_CURRENCY).lower(),
        public_url=(_env("APP_PUBLIC_URL", DEFAULT_PUBLIC_URL) or DEFAULT_PUBLIC_URL).rstrip("/"),
        payment_policy=_payment_policy(),
        session_secret=_session_secret(),
        booking_url=_env("BOOKING_URL"),
        payment_timeout=_env_float("PAYMENT_TIMEOUT_SECONDS", 20.0),
        crm_timeout=_env_float("CRM_TIMEOUT_SECONDS", 5.0),
        subscription_trial_days=_env_int("SUBSCRIPTION_TRIAL_DAYS", 30),
        checkout_ttl=_env_int("CHECKOUT_TTL_SECONDS", 60 * 60 * 24 * 14),
    )
