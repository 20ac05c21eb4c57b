import json
import os
from dataclasses import dataclass, field
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Dict, Optional, Tuple

from dotenv import load_dotenv

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"

DEFAULT_RATES = {
    "USD:LKR": "300",
    "EUR:LKR": "330",
    "EUR:USD": "1.1",
}


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    raw_value = os.getenv(name)
    if raw_value is None:
        return default
    normalized = raw_value.strip()
    return normalized or default


def _flag(name: str, default: bool = False) -> bool:
    value = _env(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes"}


def parse_rate_table(raw: Dict[str, str]) -> Dict[Tuple[str, str], Decimal]:
    """Turn ``{"USD:LKR": "300"}`` into ``{("USD", "LKR"): Decimal("300")}``."""
    rates = {}
    for pair, rate in raw.items():
        source, _, target = pair.partition(":")
        if not source or not target:
            raise RuntimeError(f"Invalid currency pair '{pair}' in CURRENCY_RATES")
        value = Decimal(str(rate))
        if value <= 0:
            raise RuntimeError(f"Currency rate for '{pair}' must be positive")
        rates[(source.upper(), target.upper())] = value
    return rates


@dataclass(frozen=True)
class RedirectGatewayConfig:
    merchant_id: str
    merchant_secret: str
    checkout_url: str
    return_url: str
    cancel_url: str
    notify_url: str
    currency: str = "LKR"


@dataclass(frozen=True)
class CheckoutGatewayConfig:
    secret_key: str
    webhook_secret: str
    success_url: str
    cancel_url: str
    currency: str = "USD"


@dataclass(frozen=True)
class BankTransferConfig:
    account_name: str
    account_number: str
    bank_name: str
    branch: str
    currency: str = "LKR"


@dataclass(frozen=True)
class Settings:
    database_url: str
    jwt_secret: str
    log_level: str
    redirect: RedirectGatewayConfig
    checkout: CheckoutGatewayConfig
    bank: BankTransferConfig
    currency_rates: Dict[Tuple[str, str], Decimal] = field(default_factory=dict)
    currency_strict: bool = False
    resend_api_key: Optional[str] = None
    resend_from_email: str = "no-reply@coursepay.local"

    def gateway_currency(self, gateway: str) -> str:
        return {
            "redirect": self.redirect.currency,
            "checkout": self.checkout.currency,
            "bank": self.bank.currency,
        }[gateway]


def load_settings() -> Settings:
    load_dotenv(dotenv_path=ENV_PATH)

    raw_rates = DEFAULT_RATES
    rates_json = _env("CURRENCY_RATES")
    if rates_json:
        try:
            raw_rates = json.loads(rates_json)
        except ValueError as err:
            raise RuntimeError("CURRENCY_RATES must be a JSON object") from err

    return Settings(
        database_url=_env("DATABASE_URL", "sqlite:///./coursepay.db"),
        jwt_secret=_env("JWT_SECRET", ""),
        log_level=(_env("LOG_LEVEL", "INFO")).upper(),
        redirect=RedirectGatewayConfig(
            merchant_id=_env("PAYHERE_MERCHANT_ID", ""),
            merchant_secret=_env("PAYHERE_MERCHANT_SECRET", ""),
            checkout_url=_env("PAYHERE_CHECKOUT_URL", "https://sandbox.payhere.lk/pay/checkout"),
            return_url=_env("PAYHERE_RETURN_URL", ""),
            cancel_url=_env("PAYHERE_CANCEL_URL", ""),
            notify_url=_env("PAYHERE_NOTIFY_URL", ""),
            currency=_env("PAYHERE_CURRENCY", "LKR").upper(),
        ),
        checkout=CheckoutGatewayConfig(
            secret_key=_env("STRIPE_SECRET_KEY", ""),
            webhook_secret=_env("STRIPE_WEBHOOK_SECRET", ""),
            success_url=_env("STRIPE_SUCCESS_URL", "http://localhost:3000/payment/success"),
            cancel_url=_env("STRIPE_CANCEL_URL", "http://localhost:3000/payment/cancel"),
            currency=_env("STRIPE_CURRENCY", "USD").upper(),
        ),
        bank=BankTransferConfig(
            account_name=_env("BANK_ACCOUNT_NAME", ""),
            account_number=_env("BANK_ACCOUNT_NUMBER", ""),
            bank_name=_env("BANK_NAME", ""),
            branch=_env("BANK_BRANCH", ""),
            currency=_env("BANK_CURRENCY", "LKR").upper(),
        ),
        currency_rates=parse_rate_table(raw_rates),
        currency_strict=_flag("CURRENCY_STRICT"),
        resend_api_key=_env("RESEND_API_KEY"),
        resend_from_email=_env("RESEND_FROM_EMAIL", "no-reply@coursepay.local"),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()
