import os
from pathlib import Path
from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")


def database_url() -> str:
    return os.getenv("DATABASE_URL") or "sqlite:///./reconciler.db"


def webhook_secret():
    return os.getenv("STRIPE_WEBHOOK_SECRET") or None


def stripe_secret_key():
    return os.getenv("STRIPE_SECRET_KEY")


def jwt_secret():
    return os.getenv("JWT_SECRET")


def log_level() -> str:
    return os.getenv("LOG_LEVEL", "INFO").upper()


class CheckoutSettings(BaseSettings):
    """Stripe checkout options, read from CHECKOUT_* variables."""

    model_config = SettingsConfigDict(env_prefix="CHECKOUT_")

    currency: str = "eur"
    success_url: str = "http://localhost:3000/checkout/success"
    cancel_url: str = "http://localhost:3000/checkout/cancel"


class CleanupSettings(BaseSettings):
    """Abandoned-order cleanup knobs, read from ABANDONED_ORDER_* variables."""

    model_config = SettingsConfigDict(env_prefix="ABANDONED_ORDER_")

    enabled: bool = True
    expiry_minutes: int = 30
    batch_size: int = 50
    dry_run: bool = False
    detailed_logging: bool = True
    interval_seconds: int = 600


def checkout_settings() -> CheckoutSettings:
    return CheckoutSettings()


def cleanup_settings() -> CleanupSettings:
    return CleanupSettings()
