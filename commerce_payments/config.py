import os
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv

from commerce_payments.enums import Currency, ProviderKind
from commerce_payments.errors import ConfigurationError

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"
load_dotenv(dotenv_path=ENV_PATH)


class Settings:
    """Process configuration, read from the environment once per instance."""

    def __init__(self):
        self.app_name = os.getenv("APP_NAME", "Commerce Payments")
        self.log_level = os.getenv("LOG_LEVEL", "INFO").upper()
        self.database_url = os.getenv("DATABASE_URL", "sqlite:///./commerce_payments.db")

        self.payment_provider = os.getenv("PAYMENT_PROVIDER", "STRIPE").upper()

        self.stripe_secret_key = os.getenv("STRIPE_SECRET_KEY")
        self.stripe_webhook_secret = os.getenv("STRIPE_WEBHOOK_SECRET")

        self.paypal_client_id = os.getenv("PAYPAL_CLIENT_ID")
        self.paypal_client_secret = os.getenv("PAYPAL_CLIENT_SECRET")
        self.paypal_mode = os.getenv("PAYPAL_MODE", "sandbox").lower()
        self.paypal_webhook_id = os.getenv("PAYPAL_WEBHOOK_ID")

        self.server_url = os.getenv("SERVER_URL", "http://localhost:8000").rstrip("/")
        self.frontend_url = os.getenv("FRONTEND_URL", "http://localhost:3000").rstrip("/")

        self.jwt_secret = os.getenv("JWT_SECRET")
        self.jwt_algorithm = os.getenv("JWT_ALGORITHM", "HS256")

        self.default_currency = os.getenv("DEFAULT_CURRENCY", "GBP").upper()
        self.provider_timeout_seconds = float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "20"))

    @property
    def provider_kind(self) -> ProviderKind:
        try:
            return ProviderKind(self.payment_provider)
        except ValueError:
            raise ConfigurationError(
                f"Unsupported payment provider: {self.payment_provider}"
            )

    @property
    def currency(self) -> Currency:
        try:
            return Currency(self.default_currency)
        except ValueError:
            raise ConfigurationError(
                f"Unsupported currency: {self.default_currency}"
            )


@lru_cache
def get_settings() -> Settings:
    return Settings()
