from commerce_payments.config import Settings
from commerce_payments.enums import ProviderKind
from commerce_payments.errors import ConfigurationError
from commerce_payments.providers.base import PaymentProvider
from commerce_payments.providers.paypal_provider import PayPalProvider
from commerce_payments.providers.stripe_provider import StripeProvider

__all__ = ["PaymentProvider", "PayPalProvider", "StripeProvider", "create_provider"]


def create_provider(settings: Settings) -> PaymentProvider:
    kind = settings.provider_kind

    if kind == ProviderKind.STRIPE:
        if not settings.stripe_secret_key:
            raise ConfigurationError("STRIPE_SECRET_KEY is required for the Stripe provider")
        return StripeProvider(
            secret_key=settings.stripe_secret_key,
            webhook_secret=settings.stripe_webhook_secret,
            server_url=settings.server_url,
            timeout=settings.provider_timeout_seconds,
        )

    if not settings.paypal_client_id or not settings.paypal_client_secret:
        raise ConfigurationError("PayPal client credentials are required")
    return PayPalProvider(
        client_id=settings.paypal_client_id,
        client_secret=settings.paypal_client_secret,
        mode=settings.paypal_mode,
        webhook_id=settings.paypal_webhook_id,
        server_url=settings.server_url,
        brand_name=settings.app_name,
        timeout=settings.provider_timeout_seconds,
    )
