"""Provider adapters, looked up by ``PaymentProvider``.

Adding a provider means registering another adapter; the payment service
never branches on the provider itself.
"""

from app.errors import ValidationError
from app.models.billing import PaymentProvider
from app.services.common import validate_enum
from app.services.payment_providers.base import (
    PaymentAdapter,
    PaymentMethodDetails,
    ProviderResult,
    RefundResult,
    WebhookEvent,
)
from app.services.payment_providers.konbini import KonbiniAdapter
from app.services.payment_providers.paypay import PayPayAdapter
from app.services.payment_providers.stripe import StripeAdapter

PROVIDERS: dict[PaymentProvider, PaymentAdapter] = {}


def register_adapter(adapter: PaymentAdapter) -> None:
    PROVIDERS[adapter.provider] = adapter


def get_adapter(provider) -> PaymentAdapter:
    provider = validate_enum(provider, PaymentProvider, "provider")
    adapter = PROVIDERS.get(provider) if provider else None
    if adapter is None:
        raise ValidationError(f"Unsupported payment provider: {provider}")
    return adapter


def register_default_adapters() -> None:
    register_adapter(StripeAdapter())
    register_adapter(PayPayAdapter())
    register_adapter(KonbiniAdapter())


register_default_adapters()

__all__ = [
    "PROVIDERS",
    "KonbiniAdapter",
    "PayPayAdapter",
    "PaymentAdapter",
    "PaymentMethodDetails",
    "ProviderResult",
    "RefundResult",
    "StripeAdapter",
    "WebhookEvent",
    "get_adapter",
    "register_adapter",
    "register_default_adapters",
]
