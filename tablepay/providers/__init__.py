from types import MappingProxyType
from typing import Mapping, Optional

from tablepay.models.core import PaymentMethod
from tablepay.providers.base import PaymentAdapter
from tablepay.providers.card_redirect import CardRedirectAdapter
from tablepay.providers.cash import CashAdapter
from tablepay.providers.hosted_checkout import HostedCheckoutAdapter
from tablepay.providers.webhook_processor import WebhookProcessorAdapter


def build_registry(settings) -> Mapping[PaymentMethod, PaymentAdapter]:
    """One adapter per payment method, built once at startup."""
    adapters = [
        CashAdapter(),
        CardRedirectAdapter(
            tmn_code=settings.CARD_REDIRECT_TMN_CODE,
            secret=settings.CARD_REDIRECT_SECRET,
            ipn_secret=settings.CARD_REDIRECT_IPN_SECRET,
            gateway_url=settings.CARD_REDIRECT_URL,
            return_url=settings.CARD_REDIRECT_RETURN_URL,
        ),
        HostedCheckoutAdapter(
            api_key=settings.HOSTED_CHECKOUT_API_KEY,
            webhook_secret=settings.HOSTED_CHECKOUT_WEBHOOK_SECRET,
            return_url=settings.HOSTED_CHECKOUT_RETURN_URL,
        ),
        WebhookProcessorAdapter(
            api_url=settings.WEBHOOK_PROCESSOR_API_URL,
            shop_id=settings.WEBHOOK_PROCESSOR_SHOP_ID,
            secret_key=settings.WEBHOOK_PROCESSOR_SECRET_KEY,
            webhook_secret=settings.WEBHOOK_PROCESSOR_WEBHOOK_SECRET,
            return_url=settings.WEBHOOK_PROCESSOR_RETURN_URL,
            timeout=settings.PROVIDER_TIMEOUT_S,
        ),
    ]
    return MappingProxyType({a.method: a for a in adapters})


def adapter_for_slug(registry: Mapping[PaymentMethod, PaymentAdapter], slug: str) -> Optional[PaymentAdapter]:
    for adapter in registry.values():
        if adapter.slug == slug:
            return adapter
    return None
