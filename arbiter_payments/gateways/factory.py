from __future__ import annotations

import logging
from typing import Dict, Optional

import httpx

from arbiter_payments.config import Settings
from arbiter_payments.domain.enums import GatewayName
from arbiter_payments.domain.errors import GatewayDisabled, UnknownGateway, UnsupportedCurrency
from arbiter_payments.domain.money import normalize_currency

from .base import PaymentGateway

logger = logging.getLogger(__name__)


def get_gateway(
    settings: Settings,
    name: str,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> PaymentGateway:
    """Build a gateway client by normalized name.

    Supported names:
    - "gcash" -> GCashGateway
    - "maya" -> MayaGateway
    - "stripe" -> StripeGateway
    - "paypal" -> PayPalGateway

    Raises GatewayConfigurationError if the gateway's required settings are empty.
    """
    normalized = (name or "").strip().lower()
    config = None
    if normalized in {g.value for g in GatewayName}:
        config = settings.gateway_config(normalized)
    if normalized == GatewayName.GCASH.value:
        from .gcash import GCashGateway

        return GCashGateway(config, transport=transport)
    if normalized == GatewayName.MAYA.value:
        from .maya import MayaGateway

        return MayaGateway(config, transport=transport)
    if normalized == GatewayName.STRIPE.value:
        from .stripe_gateway import StripeGateway

        return StripeGateway(config)
    if normalized == GatewayName.PAYPAL.value:
        from .paypal import PayPalGateway

        return PayPalGateway(config, transport=transport)
    raise UnknownGateway(f"Unknown gateway {name}", gateway=name)


class GatewayRegistry:
    """The gateway clients enabled for this deployment, keyed by name."""

    def __init__(self, gateways: Dict[str, PaymentGateway], default_gateway: str = "") -> None:
        self._gateways = dict(gateways)
        self._default = default_gateway.lower()

    def get(self, name: str) -> PaymentGateway:
        normalized = (name or "").strip().lower()
        gateway = self._gateways.get(normalized)
        if gateway is not None:
            return gateway
        if normalized in {g.value for g in GatewayName}:
            raise GatewayDisabled(f"Gateway {normalized} is disabled", gateway=normalized)
        raise UnknownGateway(f"Unknown gateway {name}", gateway=name)

    def available(self) -> list[PaymentGateway]:
        return list(self._gateways.values())

    def names(self) -> list[str]:
        return list(self._gateways)

    def for_currency(self, currency: str) -> PaymentGateway:
        """Pick a gateway for ``currency``: Maya or GCash for PHP, else Stripe or PayPal."""
        code = normalize_currency(currency)
        if code == "PHP":
            preference = [GatewayName.MAYA, GatewayName.GCASH]
        else:
            preference = [GatewayName.STRIPE, GatewayName.PAYPAL]
        for name in preference:
            gateway = self._gateways.get(name.value)
            if gateway is not None and gateway.supports_currency(code):
                return gateway
        for gateway in self._gateways.values():
            if gateway.supports_currency(code):
                return gateway
        raise UnsupportedCurrency(f"No enabled gateway supports {code}", currency=code)

    def default(self) -> PaymentGateway:
        if self._default in self._gateways:
            return self._gateways[self._default]
        if not self._gateways:
            raise GatewayDisabled("No payment gateway is enabled")
        return next(iter(self._gateways.values()))

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.lower() in self._gateways

    def __len__(self) -> int:
        return len(self._gateways)


def build_registry(
    settings: Settings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> GatewayRegistry:
    """Construct every gateway listed in ``enabled_gateways``; fail fast on bad config."""
    gateways: Dict[str, PaymentGateway] = {}
    for name in settings.enabled_gateway_names:
        gateways[name] = get_gateway(settings, name, transport=transport)
    logger.info("gateways enabled", extra={"gateway": ",".join(gateways) or "none"})
    return GatewayRegistry(gateways, default_gateway=settings.default_gateway)
