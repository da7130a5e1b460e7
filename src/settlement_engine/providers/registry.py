"""Provider registry: one adapter instance per provider, closed explicitly."""

from __future__ import annotations

import logging

from settlement_engine.config import Settings
from settlement_engine.errors import ValidationError
from settlement_engine.providers.base import PaymentProvider, Provider
from settlement_engine.providers.stub import StubProvider

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Holds the configured adapter for each provider."""

    def __init__(self, providers: dict[str, PaymentProvider] | None = None):
        self._providers: dict[str, PaymentProvider] = {}
        for provider in (providers or {}).values():
            self.register(provider)

    def register(self, provider: PaymentProvider) -> None:
        name = Provider(provider.provider_name).value
        self._providers[name] = provider

    def get(self, name: str) -> PaymentProvider:
        """Return the adapter for a provider name.

        Raises:
            ValidationError: If the provider is unknown or not configured.
        """
        try:
            key = Provider(str(name).lower()).value
        except ValueError as exc:
            raise ValidationError(
                f"Unsupported payment provider: {name}", code="UNSUPPORTED_PROVIDER"
            ) from exc
        provider = self._providers.get(key)
        if provider is None:
            raise ValidationError(
                f"Payment provider not configured: {key}", code="UNSUPPORTED_PROVIDER"
            )
        return provider

    def names(self) -> list[str]:
        return sorted(self._providers)

    def close(self) -> None:
        """Close every adapter. Errors are logged so every adapter gets closed."""
        for name, provider in self._providers.items():
            try:
                provider.close()
            except Exception:
                logger.exception("Failed to close provider %s", name)

    @classmethod
    def from_settings(cls, settings: Settings) -> ProviderRegistry:
        """Build real adapters where credentials exist, stubs elsewhere."""
        registry = cls()

        if settings.stripe.secret_key:
            import stripe

            from settlement_engine.providers.stripe_provider import StripeProvider

            client = stripe.StripeClient(
                settings.stripe.secret_key,
                stripe_version=settings.stripe.api_version,
            )
            registry.register(StripeProvider(client))
        else:
            logger.warning("STRIPE_SECRET_KEY not set, using stub Stripe provider")
            registry.register(StubProvider(Provider.STRIPE.value))

        if settings.nuvei.merchant_id and settings.nuvei.secret_key:
            from settlement_engine.providers.nuvei_provider import NuveiProvider

            registry.register(NuveiProvider(settings.nuvei))
        else:
            logger.warning("Nuvei credentials not set, using stub Nuvei provider")
            registry.register(StubProvider(Provider.NUVEI.value))

        return registry
