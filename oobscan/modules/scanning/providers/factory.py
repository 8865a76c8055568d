from __future__ import annotations

from typing import Callable, Dict, Optional, Type

from oobscan.core.exceptions import ProviderNotSupportedError
from oobscan.modules.scanning.providers.base import BaseScanProvider
from oobscan.shared.core.config import Settings, get_settings
from oobscan.shared.core.provider import normalize_provider


class ScanProviderFactory:
    """
    Registry and Factory for scan providers.
    Uses the canonical provider name as the lookup key.
    """

    _registry: Dict[str, Type[BaseScanProvider]] = {}

    @staticmethod
    def _provider_key(provider: str) -> str:
        normalized = normalize_provider(provider)
        if not normalized:
            raise ProviderNotSupportedError(
                f"Unknown scan provider '{provider}'",
                details={"provider": str(provider)},
            )
        return normalized

    @classmethod
    def register(cls, provider: str) -> Callable[[Type[BaseScanProvider]], Type[BaseScanProvider]]:
        """Decorator to register a provider implementation."""

        def wrapper(provider_cls: Type[BaseScanProvider]) -> Type[BaseScanProvider]:
            provider_key = cls._provider_key(provider)
            existing = cls._registry.get(provider_key)
            # Allow idempotent module reload registration, but reject conflicting overrides.
            if existing is not None and existing is not provider_cls:
                raise ValueError(
                    f"Duplicate scan provider registration for {provider_key}: "
                    f"{existing.__name__} vs {provider_cls.__name__}"
                )
            cls._registry[provider_key] = provider_cls
            provider_cls.provider = provider_key
            return provider_cls

        return wrapper

    @classmethod
    def get_provider(cls, provider: Optional[str] = None, settings: Optional[Settings] = None) -> BaseScanProvider:
        """
        Returns an instance of the provider registered under `provider`
        (defaults to SCAN_PROVIDER from settings).
        """
        settings = settings or get_settings()
        provider_key = cls._provider_key(provider or settings.SCAN_PROVIDER)
        provider_cls = cls._registry.get(provider_key)
        if provider_cls is None:
            available = ", ".join(sorted(cls._registry)) or "none"
            raise ProviderNotSupportedError(
                f"No scan provider registered for {provider_key}. Available: {available}",
                details={"provider": provider_key},
            )
        return provider_cls(settings)

    @classmethod
    def registered(cls) -> list[str]:
        return sorted(cls._registry)
