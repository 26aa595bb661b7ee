"""Lookup of provider adapters by name."""

from typing import Optional
import structlog

from bhasha.core.errors import ValidationError
from bhasha.finetuning.providers.base import ProviderAdapter

log = structlog.get_logger()


class ProviderRegistry:
    """Holds the configured provider adapters.

    Jobs name their provider; the manager asks the registry for the adapter
    and calls ``submit``/``poll``/``cancel`` on it without knowing which one
    it got.
    """

    def __init__(self, adapters: Optional[list[ProviderAdapter]] = None):
        self._adapters: dict[str, ProviderAdapter] = {}
        for adapter in adapters or []:
            self.register(adapter)

    def register(self, adapter: ProviderAdapter) -> None:
        if not adapter.name:
            raise ValueError("Provider adapters need a name")
        self._adapters[adapter.name] = adapter
        log.debug("provider_registered", provider=adapter.name)

    def get(self, name: str) -> ProviderAdapter:
        """Adapter registered as ``name``.

        Raises:
            ValidationError: If no adapter has that name
        """
        adapter = self._adapters.get(name)
        if adapter is None:
            raise ValidationError(
                f"Unknown provider: {name} (available: {', '.join(self.names()) or 'none'})"
            )
        return adapter

    def names(self) -> list[str]:
        return sorted(self._adapters)

    def __contains__(self, name: str) -> bool:
        return name in self._adapters
