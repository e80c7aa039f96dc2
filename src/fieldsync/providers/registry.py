"""Provider-tag to adapter lookup."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from fieldsync.models import Provider
from fieldsync.providers.base import CalendarProvider, ProviderDataError, TokenStore

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Holds one adapter instance per ``Provider`` for the process lifetime."""

    def __init__(self, providers: Iterable[CalendarProvider] = ()) -> None:
        self._providers: dict[Provider, CalendarProvider] = {}
        for provider in providers:
            self.register(provider)

    def register(self, provider: CalendarProvider) -> None:
        if provider.name in self._providers:
            logger.warning("Replacing registered %s provider adapter", provider.name)
        self._providers[provider.name] = provider

    def get(self, provider: Provider | str) -> CalendarProvider:
        try:
            return self._providers[Provider(provider)]
        except (KeyError, ValueError) as exc:
            raise ProviderDataError(f"No calendar adapter configured for {provider!r}") from exc

    def __contains__(self, provider: object) -> bool:
        try:
            return Provider(provider) in self._providers  # type: ignore[arg-type]
        except ValueError:
            return False

    @property
    def names(self) -> list[Provider]:
        return sorted(self._providers)

    def bind_token_store(self, token_store: TokenStore) -> None:
        for provider in self._providers.values():
            provider.bind_token_store(token_store)

    async def shutdown(self) -> None:
        for provider in self._providers.values():
            try:
                await provider.shutdown()
            except Exception:
                logger.warning("Error shutting down %s adapter", provider.name, exc_info=True)
