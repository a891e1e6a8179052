"""Registry of providers and lazy factory for the directory service."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from types import MappingProxyType

from dirfed.errors import InvalidStateError, NotFoundError
from dirfed.providers.base import DirectoryProvider, require_name
from dirfed.service import DirectoryService

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Holds providers by id and gives each one access to its peers.

    The directory service is built on first use and rebuilt after any
    registration change.
    """

    def __init__(self) -> None:
        self._providers: dict[str, DirectoryProvider] = {}
        self._service: DirectoryService | None = None

    @property
    def providers(self) -> Mapping[str, DirectoryProvider]:
        return MappingProxyType(self._providers)

    def register_provider(self, provider: DirectoryProvider) -> None:
        if provider.provider_id in self._providers:
            logger.info("Replacing provider '%s'", provider.provider_id)
        else:
            logger.info("Registering provider '%s'", provider.provider_id)
        self._providers[provider.provider_id] = provider
        provider.bind_peers(self)
        self._service = None

    def lookup_provider(self, provider_id: str) -> DirectoryProvider | None:
        return self._providers.get(provider_id)

    def has_provider(self, provider_id: str) -> bool:
        return provider_id in self._providers

    def get_provider(self, provider_id: str) -> DirectoryProvider:
        require_name(provider_id, "Provider ID")
        provider = self._providers.get(provider_id)
        if provider is None:
            raise NotFoundError(f"Provider '{provider_id}' is not registered")
        return provider

    def get_service(self) -> DirectoryService:
        if self._service is None:
            if not self._providers:
                raise InvalidStateError("No directory providers have been registered")
            self._service = DirectoryService(self._providers.values())
        return self._service

    async def initialize_all(self) -> None:
        for provider in self._providers.values():
            await provider.initialize()

    async def close_all(self) -> None:
        for provider in self._providers.values():
            try:
                await provider.close()
            except Exception:
                logger.exception("Error closing provider '%s'", provider.provider_id)
