"""Directory service: one query surface over every registered provider.

Queries fan out to the providers concurrently. A provider that fails does not
sink the query as long as another provider produced a result; its error is
logged and dropped. Only when nothing was found are the collected errors
raised, alone or as a :class:`~dirfed.errors.DirectoryErrorGroup`.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping
from types import MappingProxyType
from typing import TypeVar

from dirfed.errors import (
    DirectoryErrorGroup,
    InvalidArgumentError,
    NotFoundError,
    ProviderQueryError,
    UnsupportedError,
)
from dirfed.models.entities import DirectoryGroup, DirectoryUser, UserSearchType
from dirfed.providers.base import DirectoryProvider, require_name

logger = logging.getLogger(__name__)

T = TypeVar("T")


class DirectoryService:
    def __init__(self, providers: Iterable[DirectoryProvider]) -> None:
        self._providers: dict[str, DirectoryProvider] = {}
        for provider in providers:
            # Last registration wins for duplicate ids
            self._providers[provider.provider_id] = provider
        if not self._providers:
            raise InvalidArgumentError("At least one provider must be specified")
        logger.debug("Directory service created with providers: %s", ", ".join(self._providers))

    @property
    def providers(self) -> Mapping[str, DirectoryProvider]:
        return MappingProxyType(self._providers)

    def get_provider(self, provider_id: str) -> DirectoryProvider:
        require_name(provider_id, "Provider ID")
        provider = self._providers.get(provider_id)
        if provider is None:
            raise NotFoundError(f"Provider '{provider_id}' is not registered")
        return provider

    async def search_users(
        self, term: str, search_type: UserSearchType = UserSearchType.USERNAME
    ) -> list[DirectoryUser]:
        """Union of every provider's matches, in provider registration order."""
        require_name(term, "Search term")
        logger.info("Searching users by %s for '%s' across %d providers", search_type, term, len(self._providers))

        outcomes = await self._fan_out(
            self._providers.values(), lambda p: p.search_users(term, search_type)
        )
        users: list[DirectoryUser] = []
        errors: list[ProviderQueryError] = []
        for result, error in outcomes:
            if error is not None:
                errors.append(error)
            elif result:
                users.extend(result)

        if users:
            for error in errors:
                logger.warning("Ignoring provider failure during search: %s", error)
            logger.debug("Search for '%s' found %d users", term, len(users))
            return users
        if errors:
            raise self._combine(errors, f"Search for '{term}' failed in every provider")
        return []

    async def get_user_by_id(self, sid: str) -> DirectoryUser:
        require_name(sid, "SID")
        return await self._get_by_id(sid, "user", lambda p: p.get_user_by_sid(sid))

    async def get_group_by_id(self, sid: str) -> DirectoryGroup:
        require_name(sid, "SID")
        return await self._get_by_id(sid, "group", lambda p: p.get_group_by_sid(sid))

    async def _get_by_id(
        self,
        sid: str,
        what: str,
        lookup: Callable[[DirectoryProvider], Awaitable[T | None]],
    ) -> T:
        candidates = [p for p in self._providers.values() if p.supports_sid_lookup(sid)]
        if not candidates:
            logger.warning("No provider supports SID lookup for '%s'", sid)
            raise UnsupportedError(f"No provider supports lookup for SID '{sid}'")
        logger.debug(
            "Looking up %s '%s' in providers: %s", what, sid, ", ".join(p.provider_id for p in candidates)
        )

        outcomes = await self._fan_out(candidates, lookup)
        errors: list[ProviderQueryError] = []
        for result, error in outcomes:
            if error is not None:
                errors.append(error)
            elif result is not None:
                for skipped in errors:
                    logger.warning("Ignoring provider failure during %s lookup: %s", what, skipped)
                return result

        if errors:
            raise self._combine(errors, f"Lookup of {what} '{sid}' failed in every provider")
        logger.debug("%s with SID '%s' not found in any provider", what.capitalize(), sid)
        raise NotFoundError(f"{what.capitalize()} with SID '{sid}' not found in any provider")

    async def _fan_out(
        self,
        providers: Iterable[DirectoryProvider],
        call: Callable[[DirectoryProvider], Awaitable[T]],
    ) -> list[tuple[T | None, ProviderQueryError | None]]:
        async def _one(provider: DirectoryProvider) -> tuple[T | None, ProviderQueryError | None]:
            try:
                return await call(provider), None
            except Exception as exc:
                logger.exception("Provider '%s' failed", provider.provider_id)
                error = ProviderQueryError(provider.provider_id, str(exc) or type(exc).__name__)
                error.__cause__ = exc
                return None, error

        return list(await asyncio.gather(*(_one(p) for p in providers)))

    @staticmethod
    def _combine(errors: list[ProviderQueryError], message: str) -> Exception:
        if len(errors) == 1:
            return errors[0]
        return DirectoryErrorGroup(message, errors)
