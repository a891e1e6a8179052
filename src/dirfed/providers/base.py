"""Provider contract and the cross-provider membership algorithm.

Every backend subclasses :class:`DirectoryProvider`. The contract operations
for membership (add, remove, list, test) are implemented here once, on top of
a handful of storage hooks each backend supplies:

* ``_resolve_own_entity`` turns one of the provider's own entities into a
  :class:`MemberReference` its store understands.
* ``resolve_foreign_entity`` does the same for an entity owned by another
  provider (the foreign-entity resolver). ``can_handle_foreign_entity``
  declares up front which foreign entities the resolver accepts.
* ``_member_references`` / ``_store_member`` / ``_discard_member`` read and
  write the direct member list of a group.
* ``_materialize`` turns a stored reference back into a fresh entity snapshot,
  asking peer providers for members they own.

Nested membership recurses through group-typed members. Each nested group is
evaluated by its own home provider, so a chain may cross backends. A visited
set of ``(sid, provider_id)`` pairs travels with the recursion and stops
membership cycles.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Protocol

from pydantic import BaseModel, ConfigDict

from dirfed.errors import (
    InvalidArgumentError,
    NotFoundError,
    ResolutionFailedError,
    UnsupportedError,
    WrongProviderError,
)
from dirfed.models.entities import (
    DirectoryEntity,
    DirectoryGroup,
    DirectoryMember,
    DirectoryUser,
    EntityKind,
    GroupCreationParams,
    UserCreationParams,
    UserSearchType,
)

logger = logging.getLogger(__name__)


class MemberReference(BaseModel):
    """Backend-native handle for one direct member of a group.

    ``key`` is what the store compares (a DN, a ``provider:sid`` pair, ...).
    ``sid``/``provider_id`` are set when the store keeps an identity
    cross-reference rather than a native pointer.
    """

    model_config = ConfigDict(frozen=True)

    key: str
    kind: EntityKind | None = None
    sid: str | None = None
    provider_id: str | None = None


class PeerDirectory(Protocol):
    """Lookup of sibling providers, supplied by the registry."""

    def lookup_provider(self, provider_id: str) -> DirectoryProvider | None: ...


def require_name(value: str | None, what: str) -> str:
    if value is None or not value.strip():
        raise InvalidArgumentError(f"{what} cannot be empty")
    return value


class DirectoryProvider(ABC):
    """Abstract interface every directory backend implements."""

    def __init__(self) -> None:
        self._peers: PeerDirectory | None = None

    @property
    @abstractmethod
    def provider_id(self) -> str:
        """Stable name of this backend, constant for the provider's lifetime."""

    # ----- Lifecycle -----

    async def initialize(self) -> None:
        """Open backend resources. Providers without any keep the default."""

    async def close(self) -> None:
        """Release backend resources."""

    def bind_peers(self, peers: PeerDirectory) -> None:
        self._peers = peers

    def peer(self, provider_id: str) -> DirectoryProvider | None:
        if provider_id == self.provider_id:
            return self
        if self._peers is None:
            return None
        return self._peers.lookup_provider(provider_id)

    # ----- Users and groups -----

    @abstractmethod
    async def create_user(self, params: UserCreationParams) -> DirectoryUser: ...

    @abstractmethod
    async def create_group(self, params: GroupCreationParams) -> DirectoryGroup: ...

    @abstractmethod
    async def find_user(self, username: str) -> DirectoryUser | None:
        """Soft lookup by the backend's native user name key."""

    @abstractmethod
    async def find_group(self, group_name: str) -> DirectoryGroup | None: ...

    async def search_users(
        self, term: str, search_type: UserSearchType = UserSearchType.USERNAME
    ) -> list[DirectoryUser]:
        """Search this backend. Only exact user-name search is required."""
        if search_type is not UserSearchType.USERNAME:
            logger.debug(
                "Provider '%s' does not support %s search", self.provider_id, search_type
            )
            return []
        user = await self.find_user(term)
        return [user] if user is not None else []

    # ----- Lookup by sid -----

    @abstractmethod
    def supports_sid_lookup(self, sid: str) -> bool:
        """Cheap syntactic test: could this sid belong to this provider?"""

    @abstractmethod
    async def get_user_by_sid(self, sid: str) -> DirectoryUser | None: ...

    @abstractmethod
    async def get_group_by_sid(self, sid: str) -> DirectoryGroup | None: ...

    # ----- Foreign-entity resolver -----

    def can_handle_foreign_entity(self, entity: DirectoryEntity) -> bool:
        # Without cross-provider knowledge a provider only handles its own entities
        return entity.provider_id == self.provider_id

    async def resolve_foreign_entity(self, entity: DirectoryMember) -> MemberReference | None:
        """Map an entity owned by another provider into this provider's store.

        Returns ``None`` when the entity cannot be mapped; never a partial
        reference.
        """
        return None

    # ----- Storage hooks -----

    @abstractmethod
    async def _resolve_own_entity(self, entity: DirectoryMember) -> MemberReference | None: ...

    @abstractmethod
    async def _member_references(self, group: DirectoryGroup) -> list[MemberReference]:
        """Direct members of ``group``. Raises NotFoundError if the group is gone."""

    @abstractmethod
    async def _store_member(self, group: DirectoryGroup, reference: MemberReference) -> None: ...

    @abstractmethod
    async def _discard_member(self, group: DirectoryGroup, reference: MemberReference) -> None: ...

    @abstractmethod
    async def _materialize(self, reference: MemberReference) -> DirectoryMember | None: ...

    def _same_reference(self, left: MemberReference, right: MemberReference) -> bool:
        return left.key == right.key

    # ----- Membership -----

    async def add_member_to_group(self, group: DirectoryGroup, member: DirectoryMember) -> None:
        self._check_home(group, "add_member_to_group")
        logger.info(
            "Adding %s '%s' from provider '%s' to group '%s'",
            member.kind,
            member.sid,
            member.provider_id,
            group.group_name,
        )
        reference = await self._resolve_for_mutation(member)
        current = await self._member_references(group)
        if self._contains(current, reference):
            logger.warning(
                "'%s' is already a member of group '%s'", member.sid, group.group_name
            )
            return
        await self._store_member(group, reference)
        logger.debug("Added '%s' to group '%s'", reference.key, group.group_name)

    async def remove_member_from_group(
        self, group: DirectoryGroup, member: DirectoryMember
    ) -> None:
        self._check_home(group, "remove_member_from_group")
        logger.info(
            "Removing %s '%s' from provider '%s' from group '%s'",
            member.kind,
            member.sid,
            member.provider_id,
            group.group_name,
        )
        reference = await self._resolve_for_mutation(member)
        current = await self._member_references(group)
        if not self._contains(current, reference):
            logger.warning("'%s' is not a member of group '%s'", member.sid, group.group_name)
            return
        await self._discard_member(group, reference)
        logger.debug("Removed '%s' from group '%s'", reference.key, group.group_name)

    async def get_group_members(self, group: DirectoryGroup) -> list[DirectoryMember]:
        """Direct members only, each a fresh snapshot from its owning provider."""
        self._check_home(group, "get_group_members")
        members: list[DirectoryMember] = []
        for reference in await self._member_references(group):
            member = await self._materialize(reference)
            if member is None:
                logger.warning(
                    "Skipping member '%s' of group '%s': it could not be resolved",
                    reference.key,
                    group.group_name,
                )
                continue
            members.append(member)
        logger.debug("Found %d members in group '%s'", len(members), group.group_name)
        return members

    async def is_group_member(
        self,
        group: DirectoryGroup,
        entity: DirectoryMember,
        *,
        visited: set[tuple[str, str]] | None = None,
    ) -> bool:
        """Direct or nested membership of ``entity`` in ``group``.

        ``visited`` collects every group already explored during one query;
        a group reached a second time contributes nothing.
        """
        self._check_home(group, "is_group_member")
        if visited is None:
            visited = set()
        if group.identity in visited:
            logger.debug("Group '%s' already visited, skipping", group.group_name)
            return False
        visited.add(group.identity)

        current = await self._member_references(group)
        reference = await self._resolve_for_query(entity)
        if reference is not None and self._contains(current, reference):
            logger.debug("'%s' is a direct member of group '%s'", entity.sid, group.group_name)
            return True

        for candidate in current:
            if candidate.kind is EntityKind.USER:
                continue
            nested = await self._materialize(candidate)
            if not isinstance(nested, DirectoryGroup):
                continue
            if await nested.provider.is_group_member(nested, entity, visited=visited):
                logger.debug(
                    "'%s' is a member of group '%s' through nested group '%s' (%s)",
                    entity.sid,
                    group.group_name,
                    nested.group_name,
                    nested.provider_id,
                )
                return True

        logger.debug("'%s' is not a member of group '%s'", entity.sid, group.group_name)
        return False

    # ----- Internals -----

    def _check_home(self, group: DirectoryGroup, operation: str) -> None:
        if group.provider_id != self.provider_id:
            logger.warning(
                "%s called with group from provider '%s', expected '%s'",
                operation,
                group.provider_id,
                self.provider_id,
            )
            raise WrongProviderError(
                f"Group '{group.group_name}' is not from the {self.provider_id} provider"
            )

    def _contains(self, references: list[MemberReference], reference: MemberReference) -> bool:
        return any(self._same_reference(existing, reference) for existing in references)

    async def _resolve_for_mutation(self, member: DirectoryMember) -> MemberReference:
        if member.provider_id == self.provider_id:
            reference = await self._resolve_own_entity(member)
            if reference is None:
                logger.warning("%s with SID '%s' not found", member.kind, member.sid)
                raise NotFoundError(f"{member.kind} with SID {member.sid} not found")
            return reference

        if not self.can_handle_foreign_entity(member):
            logger.warning(
                "Provider '%s' cannot handle entities from provider '%s'",
                self.provider_id,
                member.provider_id,
            )
            raise UnsupportedError(
                f"Provider {self.provider_id} cannot handle entities "
                f"from provider {member.provider_id}"
            )

        reference = await self.resolve_foreign_entity(member)
        if reference is None:
            logger.warning(
                "Could not resolve %s '%s' from provider '%s' in provider '%s'",
                member.kind,
                member.sid,
                member.provider_id,
                self.provider_id,
            )
            raise ResolutionFailedError(
                f"Cannot map entity {member.sid} from provider {member.provider_id} "
                f"into provider {self.provider_id}"
            )
        return reference

    async def _resolve_for_query(self, entity: DirectoryMember) -> MemberReference | None:
        if entity.provider_id == self.provider_id:
            return await self._resolve_own_entity(entity)
        if not self.can_handle_foreign_entity(entity):
            return None
        reference = await self.resolve_foreign_entity(entity)
        if reference is None:
            logger.warning(
                "Could not resolve %s '%s' from provider '%s' in provider '%s'",
                entity.kind,
                entity.sid,
                entity.provider_id,
                self.provider_id,
            )
        return reference
