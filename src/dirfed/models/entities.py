"""Identity value types shared by every directory backend.

Entities are immutable snapshots. Two entities are the same principal when
their ``(sid, provider_id)`` pair matches; display attributes never take part
in equality.
"""

from __future__ import annotations

from enum import StrEnum
from typing import TYPE_CHECKING, Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

if TYPE_CHECKING:
    from dirfed.providers.base import DirectoryProvider


class EntityKind(StrEnum):
    USER = "user"
    GROUP = "group"


class UserSearchType(StrEnum):
    USERNAME = "username"
    DISPLAY_NAME = "display_name"
    EMAIL = "email"


class DirectoryEntity(BaseModel):
    """Anything a directory can hold: identified by its sid within its provider."""

    model_config = ConfigDict(frozen=True)

    sid: str
    provider_id: str

    @property
    def identity(self) -> tuple[str, str]:
        return (self.sid, self.provider_id)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, DirectoryEntity):
            return NotImplemented
        return self.identity == other.identity

    def __hash__(self) -> int:
        return hash(self.identity)


class DirectoryUser(DirectoryEntity):
    kind: Literal[EntityKind.USER] = EntityKind.USER
    username: str
    display_name: str
    email: str | None = None


class DirectoryGroup(DirectoryEntity):
    """A group bound to its home provider.

    All membership reads and writes are delegated to that provider; the group
    itself never holds member state.
    """

    kind: Literal[EntityKind.GROUP] = EntityKind.GROUP
    group_name: str
    description: str = ""

    _provider: DirectoryProvider = PrivateAttr()

    def __init__(self, *, provider: DirectoryProvider, **data: Any) -> None:
        super().__init__(**data)
        self._provider = provider

    @property
    def provider(self) -> DirectoryProvider:
        return self._provider

    async def add_member(self, member: DirectoryMember) -> None:
        await self._provider.add_member_to_group(self, member)

    async def remove_member(self, member: DirectoryMember) -> None:
        await self._provider.remove_member_from_group(self, member)

    async def is_member(self, entity: DirectoryMember) -> bool:
        return await self._provider.is_group_member(self, entity)

    async def get_members(self) -> list[DirectoryMember]:
        return await self._provider.get_group_members(self)


DirectoryMember = Annotated[DirectoryUser | DirectoryGroup, Field(discriminator="kind")]


class UserCreationParams(BaseModel):
    username: str
    display_name: str | None = None
    email: str | None = None


class GroupCreationParams(BaseModel):
    group_name: str
    description: str | None = None
