"""Entity model: users, groups, creation parameters and search semantics."""

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

__all__ = [
    "DirectoryEntity",
    "DirectoryGroup",
    "DirectoryMember",
    "DirectoryUser",
    "EntityKind",
    "GroupCreationParams",
    "UserCreationParams",
    "UserSearchType",
]
