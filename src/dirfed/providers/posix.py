"""Read-only view of the local POSIX account database.

Users and groups come from ``pwd`` and ``grp``. A group's members are the
names listed in its member field plus every user whose primary group it is.
Local groups never nest, and account management is left to the operating
system, so creation and membership changes are rejected.
"""

from __future__ import annotations

import asyncio
import grp
import logging
import pwd
from typing import Literal

from pydantic import BaseModel

from dirfed.errors import NotFoundError, UnsupportedError
from dirfed.models.entities import (
    DirectoryGroup,
    DirectoryMember,
    DirectoryUser,
    EntityKind,
    GroupCreationParams,
    UserCreationParams,
    UserSearchType,
)
from dirfed.providers.base import DirectoryProvider, MemberReference, require_name

logger = logging.getLogger(__name__)

USER_SID_PREFIX = "P-U-"
GROUP_SID_PREFIX = "P-G-"


class PosixProviderConfig(BaseModel):
    type: Literal["posix"] = "posix"
    provider_id: str = "PosixLocal"


def _gecos_name(entry: pwd.struct_passwd) -> str:
    # First comma-separated GECOS field is the full name
    return entry.pw_gecos.split(",", 1)[0].strip()


def _parse_id(sid: str, prefix: str) -> int | None:
    if not sid.startswith(prefix):
        return None
    try:
        return int(sid[len(prefix):])
    except ValueError:
        return None


class PosixAccountProvider(DirectoryProvider):
    def __init__(self, config: PosixProviderConfig | None = None) -> None:
        super().__init__()
        self._config = config or PosixProviderConfig()

    @property
    def provider_id(self) -> str:
        return self._config.provider_id

    async def create_user(self, params: UserCreationParams) -> DirectoryUser:
        raise UnsupportedError(f"Provider {self.provider_id} is read-only; cannot create users")

    async def create_group(self, params: GroupCreationParams) -> DirectoryGroup:
        raise UnsupportedError(f"Provider {self.provider_id} is read-only; cannot create groups")

    async def add_member_to_group(self, group: DirectoryGroup, member: DirectoryMember) -> None:
        self._check_home(group, "add_member_to_group")
        raise UnsupportedError(f"Provider {self.provider_id} is read-only; cannot change group members")

    async def remove_member_from_group(self, group: DirectoryGroup, member: DirectoryMember) -> None:
        self._check_home(group, "remove_member_from_group")
        raise UnsupportedError(f"Provider {self.provider_id} is read-only; cannot change group members")

    async def find_user(self, username: str) -> DirectoryUser | None:
        require_name(username, "Username")
        try:
            entry = await asyncio.to_thread(pwd.getpwnam, username)
        except KeyError:
            logger.debug("User not found with username: %s", username)
            return None
        return self._user(entry)

    async def find_group(self, group_name: str) -> DirectoryGroup | None:
        require_name(group_name, "Group name")
        try:
            entry = await asyncio.to_thread(grp.getgrnam, group_name)
        except KeyError:
            logger.debug("Group not found with name: %s", group_name)
            return None
        return self._group(entry)

    async def search_users(
        self, term: str, search_type: UserSearchType = UserSearchType.USERNAME
    ) -> list[DirectoryUser]:
        require_name(term, "Search term")
        if search_type is UserSearchType.USERNAME:
            user = await self.find_user(term)
            return [user] if user is not None else []
        if search_type is UserSearchType.EMAIL:
            logger.debug("Provider '%s' has no email attribute to search", self.provider_id)
            return []
        needle = term.casefold()
        accounts = await asyncio.to_thread(pwd.getpwall)
        return [self._user(a) for a in accounts if needle in (_gecos_name(a) or a.pw_name).casefold()]

    def supports_sid_lookup(self, sid: str) -> bool:
        return sid.startswith(USER_SID_PREFIX) or sid.startswith(GROUP_SID_PREFIX)

    async def get_user_by_sid(self, sid: str) -> DirectoryUser | None:
        uid = _parse_id(sid, USER_SID_PREFIX)
        if uid is None:
            return None
        try:
            entry = await asyncio.to_thread(pwd.getpwuid, uid)
        except KeyError:
            logger.debug("User not found with SID: %s", sid)
            return None
        return self._user(entry)

    async def get_group_by_sid(self, sid: str) -> DirectoryGroup | None:
        gid = _parse_id(sid, GROUP_SID_PREFIX)
        if gid is None:
            return None
        try:
            entry = await asyncio.to_thread(grp.getgrgid, gid)
        except KeyError:
            logger.debug("Group not found with SID: %s", sid)
            return None
        return self._group(entry)

    async def _resolve_own_entity(self, entity: DirectoryMember) -> MemberReference | None:
        if entity.kind is not EntityKind.USER:
            return None
        user = await self.get_user_by_sid(entity.sid)
        if user is None:
            return None
        return MemberReference(key=user.username, kind=EntityKind.USER, sid=user.sid, provider_id=self.provider_id)

    async def _member_references(self, group: DirectoryGroup) -> list[MemberReference]:
        gid = _parse_id(group.sid, GROUP_SID_PREFIX)
        names = await asyncio.to_thread(self._member_names, gid) if gid is not None else None
        if names is None:
            logger.warning("Group with SID '%s' not found", group.sid)
            raise NotFoundError(f"Group with SID {group.sid} not found")
        return [MemberReference(key=name, kind=EntityKind.USER) for name in names]

    async def _store_member(self, group: DirectoryGroup, reference: MemberReference) -> None:
        raise UnsupportedError(f"Provider {self.provider_id} is read-only")

    async def _discard_member(self, group: DirectoryGroup, reference: MemberReference) -> None:
        raise UnsupportedError(f"Provider {self.provider_id} is read-only")

    async def _materialize(self, reference: MemberReference) -> DirectoryMember | None:
        try:
            entry = await asyncio.to_thread(pwd.getpwnam, reference.key)
        except KeyError:
            return None
        return self._user(entry)

    @staticmethod
    def _member_names(gid: int) -> list[str] | None:
        try:
            entry = grp.getgrgid(gid)
        except KeyError:
            return None
        names = list(entry.gr_mem)
        for account in pwd.getpwall():
            if account.pw_gid == gid and account.pw_name not in names:
                names.append(account.pw_name)
        return names

    def _user(self, entry: pwd.struct_passwd) -> DirectoryUser:
        return DirectoryUser(
            sid=f"{USER_SID_PREFIX}{entry.pw_uid}",
            provider_id=self.provider_id,
            username=entry.pw_name,
            display_name=_gecos_name(entry) or entry.pw_name,
        )

    def _group(self, entry: grp.struct_group) -> DirectoryGroup:
        return DirectoryGroup(
            provider=self,
            sid=f"{GROUP_SID_PREFIX}{entry.gr_gid}",
            provider_id=self.provider_id,
            group_name=entry.gr_name,
        )
