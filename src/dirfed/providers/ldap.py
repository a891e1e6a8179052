"""LDAP directory provider built on ldap3.

Groups store their members as DNs in the configured member attribute. The
provider's own sid lives in a configurable attribute (``entryUUID`` by
default) and always carries the ``L-`` prefix. Entities owned by other
directories are mapped to local entries through a cross-reference attribute
holding the foreign sid.

ldap3's synchronous strategies block, so every LDAP round trip runs in a
worker thread and calls on one connection are serialized.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable, Mapping
from typing import Any, Literal, TypeVar

from ldap3 import BASE, MODIFY_ADD, MODIFY_DELETE, SUBTREE, Connection, Server
from ldap3.core.exceptions import LDAPException
from ldap3.utils.conv import escape_filter_chars
from ldap3.utils.dn import escape_rdn
from pydantic import BaseModel, ConfigDict, Field, SecretStr

from dirfed.errors import (
    AlreadyExistsError,
    BackendError,
    InvalidArgumentError,
    InvalidStateError,
    NotFoundError,
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
from dirfed.providers.base import DirectoryProvider, MemberReference, require_name

logger = logging.getLogger(__name__)

SID_PREFIX = "L-"

T = TypeVar("T")


class LdapAttributeMapping(BaseModel):
    """Names of the directory attributes and object classes the provider uses."""

    username: str = "uid"
    display_name: str = "displayName"
    email: str = "mail"
    sid: str = "entryUUID"
    group_name: str = "cn"
    group_description: str = "description"
    group_member: str = "member"
    object_class: str = "objectClass"
    user_object_class: str = "person"
    group_object_class: str = "groupOfNames"
    user_rdn: str = "cn"
    group_rdn: str = "cn"


class LdapProviderConfig(BaseModel):
    type: Literal["ldap"] = "ldap"
    server: str
    port: int = 389
    use_ssl: bool = False
    base_dn: str
    bind_dn: str | None = None
    password: SecretStr | None = None
    provider_id: str = "LdapNet"
    attributes: LdapAttributeMapping = Field(default_factory=LdapAttributeMapping)
    foreign_providers: list[str] = Field(default_factory=lambda: ["PosixLocal", "ActiveDirectory"])
    foreign_sid_attribute: str = "foreignSid"


class LdapEntry(BaseModel):
    """One search result, attribute values decoded to strings."""

    model_config = ConfigDict(frozen=True)

    dn: str
    attributes: dict[str, list[str]] = Field(default_factory=dict)

    def values(self, name: str) -> list[str]:
        key = name.casefold()
        for attribute, values in self.attributes.items():
            if attribute.casefold() == key:
                return values
        return []

    def first(self, name: str) -> str | None:
        values = self.values(name)
        return values[0] if values else None


ConnectionFactory = Callable[[LdapProviderConfig], Connection]


def connect(config: LdapProviderConfig) -> Connection:
    """Open and bind a synchronous connection to the configured server."""
    server = Server(config.server, port=config.port, use_ssl=config.use_ssl)
    password = config.password.get_secret_value() if config.password else None
    return Connection(server, user=config.bind_dn, password=password, auto_bind=True)


def _decode(values: Any) -> list[str]:
    if not isinstance(values, (list, tuple)):
        values = [values]
    return [v.decode("utf-8") if isinstance(v, bytes) else str(v) for v in values]


class LdapProvider(DirectoryProvider):
    def __init__(
        self,
        config: LdapProviderConfig,
        connection_factory: ConnectionFactory = connect,
    ) -> None:
        super().__init__()
        if not config.server.strip():
            raise InvalidArgumentError("Server address must be specified")
        if not config.base_dn.strip():
            raise InvalidArgumentError("Base DN must be specified")
        self._config = config
        self._map = config.attributes
        self._connection_factory = connection_factory
        self._connection: Connection | None = None
        self._lock = asyncio.Lock()
        self._group_cache: dict[str, LdapEntry] = {}

    @property
    def provider_id(self) -> str:
        return self._config.provider_id

    @property
    def connection(self) -> Connection:
        if self._connection is None:
            raise InvalidStateError("LdapProvider not initialized. Call initialize() first.")
        return self._connection

    async def initialize(self) -> None:
        logger.info(
            "Initializing LDAP provider with server: %s:%d", self._config.server, self._config.port
        )
        try:
            self._connection = await asyncio.to_thread(self._connection_factory, self._config)
        except LDAPException as exc:
            logger.error("Could not connect to LDAP server %s: %s", self._config.server, exc)
            raise BackendError(self.provider_id, f"Could not connect to {self._config.server}") from exc

    async def close(self) -> None:
        if self._connection is not None:
            await asyncio.to_thread(self._connection.unbind)
            self._connection = None
        self._group_cache.clear()

    # ----- Users and groups -----

    async def create_user(self, params: UserCreationParams) -> DirectoryUser:
        require_name(params.username, "Username")
        logger.info("Creating user with username: %s", params.username)
        dn = f"{self._map.user_rdn}={escape_rdn(params.username)},{self._config.base_dn}"
        if await self._entry(dn) is not None:
            logger.warning("User with DN '%s' already exists", dn)
            raise AlreadyExistsError(f"User with DN '{dn}' already exists")

        sid = self._new_sid()
        display_name = params.display_name or params.username
        object_classes = list(
            dict.fromkeys(
                ["top", "person", "organizationalPerson", "inetOrgPerson", self._map.user_object_class]
            )
        )
        attributes: dict[str, Any] = {
            self._map.user_rdn: params.username,
            "sn": params.username,
            self._map.username: params.username,
            self._map.display_name: display_name,
            self._map.sid: sid,
        }
        if params.email:
            attributes[self._map.email] = params.email
        await self._add(dn, object_classes, attributes, "user")
        logger.debug("User created with DN: %s and SID: %s", dn, sid)
        return DirectoryUser(
            sid=sid,
            provider_id=self.provider_id,
            username=params.username,
            display_name=display_name,
            email=params.email,
        )

    async def create_group(self, params: GroupCreationParams) -> DirectoryGroup:
        require_name(params.group_name, "Group name")
        logger.info("Creating group with name: %s", params.group_name)
        dn = f"{self._map.group_rdn}={escape_rdn(params.group_name)},{self._config.base_dn}"
        if await self._entry(dn) is not None:
            logger.warning("Group with DN '%s' already exists", dn)
            raise AlreadyExistsError(f"Group with DN '{dn}' already exists")

        sid = self._new_sid()
        attributes: dict[str, Any] = {
            self._map.group_rdn: params.group_name,
            self._map.group_name: params.group_name,
            self._map.sid: sid,
        }
        if params.description:
            attributes[self._map.group_description] = params.description
        await self._add(dn, ["top", self._map.group_object_class], attributes, "group")
        logger.debug("Group created with DN: %s and SID: %s", dn, sid)

        entry = await self._entry(dn)
        if entry is not None:
            self._group_cache[sid] = entry
        return DirectoryGroup(
            provider=self,
            sid=sid,
            provider_id=self.provider_id,
            group_name=params.group_name,
            description=params.description or "",
        )

    async def find_user(self, username: str) -> DirectoryUser | None:
        require_name(username, "Username")
        value = escape_filter_chars(username)
        entries = await self._search(
            f"(&({self._map.object_class}={self._map.user_object_class})"
            f"(|({self._map.username}={value})({self._map.user_rdn}={value}))"
            f"({self._map.sid}=*))"
        )
        if not entries:
            logger.debug("User not found with username: %s", username)
            return None
        return self._user(entries[0])

    async def find_group(self, group_name: str) -> DirectoryGroup | None:
        require_name(group_name, "Group name")
        value = escape_filter_chars(group_name)
        entries = await self._search(
            f"(&({self._map.object_class}={self._map.group_object_class})"
            f"(|({self._map.group_name}={value})({self._map.group_rdn}={value}))"
            f"({self._map.sid}=*))"
        )
        if not entries:
            logger.debug("Group not found with name: %s", group_name)
            return None
        return self._group(entries[0])

    async def search_users(
        self, term: str, search_type: UserSearchType = UserSearchType.USERNAME
    ) -> list[DirectoryUser]:
        require_name(term, "Search term")
        value = escape_filter_chars(term)
        if search_type is UserSearchType.USERNAME:
            condition = f"(|({self._map.username}={value})({self._map.user_rdn}={value}))"
        elif search_type is UserSearchType.DISPLAY_NAME:
            condition = f"({self._map.display_name}=*{value}*)"
        else:
            condition = f"({self._map.email}={value})"
        entries = await self._search(
            f"(&({self._map.object_class}={self._map.user_object_class}){condition}({self._map.sid}=*))"
        )
        return [user for user in (self._user(entry) for entry in entries) if user is not None]

    # ----- Lookup by sid -----

    def supports_sid_lookup(self, sid: str) -> bool:
        return sid.startswith(SID_PREFIX)

    async def get_user_by_sid(self, sid: str) -> DirectoryUser | None:
        if not self.supports_sid_lookup(sid):
            return None
        entry = await self._entry_by_sid(sid, self._map.user_object_class)
        if entry is None:
            logger.debug("User not found with SID: %s", sid)
            return None
        return self._user(entry)

    async def get_group_by_sid(self, sid: str) -> DirectoryGroup | None:
        if not self.supports_sid_lookup(sid):
            return None
        entry = await self._group_entry(sid)
        if entry is None:
            logger.debug("Group not found with SID: %s", sid)
            return None
        return self._group(entry)

    # ----- Foreign-entity resolver -----

    def can_handle_foreign_entity(self, entity: DirectoryEntity) -> bool:
        return entity.provider_id == self.provider_id or entity.provider_id in self._config.foreign_providers

    async def resolve_foreign_entity(self, entity: DirectoryMember) -> MemberReference | None:
        if not self.can_handle_foreign_entity(entity):
            return None
        attribute = self._config.foreign_sid_attribute
        entries = await self._search(f"({attribute}={escape_filter_chars(entity.sid)})")
        if not entries:
            logger.debug("No entry with %s=%s", attribute, entity.sid)
            return None
        return MemberReference(key=entries[0].dn, kind=entity.kind)

    # ----- Storage hooks -----

    async def _resolve_own_entity(self, entity: DirectoryMember) -> MemberReference | None:
        if entity.kind is EntityKind.GROUP:
            entry = await self._group_entry(entity.sid)
        else:
            entry = await self._entry_by_sid(entity.sid, self._map.user_object_class)
        if entry is None:
            return None
        return MemberReference(key=entry.dn, kind=entity.kind, sid=entity.sid, provider_id=self.provider_id)

    async def _member_references(self, group: DirectoryGroup) -> list[MemberReference]:
        group_entry = await self._require_group(group)
        fresh = await self._entry(group_entry.dn)
        if fresh is None:
            self._group_cache.pop(group.sid, None)
            raise NotFoundError(f"Group with SID {group.sid} not found")
        return [
            MemberReference(key=dn)
            for dn in fresh.values(self._map.group_member)
            if dn.strip()
        ]

    async def _store_member(self, group: DirectoryGroup, reference: MemberReference) -> None:
        await self._modify_members(group, MODIFY_ADD, reference.key)

    async def _discard_member(self, group: DirectoryGroup, reference: MemberReference) -> None:
        # Remove the value exactly as stored, which may differ in case
        stored = next(
            (r.key for r in await self._member_references(group) if self._same_reference(r, reference)),
            reference.key,
        )
        await self._modify_members(group, MODIFY_DELETE, stored)

    async def _materialize(self, reference: MemberReference) -> DirectoryMember | None:
        entry = await self._entry(reference.key)
        if entry is None:
            return None
        if self._is_group(entry):
            return self._group(entry)
        return self._user(entry)

    def _same_reference(self, left: MemberReference, right: MemberReference) -> bool:
        return left.key.casefold() == right.key.casefold()

    # ----- Internals -----

    def _new_sid(self) -> str:
        return f"{SID_PREFIX}{uuid.uuid4().hex}"

    def _is_group(self, entry: LdapEntry) -> bool:
        wanted = self._map.group_object_class.casefold()
        return any(c.casefold() == wanted for c in entry.values(self._map.object_class))

    def _user(self, entry: LdapEntry) -> DirectoryUser | None:
        sid = entry.first(self._map.sid)
        if not sid:
            return None
        username = entry.first(self._map.username) or entry.first(self._map.user_rdn) or entry.dn
        return DirectoryUser(
            sid=sid,
            provider_id=self.provider_id,
            username=username,
            display_name=entry.first(self._map.display_name) or entry.first(self._map.user_rdn) or username,
            email=entry.first(self._map.email),
        )

    def _group(self, entry: LdapEntry) -> DirectoryGroup | None:
        sid = entry.first(self._map.sid)
        if not sid:
            return None
        return DirectoryGroup(
            provider=self,
            sid=sid,
            provider_id=self.provider_id,
            group_name=entry.first(self._map.group_name) or entry.first(self._map.group_rdn) or entry.dn,
            description=entry.first(self._map.group_description) or "",
        )

    async def _group_entry(self, sid: str) -> LdapEntry | None:
        """Group entry by sid. Only sid lookups populate the cache."""
        cached = self._group_cache.get(sid)
        if cached is not None:
            return cached
        entry = await self._entry_by_sid(sid, self._map.group_object_class)
        if entry is not None:
            self._group_cache[sid] = entry
        return entry

    async def _require_group(self, group: DirectoryGroup) -> LdapEntry:
        entry = await self._group_entry(group.sid)
        if entry is None:
            logger.warning("Group with SID '%s' not found", group.sid)
            raise NotFoundError(f"Group with SID {group.sid} not found")
        return entry

    async def _modify_members(self, group: DirectoryGroup, operation: str, member_dn: str) -> None:
        entry = await self._require_group(group)
        changes = {self._map.group_member: [(operation, [member_dn])]}
        ok, result = await self._run(self._modify_sync, entry.dn, changes)
        self._group_cache.pop(group.sid, None)
        if not ok:
            logger.error("Failed to modify members of '%s': %s", entry.dn, result)
            raise BackendError(self.provider_id, f"Failed to modify group {entry.dn}: {result}")

    async def _add(self, dn: str, object_classes: list[str], attributes: dict[str, Any], what: str) -> None:
        ok, result = await self._run(self._add_sync, dn, object_classes, attributes)
        if not ok:
            logger.error("Failed to create %s '%s': %s", what, dn, result)
            raise BackendError(self.provider_id, f"Failed to create {what}: {result}")

    async def _entry_by_sid(self, sid: str, object_class: str) -> LdapEntry | None:
        entries = await self._search(
            f"(&({self._map.object_class}={object_class})({self._map.sid}={escape_filter_chars(sid)}))"
        )
        return entries[0] if entries else None

    async def _entry(self, dn: str) -> LdapEntry | None:
        entries = await self._run(self._search_sync, dn, f"({self._map.object_class}=*)", BASE)
        return entries[0] if entries else None

    async def _search(self, search_filter: str) -> list[LdapEntry]:
        return await self._run(self._search_sync, self._config.base_dn, search_filter, SUBTREE)

    async def _run(self, func: Callable[..., T], *args: Any) -> T:
        connection = self.connection
        async with self._lock:
            try:
                return await asyncio.to_thread(func, connection, *args)
            except LDAPException as exc:
                logger.exception("LDAP operation failed")
                raise BackendError(self.provider_id, f"LDAP operation failed: {exc}") from exc

    # ----- Blocking calls, run in a worker thread -----

    def _requested_attributes(self) -> list[str]:
        m = self._map
        names = [
            m.object_class,
            m.sid,
            m.username,
            m.display_name,
            m.email,
            m.user_rdn,
            m.group_name,
            m.group_rdn,
            m.group_description,
            m.group_member,
        ]
        return list(dict.fromkeys(names))

    def _search_sync(self, connection: Connection, base: str, search_filter: str, scope: str) -> list[LdapEntry]:
        found = connection.search(
            base, search_filter, search_scope=scope, attributes=self._requested_attributes()
        )
        if not found:
            return []
        entries = []
        for item in connection.response or []:
            if item.get("type") != "searchResEntry":
                continue
            raw: Mapping[str, Any] = item.get("raw_attributes") or item.get("attributes") or {}
            entries.append(
                LdapEntry(dn=item["dn"], attributes={name: _decode(values) for name, values in raw.items()})
            )
        return entries

    def _add_sync(
        self, connection: Connection, dn: str, object_classes: list[str], attributes: dict[str, Any]
    ) -> tuple[bool, Any]:
        ok = connection.add(dn, object_classes, attributes)
        return ok, connection.result.get("description")

    def _modify_sync(self, connection: Connection, dn: str, changes: dict[str, Any]) -> tuple[bool, Any]:
        ok = connection.modify(dn, changes)
        return ok, connection.result.get("description")
