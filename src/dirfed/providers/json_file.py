"""File-backed directory provider.

Users and groups live in a single JSON document. Group members are stored as
``{sid, provider_id, member_type}`` cross-references, so this provider can
hold members owned by any other provider without translating them.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ValidationError

from dirfed.errors import AlreadyExistsError, BackendError, NotFoundError
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
from dirfed.storage.json_file import (
    DirectoryDocument,
    GroupRecord,
    JsonDirectoryStore,
    MemberRecord,
    UserRecord,
)

logger = logging.getLogger(__name__)


class JsonFileProviderConfig(BaseModel):
    type: Literal["json_file"] = "json_file"
    path: Path
    provider_id: str = "JsonFile"
    sid_prefix: str = "J-"
    # None accepts members from every provider
    foreign_providers: list[str] | None = None


class JsonFileProvider(DirectoryProvider):
    def __init__(self, config: JsonFileProviderConfig) -> None:
        super().__init__()
        self._config = config
        self._store = JsonDirectoryStore(config.path)

    @property
    def provider_id(self) -> str:
        return self._config.provider_id

    async def initialize(self) -> None:
        logger.info("Initializing JSON file provider with file: %s", self._store.path)
        try:
            await self._store.initialize()
        except ValidationError as exc:
            logger.error("Error parsing JSON file: %s", self._store.path)
            raise BackendError(self.provider_id, f"Error parsing JSON file: {self._store.path}") from exc
        except OSError as exc:
            logger.error("IO error accessing file: %s", self._store.path)
            raise BackendError(self.provider_id, f"IO error accessing file: {self._store.path}") from exc
        document = self._store.document
        logger.info(
            "Loaded %d users and %d groups from %s",
            len(document.users),
            len(document.groups),
            self._store.path,
        )

    async def close(self) -> None:
        await self._store.close()

    # ----- Users and groups -----

    async def create_user(self, params: UserCreationParams) -> DirectoryUser:
        require_name(params.username, "Username")
        logger.info("Creating user with username: %s", params.username)
        async with self._transaction() as document:
            if document.user_by_name(params.username) is not None:
                logger.warning("User with username '%s' already exists", params.username)
                raise AlreadyExistsError(f"User with username '{params.username}' already exists")
            record = UserRecord(
                sid=self._new_sid(),
                username=params.username,
                display_name=params.display_name or params.username,
                email=params.email,
                created_at=datetime.now(UTC),
            )
            document.users.append(record)
        logger.debug("User created with SID: %s", record.sid)
        return self._user(record)

    async def create_group(self, params: GroupCreationParams) -> DirectoryGroup:
        require_name(params.group_name, "Group name")
        logger.info("Creating group with name: %s", params.group_name)
        async with self._transaction() as document:
            if document.group_by_name(params.group_name) is not None:
                logger.warning("Group with name '%s' already exists", params.group_name)
                raise AlreadyExistsError(f"Group with name '{params.group_name}' already exists")
            record = GroupRecord(
                sid=self._new_sid(),
                group_name=params.group_name,
                description=params.description or "",
                created_at=datetime.now(UTC),
            )
            document.groups.append(record)
        logger.debug("Group created with SID: %s", record.sid)
        return self._group(record)

    async def find_user(self, username: str) -> DirectoryUser | None:
        require_name(username, "Username")
        record = self._store.document.user_by_name(username)
        if record is None:
            logger.debug("User not found with username: %s", username)
            return None
        return self._user(record)

    async def find_group(self, group_name: str) -> DirectoryGroup | None:
        require_name(group_name, "Group name")
        record = self._store.document.group_by_name(group_name)
        if record is None:
            logger.debug("Group not found with name: %s", group_name)
            return None
        return self._group(record)

    async def search_users(
        self, term: str, search_type: UserSearchType = UserSearchType.USERNAME
    ) -> list[DirectoryUser]:
        require_name(term, "Search term")
        needle = term.casefold()
        users = self._store.document.users
        if search_type is UserSearchType.USERNAME:
            matches = [u for u in users if u.username.casefold() == needle]
        elif search_type is UserSearchType.DISPLAY_NAME:
            matches = [u for u in users if needle in u.display_name.casefold()]
        else:
            matches = [u for u in users if u.email and u.email.casefold() == needle]
        return [self._user(record) for record in matches]

    # ----- Lookup by sid -----

    def supports_sid_lookup(self, sid: str) -> bool:
        return sid.startswith(self._config.sid_prefix)

    async def get_user_by_sid(self, sid: str) -> DirectoryUser | None:
        if not self.supports_sid_lookup(sid):
            return None
        record = self._store.document.user_by_sid(sid)
        if record is None:
            logger.debug("User not found with SID: %s", sid)
            return None
        return self._user(record)

    async def get_group_by_sid(self, sid: str) -> DirectoryGroup | None:
        if not self.supports_sid_lookup(sid):
            return None
        record = self._store.document.group_by_sid(sid)
        if record is None:
            logger.debug("Group not found with SID: %s", sid)
            return None
        return self._group(record)

    # ----- Foreign-entity resolver -----

    def can_handle_foreign_entity(self, entity: DirectoryEntity) -> bool:
        if entity.provider_id == self.provider_id:
            return True
        allowed = self._config.foreign_providers
        return allowed is None or entity.provider_id in allowed

    async def resolve_foreign_entity(self, entity: DirectoryMember) -> MemberReference | None:
        # The stored cross-reference is the foreign identity itself
        if not self.can_handle_foreign_entity(entity):
            return None
        return self._reference(entity.sid, entity.provider_id, entity.kind)

    # ----- Storage hooks -----

    async def _resolve_own_entity(self, entity: DirectoryMember) -> MemberReference | None:
        document = self._store.document
        if entity.kind is EntityKind.USER:
            found = document.user_by_sid(entity.sid) is not None
        else:
            found = document.group_by_sid(entity.sid) is not None
        if not found:
            return None
        return self._reference(entity.sid, self.provider_id, entity.kind)

    async def _member_references(self, group: DirectoryGroup) -> list[MemberReference]:
        record = self._require_group(self._store.document, group)
        return [self._reference(m.sid, m.provider_id, m.member_type) for m in record.members]

    async def _store_member(self, group: DirectoryGroup, reference: MemberReference) -> None:
        async with self._transaction() as document:
            record = self._require_group(document, group)
            # Checked again under the store lock, a concurrent add may have committed first
            if any(m.sid == reference.sid and m.provider_id == reference.provider_id for m in record.members):
                logger.debug("'%s' was added to group '%s' concurrently", reference.key, group.group_name)
                return
            record.members.append(
                MemberRecord(
                    sid=reference.sid,
                    provider_id=reference.provider_id,
                    member_type=reference.kind,
                )
            )
            record.last_modified = datetime.now(UTC)

    async def _discard_member(self, group: DirectoryGroup, reference: MemberReference) -> None:
        async with self._transaction() as document:
            record = self._require_group(document, group)
            record.members = [
                m
                for m in record.members
                if not (m.sid == reference.sid and m.provider_id == reference.provider_id)
            ]
            record.last_modified = datetime.now(UTC)

    async def _materialize(self, reference: MemberReference) -> DirectoryMember | None:
        owner = self.peer(reference.provider_id)
        if owner is None:
            logger.warning(
                "No provider '%s' registered to resolve member '%s'",
                reference.provider_id,
                reference.sid,
            )
            return None
        if reference.kind is EntityKind.GROUP:
            return await owner.get_group_by_sid(reference.sid)
        return await owner.get_user_by_sid(reference.sid)

    # ----- Internals -----

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[DirectoryDocument]:
        try:
            async with self._store.transaction() as document:
                yield document
        except OSError as exc:
            logger.error("Error saving JSON file: %s", self._store.path)
            raise BackendError(self.provider_id, f"Error saving JSON file: {self._store.path}") from exc

    def _require_group(self, document: DirectoryDocument, group: DirectoryGroup) -> GroupRecord:
        record = document.group_by_sid(group.sid)
        if record is None:
            logger.warning("Group with SID '%s' not found", group.sid)
            raise NotFoundError(f"Group with SID {group.sid} not found")
        return record

    def _new_sid(self) -> str:
        return f"{self._config.sid_prefix}{uuid.uuid4().hex}"

    @staticmethod
    def _reference(sid: str, provider_id: str, kind: EntityKind) -> MemberReference:
        return MemberReference(key=f"{provider_id}:{sid}", kind=kind, sid=sid, provider_id=provider_id)

    def _user(self, record: UserRecord) -> DirectoryUser:
        return DirectoryUser(
            sid=record.sid,
            provider_id=self.provider_id,
            username=record.username,
            display_name=record.display_name,
            email=record.email,
        )

    def _group(self, record: GroupRecord) -> DirectoryGroup:
        return DirectoryGroup(
            provider=self,
            sid=record.sid,
            provider_id=self.provider_id,
            group_name=record.group_name,
            description=record.description,
        )
