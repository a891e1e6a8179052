"""JSON file persistence for the file-backed directory provider.

The whole directory lives in one document. Mutations run inside
:meth:`JsonDirectoryStore.transaction`, which serializes writers with an
``asyncio.Lock``, works on a copy of the document and only publishes it once
the file write has completed.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, Field

from dirfed.models.entities import EntityKind


class MemberRecord(BaseModel):
    """Cross-reference to a member, possibly owned by another provider."""

    sid: str
    provider_id: str
    member_type: EntityKind


class UserRecord(BaseModel):
    sid: str
    username: str
    display_name: str
    email: str | None = None
    created_at: datetime
    last_modified: datetime | None = None


class GroupRecord(BaseModel):
    sid: str
    group_name: str
    description: str = ""
    created_at: datetime
    last_modified: datetime | None = None
    members: list[MemberRecord] = Field(default_factory=list)


class DirectoryDocument(BaseModel):
    users: list[UserRecord] = Field(default_factory=list)
    groups: list[GroupRecord] = Field(default_factory=list)

    def user_by_sid(self, sid: str) -> UserRecord | None:
        return next((u for u in self.users if u.sid == sid), None)

    def group_by_sid(self, sid: str) -> GroupRecord | None:
        return next((g for g in self.groups if g.sid == sid), None)

    def user_by_name(self, username: str) -> UserRecord | None:
        key = username.casefold()
        return next((u for u in self.users if u.username.casefold() == key), None)

    def group_by_name(self, group_name: str) -> GroupRecord | None:
        key = group_name.casefold()
        return next((g for g in self.groups if g.group_name.casefold() == key), None)


class JsonDirectoryStore:
    """Async JSON document storage."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._document: DirectoryDocument | None = None
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Load the document, creating an empty file when none exists.

        Raises OSError on I/O failure and pydantic.ValidationError when the
        file does not hold a directory document.
        """
        if self.path.exists():
            text = await asyncio.to_thread(self.path.read_text, encoding="utf-8")
            self._document = DirectoryDocument.model_validate_json(text)
        else:
            document = DirectoryDocument()
            await self._write(document)
            self._document = document

    async def close(self) -> None:
        self._document = None

    @property
    def document(self) -> DirectoryDocument:
        """Last committed document. Never observed half-written."""
        if self._document is None:
            raise RuntimeError("JsonDirectoryStore not initialized. Call initialize() first.")
        return self._document

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[DirectoryDocument]:
        """Read-modify-write scope.

        The yielded document is a private copy. It is written to disk and
        published when the block exits cleanly; on error it is discarded.
        """
        async with self._lock:
            working = self.document.model_copy(deep=True)
            yield working
            await self._write(working)
            self._document = working

    async def _write(self, document: DirectoryDocument) -> None:
        await asyncio.to_thread(self._write_file, document.model_dump_json(indent=2))

    def _write_file(self, content: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        tmp_path.write_text(content, encoding="utf-8")
        os.replace(tmp_path, self.path)
