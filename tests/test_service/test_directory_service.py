"""Tests for the aggregating directory service."""

from __future__ import annotations

import pytest

from dirfed.errors import (
    DirectoryErrorGroup,
    InvalidArgumentError,
    NotFoundError,
    ProviderQueryError,
    UnsupportedError,
)
from dirfed.models.entities import (
    DirectoryGroup,
    DirectoryMember,
    DirectoryUser,
    GroupCreationParams,
    UserCreationParams,
)
from dirfed.providers.base import DirectoryProvider, MemberReference
from dirfed.service import DirectoryService


class StubProvider(DirectoryProvider):
    """In-memory provider that counts lookups and can be told to fail."""

    def __init__(self, provider_id: str, prefix: str, *, fail: bool = False) -> None:
        super().__init__()
        self._id = provider_id
        self.prefix = prefix
        self.fail = fail
        self.users: dict[str, DirectoryUser] = {}
        self.groups: dict[str, DirectoryGroup] = {}
        self.lookups = 0

    @property
    def provider_id(self) -> str:
        return self._id

    def add_user(self, username: str) -> DirectoryUser:
        user = DirectoryUser(
            sid=f"{self.prefix}{len(self.users) + 1}",
            provider_id=self._id,
            username=username,
            display_name=username.title(),
        )
        self.users[user.sid] = user
        return user

    def add_group(self, group_name: str) -> DirectoryGroup:
        group = DirectoryGroup(
            provider=self, sid=f"{self.prefix}g{len(self.groups) + 1}", provider_id=self._id, group_name=group_name
        )
        self.groups[group.sid] = group
        return group

    def _maybe_fail(self) -> None:
        if self.fail:
            raise ConnectionError(f"{self._id} is down")

    async def create_user(self, params: UserCreationParams) -> DirectoryUser:
        return self.add_user(params.username)

    async def create_group(self, params: GroupCreationParams) -> DirectoryGroup:
        return self.add_group(params.group_name)

    async def find_user(self, username: str) -> DirectoryUser | None:
        self._maybe_fail()
        return next((u for u in self.users.values() if u.username == username), None)

    async def find_group(self, group_name: str) -> DirectoryGroup | None:
        return next((g for g in self.groups.values() if g.group_name == group_name), None)

    def supports_sid_lookup(self, sid: str) -> bool:
        return sid.startswith(self.prefix)

    async def get_user_by_sid(self, sid: str) -> DirectoryUser | None:
        self.lookups += 1
        self._maybe_fail()
        return self.users.get(sid)

    async def get_group_by_sid(self, sid: str) -> DirectoryGroup | None:
        self.lookups += 1
        self._maybe_fail()
        return self.groups.get(sid)

    async def _resolve_own_entity(self, entity: DirectoryMember) -> MemberReference | None:
        return None

    async def _member_references(self, group: DirectoryGroup) -> list[MemberReference]:
        return []

    async def _store_member(self, group: DirectoryGroup, reference: MemberReference) -> None:
        pass

    async def _discard_member(self, group: DirectoryGroup, reference: MemberReference) -> None:
        pass

    async def _materialize(self, reference: MemberReference) -> DirectoryMember | None:
        return None


def test_requires_providers() -> None:
    with pytest.raises(InvalidArgumentError):
        DirectoryService([])


def test_duplicate_provider_ids_replace() -> None:
    first = StubProvider("A", "A-")
    second = StubProvider("A", "A-")
    service = DirectoryService([first, second])
    assert service.get_provider("A") is second
    assert list(service.providers) == ["A"]


def test_get_unknown_provider() -> None:
    service = DirectoryService([StubProvider("A", "A-")])
    with pytest.raises(NotFoundError):
        service.get_provider("B")


@pytest.mark.asyncio
async def test_search_unions_in_registration_order() -> None:
    a, b = StubProvider("A", "A-"), StubProvider("B", "B-")
    alice_a = a.add_user("alice")
    alice_b = b.add_user("alice")
    service = DirectoryService([a, b])

    assert await service.search_users("alice") == [alice_a, alice_b]
    assert await service.search_users("nobody") == []


@pytest.mark.asyncio
async def test_search_empty_term_rejected() -> None:
    service = DirectoryService([StubProvider("A", "A-")])
    with pytest.raises(InvalidArgumentError):
        await service.search_users("")


@pytest.mark.asyncio
async def test_search_partial_failure_returns_results() -> None:
    healthy, broken = StubProvider("A", "A-"), StubProvider("B", "B-", fail=True)
    alice = healthy.add_user("alice")
    service = DirectoryService([healthy, broken])

    assert await service.search_users("alice") == [alice]


@pytest.mark.asyncio
async def test_search_single_failure_raises_it() -> None:
    healthy, broken = StubProvider("A", "A-"), StubProvider("B", "B-", fail=True)
    service = DirectoryService([healthy, broken])

    with pytest.raises(ProviderQueryError) as exc_info:
        await service.search_users("alice")
    assert exc_info.value.provider_id == "B"
    assert isinstance(exc_info.value.__cause__, ConnectionError)


@pytest.mark.asyncio
async def test_search_total_failure_raises_group() -> None:
    service = DirectoryService([StubProvider("A", "A-", fail=True), StubProvider("B", "B-", fail=True)])

    with pytest.raises(DirectoryErrorGroup) as exc_info:
        await service.search_users("alice")
    assert {e.provider_id for e in exc_info.value.exceptions} == {"A", "B"}


@pytest.mark.asyncio
async def test_get_by_id_only_queries_matching_providers() -> None:
    a, b = StubProvider("A", "A-"), StubProvider("B", "B-")
    user = b.add_user("bob")
    service = DirectoryService([a, b])

    assert await service.get_user_by_id(user.sid) == user
    assert a.lookups == 0
    assert b.lookups == 1


@pytest.mark.asyncio
async def test_get_by_id_unsupported_sid() -> None:
    service = DirectoryService([StubProvider("A", "A-")])
    with pytest.raises(UnsupportedError):
        await service.get_user_by_id("Z-1")


@pytest.mark.asyncio
async def test_get_by_id_not_found() -> None:
    service = DirectoryService([StubProvider("A", "A-")])
    with pytest.raises(NotFoundError):
        await service.get_group_by_id("A-g9")


@pytest.mark.asyncio
async def test_get_by_id_first_hit_in_registration_order() -> None:
    # Both providers claim the prefix; the earlier registration wins
    first, second = StubProvider("First", "X-"), StubProvider("Second", "X-")
    first.add_user("one")
    second.add_user("two")
    service = DirectoryService([first, second])

    user = await service.get_user_by_id("X-1")
    assert user.provider_id == "First"


@pytest.mark.asyncio
async def test_get_by_id_failure_ignored_when_found_elsewhere() -> None:
    broken, healthy = StubProvider("Broken", "X-", fail=True), StubProvider("Healthy", "X-")
    user = healthy.add_user("bob")
    service = DirectoryService([broken, healthy])

    assert await service.get_user_by_id(user.sid) == user


@pytest.mark.asyncio
async def test_get_group_by_id() -> None:
    a = StubProvider("A", "A-")
    group = a.add_group("admins")
    service = DirectoryService([a])
    assert await service.get_group_by_id(group.sid) == group
