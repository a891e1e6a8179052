"""Tests for the JSON file directory provider."""

import asyncio
import json
from pathlib import Path

import pytest
import pytest_asyncio

from dirfed.errors import (
    AlreadyExistsError,
    BackendError,
    InvalidArgumentError,
    NotFoundError,
    WrongProviderError,
)
from dirfed.models.entities import (
    DirectoryUser,
    GroupCreationParams,
    UserCreationParams,
    UserSearchType,
)
from dirfed.providers.json_file import JsonFileProvider, JsonFileProviderConfig


@pytest_asyncio.fixture
async def provider(tmp_path: Path):
    p = JsonFileProvider(JsonFileProviderConfig(path=tmp_path / "directory.json"))
    await p.initialize()
    yield p
    await p.close()


@pytest.mark.asyncio
async def test_create_user_defaults(provider: JsonFileProvider) -> None:
    user = await provider.create_user(UserCreationParams(username="alice"))
    assert user.sid.startswith("J-")
    assert user.provider_id == "JsonFile"
    assert user.display_name == "alice"
    assert user.email is None


@pytest.mark.asyncio
async def test_create_duplicate_user_case_insensitive(provider: JsonFileProvider) -> None:
    await provider.create_user(UserCreationParams(username="alice"))
    with pytest.raises(AlreadyExistsError):
        await provider.create_user(UserCreationParams(username="ALICE"))


@pytest.mark.asyncio
async def test_create_duplicate_group(provider: JsonFileProvider) -> None:
    await provider.create_group(GroupCreationParams(group_name="admins"))
    with pytest.raises(AlreadyExistsError):
        await provider.create_group(GroupCreationParams(group_name="Admins"))


@pytest.mark.asyncio
async def test_empty_names_rejected(provider: JsonFileProvider) -> None:
    with pytest.raises(InvalidArgumentError):
        await provider.create_user(UserCreationParams(username="  "))
    with pytest.raises(InvalidArgumentError):
        await provider.find_group("")


@pytest.mark.asyncio
async def test_find_and_lookup_by_sid(provider: JsonFileProvider) -> None:
    user = await provider.create_user(UserCreationParams(username="alice", email="a@example.com"))
    group = await provider.create_group(GroupCreationParams(group_name="admins", description="Admins"))

    assert await provider.find_user("Alice") == user
    assert await provider.find_user("nobody") is None
    assert await provider.get_user_by_sid(user.sid) == user
    found = await provider.get_group_by_sid(group.sid)
    assert found is not None
    assert found.description == "Admins"
    assert await provider.get_group_by_sid(user.sid) is None
    assert await provider.get_user_by_sid("L-123") is None


@pytest.mark.asyncio
async def test_supports_sid_lookup_uses_prefix(provider: JsonFileProvider) -> None:
    assert provider.supports_sid_lookup("J-abc")
    assert not provider.supports_sid_lookup("L-abc")


@pytest.mark.asyncio
async def test_search_types(provider: JsonFileProvider) -> None:
    await provider.create_user(
        UserCreationParams(username="alice", display_name="Alice Smith", email="alice@example.com")
    )
    await provider.create_user(UserCreationParams(username="bob", display_name="Bob Smith"))

    assert [u.username for u in await provider.search_users("ALICE")] == ["alice"]
    by_name = await provider.search_users("smith", UserSearchType.DISPLAY_NAME)
    assert {u.username for u in by_name} == {"alice", "bob"}
    by_mail = await provider.search_users("Alice@Example.com", UserSearchType.EMAIL)
    assert [u.username for u in by_mail] == ["alice"]


@pytest.mark.asyncio
async def test_add_is_member_remove(provider: JsonFileProvider) -> None:
    user = await provider.create_user(UserCreationParams(username="alice"))
    group = await provider.create_group(GroupCreationParams(group_name="admins"))

    await group.add_member(user)
    assert await group.is_member(user)
    assert await group.get_members() == [user]

    await group.remove_member(user)
    assert not await group.is_member(user)
    assert await group.get_members() == []


@pytest.mark.asyncio
async def test_add_twice_is_noop(provider: JsonFileProvider) -> None:
    user = await provider.create_user(UserCreationParams(username="alice"))
    group = await provider.create_group(GroupCreationParams(group_name="admins"))
    await group.add_member(user)
    await group.add_member(user)
    assert len(await group.get_members()) == 1


@pytest.mark.asyncio
async def test_concurrent_adds_store_member_once(provider: JsonFileProvider, tmp_path: Path) -> None:
    user = await provider.create_user(UserCreationParams(username="alice"))
    group = await provider.create_group(GroupCreationParams(group_name="admins"))

    await asyncio.gather(group.add_member(user), group.add_member(user))

    assert await group.get_members() == [user]
    stored = json.loads((tmp_path / "directory.json").read_text())
    assert len(stored["groups"][0]["members"]) == 1


@pytest.mark.asyncio
async def test_remove_non_member_is_noop(provider: JsonFileProvider) -> None:
    user = await provider.create_user(UserCreationParams(username="alice"))
    group = await provider.create_group(GroupCreationParams(group_name="admins"))
    await group.remove_member(user)
    assert await group.get_members() == []


@pytest.mark.asyncio
async def test_add_unknown_own_member_raises(provider: JsonFileProvider) -> None:
    group = await provider.create_group(GroupCreationParams(group_name="admins"))
    ghost = DirectoryUser(sid="J-missing", provider_id="JsonFile", username="ghost", display_name="Ghost")
    with pytest.raises(NotFoundError):
        await group.add_member(ghost)


@pytest.mark.asyncio
async def test_group_from_other_provider_rejected(provider: JsonFileProvider, tmp_path: Path) -> None:
    other = JsonFileProvider(
        JsonFileProviderConfig(path=tmp_path / "other.json", provider_id="Other", sid_prefix="O-")
    )
    await other.initialize()
    foreign_group = await other.create_group(GroupCreationParams(group_name="ops"))
    user = await provider.create_user(UserCreationParams(username="alice"))
    with pytest.raises(WrongProviderError):
        await provider.add_member_to_group(foreign_group, user)
    with pytest.raises(WrongProviderError):
        await provider.is_group_member(foreign_group, user)


@pytest.mark.asyncio
async def test_state_survives_reopen(tmp_path: Path) -> None:
    config = JsonFileProviderConfig(path=tmp_path / "directory.json")
    first = JsonFileProvider(config)
    await first.initialize()
    user = await first.create_user(UserCreationParams(username="alice"))
    group = await first.create_group(GroupCreationParams(group_name="admins"))
    await group.add_member(user)
    await first.close()

    second = JsonFileProvider(config)
    await second.initialize()
    reopened = await second.find_group("admins")
    assert reopened is not None
    assert await reopened.is_member(user)

    data = json.loads(config.path.read_text())
    assert data["groups"][0]["members"] == [
        {"sid": user.sid, "provider_id": "JsonFile", "member_type": "user"}
    ]


@pytest.mark.asyncio
async def test_corrupt_file_raises_backend_error(tmp_path: Path) -> None:
    path = tmp_path / "directory.json"
    path.write_text("[1, 2")
    provider = JsonFileProvider(JsonFileProviderConfig(path=path))
    with pytest.raises(BackendError) as exc_info:
        await provider.initialize()
    assert exc_info.value.provider_id == "JsonFile"
    assert exc_info.value.__cause__ is not None
