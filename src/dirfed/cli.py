"""CLI entry point for dirfed."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from dirfed.config import FederationConfig, build_registry
from dirfed.errors import DirectoryError, DirectoryErrorGroup
from dirfed.models.entities import (
    DirectoryGroup,
    DirectoryMember,
    DirectoryUser,
    EntityKind,
    GroupCreationParams,
    UserCreationParams,
    UserSearchType,
)
from dirfed.registry import ProviderRegistry

app = typer.Typer(
    name="dirfed",
    help="Federated directory services: users and groups across JSON, LDAP and local accounts.",
    no_args_is_help=True,
)
console = Console()

DEFAULT_CONFIG = Path("dirfed.yaml")


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _run(config: Path, verbose: bool, action: Callable[[ProviderRegistry], Awaitable[None]]) -> None:
    _setup_logging(verbose)

    async def _main() -> None:
        registry = await build_registry(FederationConfig.from_yaml(config))
        try:
            await action(registry)
        finally:
            await registry.close_all()

    try:
        asyncio.run(_main())
    except FileNotFoundError:
        console.print(f"[red]Config file not found: {config}[/red]")
        raise typer.Exit(1)
    except ValidationError as e:
        console.print(f"[red]Invalid config {config}:[/red]\n{escape(str(e))}")
        raise typer.Exit(1)
    except DirectoryErrorGroup as e:
        console.print(f"[red]Error: {escape(e.message)}[/red]")
        for error in e.exceptions:
            console.print(f"[red]  - {escape(str(error))}[/red]")
        raise typer.Exit(1)
    except DirectoryError as e:
        console.print(f"[red]Error: {escape(str(e))}[/red]")
        raise typer.Exit(1)


def _print_user(user: DirectoryUser) -> None:
    console.print(f"[bold]{user.username}[/bold] ({user.provider_id})")
    console.print(f"  SID: {user.sid}")
    console.print(f"  Display name: {user.display_name}")
    if user.email:
        console.print(f"  Email: {user.email}")


def _print_group(group: DirectoryGroup) -> None:
    console.print(f"[bold]{group.group_name}[/bold] ({group.provider_id})")
    console.print(f"  SID: {group.sid}")
    if group.description:
        console.print(f"  Description: {group.description}")


def _member_label(member: DirectoryMember) -> str:
    if isinstance(member, DirectoryGroup):
        return member.group_name
    return member.username


async def _lookup_member(registry: ProviderRegistry, sid: str, kind: EntityKind) -> DirectoryMember:
    service = registry.get_service()
    if kind is EntityKind.GROUP:
        return await service.get_group_by_id(sid)
    return await service.get_user_by_id(sid)


@app.command()
def providers(
    config: Path = typer.Option(DEFAULT_CONFIG, help="Path to federation config"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """List the configured providers."""

    async def _providers(registry: ProviderRegistry) -> None:
        table = Table(title="Directory Providers")
        table.add_column("Provider ID", style="cyan")
        table.add_column("Backend")
        for provider_id, provider in registry.providers.items():
            table.add_row(provider_id, type(provider).__name__)
        console.print(table)

    _run(config, verbose, _providers)


@app.command()
def search(
    term: str = typer.Argument(help="Text to search for"),
    by: UserSearchType = typer.Option(UserSearchType.USERNAME, help="Attribute to search"),
    config: Path = typer.Option(DEFAULT_CONFIG, help="Path to federation config"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Search users across every provider."""

    async def _search(registry: ProviderRegistry) -> None:
        users = await registry.get_service().search_users(term, by)
        if not users:
            console.print("[dim]No users found.[/dim]")
            return
        table = Table(title=f"Users matching '{term}'")
        table.add_column("Username", style="cyan")
        table.add_column("Display name")
        table.add_column("Email")
        table.add_column("Provider")
        table.add_column("SID", style="dim")
        for user in users:
            table.add_row(user.username, user.display_name, user.email or "", user.provider_id, user.sid)
        console.print(table)

    _run(config, verbose, _search)


@app.command("get-user")
def get_user(
    sid: str = typer.Argument(help="User SID"),
    config: Path = typer.Option(DEFAULT_CONFIG, help="Path to federation config"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Show a user by SID."""

    async def _get_user(registry: ProviderRegistry) -> None:
        _print_user(await registry.get_service().get_user_by_id(sid))

    _run(config, verbose, _get_user)


@app.command("get-group")
def get_group(
    sid: str = typer.Argument(help="Group SID"),
    config: Path = typer.Option(DEFAULT_CONFIG, help="Path to federation config"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Show a group by SID."""

    async def _get_group(registry: ProviderRegistry) -> None:
        _print_group(await registry.get_service().get_group_by_id(sid))

    _run(config, verbose, _get_group)


@app.command("create-user")
def create_user(
    provider: str = typer.Argument(help="Provider ID to create the user in"),
    username: str = typer.Argument(help="User name"),
    display_name: str | None = typer.Option(None, help="Display name"),
    email: str | None = typer.Option(None, help="Email address"),
    config: Path = typer.Option(DEFAULT_CONFIG, help="Path to federation config"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Create a user in one provider."""

    async def _create_user(registry: ProviderRegistry) -> None:
        params = UserCreationParams(username=username, display_name=display_name, email=email)
        user = await registry.get_provider(provider).create_user(params)
        console.print(f"[green]Created user {user.username}[/green]")
        _print_user(user)

    _run(config, verbose, _create_user)


@app.command("create-group")
def create_group(
    provider: str = typer.Argument(help="Provider ID to create the group in"),
    group_name: str = typer.Argument(help="Group name"),
    description: str | None = typer.Option(None, help="Group description"),
    config: Path = typer.Option(DEFAULT_CONFIG, help="Path to federation config"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Create a group in one provider."""

    async def _create_group(registry: ProviderRegistry) -> None:
        params = GroupCreationParams(group_name=group_name, description=description)
        group = await registry.get_provider(provider).create_group(params)
        console.print(f"[green]Created group {group.group_name}[/green]")
        _print_group(group)

    _run(config, verbose, _create_group)


@app.command("add-member")
def add_member(
    group_sid: str = typer.Argument(help="SID of the group to change"),
    member_sid: str = typer.Argument(help="SID of the member to add"),
    kind: EntityKind = typer.Option(EntityKind.USER, help="Whether the member is a user or a group"),
    config: Path = typer.Option(DEFAULT_CONFIG, help="Path to federation config"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Add a user or group, from any provider, to a group."""

    async def _add_member(registry: ProviderRegistry) -> None:
        group = await registry.get_service().get_group_by_id(group_sid)
        member = await _lookup_member(registry, member_sid, kind)
        await group.add_member(member)
        console.print(f"[green]Added {_member_label(member)} to {group.group_name}[/green]")

    _run(config, verbose, _add_member)


@app.command("remove-member")
def remove_member(
    group_sid: str = typer.Argument(help="SID of the group to change"),
    member_sid: str = typer.Argument(help="SID of the member to remove"),
    kind: EntityKind = typer.Option(EntityKind.USER, help="Whether the member is a user or a group"),
    config: Path = typer.Option(DEFAULT_CONFIG, help="Path to federation config"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Remove a member from a group."""

    async def _remove_member(registry: ProviderRegistry) -> None:
        group = await registry.get_service().get_group_by_id(group_sid)
        member = await _lookup_member(registry, member_sid, kind)
        await group.remove_member(member)
        console.print(f"[green]Removed {_member_label(member)} from {group.group_name}[/green]")

    _run(config, verbose, _remove_member)


@app.command()
def members(
    group_sid: str = typer.Argument(help="Group SID"),
    config: Path = typer.Option(DEFAULT_CONFIG, help="Path to federation config"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """List the direct members of a group."""

    async def _members(registry: ProviderRegistry) -> None:
        group = await registry.get_service().get_group_by_id(group_sid)
        found = await group.get_members()
        if not found:
            console.print(f"[dim]{group.group_name} has no members.[/dim]")
            return
        table = Table(title=f"Members of {group.group_name}")
        table.add_column("Name", style="cyan")
        table.add_column("Kind")
        table.add_column("Provider")
        table.add_column("SID", style="dim")
        for member in found:
            table.add_row(_member_label(member), member.kind, member.provider_id, member.sid)
        console.print(table)

    _run(config, verbose, _members)


@app.command("is-member")
def is_member(
    group_sid: str = typer.Argument(help="Group SID"),
    member_sid: str = typer.Argument(help="SID of the user or group to test"),
    kind: EntityKind = typer.Option(EntityKind.USER, help="Whether the member is a user or a group"),
    config: Path = typer.Option(DEFAULT_CONFIG, help="Path to federation config"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Test direct or nested membership."""

    async def _is_member(registry: ProviderRegistry) -> None:
        group = await registry.get_service().get_group_by_id(group_sid)
        member = await _lookup_member(registry, member_sid, kind)
        if await group.is_member(member):
            console.print(f"[green]{_member_label(member)} is a member of {group.group_name}[/green]")
        else:
            console.print(f"[yellow]{_member_label(member)} is not a member of {group.group_name}[/yellow]")

    _run(config, verbose, _is_member)


if __name__ == "__main__":
    app()
