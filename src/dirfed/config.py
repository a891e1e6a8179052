"""Federation configuration: which providers to run and how to reach them."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Annotated

import yaml
from pydantic import BaseModel, Field

from dirfed.providers.base import DirectoryProvider
from dirfed.providers.json_file import JsonFileProvider, JsonFileProviderConfig
from dirfed.providers.ldap import ConnectionFactory, LdapProvider, LdapProviderConfig, connect
from dirfed.providers.posix import PosixAccountProvider, PosixProviderConfig
from dirfed.registry import ProviderRegistry

logger = logging.getLogger(__name__)

ProviderConfig = Annotated[
    JsonFileProviderConfig | LdapProviderConfig | PosixProviderConfig,
    Field(discriminator="type"),
]


class FederationConfig(BaseModel):
    providers: list[ProviderConfig] = Field(default_factory=list)

    @classmethod
    def from_yaml(cls, path: Path) -> FederationConfig:
        """Load a federation file. Relative JSON store paths are resolved
        against the directory holding the file."""
        data = yaml.safe_load(path.read_text()) or {}
        config = cls.model_validate(data)
        for provider in config.providers:
            if isinstance(provider, JsonFileProviderConfig) and not provider.path.is_absolute():
                provider.path = path.parent / provider.path
        return config


def create_provider(
    config: ProviderConfig, ldap_connection_factory: ConnectionFactory = connect
) -> DirectoryProvider:
    if isinstance(config, JsonFileProviderConfig):
        return JsonFileProvider(config)
    if isinstance(config, LdapProviderConfig):
        return LdapProvider(config, connection_factory=ldap_connection_factory)
    return PosixAccountProvider(config)


async def build_registry(
    config: FederationConfig, ldap_connection_factory: ConnectionFactory = connect
) -> ProviderRegistry:
    """Create, register and initialize every configured provider."""
    registry = ProviderRegistry()
    for provider_config in config.providers:
        registry.register_provider(create_provider(provider_config, ldap_connection_factory))
    try:
        await registry.initialize_all()
    except Exception:
        logger.error("Provider initialization failed, closing providers")
        await registry.close_all()
        raise
    logger.info("Directory federation ready with %d providers", len(registry.providers))
    return registry
