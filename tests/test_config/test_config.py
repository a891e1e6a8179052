"""Tests for federation config loading and registry construction."""

from pathlib import Path

import pytest
from ldap3 import MOCK_SYNC, Connection, Server
from pydantic import ValidationError

from dirfed.config import FederationConfig, build_registry
from dirfed.errors import BackendError
from dirfed.providers.json_file import JsonFileProvider, JsonFileProviderConfig
from dirfed.providers.ldap import LdapProvider, LdapProviderConfig
from dirfed.providers.posix import PosixProviderConfig

CONFIG_YAML = """\
providers:
  - type: json_file
    path: data/directory.json
    sid_prefix: "X-"
  - type: ldap
    server: ldap.example.com
    base_dn: dc=example,dc=com
    bind_dn: cn=admin,dc=example,dc=com
    password: secret
    attributes:
      sid: description
  - type: posix
"""


def test_from_yaml(tmp_path: Path) -> None:
    path = tmp_path / "dirfed.yaml"
    path.write_text(CONFIG_YAML)
    config = FederationConfig.from_yaml(path)

    json_config, ldap_config, posix_config = config.providers
    assert isinstance(json_config, JsonFileProviderConfig)
    assert json_config.path == tmp_path / "data" / "directory.json"
    assert json_config.sid_prefix == "X-"
    assert isinstance(ldap_config, LdapProviderConfig)
    assert ldap_config.port == 389
    assert ldap_config.password.get_secret_value() == "secret"
    assert ldap_config.attributes.sid == "description"
    assert ldap_config.attributes.username == "uid"
    assert ldap_config.foreign_providers == ["PosixLocal", "ActiveDirectory"]
    assert ldap_config.foreign_sid_attribute == "foreignSid"
    assert isinstance(posix_config, PosixProviderConfig)


def test_unknown_provider_type(tmp_path: Path) -> None:
    path = tmp_path / "dirfed.yaml"
    path.write_text("providers:\n  - type: carrier_pigeon\n")
    with pytest.raises(ValidationError):
        FederationConfig.from_yaml(path)


def test_empty_file(tmp_path: Path) -> None:
    path = tmp_path / "dirfed.yaml"
    path.write_text("")
    assert FederationConfig.from_yaml(path).providers == []


@pytest.mark.asyncio
async def test_build_registry(tmp_path: Path) -> None:
    path = tmp_path / "dirfed.yaml"
    path.write_text(CONFIG_YAML)
    config = FederationConfig.from_yaml(path)

    def mock_connection(ldap_config: LdapProviderConfig) -> Connection:
        conn = Connection(
            Server("fake_ldap"), user=ldap_config.bind_dn, password="secret", client_strategy=MOCK_SYNC
        )
        conn.strategy.add_entry(ldap_config.bind_dn, {"userPassword": "secret", "sn": "admin"})
        conn.bind()
        return conn

    registry = await build_registry(config, ldap_connection_factory=mock_connection)
    try:
        assert set(registry.providers) == {"JsonFile", "LdapNet", "PosixLocal"}
        assert isinstance(registry.get_provider("JsonFile"), JsonFileProvider)
        assert isinstance(registry.get_provider("LdapNet"), LdapProvider)
        assert (tmp_path / "data" / "directory.json").exists()
        assert registry.get_provider("LdapNet").peer("JsonFile") is registry.get_provider("JsonFile")
    finally:
        await registry.close_all()


@pytest.mark.asyncio
async def test_build_registry_init_failure(tmp_path: Path) -> None:
    store = tmp_path / "directory.json"
    store.write_text("not json")
    config = FederationConfig(providers=[JsonFileProviderConfig(path=store)])
    with pytest.raises(BackendError):
        await build_registry(config)
