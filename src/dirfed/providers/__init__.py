"""Directory providers: the abstract contract and the concrete backends."""

from dirfed.providers.base import DirectoryProvider, MemberReference, PeerDirectory
from dirfed.providers.json_file import JsonFileProvider, JsonFileProviderConfig
from dirfed.providers.ldap import LdapAttributeMapping, LdapProvider, LdapProviderConfig
from dirfed.providers.posix import PosixAccountProvider, PosixProviderConfig

__all__ = [
    "DirectoryProvider",
    "JsonFileProvider",
    "JsonFileProviderConfig",
    "LdapAttributeMapping",
    "LdapProvider",
    "LdapProviderConfig",
    "MemberReference",
    "PeerDirectory",
    "PosixAccountProvider",
    "PosixProviderConfig",
]
