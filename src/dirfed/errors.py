"""Error taxonomy shared by providers, the directory service and the registry."""

from __future__ import annotations


class DirectoryError(Exception):
    """Base class for every failure raised by dirfed."""


class NotFoundError(DirectoryError):
    """A hard miss on a key-addressed lookup or mutation."""


class AlreadyExistsError(DirectoryError):
    """A name collision was detected at creation time."""


class WrongProviderError(DirectoryError):
    """An entity was handed to a provider that is not its home provider."""


class UnsupportedError(DirectoryError):
    """No provider (or backend) can satisfy the request."""


class ResolutionFailedError(DirectoryError):
    """A foreign entity could not be mapped into the provider's store."""


class InvalidArgumentError(DirectoryError, ValueError):
    """A caller passed an empty or malformed argument."""


class InvalidStateError(DirectoryError):
    """The operation is not valid in the current state (e.g. no providers)."""


class BackendError(DirectoryError):
    """Wraps an underlying I/O or protocol failure; the cause is chained."""

    def __init__(self, provider_id: str, message: str) -> None:
        super().__init__(f"Provider '{provider_id}': {message}")
        self.provider_id = provider_id


class ProviderQueryError(DirectoryError):
    """A single provider failed while the directory service fanned out a query."""

    def __init__(self, provider_id: str, message: str) -> None:
        super().__init__(f"Provider '{provider_id}': {message}")
        self.provider_id = provider_id


class DirectoryErrorGroup(ExceptionGroup):
    """Several providers failed and none produced a result."""
