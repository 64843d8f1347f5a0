"""Exceptions raised while reviewing or refreshing repositories."""

from __future__ import annotations


class GatError(Exception):
    """Base class for every error reported to the user."""


class ConfigLoadError(GatError):
    """The configuration file is missing, unreadable or malformed."""


class BareRepositoryError(GatError):
    """The configured location is a bare repository."""

    def __init__(self, name: str, location: str):
        super().__init__(f"cannot use bare repository '{location}'")
        self.name = name
        self.location = location


class BackendError(GatError):
    """A git operation failed."""


class RepositoryNotFoundError(BackendError):
    """No repository exists at the configured location."""


class RemoteNotFoundError(BackendError):
    """The repository has no remote with the requested name."""


class CredentialError(BackendError):
    """Credentials could not be supplied for a remote."""
