"""Error taxonomy shared by the store, writer, provisioner and reconciler.

Every error raised by warden derives from :class:`WardenError`, so callers
that only care about "did the configuration layer fail" can catch one type.
Underlying causes are always chained (``raise ... from exc``).
"""

from __future__ import annotations


class WardenError(Exception):
    """Base class for all warden errors."""


class NotInitializedError(WardenError):
    """The store was read before any snapshot was set."""

    def __init__(self) -> None:
        super().__init__("configuration has not been initialized")


class PathNotConfiguredError(WardenError):
    """Persistence was attempted without a destination path."""

    def __init__(self) -> None:
        super().__init__("cannot write configuration, no path defined")


class ConfigIOError(WardenError):
    """A filesystem or serialization step failed."""


class DocumentError(WardenError):
    """The configuration document could not be read or parsed."""


class LookupFailedError(WardenError):
    """Account lookup failed for a reason other than an unknown account."""


class UnknownAccountError(LookupFailedError):
    """The account does not exist; the only lookup outcome that triggers creation."""

    def __init__(self, username: str) -> None:
        super().__init__(f"unknown account: {username}")
        self.username = username


class ProvisioningFailedError(WardenError):
    """The account-creation command failed."""


class PersistFailedError(WardenError):
    """The identity was resolved but writing it back to disk failed."""
