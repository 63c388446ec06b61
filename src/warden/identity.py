"""Ensure the system account that owns workload data exists.

The account owns everything under the data directory and is the user the
workloads run as. Lookup comes first, so re-running after a partial failure
never creates a second account. Account-creation syntax differs between OS
families; each family registers an :class:`AccountCreator` keyed by a prefix
of the ``ID`` field from os-release.
"""

from __future__ import annotations

import dataclasses
import enum
import logging
import platform
import pwd
import subprocess
from typing import TYPE_CHECKING

import warden.errors

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    import warden.persist
    import warden.store

logger = logging.getLogger("warden.identity")


@dataclasses.dataclass(frozen=True)
class SystemIdentity:
    username: str
    uid: int
    gid: int


class ProvisionState(enum.Enum):
    UNRESOLVED = "unresolved"
    FOUND = "found"
    NOT_FOUND = "not_found"
    ENSURED = "ensured"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# External collaborators
# ---------------------------------------------------------------------------

def lookup_account(username: str) -> SystemIdentity:
    """Resolve *username* through the system account database."""
    try:
        entry = pwd.getpwnam(username)
    except KeyError:
        raise warden.errors.UnknownAccountError(username) from None
    except OSError as exc:
        raise warden.errors.LookupFailedError(
            f"cannot look up account {username}: {exc}"
        ) from exc
    return SystemIdentity(username=entry.pw_name, uid=entry.pw_uid, gid=entry.pw_gid)


def system_release_id() -> str:
    """Return the os-release ``ID`` (e.g. ``debian``, ``alpine``)."""
    return platform.freedesktop_os_release().get("ID", "").lower()


def run_command(argv: Sequence[str]) -> None:
    """Run *argv*, raising ``CalledProcessError`` on a non-zero exit."""
    logger.debug("Running %s", " ".join(argv))
    subprocess.run(list(argv), check=True, capture_output=True, text=True)


# ---------------------------------------------------------------------------
# Account creators
# ---------------------------------------------------------------------------

class AccountCreator:
    """Create a system account on one OS family."""

    def commands(self, username: str) -> list[list[str]]:
        raise NotImplementedError

    def create(self, username: str, executor: Callable[[Sequence[str]], None]) -> None:
        for argv in self.commands(username):
            executor(argv)


_CREATORS: dict[str, AccountCreator] = {}


def register_creator(prefix: str):
    """Class decorator: use this creator for release ids starting with *prefix*."""

    def decorator(cls: type[AccountCreator]) -> type[AccountCreator]:
        _CREATORS[prefix] = cls()
        return cls

    return decorator


class UseraddCreator(AccountCreator):
    """shadow-utils ``useradd``: Debian, Ubuntu, RHEL and most others."""

    def commands(self, username: str) -> list[list[str]]:
        return [[
            "useradd", "--system", "--no-create-home",
            "--shell", "/bin/false", username,
        ]]


@register_creator("alpine")
class BusyboxCreator(AccountCreator):
    """BusyBox ``adduser``; the group has to exist first."""

    def commands(self, username: str) -> list[list[str]]:
        return [
            ["addgroup", "-S", username],
            ["adduser", "-S", "-D", "-H", "-G", username, "-s", "/bin/false", username],
        ]


_DEFAULT_CREATOR = UseraddCreator()


def creator_for(release_id: str) -> AccountCreator:
    """Return the creator whose prefix matches *release_id*."""
    # Longest prefix wins so "alpine-edge" style overrides can be registered.
    for prefix in sorted(_CREATORS, key=len, reverse=True):
        if release_id.startswith(prefix):
            return _CREATORS[prefix]
    return _DEFAULT_CREATOR


# ---------------------------------------------------------------------------
# Provisioner
# ---------------------------------------------------------------------------

class IdentityProvisioner:
    """Look up or create the configured account and record it in the store."""

    def __init__(
        self,
        store: warden.store.ConfigStore,
        writer: warden.persist.ConfigWriter,
        *,
        lookup: Callable[[str], SystemIdentity] = lookup_account,
        release_reader: Callable[[], str] = system_release_id,
        executor: Callable[[Sequence[str]], None] = run_command,
    ) -> None:
        self.store = store
        self.writer = writer
        self._lookup = lookup
        self._release_reader = release_reader
        self._executor = executor
        self.state = ProvisionState.UNRESOLVED

    def _transition(self, state: ProvisionState) -> None:
        logger.debug("Provisioning %s -> %s", self.state.value, state.value)
        self.state = state

    def ensure(self) -> SystemIdentity:
        """Return the account, creating it if needed, and persist its ids."""
        self.state = ProvisionState.UNRESOLVED
        username = self.store.get().system.username
        try:
            identity = self._resolve(username)
        except warden.errors.WardenError:
            self._transition(ProvisionState.FAILED)
            raise

        self._transition(ProvisionState.FOUND)
        try:
            self._record(identity)
        except warden.errors.WardenError as exc:
            self._transition(ProvisionState.FAILED)
            raise warden.errors.PersistFailedError(
                f"account {identity.username} exists but could not be saved: {exc}"
            ) from exc

        self._transition(ProvisionState.ENSURED)
        return identity

    def _resolve(self, username: str) -> SystemIdentity:
        try:
            return self._lookup(username)
        except warden.errors.UnknownAccountError:
            self._transition(ProvisionState.NOT_FOUND)

        self._create(username)

        try:
            return self._lookup(username)
        except warden.errors.UnknownAccountError as exc:
            raise warden.errors.LookupFailedError(
                f"account {username} still missing after creation"
            ) from exc

    def _create(self, username: str) -> None:
        try:
            release_id = self._release_reader()
        except OSError as exc:
            raise warden.errors.ProvisioningFailedError(
                f"cannot determine system release: {exc}"
            ) from exc

        creator = creator_for(release_id)
        logger.info(
            "Creating system account %s (%s via %s)",
            username, release_id or "unknown", type(creator).__name__,
        )
        try:
            creator.create(username, self._executor)
        except (subprocess.CalledProcessError, OSError) as exc:
            detail = getattr(exc, "stderr", None) or exc
            raise warden.errors.ProvisioningFailedError(
                f"cannot create account {username}: {detail}"
            ) from exc

    def _record(self, identity: SystemIdentity) -> None:
        self.store.update(
            lambda config: config.with_system_user(
                identity.username, identity.uid, identity.gid
            )
        )
        self.writer.write_to_disk(self.store)
