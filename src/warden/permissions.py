"""Reconcile ownership of per-workload data directories.

Only directories directly under the data root whose names are canonical
UUIDv4 strings are touched. Each one is chowned on a bounded thread pool;
a failure on one directory is logged and recorded, never raised, so a single
bad directory cannot block daemon startup.
"""

from __future__ import annotations

import concurrent.futures
import dataclasses
import logging
import os
import pathlib
import re
from typing import TYPE_CHECKING

import warden.errors
import warden.identity

if TYPE_CHECKING:
    from collections.abc import Callable

    import warden.store

logger = logging.getLogger("warden.permissions")

WORKLOAD_DIR_PATTERN = re.compile(
    r"^[a-f0-9]{8}-[a-f0-9]{4}-4[a-f0-9]{3}-[89ab][a-f0-9]{3}-[a-f0-9]{12}$"
)


def is_workload_dir_name(name: str) -> bool:
    return WORKLOAD_DIR_PATTERN.fullmatch(name) is not None


@dataclasses.dataclass
class ReconcileResult:
    changed: list[str] = dataclasses.field(default_factory=list)
    failed: dict[str, str] = dataclasses.field(default_factory=dict)
    skipped: list[str] = dataclasses.field(default_factory=list)

    @property
    def errors(self) -> int:
        return len(self.failed)


class PermissionReconciler:
    """Assign workload directories to the provisioned system identity."""

    def __init__(
        self,
        store: warden.store.ConfigStore,
        *,
        max_workers: int | None = None,
        chown: Callable[..., None] = os.chown,
        lookup: Callable[[str], warden.identity.SystemIdentity] | None = None,
    ) -> None:
        self.store = store
        self.max_workers = max_workers
        self._chown = chown
        self._lookup = lookup or warden.identity.lookup_account

    def reconcile(
        self,
        root_dir: str | os.PathLike[str] | None = None,
        identity: warden.identity.SystemIdentity | None = None,
    ) -> ReconcileResult:
        """Chown every workload directory under *root_dir*.

        *root_dir* defaults to the snapshot's data directory. Without an
        *identity* the configured account is looked up, and a failed lookup
        is raised. Raises :class:`~warden.errors.ConfigIOError` if *root_dir*
        cannot be listed. Per-directory failures are only logged.
        """
        config = self.store.get()
        system = config.system
        result = ReconcileResult()
        if not system.set_permissions_on_boot:
            logger.debug("Permission reconciliation disabled")
            return result

        root = pathlib.Path(root_dir if root_dir is not None else system.data)
        if identity is None:
            identity = self._lookup(system.username)

        try:
            with os.scandir(root) as it:
                entries = list(it)
        except OSError as exc:
            raise warden.errors.ConfigIOError(
                f"cannot list data directory {root}: {exc}"
            ) from exc

        targets: list[str] = []
        for entry in entries:
            try:
                is_dir = entry.is_dir(follow_symlinks=False)
            except OSError:
                is_dir = False
            if is_dir and is_workload_dir_name(entry.name):
                targets.append(entry.name)
            else:
                result.skipped.append(entry.name)

        if not targets:
            return result

        workers = self.max_workers or system.chown_max_workers or 1
        if workers < 1:
            logger.warning("Invalid chown worker count %d, using 1", workers)
            workers = 1
        recursive = system.chown_recursive
        with concurrent.futures.ThreadPoolExecutor(
            max_workers=min(workers, len(targets)),
            thread_name_prefix="warden-chown",
        ) as pool:
            futures = {
                pool.submit(self._apply, root / name, identity, recursive): name
                for name in targets
            }
            for future in concurrent.futures.as_completed(futures):
                name = futures[future]
                try:
                    future.result()
                except OSError as exc:
                    logger.warning(
                        "failed to chown server directory %s: %s", name, exc
                    )
                    result.failed[name] = str(exc)
                else:
                    result.changed.append(name)

        logger.info(
            "Reconciled ownership of %d directories (%d failed) under %s",
            len(result.changed), result.errors, root,
        )
        return result

    def _apply(
        self,
        path: pathlib.Path,
        identity: warden.identity.SystemIdentity,
        recursive: bool,
    ) -> None:
        self._chown(path, identity.uid, identity.gid, follow_symlinks=False)
        if not recursive:
            return
        for dirpath, dirnames, filenames in os.walk(path, onerror=_raise):
            for name in dirnames + filenames:
                self._chown(
                    os.path.join(dirpath, name),
                    identity.uid,
                    identity.gid,
                    follow_symlinks=False,
                )


def _raise(exc: OSError) -> None:
    raise exc
