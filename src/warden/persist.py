"""Persistence writer for configuration snapshots.

Writes hold a lock private to the writer, separate from the store's
reader/writer lock, so a slow disk never blocks configuration readers.
The document is written to a temporary file beside the target and moved
into place, so other processes never see a truncated file.
"""

from __future__ import annotations

import contextlib
import dataclasses
import logging
import os
import pathlib
import tempfile
import threading
from typing import TYPE_CHECKING

import tomli_w

import warden.config
import warden.errors

if TYPE_CHECKING:
    import warden.store

logger = logging.getLogger("warden.persist")

FILE_MODE = 0o644


class ConfigWriter:
    """Serialize snapshots to a TOML document.

    *debug_via_flag* marks debug mode as forced from the command line. It is
    honoured in memory but never written back, otherwise the daemon would
    stay in debug mode on every subsequent boot.
    """

    def __init__(
        self,
        path: str | os.PathLike[str] | None = None,
        *,
        debug_via_flag: bool = False,
    ) -> None:
        self.path = pathlib.Path(path) if path else None
        self.debug_via_flag = debug_via_flag
        self._write_lock = threading.Lock()

    def destination(self, config: warden.config.Configuration) -> pathlib.Path:
        if self.path is not None:
            return self.path
        if config.path:
            return pathlib.Path(config.path)
        raise warden.errors.PathNotConfiguredError()

    def render(self, config: warden.config.Configuration) -> bytes:
        """Return the bytes that would be persisted for *config*."""
        copy = dataclasses.replace(config)
        if self.debug_via_flag:
            copy.debug = False
        try:
            return tomli_w.dumps(warden.config.to_document(copy)).encode()
        except (TypeError, ValueError) as exc:
            raise warden.errors.ConfigIOError(
                f"cannot serialize configuration: {exc}"
            ) from exc

    def write_to_disk(self, store: warden.store.ConfigStore) -> pathlib.Path:
        """Persist the store's active snapshot.

        The snapshot is read after the write lock is taken, so when writers
        race the last file written holds the newest snapshot.
        """
        with self._write_lock:
            config = store.get()
            target = self.destination(config)
            _atomic_write(target, self.render(config))

        logger.debug("Wrote configuration to %s", target)
        return target

    def write(self, config: warden.config.Configuration) -> pathlib.Path:
        """Persist an explicit *config* and return the path written."""
        target = self.destination(config)
        payload = self.render(config)

        with self._write_lock:
            _atomic_write(target, payload)

        logger.debug("Wrote configuration to %s", target)
        return target


def _atomic_write(target: pathlib.Path, payload: bytes) -> None:
    tmp_name = None
    try:
        fd, tmp_name = tempfile.mkstemp(
            dir=target.parent, prefix=f".{target.name}.", suffix=".tmp"
        )
        with os.fdopen(fd, "wb") as fh:
            fh.write(payload)
            fh.flush()
            os.fsync(fh.fileno())
        os.chmod(tmp_name, FILE_MODE)
        os.replace(tmp_name, target)
        tmp_name = None
    except OSError as exc:
        raise warden.errors.ConfigIOError(
            f"cannot write configuration to {target}: {exc}"
        ) from exc
    finally:
        if tmp_name is not None:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(tmp_name)
