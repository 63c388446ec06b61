"""Snapshot store: the daemon's single active configuration.

One :class:`ConfigStore` is constructed at startup and passed by reference
to every consumer. Readers proceed concurrently; ``set`` excludes readers
only for the reference swap. The signing key is derived before the write
lock is taken, so no reader ever pairs a snapshot with a stale key.
"""

from __future__ import annotations

import contextlib
import logging
import threading
from typing import TYPE_CHECKING

import warden.errors
import warden.signing

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

    import warden.config

logger = logging.getLogger("warden.store")


class ReadWriteLock:
    """Many readers or one writer; waiting writers block new readers."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextlib.contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextlib.contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class ConfigStore:
    """Holds the active snapshot and its derived signing key."""

    def __init__(self, config: warden.config.Configuration | None = None) -> None:
        self._lock = ReadWriteLock()
        # Serializes read-modify-write callers of update() and set().
        self._update_lock = threading.Lock()
        self._config: warden.config.Configuration | None = None
        self._key: warden.signing.SigningKey | None = None
        if config is not None:
            self.set(config)

    @property
    def initialized(self) -> bool:
        with self._lock.read():
            return self._config is not None

    def get(self) -> warden.config.Configuration:
        """Return the active snapshot."""
        with self._lock.read():
            config = self._config
        if config is None:
            raise warden.errors.NotInitializedError()
        return config

    def signing_key(self) -> warden.signing.SigningKey:
        """Return the key consistent with the active snapshot."""
        with self._lock.read():
            key = self._key
        if key is None:
            raise warden.errors.NotInitializedError()
        return key

    def snapshot(
        self,
    ) -> tuple[warden.config.Configuration, warden.signing.SigningKey]:
        """Return the active snapshot and key, read together."""
        with self._lock.read():
            config, key = self._config, self._key
        if config is None or key is None:
            raise warden.errors.NotInitializedError()
        return config, key

    def set(self, config: warden.config.Configuration) -> None:
        """Publish *config*, re-deriving the key only if the token changed."""
        with self._update_lock:
            self._publish(config)

    def update(
        self,
        fn: Callable[[warden.config.Configuration], warden.config.Configuration],
    ) -> warden.config.Configuration:
        """Publish ``fn(current)`` as one serialized read-modify-write."""
        with self._update_lock:
            new = fn(self.get())
            self._publish(new)
            return new

    def _publish(self, config: warden.config.Configuration) -> None:
        # Only set()/update() writers reach here, and they hold _update_lock,
        # so the previous snapshot cannot change under us.
        previous = self._config
        key = self._key
        if previous is None or previous.token != config.token:
            key = warden.signing.SigningKey(config.token)
            logger.debug("Derived signing key %s", key.fingerprint())

        with self._lock.write():
            self._config = config
            self._key = key
