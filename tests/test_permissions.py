"""Tests for warden.permissions: UUIDv4 filtering and best-effort chown fan-out."""

from __future__ import annotations

import dataclasses
import logging
import os
import pathlib
import threading
import time

import pytest

import warden.errors
import warden.identity
import warden.permissions
import warden.store

MATCH = "a1b2c3d4-e5f6-4789-8abc-def012345678"
IDENTITY = warden.identity.SystemIdentity("warden", 998, 997)


class RecordingChown:
    def __init__(self, fail: set[str] | None = None) -> None:
        self.calls: list[tuple[str, int, int]] = []
        self.fail = fail or set()
        self._lock = threading.Lock()

    def __call__(self, path, uid, gid, *, follow_symlinks=True) -> None:
        assert follow_symlinks is False
        with self._lock:
            self.calls.append((str(path), uid, gid))
        if pathlib.Path(path).name in self.fail:
            raise PermissionError(1, "Operation not permitted", str(path))


@pytest.fixture
def data_dir(tmp_path: pathlib.Path) -> pathlib.Path:
    root = tmp_path / "volumes"
    root.mkdir()
    (root / MATCH).mkdir()
    (root / "notadirectory.txt").write_text("x")
    (root / "plain-folder").mkdir()
    return root


def _with_system(store: warden.store.ConfigStore, **changes) -> None:
    store.update(
        lambda c: dataclasses.replace(
            c, system=dataclasses.replace(c.system, **changes)
        )
    )


class TestPattern:
    @pytest.mark.parametrize(
        "name",
        [
            MATCH,
            "00000000-0000-4000-8000-000000000000",
            "ffffffff-ffff-4fff-bfff-ffffffffffff",
        ],
    )
    def test_matches(self, name: str) -> None:
        assert warden.permissions.is_workload_dir_name(name)

    @pytest.mark.parametrize(
        "name",
        [
            "A1B2C3D4-E5F6-4789-8ABC-DEF012345678",  # uppercase
            "a1b2c3d4-e5f6-1789-8abc-def012345678",  # version 1
            "a1b2c3d4-e5f6-4789-cabc-def012345678",  # bad variant
            MATCH + "\n",
            MATCH + "0",
            "../" + MATCH[3:],
            "plain-folder",
            "",
        ],
    )
    def test_rejects(self, name: str) -> None:
        assert not warden.permissions.is_workload_dir_name(name)


class TestReconcile:
    def test_only_matching_directory_changed(self, store, data_dir) -> None:
        chown = RecordingChown()
        reconciler = warden.permissions.PermissionReconciler(store, chown=chown)

        result = reconciler.reconcile(data_dir, IDENTITY)

        assert chown.calls == [(str(data_dir / MATCH), 998, 997)]
        assert result.changed == [MATCH]
        assert sorted(result.skipped) == ["notadirectory.txt", "plain-folder"]
        assert result.failed == {}

    def test_failure_is_logged_not_raised(
        self, store, data_dir, caplog: pytest.LogCaptureFixture
    ) -> None:
        chown = RecordingChown(fail={MATCH})
        reconciler = warden.permissions.PermissionReconciler(store, chown=chown)

        with caplog.at_level(logging.WARNING, logger="warden.permissions"):
            result = reconciler.reconcile(data_dir, IDENTITY)

        assert result.changed == []
        assert MATCH in result.failed
        assert MATCH in caplog.text
        assert "not permitted" in caplog.text

    def test_failure_does_not_abort_siblings(self, store, tmp_path) -> None:
        root = tmp_path / "many"
        root.mkdir()
        names = [f"{i:08x}-0000-4000-8000-000000000000" for i in range(20)]
        for name in names:
            (root / name).mkdir()
        chown = RecordingChown(fail={names[3], names[11]})
        reconciler = warden.permissions.PermissionReconciler(
            store, max_workers=4, chown=chown
        )

        result = reconciler.reconcile(root, IDENTITY)

        assert len(chown.calls) == 20
        assert sorted(result.failed) == sorted([names[3], names[11]])
        assert len(result.changed) == 18

    def test_no_matches(self, store, tmp_path) -> None:
        root = tmp_path / "empty"
        root.mkdir()
        (root / "plain-folder").mkdir()
        chown = RecordingChown()
        result = warden.permissions.PermissionReconciler(
            store, chown=chown
        ).reconcile(root, IDENTITY)
        assert chown.calls == []
        assert result.changed == [] and result.failed == {}

    def test_unlistable_root(self, store, tmp_path) -> None:
        reconciler = warden.permissions.PermissionReconciler(
            store, chown=RecordingChown()
        )
        with pytest.raises(warden.errors.ConfigIOError, match="cannot list"):
            reconciler.reconcile(tmp_path / "absent", IDENTITY)

    def test_disabled(self, store, tmp_path) -> None:
        _with_system(store, set_permissions_on_boot=False)
        chown = RecordingChown()
        result = warden.permissions.PermissionReconciler(
            store, chown=chown
        ).reconcile(tmp_path / "absent", IDENTITY)
        assert chown.calls == []
        assert result == warden.permissions.ReconcileResult()

    def test_defaults_from_snapshot(self, store, data_dir) -> None:
        looked_up: list[str] = []

        def lookup(name):
            looked_up.append(name)
            return warden.identity.SystemIdentity(name, 42, 43)

        chown = RecordingChown()
        warden.permissions.PermissionReconciler(
            store, chown=chown, lookup=lookup
        ).reconcile()
        assert looked_up == ["warden"]
        assert chown.calls == [(str(data_dir / MATCH), 42, 43)]

    def test_symlink_to_directory_skipped(self, store, tmp_path) -> None:
        root = tmp_path / "links"
        root.mkdir()
        target = tmp_path / "elsewhere"
        target.mkdir()
        (root / MATCH).symlink_to(target, target_is_directory=True)
        chown = RecordingChown()
        result = warden.permissions.PermissionReconciler(
            store, chown=chown
        ).reconcile(root, IDENTITY)
        assert chown.calls == []
        assert result.skipped == [MATCH]

    def test_recursive(self, store, data_dir) -> None:
        _with_system(store, chown_recursive=True)
        nested = data_dir / MATCH / "world"
        nested.mkdir()
        (nested / "level.dat").write_text("x")
        chown = RecordingChown()

        warden.permissions.PermissionReconciler(store, chown=chown).reconcile(
            data_dir, IDENTITY
        )

        paths = {p for p, _, _ in chown.calls}
        assert paths == {
            str(data_dir / MATCH),
            str(nested),
            str(nested / "level.dat"),
        }

    def test_unlistable_subdirectory_fails_directory(
        self, store, data_dir, monkeypatch: pytest.MonkeyPatch,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        _with_system(store, chown_recursive=True)
        (data_dir / MATCH / "locked").mkdir()
        real_scandir = os.scandir

        def scandir(path="."):
            if os.fspath(path).endswith("locked"):
                raise PermissionError(13, "Permission denied", os.fspath(path))
            return real_scandir(path)

        monkeypatch.setattr(os, "scandir", scandir)
        reconciler = warden.permissions.PermissionReconciler(
            store, chown=RecordingChown()
        )

        with caplog.at_level(logging.WARNING, logger="warden.permissions"):
            result = reconciler.reconcile(data_dir, IDENTITY)

        assert result.changed == []
        assert MATCH in result.failed
        assert "Permission denied" in caplog.text


class TestIdentityResolution:
    def test_unknown_account_raises_before_chown(self, store, data_dir) -> None:
        def lookup(name):
            raise warden.errors.UnknownAccountError(name)

        chown = RecordingChown()
        reconciler = warden.permissions.PermissionReconciler(
            store, chown=chown, lookup=lookup
        )
        with pytest.raises(warden.errors.UnknownAccountError):
            reconciler.reconcile(data_dir)
        assert chown.calls == []

    def test_lookup_uses_configured_username(self, store, data_dir) -> None:
        _with_system(store, username="pod")
        seen: list[str] = []

        def lookup(name):
            seen.append(name)
            return warden.identity.SystemIdentity(name, 500, 501)

        chown = RecordingChown()
        warden.permissions.PermissionReconciler(
            store, chown=chown, lookup=lookup
        ).reconcile(data_dir)
        assert seen == ["pod"]
        assert chown.calls == [(str(data_dir / MATCH), 500, 501)]

    def test_explicit_identity_skips_lookup(self, store, data_dir) -> None:
        reconciler = warden.permissions.PermissionReconciler(
            store, chown=RecordingChown(), lookup=pytest.fail
        )
        assert reconciler.reconcile(data_dir, IDENTITY).changed == [MATCH]


class PeakChown:
    """Chown fake that records the highest number of concurrent calls."""

    def __init__(self) -> None:
        self.active = 0
        self.peak = 0
        self.calls = 0
        self._lock = threading.Lock()

    def __call__(self, path, uid, gid, *, follow_symlinks=True) -> None:
        with self._lock:
            self.active += 1
            self.calls += 1
            self.peak = max(self.peak, self.active)
        time.sleep(0.01)
        with self._lock:
            self.active -= 1


def _many(root: pathlib.Path, count: int) -> list[str]:
    root.mkdir()
    names = [f"{i:08x}-0000-4000-8000-000000000000" for i in range(count)]
    for name in names:
        (root / name).mkdir()
    return names


class TestWorkerBound:
    def test_max_workers_bounds_concurrency(self, store, tmp_path) -> None:
        _many(tmp_path / "many", 20)
        chown = PeakChown()
        result = warden.permissions.PermissionReconciler(
            store, max_workers=4, chown=chown
        ).reconcile(tmp_path / "many", IDENTITY)
        assert len(result.changed) == 20
        assert chown.calls == 20
        assert 1 <= chown.peak <= 4

    def test_configured_workers_bound_concurrency(self, store, tmp_path) -> None:
        _with_system(store, chown_max_workers=2)
        _many(tmp_path / "many", 12)
        chown = PeakChown()
        warden.permissions.PermissionReconciler(store, chown=chown).reconcile(
            tmp_path / "many", IDENTITY
        )
        assert chown.calls == 12
        assert chown.peak <= 2

    def test_negative_max_workers_falls_back_to_one(
        self, store, data_dir, caplog: pytest.LogCaptureFixture
    ) -> None:
        chown = PeakChown()
        with caplog.at_level(logging.WARNING, logger="warden.permissions"):
            result = warden.permissions.PermissionReconciler(
                store, max_workers=-1, chown=chown
            ).reconcile(data_dir, IDENTITY)
        assert result.changed == [MATCH]
        assert chown.peak == 1
        assert "Invalid chown worker count -1" in caplog.text

    def test_negative_configured_workers_falls_back_to_one(
        self, store, data_dir
    ) -> None:
        _with_system(store, chown_max_workers=-3)
        result = warden.permissions.PermissionReconciler(
            store, chown=RecordingChown()
        ).reconcile(data_dir, IDENTITY)
        assert result.changed == [MATCH]
