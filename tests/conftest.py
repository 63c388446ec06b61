"""Shared test fixtures for warden tests."""

from __future__ import annotations

import pathlib

import pytest

import warden.config
import warden.persist
import warden.store

SAMPLE_DOCUMENT = """\
debug = false
uuid = "node-1"
token_id = "tid"
token = "secret-token"
remote = "https://panel.example.com"

[api]
port = 9090

[system]
data = "{data}"
username = "warden"
"""


@pytest.fixture
def config_file(tmp_path: pathlib.Path):
    """Factory writing a config document and returning its path."""

    def _create(content: str | None = None) -> pathlib.Path:
        path = tmp_path / "config.toml"
        if content is None:
            content = SAMPLE_DOCUMENT.format(data=tmp_path / "volumes")
        path.write_text(content)
        return path

    return _create


@pytest.fixture
def make_config(tmp_path: pathlib.Path):
    """Factory for snapshots rooted in ``tmp_path``."""

    def _create(**overrides) -> warden.config.Configuration:
        config = warden.config.Configuration(
            token="secret-token",
            path=str(tmp_path / "config.toml"),
        )
        config.system.data = str(tmp_path / "volumes")
        for key, value in overrides.items():
            setattr(config, key, value)
        return config

    return _create


@pytest.fixture
def store(make_config) -> warden.store.ConfigStore:
    return warden.store.ConfigStore(make_config())


@pytest.fixture
def writer(tmp_path: pathlib.Path) -> warden.persist.ConfigWriter:
    return warden.persist.ConfigWriter(tmp_path / "config.toml")
