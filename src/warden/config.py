"""Configuration snapshot models.

A :class:`Configuration` is one complete, immutable-by-convention value.
Sections are plain dataclasses whose field defaults are the documented
defaults; the loader overlays parsed document values on top of them.

Field names double as document keys, so a snapshot serializes with
:func:`to_document` and is rebuilt with :func:`from_document`.
"""

from __future__ import annotations

import dataclasses
import os
import typing

DEFAULT_LOCATION = "/etc/warden/config.toml"

# Fields present on a snapshot but never written to the document.
_TRANSIENT_FIELDS = frozenset({"path"})


def default_location() -> str:
    """Return the config path, honouring ``WARDEN_CONFIG``."""
    return os.environ.get("WARDEN_CONFIG") or DEFAULT_LOCATION


@dataclasses.dataclass
class SslConfig:
    enabled: bool = False
    cert: str = ""
    key: str = ""


@dataclasses.dataclass
class ApiConfig:
    host: str = "0.0.0.0"
    port: int = 8080
    upload_limit: int = 100
    ssl: SslConfig = dataclasses.field(default_factory=SslConfig)


@dataclasses.dataclass
class SftpConfig:
    use_internal: bool = True
    disable_disk_checking: bool = False
    bind_address: str = "0.0.0.0"
    bind_port: int = 2022
    read_only: bool = False


@dataclasses.dataclass
class UserIds:
    uid: int = 0
    gid: int = 0


@dataclasses.dataclass
class SystemConfig:
    root_directory: str = "/var/lib/warden"
    data: str = "/var/lib/warden/volumes"
    username: str = "warden"
    user: UserIds = dataclasses.field(default_factory=UserIds)

    # Ownership reconciliation on boot. Slow on hosts with many workloads.
    set_permissions_on_boot: bool = True
    chown_recursive: bool = False
    chown_max_workers: int = 8

    sftp: SftpConfig = dataclasses.field(default_factory=SftpConfig)


@dataclasses.dataclass
class ThrottlesConfig:
    kill_at_count: int = 5
    decay: int = 10
    bytes: int = 4096
    check_interval: int = 100


@dataclasses.dataclass
class Configuration:
    # Ignored at runtime when debug is forced on the command line.
    debug: bool = False
    uuid: str = ""
    token_id: str = ""
    token: str = ""
    remote: str = ""
    disk_check_timeout: int = 150

    api: ApiConfig = dataclasses.field(default_factory=ApiConfig)
    system: SystemConfig = dataclasses.field(default_factory=SystemConfig)
    throttles: ThrottlesConfig = dataclasses.field(default_factory=ThrottlesConfig)

    # Where this snapshot was loaded from.
    path: str = dataclasses.field(default="", compare=False, repr=False)

    def with_system_user(self, username: str, uid: int, gid: int) -> Configuration:
        """Return a copy with the system account replaced."""
        system = dataclasses.replace(
            self.system, username=username, user=UserIds(uid=uid, gid=gid)
        )
        return dataclasses.replace(self, system=system)


def to_document(config: Configuration) -> dict[str, typing.Any]:
    """Return the persistable mapping for *config*."""
    data = dataclasses.asdict(config)
    for name in _TRANSIENT_FIELDS:
        data.pop(name, None)
    return data


def from_document(
    data: typing.Mapping[str, typing.Any], *, path: str = ""
) -> Configuration:
    """Build a snapshot from *data*, using defaults for anything missing."""
    config = _build(Configuration, data)
    config.path = path
    return config


def _build(cls: type, data: typing.Mapping[str, typing.Any]) -> typing.Any:
    hints = typing.get_type_hints(cls)
    kwargs: dict[str, typing.Any] = {}
    for f in dataclasses.fields(cls):
        if f.name in _TRANSIENT_FIELDS or f.name not in data:
            continue
        value = data[f.name]
        target = hints[f.name]
        if dataclasses.is_dataclass(target):
            if not isinstance(value, typing.Mapping):
                raise TypeError(f"section {f.name!r} must be a table")
            value = _build(target, value)
        kwargs[f.name] = value
    return cls(**kwargs)
