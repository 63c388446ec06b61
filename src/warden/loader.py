"""Document loader: read a TOML config file into a snapshot.

Environment references (``$VAR`` / ``${VAR}``) are expanded before parsing;
unset variables expand to an empty string. Parsed values are then overlaid
on the dataclass defaults. Unknown keys are ignored so older daemons can
read newer documents.
"""

from __future__ import annotations

import logging
import os
import pathlib
import re
import tomllib

import warden.config
import warden.errors

logger = logging.getLogger("warden.loader")

_ENV_REF = re.compile(r"\$(?:\{(\w+)\}|(\w+))")


def expand_env(text: str) -> str:
    """Replace ``$VAR`` and ``${VAR}`` with their values, or ``""`` if unset."""
    return _ENV_REF.sub(
        lambda m: os.environ.get(m.group(1) or m.group(2), ""), text
    )


def read_configuration(path: str | os.PathLike[str]) -> warden.config.Configuration:
    """Read, expand and parse the document at *path*."""
    path = pathlib.Path(path)
    try:
        raw = path.read_text()
    except OSError as exc:
        raise warden.errors.DocumentError(
            f"cannot read configuration at {path}: {exc}"
        ) from exc

    expanded = expand_env(raw)
    try:
        data = tomllib.loads(expanded)
    except tomllib.TOMLDecodeError as exc:
        raise warden.errors.DocumentError(
            f"cannot parse configuration at {path}: {exc}"
        ) from exc

    try:
        config = warden.config.from_document(data, path=str(path))
    except TypeError as exc:
        raise warden.errors.DocumentError(
            f"invalid configuration at {path}: {exc}"
        ) from exc

    logger.debug("Loaded configuration from %s", path)
    return config
