"""Warden CLI.

Usage:
    warden show                       Print the effective config (token redacted)
    warden ensure-user                Create/look up the system account and save it
    warden fix-permissions [opts]     Chown workload directories to the account
    warden boot                       ensure-user, then fix-permissions
    warden serve [opts]               Serve the HTTP API

Global options:
    --config PATH   Config document (default: $WARDEN_CONFIG or /etc/warden/config.toml)
    --debug         Force debug mode for this process without saving it
"""

from __future__ import annotations

import argparse
import dataclasses
import logging
import sys

import tomli_w

import warden.config
import warden.errors
import warden.identity
import warden.loader
import warden.permissions
import warden.persist
import warden.store

logger = logging.getLogger("warden")


class Runtime:
    """Store and writer shared by every command in one process."""

    def __init__(self, config_path: str, *, debug: bool = False) -> None:
        config = warden.loader.read_configuration(config_path)
        if debug:
            config = dataclasses.replace(config, debug=True)
        self.store = warden.store.ConfigStore(config)
        self.writer = warden.persist.ConfigWriter(config_path, debug_via_flag=debug)


def _cmd_show(runtime: Runtime, args: argparse.Namespace) -> int:
    data = warden.config.to_document(runtime.store.get())
    if data.get("token"):
        data["token"] = "<redacted>"
    sys.stdout.write(tomli_w.dumps(data))
    return 0


def _cmd_ensure_user(runtime: Runtime, args: argparse.Namespace) -> int:
    identity = warden.identity.IdentityProvisioner(runtime.store, runtime.writer).ensure()
    print(f"System account {identity.username} (uid={identity.uid}, gid={identity.gid})")
    return 0


def _cmd_fix_permissions(runtime: Runtime, args: argparse.Namespace) -> int:
    reconciler = warden.permissions.PermissionReconciler(
        runtime.store, max_workers=args.workers
    )
    result = reconciler.reconcile()
    print(f"Permissions: {len(result.changed)} changed, {result.errors} failed, "
          f"{len(result.skipped)} skipped")
    return 0


def _cmd_boot(runtime: Runtime, args: argparse.Namespace) -> int:
    identity = warden.identity.IdentityProvisioner(runtime.store, runtime.writer).ensure()
    logger.info("Running as %s (uid=%d)", identity.username, identity.uid)
    reconciler = warden.permissions.PermissionReconciler(
        runtime.store, max_workers=args.workers
    )
    reconciler.reconcile(identity=identity)
    return 0


def _cmd_serve(runtime: Runtime, args: argparse.Namespace) -> int:
    import uvicorn

    import warden.api

    config = runtime.store.get()
    app = warden.api.create_app(runtime.store, runtime.writer)
    ssl = config.api.ssl
    uvicorn.run(
        app,
        host=args.host or config.api.host,
        port=args.port or config.api.port,
        ssl_certfile=ssl.cert if ssl.enabled else None,
        ssl_keyfile=ssl.key if ssl.enabled else None,
        log_level="debug" if config.debug else "info",
    )
    return 0


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an integer: {value!r}") from None
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1: {number}")
    return number


_COMMANDS = {
    "show": _cmd_show,
    "ensure-user": _cmd_ensure_user,
    "fix-permissions": _cmd_fix_permissions,
    "boot": _cmd_boot,
    "serve": _cmd_serve,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="warden",
        description="Runtime configuration for the host daemon.",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Config document (default: $WARDEN_CONFIG or "
        f"{warden.config.DEFAULT_LOCATION})",
    )
    parser.add_argument(
        "--debug", action="store_true", help="Force debug mode (not persisted)"
    )
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("show", help="Print the effective configuration")
    sub.add_parser("ensure-user", help="Ensure the system account exists")

    for name in ("fix-permissions", "boot"):
        p = sub.add_parser(name)
        p.add_argument(
            "--workers", type=_positive_int, default=None,
            help="Concurrent chown workers (default: system.chown_max_workers)",
        )

    p_serve = sub.add_parser("serve", help="Serve the HTTP API")
    p_serve.add_argument("--host", default=None)
    p_serve.add_argument("--port", type=int, default=None)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        runtime = Runtime(
            args.config or warden.config.default_location(), debug=args.debug
        )
        return _COMMANDS[args.command](runtime, args)
    except warden.errors.WardenError as exc:
        print(f"warden: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
