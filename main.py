"""Command-line interface for the Authelia user administration service."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Sequence

from useradmin.config import Settings, load_settings
from useradmin.exceptions import StorageError
from useradmin.stores import CredentialStore

logger = logging.getLogger("useradmin.main")

_LOG_FORMAT = "%(asctime)s %(levelname)s: %(message)s"


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Authelia user administration utilities")
    subparsers = parser.add_subparsers(dest="command")

    parser.set_defaults(command="serve")

    serve_parser = subparsers.add_parser("serve", help="Start the HTTP administration API")
    serve_parser.add_argument("--host", default=None, help="Bind address (default: HOST or 0.0.0.0)")
    serve_parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Listen port (default: PORT or 3000)",
    )

    subparsers.add_parser("init-store", help="Create an empty users file if none exists")
    subparsers.add_parser("list-users", help="Print the users known to the credential store")

    args_list = list(argv) if argv is not None else sys.argv[1:]
    known_commands = {"serve", "init-store", "list-users"}

    if not args_list:
        args_list = ["serve"]
    else:
        first = args_list[0]
        if first in ("-h", "--help"):
            return parser.parse_args(args_list)
        if first not in known_commands:
            if any(flag in args_list for flag in ("-h", "--help")):
                return parser.parse_args(args_list)
            args_list = ["serve", *args_list]

    return parser.parse_args(args_list)


def configure_logging(settings: Settings) -> None:
    """Log to the console and, when configured, to ``settings.log_file``."""

    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if settings.log_file is not None:
        try:
            settings.log_file.parent.mkdir(parents=True, exist_ok=True)
            handlers.append(logging.FileHandler(settings.log_file, encoding="utf-8"))
        except OSError as exc:
            print(f"Unable to open log file {settings.log_file}: {exc}", file=sys.stderr)
    logging.basicConfig(level=level, format=_LOG_FORMAT, handlers=handlers, force=True)


def _serve(settings: Settings, *, host: str | None, port: int | None) -> None:
    from useradmin.service import create_app
    import uvicorn

    bind_host = host or settings.host
    bind_port = port or settings.port
    app = create_app(settings=settings)
    logger.info("UserAdmin listening on %s:%s", bind_host, bind_port)
    uvicorn.run(
        app,
        host=bind_host,
        port=bind_port,
        log_level=settings.log_level,
        proxy_headers=False,
    )


def _init_store(settings: Settings) -> int:
    store = CredentialStore(settings.users_file)
    try:
        users = asyncio.run(store.load())
    except StorageError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    print(f"{settings.users_file} holds {len(users)} user(s).")
    return 0


def _list_users(settings: Settings) -> int:
    store = CredentialStore(settings.users_file)
    try:
        users = asyncio.run(store.load())
    except StorageError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    if not users:
        print("No users are currently registered.")
        return 0

    print(f"{len(users)} user(s) found:")
    print(f"{'Username':<20}  {'Display name':<24}  {'Email':<32}  Groups")
    print("-" * 96)
    for username, record in sorted(users.items()):
        email = record.email or "<no email>"
        print(f"{username:<20}  {record.displayname:<24}  {email:<32}  {','.join(record.groups)}")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for CLI usage."""

    args = _parse_args(argv)
    settings = load_settings()
    configure_logging(settings)

    if args.command == "serve":
        _serve(settings, host=args.host, port=args.port)
        return 0
    if args.command == "init-store":
        return _init_store(settings)
    if args.command == "list-users":
        return _list_users(settings)
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
