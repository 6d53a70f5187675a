"""Command-line interface for the VPN identity administration service."""

from __future__ import annotations
import argparse
import logging
import os
import sys
from pathlib import Path
from typing import Sequence

from vpnadmin.config import Settings, load_settings, resolve_config_path

logger = logging.getLogger("vpnadmin.main")


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        default=None,
        help="Path to the YAML configuration (default: VPNADMIN_CONFIG or config/vpnadmin.yaml)",
    )

    parser = argparse.ArgumentParser(description="VPN identity administration utilities")
    subparsers = parser.add_subparsers(dest="command")

    parser.set_defaults(command="serve", config=None)

    serve_parser = subparsers.add_parser("serve", parents=[common], help="Start the HTTP API")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Bind address for the API")
    serve_parser.add_argument(
        "--port",
        type=int,
        default=8080,
        help="Port for the HTTP API (default: 8080)",
    )

    list_parser = subparsers.add_parser("list", parents=[common], help="Print the identity roster")
    list_parser.add_argument("--search", default=None, help="Only show names containing this text")
    list_parser.add_argument(
        "--hide-revoked",
        action="store_true",
        help="Leave revoked identities out of the listing",
    )

    subparsers.add_parser("stats", parents=[common], help="Print dashboard counters")

    auth_parser = subparsers.add_parser(
        "auth-user-pass",
        parents=[common],
        help="Check client credentials (OpenVPN auth-user-pass-verify via-file)",
    )
    auth_parser.add_argument("credentials_file", help="File holding the username and password lines")

    args_list = list(argv) if argv is not None else sys.argv[1:]
    known_commands = {"serve", "list", "stats", "auth-user-pass"}

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


def _load_settings(config: str | None) -> Settings:
    path = resolve_config_path(config or os.getenv("VPNADMIN_CONFIG"))
    if not path.exists():
        raise SystemExit(f"Configuration file {path} does not exist.")
    try:
        return load_settings(path)
    except ValueError as exc:
        raise SystemExit(f"Invalid configuration in {path}: {exc}") from exc


def _serve(settings: Settings, *, host: str, port: int) -> None:
    from vpnadmin.service import create_app
    import uvicorn

    logger.info("Starting %s node API on http://%s:%s", settings.role.value, host, port)
    app = create_app(settings=settings)
    uvicorn.run(app, host=host, port=port, log_level="info")


def _list_identities(settings: Settings, *, search: str | None, hide_revoked: bool) -> None:
    from vpnadmin.service import build_manager

    manager = build_manager(settings)
    manager.refresh()
    identities = manager.list_identities(search_text=search, hide_revoked=hide_revoked)
    if not identities:
        print("No identities found.")
        return

    print(f"{'Name':<32}  {'Status':<8}  {'Conns':>5}  Expires")
    print("-" * 72)
    for identity in identities:
        expires = identity.expiration.strftime("%Y-%m-%d %H:%M:%S") if identity.expiration else "-"
        marker = " (soon)" if identity.expiring_soon else ""
        print(
            f"{identity.name:<32}  {identity.account_status.value:<8}  "
            f"{identity.connection_count:>5}  {expires}{marker}"
        )


def _print_stats(settings: Settings) -> None:
    from vpnadmin.service import build_manager

    manager = build_manager(settings)
    manager.refresh()
    summary = manager.get_dashboard_aggregate()
    print(f"Total identities:   {summary.total_identities}")
    print(f"Active connections: {summary.active_connections}")
    print(f"Revoked:            {summary.revoked_count}")
    print(f"Expiring soon:      {summary.expiring_soon_count}")


def _read_credentials(path: Path) -> tuple[str, str]:
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError as exc:
        raise SystemExit(f"Unable to read credentials file {path}: {exc}") from exc
    if len(lines) < 2:
        raise SystemExit(f"Credentials file {path} must contain a username and a password line")
    return lines[0].strip(), lines[1]


def _verify_credentials(settings: Settings, credentials_file: str) -> int:
    from vpnadmin.service import build_manager

    username, password = _read_credentials(Path(credentials_file))
    manager = build_manager(settings)
    manager.refresh()
    if manager.verify_credentials(username, password):
        logger.info("Accepted credentials for %s", username)
        return 0
    logger.warning("Rejected credentials for %s", username)
    return 1


def main(argv: Sequence[str] | None = None) -> None:
    """Entry point for CLI usage."""

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")

    args = _parse_args(argv)
    settings = _load_settings(args.config)

    if args.command == "serve":
        _serve(settings, host=args.host, port=args.port)
    elif args.command == "list":
        _list_identities(settings, search=args.search, hide_revoked=args.hide_revoked)
    elif args.command == "stats":
        _print_stats(settings)
    elif args.command == "auth-user-pass":
        raise SystemExit(_verify_credentials(settings, args.credentials_file))


if __name__ == "__main__":
    main()
