"""Command line helpers for inspecting configured database profiles."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from .config import CONFIG_FILE, DEFAULT_PORT, ConfigurationError, load_config, load_profiles
from .registry import ConnectionRegistry


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="dbkit", description="Inspect dbkit database profiles.")
    parser.add_argument("--config", type=Path, default=None, help=f"Profile file (default: {CONFIG_FILE})")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("profiles", help="List configured profiles")
    check = commands.add_parser("check", help="Connect to a profile and report whether it is reachable")
    check.add_argument("name", help="Profile name")
    return parser.parse_args(argv)


async def check_profile(name: str, path: Path | None, registry: ConnectionRegistry | None = None) -> bool:
    """Connect to ``name`` through a registry, probe it and disconnect again."""

    registry = registry or ConnectionRegistry()
    connection = registry.resolve_or_create(load_config(name, tables=(), path=path))
    try:
        return await connection.check_connection()
    finally:
        await registry.disconnect_all()


def main(argv: list[str] | None = None, *, registry: ConnectionRegistry | None = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        if args.command == "profiles":
            for name, profile in load_profiles(args.config).items():
                host = profile.get("host", "?")
                target = f"{host}:{profile.get('port', DEFAULT_PORT)}/{profile.get('database', '?')}"
                print(f"{name}\t{profile.get('type', '?')}\t{target}")
            return 0
        connected = asyncio.run(check_profile(args.name, args.config, registry))
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 2
    print(f"{args.name}: {'connected' if connected else 'unreachable'}")
    return 0 if connected else 1
