"""
EavDB admin entry point.

This module provides logging setup and a small admin CLI over a
database file:
- resources: List resource kinds as {name, domain}
- usage: Show column usage counters of a resource kind
- drop: Delete every entity and slot assignment of a resource kind
- unlock-all: Release stale named locks left by a crashed run

Usage:
    python -m dbaas.eavdb_server.main resources
    python -m dbaas.eavdb_server.main usage User
    python -m dbaas.eavdb_server.main drop User
    python -m dbaas.eavdb_server.main unlock-all

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - Output is JSON on stdout, logs go to stderr
    - Configuration errors exit with status 1

How to change safely:
    - Add new commands, don't modify existing ones
    - Keep output format stable for scripts
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import replace
from typing import Any, List, Optional

import json_log_formatter

from .config import DriverConfig
from .driver import EavDriver

logger = logging.getLogger(__name__)


def setup_logging(config: DriverConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Driver configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]


class AdminCLI:
    """Admin commands over one database file.

    Example:
        >>> cli = AdminCLI(EavDriver(config))
        >>> await cli.resources()
        [{'name': 'User', 'domain': None}]
    """

    def __init__(self, driver: EavDriver) -> None:
        self.driver = driver

    async def resources(self) -> List[dict]:
        """List resource kinds."""
        return await self.driver.resources()

    async def usage(self, kind: str) -> dict:
        """Column usage counters of a resource kind."""
        return await self.driver.usage_of(kind)

    async def drop(self, kind: str) -> dict:
        """Drop a resource kind."""
        await self.driver.drop(kind)
        return {"dropped": kind}

    async def unlock_all(self) -> dict:
        """Release every named lock."""
        return {"released": await self.driver.unlock_all()}

    async def run(self, args: argparse.Namespace) -> Any:
        """Run the parsed command with a connected driver."""
        async with self.driver:
            if args.command == "resources":
                return await self.resources()
            if args.command == "usage":
                return await self.usage(args.resource)
            if args.command == "drop":
                return await self.drop(args.resource)
            if args.command == "unlock-all":
                return await self.unlock_all()
        raise ValueError(f"Unknown command: {args.command}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="EavDB admin tool")
    parser.add_argument("--path", help="SQLite database file (default: EAVDB_STORAGE_PATH)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("resources", help="List resource kinds")

    usage_parser = subparsers.add_parser("usage", help="Show column usage counters")
    usage_parser.add_argument("resource", help="Resource name")

    drop_parser = subparsers.add_parser("drop", help="Drop a resource kind")
    drop_parser.add_argument("resource", help="Resource name")

    subparsers.add_parser("unlock-all", help="Release stale named locks")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point.

    Returns:
        Process exit status
    """
    args = build_parser().parse_args(argv)

    # Load configuration
    try:
        config = DriverConfig.from_env()
        if args.path:
            config = replace(config, storage=replace(config.storage, path=args.path))
            config.validate()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    setup_logging(config)
    config.log_config()

    cli = AdminCLI(EavDriver(config))
    result = asyncio.run(cli.run(args))
    print(json.dumps(result, indent=2, sort_keys=True))
    return 0


if __name__ == "__main__":
    sys.exit(main())
