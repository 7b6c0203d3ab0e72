"""
Administrative CLI for the knowledge state store.

Works directly against the SQLite database; no running server is required.
Every command prints JSON to stdout.

Usage:
    kbstate-admin stats
    kbstate-admin snapshot [--type manual] [--description TEXT]
    kbstate-admin list-snapshots [--type TYPE]
    kbstate-admin archive
    kbstate-admin cleanup
    kbstate-admin get <entity_id>
    kbstate-admin search <query> [--history] [--long-term] [--days N] [--limit N]

Configuration comes from the same KB_* environment variables as the
server; --data-dir overrides KB_STORAGE_DATA_DIR.

Invariants:
    - Commands never delete unarchived change records
    - Exit code is non-zero on any error
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import replace
from typing import Any

from ..config import ServerConfig, StorageConfig
from ..errors import KnowledgeStateError
from ..manager import KnowledgeStateManager
from ..search import SearchOptions
from ..snapshot import MANUAL_SNAPSHOT
from ..state import TimeRange

logger = logging.getLogger(__name__)


class AdminCLI:
    """Administrative commands over a KnowledgeStateManager.

    Example:
        >>> cli = AdminCLI(manager)
        >>> stats = await cli.stats()
    """

    def __init__(self, manager: KnowledgeStateManager) -> None:
        self.manager = manager

    async def stats(self) -> dict[str, Any]:
        return await self.manager.get_statistics()

    async def snapshot(self, snapshot_type: str, description: str | None) -> dict[str, Any]:
        info = await self.manager.create_snapshot(snapshot_type, description)
        return info.to_dict()

    async def list_snapshots(self, snapshot_type: str | None = None) -> list[dict[str, Any]]:
        return [s.to_dict() for s in await self.manager.list_snapshots(snapshot_type)]

    async def archive(self) -> dict[str, Any]:
        result = await self.manager.trigger_archival()
        return result.to_dict()

    async def cleanup(self) -> dict[str, Any]:
        result = await self.manager.trigger_cleanup()
        return result.to_dict()

    async def get(self, entity_id: str) -> dict[str, Any] | None:
        entity = await self.manager.get_entity(entity_id)
        return entity.to_dict() if entity else None

    async def search(
        self,
        query: str,
        history: bool = False,
        long_term: bool = False,
        days: int | None = None,
        limit: int = 50,
    ) -> dict[str, Any]:
        time_range = TimeRange.last_days(days, now=self.manager.clock()) if days else None
        options = SearchOptions(
            include_history=history,
            include_long_term=long_term,
            time_range=time_range,
            limit=limit,
        )
        result = await self.manager.search(query, options)
        return result.to_dict()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Knowledge state administration tool")
    parser.add_argument("--data-dir", help="Data directory (overrides KB_STORAGE_DATA_DIR)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("stats", help="Show tier statistics")

    snapshot_parser = subparsers.add_parser("snapshot", help="Create a snapshot")
    snapshot_parser.add_argument("--type", default=MANUAL_SNAPSHOT, help="Snapshot type label")
    snapshot_parser.add_argument("--description", help="Snapshot description")

    list_parser = subparsers.add_parser("list-snapshots", help="List snapshots, newest first")
    list_parser.add_argument("--type", help="Only snapshots of this type")

    subparsers.add_parser("archive", help="Run one archival pass")
    subparsers.add_parser("cleanup", help="Archive and purge expired data")

    get_parser = subparsers.add_parser("get", help="Show the current state of an entity")
    get_parser.add_argument("entity_id", help="Entity identifier")

    search_parser = subparsers.add_parser("search", help="Search the knowledge state")
    search_parser.add_argument("query", help="Search text")
    search_parser.add_argument("--history", action="store_true", help="Include change log")
    search_parser.add_argument("--long-term", action="store_true", help="Include archive")
    search_parser.add_argument("--days", type=int, help="Only the last N days of history")
    search_parser.add_argument("--limit", type=int, default=50, help="Maximum matches per tier")

    return parser


async def run_command(cli: AdminCLI, args: argparse.Namespace) -> Any:
    if args.command == "stats":
        return await cli.stats()
    if args.command == "snapshot":
        return await cli.snapshot(args.type, args.description)
    if args.command == "list-snapshots":
        return await cli.list_snapshots(args.type)
    if args.command == "archive":
        return await cli.archive()
    if args.command == "cleanup":
        return await cli.cleanup()
    if args.command == "get":
        return await cli.get(args.entity_id)
    if args.command == "search":
        return await cli.search(
            args.query,
            history=args.history,
            long_term=args.long_term,
            days=args.days,
            limit=args.limit,
        )
    raise ValueError(f"Unknown command: {args.command}")


async def _run(config: ServerConfig, args: argparse.Namespace) -> Any:
    manager = KnowledgeStateManager(config)
    await manager.initialize()
    try:
        return await run_command(AdminCLI(manager), args)
    finally:
        await manager.close()


def main(argv: list[str] | None = None) -> None:
    """CLI entry point for the admin tool."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        config = ServerConfig.from_env()
        if args.data_dir:
            config = replace(
                config,
                storage=StorageConfig(**{**config.storage.model_dump(), "data_dir": args.data_dir}),
            )
        output = asyncio.run(_run(config, args))
    except (KnowledgeStateError, ValueError) as e:
        print(json.dumps({"error": str(e)}), file=sys.stderr)
        sys.exit(1)

    if output is None:
        print(json.dumps({"error": "not found"}), file=sys.stderr)
        sys.exit(1)

    print(json.dumps(output, indent=2, default=str))


if __name__ == "__main__":
    main()
