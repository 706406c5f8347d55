from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Optional, Sequence

from dotenv import load_dotenv

from ucluster.config import get_settings
from ucluster.directory import ClusterDirectory
from ucluster.exceptions import UClusterError

EXIT_OK = 0
EXIT_ERROR = 1
# argparse exits with 2 on usage errors
EXIT_NOT_FOUND = 3


def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="ucluster",
        description="Locate, add and remove torrents across a uTorrent cluster.",
    )
    parser.add_argument("--log-level", help="Logging level (default: UCLUSTER_LOG_LEVEL).")
    commands = parser.add_subparsers(dest="command", required=True)

    for name, help_text in (
        ("locate", "Print the node that owns a hash."),
        ("get", "Print the task status for a hash."),
        ("remove", "Remove a task, keeping its data."),
        ("remove-data", "Remove a task and its data."),
    ):
        sub = commands.add_parser(name, help=help_text)
        sub.add_argument("hash", help="Info hash (hex or base32).")

    add = commands.add_parser("add", help="Add a torrent, or resume it if already owned.")
    add.add_argument("descriptor", help="Magnet URI, .torrent URL, local path or hash.")

    commands.add_parser("load", help="Print the task count of every node.")
    commands.add_parser("stats", help="Print fleet and metrics summary.")
    return parser.parse_args(argv)


def _emit(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, indent=2, default=str) + "\n")


async def _run(args: argparse.Namespace) -> int:
    async with ClusterDirectory.from_settings() as directory:
        if args.command == "locate":
            owner = await directory.locate_owner(args.hash)
            _emit(owner.identifier if owner else None)
            return EXIT_OK if owner else EXIT_NOT_FOUND
        if args.command == "get":
            status = await directory.get(args.hash)
            _emit(status.model_dump() if status else None)
            return EXIT_OK if status else EXIT_NOT_FOUND
        if args.command == "add":
            result = await directory.add(args.descriptor)
            _emit(result.model_dump())
            return EXIT_OK
        if args.command == "remove":
            await directory.remove(args.hash)
        elif args.command == "remove-data":
            await directory.remove_data(args.hash)
        elif args.command == "load":
            _emit(await directory.loads())
        elif args.command == "stats":
            _emit(directory.stats())
        return EXIT_OK


def main(argv: Optional[Sequence[str]] = None) -> int:
    load_dotenv()
    args = _parse_args(argv)

    try:
        settings = get_settings()
        level = (args.log_level or settings.log_level).upper()
        logging.basicConfig(
            level=getattr(logging, level, logging.WARNING),
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        )
        return asyncio.run(_run(args))
    except UClusterError as exc:
        sys.stderr.write(json.dumps(exc.to_dict(), default=str) + "\n")
        return EXIT_ERROR


if __name__ == "__main__":
    raise SystemExit(main())
