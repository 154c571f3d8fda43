"""idemstore CLI - maintenance commands for a local idempotency store.

Usage:
    python -m idemstore [--db PATH] [-v] cleanup [--threshold-ms N]
    python -m idemstore [--db PATH] [-v] export [--out FILE]
    python -m idemstore [--db PATH] [-v] import FILE
    python -m idemstore [--db PATH] [-v] stats

The store never schedules its own cleanup; run ``cleanup`` from cron or
another scheduler.

Exit codes:
    0: Success
    1: Store unavailable, malformed import, or internal error
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

from idemstore.errors import IdempotencyStoreError
from idemstore.store import IdempotencyStore, open_idempotency_store


def _output_json(data: dict[str, Any]) -> None:
    """Output JSON to stdout with deterministic ordering."""
    print(json.dumps(data, sort_keys=True, indent=2))


async def cmd_cleanup(store: IdempotencyStore, args: argparse.Namespace) -> int:
    report = await store.auto_cleanup(args.threshold_ms)
    _output_json(report.to_dict())
    return 0


async def cmd_export(store: IdempotencyStore, args: argparse.Namespace) -> int:
    blob = await store.export_store()
    if args.out:
        out_path = Path(args.out)
        out_path.write_text(blob, encoding="utf-8")
        print(f"Export written to: {out_path}", file=sys.stderr)
    else:
        print(blob)
    return 0


async def cmd_import(store: IdempotencyStore, args: argparse.Namespace) -> int:
    blob = Path(args.file).read_text(encoding="utf-8")
    imported = await store.import_store(blob)
    _output_json({"imported": imported})
    return 0


async def cmd_stats(store: IdempotencyStore, args: argparse.Namespace) -> int:
    count = await asyncio.to_thread(store.kv.count)
    _output_json({"backend": store.backend_name, "records": count})
    return 0


COMMANDS = {
    "cleanup": cmd_cleanup,
    "export": cmd_export,
    "import": cmd_import,
    "stats": cmd_stats,
}


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="idemstore",
        description="Maintain a local idempotency key store",
    )
    parser.add_argument(
        "--db",
        metavar="PATH",
        default=None,
        help="SQLite database path (default: $IDEMSTORE_DB_PATH or the built-in default)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    cleanup_parser = subparsers.add_parser(
        "cleanup",
        help="Delete expired keys and aged responses",
    )
    cleanup_parser.add_argument(
        "--threshold-ms",
        type=int,
        default=None,
        metavar="N",
        help="Maximum response age in milliseconds (default: 7 days)",
    )

    export_parser = subparsers.add_parser("export", help="Export every record as JSON")
    export_parser.add_argument(
        "--out",
        metavar="FILE",
        help="Write the export to FILE instead of stdout",
    )

    import_parser = subparsers.add_parser("import", help="Import records from an export file")
    import_parser.add_argument("file", metavar="FILE", help="Path to an export file")

    subparsers.add_parser("stats", help="Show record count")

    return parser


async def _run(args: argparse.Namespace) -> int:
    store = await asyncio.to_thread(open_idempotency_store, args.db)
    async with store:
        return await COMMANDS[args.command](store, args)


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command is None:
        parser.print_help()
        return 0

    try:
        return asyncio.run(_run(args))
    except (IdempotencyStoreError, OSError) as e:
        _output_json({"error": type(e).__name__, "message": str(e)})
        return 1


if __name__ == "__main__":
    sys.exit(main())
