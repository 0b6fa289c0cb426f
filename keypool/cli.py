"""Command line tool for registering services and keys in a key pool file."""

import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from keypool.config import load_config
from keypool.errors import KeyPoolError
from keypool.key_manager import KeyManager
from keypool.models import RESET_FREQUENCIES, RESET_NEVER
from keypool.storage import JsonFileStore


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="keypool-admin", description="Manage API keys in a key pool file"
    )
    parser.add_argument(
        "--data-file",
        help="Path to the key pool JSON file (default: KEYPOOL_DATA_FILE)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    add_service = subparsers.add_parser("add-service", help="Add or update a service")
    add_service.add_argument("name")
    add_service.add_argument("host")
    add_service.add_argument("--max-usage", type=int, default=None)
    add_service.add_argument(
        "--reset-frequency", choices=RESET_FREQUENCIES, default=RESET_NEVER
    )

    add_key = subparsers.add_parser("add-key", help="Add keys to a service")
    add_key.add_argument("service")
    add_key.add_argument("keys", nargs="+")
    add_key.add_argument(
        "--remaining", type=int, default=None, help="Uses left on the new keys"
    )

    set_remaining = subparsers.add_parser(
        "set-remaining", help="Set the remaining uses of a key"
    )
    set_remaining.add_argument("service")
    set_remaining.add_argument("key")
    set_remaining.add_argument("remaining", type=int)

    stats = subparsers.add_parser("stats", help="Print usage statistics as JSON")
    stats.add_argument("service", nargs="?")

    return parser


async def run(args: argparse.Namespace) -> int:
    config = load_config()
    if args.data_file:
        config.data_file = args.data_file

    key_manager = KeyManager(JsonFileStore(config.data_file), config)
    await key_manager.load()

    if args.command == "add-service":
        max_usage = (
            config.default_max_usage if args.max_usage is None else args.max_usage
        )
        created = await key_manager.add_service(
            args.name, args.host, max_usage, args.reset_frequency
        )
        print(
            f"Service '{args.name}' {'added' if created else 'updated'}: "
            f"host={args.host}, max usage={max_usage}, reset={args.reset_frequency}"
        )
    elif args.command == "add-key":
        for key in args.keys:
            if await key_manager.add_key(args.service, key, args.remaining):
                print(f"API key {key[:8]}... added to '{args.service}'")
            else:
                print(f"API key {key[:8]}... already exists in '{args.service}'")
    elif args.command == "set-remaining":
        await key_manager.set_remaining_uses(args.service, args.key, args.remaining)
        print(f"Remaining uses for {args.key[:8]}... set to {args.remaining}")
    elif args.command == "stats":
        stats = await key_manager.get_stats(args.service)
        print(json.dumps(stats, indent=2))

    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.WARNING)

    try:
        return asyncio.run(run(args))
    except KeyPoolError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
