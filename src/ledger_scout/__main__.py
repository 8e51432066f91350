from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Optional

from ledger_scout.config import YamlConfigLoader
from ledger_scout.config.models import AppConfig, ConfigLoadRequest
from ledger_scout.discovery.ledger import HttpLedger
from ledger_scout.discovery.predicates import RecordPredicate, predicate_from_name
from ledger_scout.errors import LedgerScoutError
from ledger_scout.logging import init_logging
from ledger_scout.service import ResolutionLayer

logger = logging.getLogger(__name__)


def _predicate_arg(value: str) -> RecordPredicate:
    try:
        return predicate_from_name(value.strip())
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from e


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ledger-scout", description="Ledger content resolution and discovery")
    parser.add_argument(
        "--config",
        default="data/config/config.yaml",
        help="Path to config.yaml (default: data/config/config.yaml)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True, help="Command to run")

    # Command: resolve
    resolve_parser = subparsers.add_parser("resolve", help="Resolve an identifier to its content")
    resolve_parser.add_argument("identifier", help="Content hash, ipfs:// URI, gateway URL or data URI")
    resolve_parser.add_argument(
        "--metadata",
        action="store_true",
        help="Normalize the payload into record metadata instead of printing it raw.",
    )

    # Command: discover
    discover_parser = subparsers.add_parser("discover", help="Scan the ledger for matching records")
    discover_parser.add_argument(
        "--predicate",
        type=_predicate_arg,
        default="listed",
        help="listed, all or category:<name> (default: listed)",
    )
    discover_parser.add_argument("--force-refresh", action="store_true", help="Bypass the cached result.")

    # Command: invalidate
    invalidate_parser = subparsers.add_parser("invalidate", help="Drop cached entries by key prefix")
    invalidate_parser.add_argument(
        "scope",
        nargs="?",
        default="",
        help='Key prefix such as "content:", "record:" or "discovery:"; empty clears everything.',
    )

    # Command: sweep-cache
    subparsers.add_parser("sweep-cache", help="Remove cache entries past the hard max age")

    return parser


async def _load_config(args: argparse.Namespace) -> AppConfig:
    loader = YamlConfigLoader()
    request = ConfigLoadRequest(
        yaml_path=args.config,
    )
    return await loader.load(request)


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


async def _resolve(layer: ResolutionLayer, args: argparse.Namespace) -> int:
    if args.metadata:
        metadata = await layer.resolve_metadata(args.identifier, fallback_name=args.identifier)
        _print_json(metadata.model_dump(mode="json"))
        return 1 if metadata.error else 0

    content = await layer.resolve_content(args.identifier, None)
    if content is None:
        _print_json({"identifier": args.identifier, "resolved": False})
        return 1
    _print_json({"identifier": args.identifier, "resolved": True, "content": content.model_dump(mode="json")})
    return 0


async def _discover(layer: ResolutionLayer, args: argparse.Namespace) -> int:
    result = await layer.discover(args.predicate, force_refresh=args.force_refresh)
    payload = result.model_dump(mode="json")
    payload["stats"] = {
        "total_items": result.total_items,
        "total_volume": str(result.total_volume),
        "floor_price": str(result.floor_price),
        "unique_owners": result.unique_owners,
    }
    _print_json(payload)
    return 0 if result.completed else 2


async def _run_command(args: argparse.Namespace) -> int:
    config = await _load_config(args)
    init_logging(config.logging)

    ledger: Optional[HttpLedger] = None
    if config.ledger.base_url.strip():
        ledger = HttpLedger(
            base_url=config.ledger.base_url,
            request_timeout_seconds=config.ledger.request_timeout_seconds,
        )

    layer = ResolutionLayer(config=config, ledger=ledger)
    try:
        if args.command == "resolve":
            return await _resolve(layer, args)
        if args.command == "discover":
            if ledger is None:
                logger.error("Discovery needs a ledger endpoint. Set ledger.base_url in the config.")
                return 2
            return await _discover(layer, args)
        if args.command == "invalidate":
            _print_json({"scope": args.scope, "removed": layer.invalidate(args.scope)})
            return 0
        if args.command == "sweep-cache":
            _print_json({"removed": layer.sweep(), "remaining": len(layer.cache)})
            return 0
        raise ValueError(f"Unknown command: {args.command}")
    finally:
        await layer.stop()
        if ledger is not None:
            await ledger.stop()


async def _main_async() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return await _run_command(args)
    except LedgerScoutError as e:
        logger.error("Command failed. command=%s error=%s", args.command, e)
        return 1


def main() -> None:
    try:
        sys.exit(asyncio.run(_main_async()))
    except KeyboardInterrupt:
        logger.info("Interrupted by user.")


if __name__ == "__main__":
    main()
