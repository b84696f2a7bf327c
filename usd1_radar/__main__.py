from __future__ import annotations

import asyncio
import sys
from argparse import ArgumentParser
from dataclasses import asdict
from typing import Any

from .config import load_settings
from .http import dumps
from .logging_utils import setup_logging
from .service import TokenService


def _emit(payload: Any) -> None:
    sys.stdout.write(dumps(payload).decode() + "\n")
    sys.stdout.flush()


def build_parser() -> ArgumentParser:
    parser = ArgumentParser(prog="usd1_radar", description="USD1 BonkFun token radar")
    subparsers = parser.add_subparsers(dest="command", required=True)

    tokens_p = subparsers.add_parser("tokens", help="Print the enriched token list")
    tokens_p.add_argument("--force", action="store_true", help="Bypass the cache")
    tokens_p.add_argument("--limit", type=int, default=None, help="Only print the top N")

    discover_p = subparsers.add_parser("discover", help="Run one discovery/verification sweep")
    discover_p.add_argument("--max-new", type=int, default=None, help="Cap on new mints verified")

    subparsers.add_parser("health", help="Print per-source health")
    subparsers.add_parser("retry", help="Process the verification retry queue")

    volume_p = subparsers.add_parser("volume", help="Print stored volume history")
    volume_p.add_argument("--days", type=int, default=30, help="Days of history")
    volume_p.add_argument(
        "--ohlcv", action="store_true", help="Also sum GeckoTerminal candles for current pairs"
    )
    return parser


async def _run(args: Any, service: TokenService, max_new_default: int) -> Any:
    await service.start()
    try:
        if args.command == "tokens":
            result = await service.get_tokens(force_refresh=args.force)
            payload = result.to_dict()
            if args.limit is not None:
                payload["tokens"] = payload["tokens"][: max(0, args.limit)]
            return payload
        if args.command == "discover":
            max_new = args.max_new if args.max_new is not None else max_new_default
            return await service.run_discovery(max_new=max_new)
        if args.command == "health":
            return service.get_health_status()
        if args.command == "retry":
            return asdict(await service.process_retry_queue())
        if args.command == "volume":
            return await service.volume_history(args.days, ohlcv=args.ohlcv)
        raise ValueError(f"unknown command {args.command!r}")
    finally:
        await service.stop()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = load_settings()
    setup_logging(settings.log_level, json_logs=settings.log_json)
    service = TokenService.from_settings(settings)
    _emit(asyncio.run(_run(args, service, settings.max_new_per_run)))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
