"""Command line entry points: run the development relay, try mention matching."""

from __future__ import annotations

import argparse
import logging
import sys
from typing import TextIO

from aiohttp import web

from . import mentions
from .config import SyncConfig
from .relay import create_app


def _run_serve(args: argparse.Namespace) -> int:
    app = create_app(ping_interval_s=args.ping_interval, max_msg_size=args.max_msg_size)
    web.run_app(app, host=args.host, port=args.port)
    return 0


def _run_suggest(args: argparse.Namespace, output: TextIO) -> int:
    config = SyncConfig()
    limit = args.limit if args.limit is not None else config.mention_limit
    for name in mentions.suggest(args.query, args.names, limit, max_query_length=config.mention_max_query_length):
        output.write(name + "\n")
    return 0


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(prog="chatsync", description="Chat sync tools")
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the aiohttp development relay")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind")
    serve_parser.add_argument("--port", type=int, default=8080, help="Port to bind")
    serve_parser.add_argument(
        "--ping-interval",
        type=int,
        default=30,
        help="Seconds between heartbeat pings",
    )
    serve_parser.add_argument(
        "--max-msg-size",
        type=int,
        default=1_048_576,
        help="Largest accepted WebSocket frame in bytes",
    )

    suggest_parser = subparsers.add_parser("suggest", help="Print roster names matching a mention query")
    suggest_parser.add_argument("query", help="Text typed after '@'")
    suggest_parser.add_argument("names", nargs="*", help="Roster, in display order")
    suggest_parser.add_argument("--limit", type=int, default=None, help="Maximum suggestions")

    args = parser.parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    if args.command == "serve":
        return _run_serve(args)
    return _run_suggest(args, output or sys.stdout)


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
