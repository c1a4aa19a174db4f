"""
Command-line interface for the torrent streaming server.
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from pydantic import ValidationError

from range_server import RangeFileServer
from stream_config import StreamerSettings


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Stream torrent files over HTTP with range support")
    parser.add_argument("--host", type=str, default=None, help="Interface to bind (default: 127.0.0.1)")
    parser.add_argument("-p", "--port", type=int, default=None, help="HTTP port (default: 3000)")
    parser.add_argument(
        "--staging-root",
        type=Path,
        default=None,
        help="Directory holding per-torrent staging data (default: <tmp>/torrent-stream)",
    )
    parser.add_argument(
        "--idle-timeout",
        type=float,
        default=None,
        help="Destroy torrents with no readers after this many seconds (default: never)",
    )
    parser.add_argument("--max-peers", type=int, default=None, help="Peer connections per torrent (default: 50)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    return parser


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s │ %(levelname)-7s │ %(message)s",
        datefmt="%H:%M:%S",
    )
    # aiohttp logs every request at INFO
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


async def serve(settings: StreamerSettings) -> None:
    """Run the server until cancelled."""
    server = RangeFileServer(settings)
    await server.start()
    try:
        await asyncio.Event().wait()
    finally:
        await server.stop()


def main(argv: list[str] | None = None) -> None:
    """Main CLI entry point."""
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose)

    try:
        settings = StreamerSettings.from_env(
            host=args.host,
            port=args.port,
            staging_root=args.staging_root,
            idle_timeout=args.idle_timeout,
            max_peers=args.max_peers,
        )
    except ValidationError as e:
        print(f"Error: invalid settings\n{e}", file=sys.stderr)
        sys.exit(2)

    try:
        asyncio.run(serve(settings))
    except KeyboardInterrupt:
        print("\nStopping server...")
    except OSError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
