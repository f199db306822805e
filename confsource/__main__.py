"""Command line entry point: ``python -m confsource URI``."""

import argparse
import asyncio
import json
import logging
import sys
from typing import Optional, Sequence

from .errors import ConfigurationError
from .loader import ConfigLoader
from .reader import new_reader
from .utils.logging import setup_logging

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="confsource",
        description="Read configuration from a source URI and print it.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  confsource ./config.yaml
  confsource "http://localhost:8080/config.json?timeout=5s" --watch
  confsource "redis://localhost:6379/app?content-type=application/json" --raw
  confsource "k8s://configmap/default/app/config.yaml" --watch
        """,
    )
    parser.add_argument("uri", help="Configuration source URI")
    parser.add_argument(
        "--watch", action="store_true", help="Keep printing updates until interrupted"
    )
    parser.add_argument(
        "--raw", action="store_true", help="Print raw bytes instead of decoded JSON"
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Log level (default: $CONFSOURCE_LOG_LEVEL or INFO)",
    )
    return parser


def format_config(config) -> str:
    if hasattr(config, "model_dump"):
        config = config.model_dump(mode="json")
    return json.dumps(config, indent=2, default=str)


def _write_raw(data: bytes) -> None:
    sys.stdout.buffer.write(data)
    if not data.endswith(b"\n"):
        sys.stdout.buffer.write(b"\n")
    sys.stdout.flush()


async def _run_raw(uri: str, watch: bool) -> int:
    async with new_reader(uri) as reader:
        _write_raw(await reader.read())
        if not watch:
            return 0

        async with await reader.subscribe() as events:
            async for event in events:
                if event.is_valid:
                    _write_raw(event.data)
                else:
                    logger.error(f"{event.source_uri}: {event.error}")
    return 1


async def _run_decoded(uri: str, watch: bool) -> int:
    async with ConfigLoader(uri) as loader:
        if not watch:
            print(format_config(await loader.load()), flush=True)
            return 0

        async with await loader.subscribe() as events:
            async for event in events:
                if event.is_valid:
                    print(format_config(event.config), flush=True)
                else:
                    logger.error(f"{event.source_uri}: {event.error}")
    return 1


async def run(args: argparse.Namespace) -> int:
    if args.raw:
        return await _run_raw(args.uri, args.watch)
    return await _run_decoded(args.uri, args.watch)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)

    try:
        return asyncio.run(run(args))
    except ConfigurationError as e:
        logger.error(f"Failed to read {args.uri}: {e}")
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
