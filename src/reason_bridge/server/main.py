# File: reason_bridge/server/main.py

"""Command-line entry point: runs a session over stdio."""

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from reason_bridge.config.loader import APP_CONFIG, get_log_level
from reason_bridge.server.session import Session

logger = logging.getLogger(__name__)


def _parse_args(argv: Optional[List[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="reason-bridge",
        description="Bridge editor document events to the merlin analyzer.",
    )
    parser.add_argument(
        "--log-level",
        default=get_log_level(APP_CONFIG),
        help="Logging level (default from config.yml, else INFO).",
    )
    parser.add_argument(
        "--merlin",
        default=None,
        help="Path to the ocamlmerlin executable (overrides config).",
    )
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    # stdout carries the LSP stream, so logs go to stderr.
    logging.basicConfig(
        level=str(args.log_level).upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )

    settings = {"reason": {"path": {"ocamlmerlin": args.merlin}}} if args.merlin else None
    session = Session(settings=settings)
    asyncio.run(session.initialize())
    session.listen()
    return 0


if __name__ == "__main__":
    sys.exit(main())
