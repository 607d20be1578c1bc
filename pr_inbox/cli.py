# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0
"""
CLI wrapper for pr_inbox.

  serve   run the HTTP server (notifications, device-code login, health, CI status)
  fetch   run one aggregation cycle and print the view as JSON
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Sequence

import argparse
import asyncio
import json
import logging
import sys

from .aggregator import NotificationAggregator
from .config import load_config
from .errors import FetchError
from .gh_cli import GH_CLI_STATS, GhInvoker

logger = logging.getLogger(__name__)


def setup_logging(*, verbose: bool = False, debug: bool = False) -> None:
    if debug:
        level = logging.DEBUG
    elif verbose:
        level = logging.INFO
    else:
        level = logging.WARNING
    root = logging.getLogger()
    root.setLevel(level)
    handler = logging.StreamHandler()
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
    if not root.handlers:
        root.addHandler(handler)


async def _fetch_once(config) -> int:
    invoker = GhInvoker(config.gh_path, default_timeout_s=config.command_timeout_s)
    aggregator = NotificationAggregator(invoker, config)
    try:
        view = await aggregator.get_current_view()
    except FetchError as e:
        print(json.dumps(e.to_payload(), indent=2))
        return 1
    print(json.dumps(view.to_payload(), indent=2))
    logger.info("gh calls: %s", GH_CLI_STATS.to_dict())
    return 0


def _cli(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Aggregate GitHub pull-request activity through the gh CLI.",
        epilog="Examples:\n"
               "  %(prog)s fetch                      # one cycle, JSON on stdout\n"
               "  %(prog)s serve --port 3000 -v       # HTTP server with INFO logs\n"
               "  %(prog)s --config inbox.yaml serve  # settings from a YAML file",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", type=Path, default=None, help="YAML config file (default: $PR_INBOX_CONFIG)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable INFO logging")
    parser.add_argument("--debug", action="store_true", help="Enable DEBUG logging (every gh call)")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP server")
    serve.add_argument("--host", default=None, help="Bind address (default: 127.0.0.1)")
    serve.add_argument("--port", type=int, default=None, help="Bind port (default: 3000)")

    sub.add_parser("fetch", help="Fetch the current PR view once and print it as JSON")

    args = parser.parse_args(argv)
    setup_logging(verbose=args.verbose, debug=args.debug)

    try:
        config = load_config(args.config)
    except (OSError, ValueError) as e:
        print(f"ERROR: invalid configuration: {e}", file=sys.stderr)
        return 2

    if args.command == "fetch":
        return asyncio.run(_fetch_once(config))

    overrides = {}
    if args.host:
        overrides["host"] = args.host
    if args.port:
        overrides["port"] = args.port
    config = config.with_overrides(overrides)

    # Imported here so `fetch` does not pay for the server stack.
    from .server import run_server

    run_server(config)
    return 0
