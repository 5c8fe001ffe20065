#!/usr/bin/env python3
"""Run the tracksync backend.

Opens the SQLite cache, starts the preload / config-refresh loops and
serves the persistent tier plus the operational triggers over HTTP.

Usage
-----
Set environment variables and run::

    export TRACKSYNC_ACCESS_TOKEN="..."
    export TRACKSYNC_PROJECT_ID="event1021"
    python scripts/serve.py --port 3004

Options::

    --host HOST          Interface to bind (default: 127.0.0.1)
    --port PORT          Port to bind (default: 3004)
    --database FILE      SQLite file (default: $TRACKSYNC_DATABASE_PATH or tracksync.db)
    --no-background      Serve only; do not start the preload loops
    --verbose            Enable debug logging
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Any

# Allow running from the repo root without installing the package.
_repo = Path(__file__).resolve().parent.parent
_src = _repo / "src"
if _src.is_dir():
    sys.path.insert(0, str(_src))

from aiohttp import web  # noqa: E402

from tracksync import SyncConfig  # noqa: E402
from tracksync.server import create_app  # noqa: E402


def main() -> None:
    parser = argparse.ArgumentParser(description="Serve the tracksync backend.")
    parser.add_argument("--host", default="127.0.0.1", help="Interface to bind")
    parser.add_argument("--port", type=int, default=3004, help="Port to bind")
    parser.add_argument("--database", help="SQLite file for the cache")
    parser.add_argument("--no-background", action="store_true", help="Do not start the preload loops")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    else:
        logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    overrides: dict[str, Any] = {}
    if args.database:
        overrides["database_path"] = args.database
    config = SyncConfig.from_env(**overrides)

    app = create_app(config, start_background=not args.no_background)
    web.run_app(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
