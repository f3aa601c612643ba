#!/usr/bin/env python3
"""Run the marketplace server under uvicorn.

Host, port and log level default to ``HOST``, ``PORT`` and ``LOG_LEVEL`` from
the environment (or ``.env``). ``--create-schema`` sets ``AUTO_CREATE_SCHEMA``
for single-node setups that skip alembic.
"""

import argparse
import os

import uvicorn

from marketplace.config import get_settings


def main():
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Run the marketplace server")
    parser.add_argument("--host", default=settings.host)
    parser.add_argument("--port", type=int, default=settings.port)
    parser.add_argument("--reload", action="store_true", help="Auto-reload on code changes")
    parser.add_argument("--workers", type=int, default=1)
    parser.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error", "critical"],
        default=settings.log_level.lower(),
    )
    parser.add_argument(
        "--create-schema",
        action="store_true",
        help="Create missing tables on startup instead of running migrations",
    )
    args = parser.parse_args()

    if args.create_schema:
        os.environ["AUTO_CREATE_SCHEMA"] = "true"
        get_settings.cache_clear()

    # Application logs go through structlog; uvicorn keeps its own access log.
    uvicorn.run(
        "marketplace.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        workers=1 if args.reload else args.workers,
        log_level=args.log_level,
    )


if __name__ == "__main__":
    main()
