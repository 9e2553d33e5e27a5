"""Command-line entry point for em_server."""

from __future__ import annotations

import argparse
import os
from typing import List, Optional

import uvicorn

DEFAULT_APP = "em_server.app.main:app"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="em-server", description="Run the EnvironmentManager API server.")
    parser.add_argument("--host", default=os.getenv("EM_HOST", "127.0.0.1"))
    parser.add_argument("--port", type=int, default=int(os.getenv("EM_PORT", "8000")))
    parser.add_argument("--app", default=DEFAULT_APP, help="ASGI app import path")
    parser.add_argument("--reload", action="store_true", help="Reload on code changes (development only)")
    parser.add_argument("--log-level", default=os.getenv("EM_LOG_LEVEL", "info").lower())
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """Serve the API with uvicorn. A single worker is required: resource state lives in process."""
    args = build_parser().parse_args(argv)
    uvicorn.run(args.app, host=args.host, port=args.port, reload=args.reload, log_level=args.log_level, workers=1)


if __name__ == "__main__":
    main()
