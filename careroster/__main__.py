from __future__ import annotations

import argparse
import os

import uvicorn

from .logging_setup import configure_logging


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the careroster API server.")
    parser.add_argument("--host", default=os.environ.get("CAREROSTER_HOST", "127.0.0.1"))
    parser.add_argument("--port", type=int, default=int(os.environ.get("CAREROSTER_PORT", "8000")))
    parser.add_argument("--reload", action="store_true", help="Restart on code changes (development only).")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    configure_logging()
    uvicorn.run("careroster.api:app", host=args.host, port=args.port, reload=args.reload, log_config=None)


if __name__ == "__main__":
    main()
