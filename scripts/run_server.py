"""Script to launch the coding-assistant server."""

from __future__ import annotations

import argparse
import logging
import os
import sys

import uvicorn

# Ensure src/ is on sys.path (so imports work when run from a checkout)
SRC_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "src"))
if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)

from coding_assistant.config import Settings, load_config  # noqa: E402
from coding_assistant.server import create_app  # noqa: E402


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the coding-assistant server.")
    parser.add_argument(
        "--host",
        type=str,
        default=os.environ.get("HOST", "127.0.0.1"),
        help="Host to bind the server to (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=int(os.environ.get("PORT", "8000")),
        help="Port to bind the server to (default: 8000)",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to a YAML config file (default: $CODING_ASSISTANT_CONFIG or config/default.yaml)",
    )
    args = parser.parse_args()

    cfg = load_config(args.config)
    settings = Settings.from_config(cfg)
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = create_app(args.config, settings=settings)

    # One worker: the turn lock is per process.
    uvicorn.run(
        app,
        host=args.host,
        port=args.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
