from __future__ import annotations

import argparse
import os
from pathlib import Path

import uvicorn


PROJECT_ROOT = Path(__file__).resolve().parent


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="notifyhub notification service.")
    parser.add_argument(
        "--host",
        default="0.0.0.0",
        help="Interface to bind the HTTP server to.",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=int(os.getenv("PORT", "5003")),
        help="Port to listen on.",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to the YAML configuration (defaults to $NOTIFYHUB_CONFIG or app/config.yaml).",
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Restart the server when source files change (development only).",
    )
    return parser.parse_args()


def run(host: str, port: int, config: str | None = None, reload: bool = False) -> None:
    if config:
        os.environ["NOTIFYHUB_CONFIG"] = str(Path(config).expanduser().resolve())
    uvicorn.run(
        "api:app",
        host=host,
        port=port,
        reload=reload,
        app_dir=str(PROJECT_ROOT),
    )


if __name__ == "__main__":
    args = parse_args()
    run(args.host, args.port, config=args.config, reload=args.reload)
