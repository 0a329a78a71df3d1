"""
Command-line entry point: load the configuration and serve until interrupted.

    python -m botgate [--config config.json]
"""

import argparse
import logging
import sys

import uvicorn

from botgate.config import ConfigError, load_settings
from botgate.main import create_app

logger = logging.getLogger("botgate")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="botgate", description="Shared remote control for BLE gate bots."
    )
    parser.add_argument(
        "-c",
        "--config",
        default=None,
        help="path to the JSON config file (default: $BOTGATE_CONFIG or config.json)",
    )
    args = parser.parse_args(argv)

    try:
        settings = load_settings(args.config)
    except ConfigError as exc:
        logger.error("%s", exc)
        return 1

    server = settings.server
    tls: dict[str, str] = {}
    if server.use_tls:
        tls = {"ssl_certfile": server.certificate, "ssl_keyfile": server.private_key}

    # uvicorn handles SIGINT/SIGTERM and runs the lifespan shutdown.
    uvicorn.run(
        create_app(settings),
        host=server.host,
        port=server.port,
        log_level="debug" if settings.debug else "info",
        **tls,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
