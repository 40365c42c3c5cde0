"""Hardware signer daemon -- entry point.

Usage::

    python -m hwsigner [--config PATH] [--host HOST] [--port PORT] [--simulate]

Startup sequence:
    1. Parse CLI arguments
    2. Load configuration from YAML (or defaults) and env overrides
    3. Build the HardwareSigner (transports, registry, orchestrator, notifier)
    4. Create the FastAPI application
    5. Start the uvicorn server
    6. On shutdown: disconnect devices, close event streams and the journal
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

import uvicorn

from hwsigner.app import create_app
from hwsigner.config import Settings, load_settings
from hwsigner.signer import HardwareSigner

logger = logging.getLogger("hwsigner")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Parameters
    ----------
    argv:
        Argument list.  Defaults to ``sys.argv[1:]`` when ``None``.
    """
    parser = argparse.ArgumentParser(
        prog="hwsigner",
        description="Hardware wallet signing daemon",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to YAML configuration file",
    )
    parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Interface for the API server (default: from config)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port for the API server (default: from config)",
    )
    parser.add_argument(
        "--simulate",
        action="store_true",
        default=False,
        help="Use simulated devices instead of real transports (development only)",
    )
    return parser.parse_args(argv)


def build_settings(args: argparse.Namespace) -> Settings:
    settings = load_settings(Path(args.config) if args.config else None)
    if args.host:
        settings.api.host = args.host
    if args.port:
        settings.api.port = args.port
    if args.simulate:
        settings.transport.simulate = True
    return settings


async def run_signer(settings: Settings) -> None:
    """Start the daemon and run until cancelled."""
    signer = HardwareSigner(settings)
    app = create_app(signer=signer)

    uvicorn_config = uvicorn.Config(
        app=app,
        host=settings.api.host,
        port=settings.api.port,
        log_level="info",
    )
    server = uvicorn.Server(uvicorn_config)

    try:
        await server.serve()
    except asyncio.CancelledError:
        logger.info("Shutdown signal received -- stopping signer")
    finally:
        # The app lifespan normally closes the signer; close() is idempotent.
        await signer.close()
        logger.info("Signer shutdown complete")


def main() -> None:
    """Parse CLI args and run the daemon."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    args = parse_args()
    settings = build_settings(args)

    try:
        asyncio.run(run_signer(settings))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(0)


if __name__ == "__main__":
    main()
