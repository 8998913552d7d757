"""
Relay process entrypoint.

Resolves configuration, initialises logging and runs the FastAPI app under
uvicorn.  ``signalrelay`` on the command line maps to :func:`run`.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import socket
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from . import RelayConfig
from .api.server import create_app
from .signaling.relay import SignalingRelay
from .utils.config import load_config
from .utils.logging import configure_logging

LOG = logging.getLogger(__name__)


def discover_lan_address() -> Optional[str]:
    """
    Best-effort guess of the non-loopback IPv4 address peers should dial.

    Connecting a UDP socket sends no packets; it only asks the kernel which
    local address would route outwards.
    """

    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as probe:
            probe.connect(("10.255.255.255", 1))
            address = probe.getsockname()[0]
    except OSError:
        return None
    if not address or address.startswith("127."):
        return None
    return address


def log_listening_banner(config: RelayConfig) -> None:
    LOG.info("Server listening on port %s.", config.port)
    address = discover_lan_address()
    if address:
        LOG.info("  => Accessible on your network at: http://%s:%s (for browser)", address, config.port)
        LOG.info("  => Peers should connect to: ws://%s:%s/ws", address, config.port)
    else:
        LOG.info("  Could not determine a network IP; use this machine's LAN address.")
        LOG.info("  Ensure the server listens on 0.0.0.0 to accept external connections.")
    LOG.info("  (Also listening on http://localhost:%s and ws://localhost:%s/ws)", config.port, config.port)


@asynccontextmanager
async def lifespan(relay: SignalingRelay, config: RelayConfig) -> AsyncIterator[None]:
    LOG.info("Relay lifespan starting")
    log_listening_banner(config)
    try:
        yield
    finally:
        LOG.info("Relay lifespan shutting down (%d live connections)", relay.connection_count)


async def serve(config: RelayConfig) -> None:
    import uvicorn

    relay = SignalingRelay()

    @asynccontextmanager
    async def app_lifespan(_app) -> AsyncIterator[None]:
        async with lifespan(relay, config):
            yield

    app = create_app(relay=relay, config=config, lifespan=app_lifespan)
    server_config = uvicorn.Config(
        app=app,
        host=config.host,
        port=config.port,
        log_config=None,
        log_level=config.log_level.lower(),
        reload=False,
    )
    server = uvicorn.Server(config=server_config)

    def _handle_signal(signum: int, frame: Optional[object]) -> None:
        LOG.info("Received signal %s, shutting down server...", signum)
        server.should_exit = True

    for signame in ("SIGINT", "SIGTERM"):
        signal.signal(getattr(signal, signame), _handle_signal)

    await server.serve()


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="WebRTC signaling relay")
    parser.add_argument("--config", default=None, help="optional YAML configuration file")
    parser.add_argument("--host", default=None, help="bind host for the relay")
    parser.add_argument("--port", type=int, default=None, help="bind port for the relay")
    parser.add_argument("--static-dir", default=None, help="directory of browser assets served at /")
    parser.add_argument("--log-level", default=None, help="logging level (DEBUG, INFO, ...)")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> RelayConfig:
    config = load_config(args.config)
    if args.host is not None:
        config.host = args.host
    if args.port is not None:
        config.port = args.port
    if args.static_dir is not None:
        config.static_dir = args.static_dir
    if args.log_level is not None:
        config.log_level = args.log_level
    return config


def run(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    configure_logging(args.log_level or "INFO")
    config = build_config(args)
    configure_logging(config.log_level)

    try:
        asyncio.run(serve(config))
    except KeyboardInterrupt:
        LOG.info("Relay interrupted by user.")


if __name__ == "__main__":
    run()
