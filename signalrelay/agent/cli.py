"""
Command line agent: connect to a relay as controller or responder.

The controller usually receives media and records or discards it; the
responder usually publishes a file or device through ``--play-from``.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
from typing import Optional

from ..signaling.registry import Role
from ..utils.config import load_config
from ..utils.logging import configure_logging
from .aiortc_peer import SinkMediaOutput, aiortc_factory, player_tracks
from .client import SignalingClient
from .negotiation import NegotiationAgent

LOG = logging.getLogger(__name__)


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="WebRTC negotiation agent")
    parser.add_argument("--url", default="ws://127.0.0.1:3000/ws", help="relay websocket URL")
    parser.add_argument(
        "--role",
        choices=[role.value for role in Role],
        default=Role.CONTROLLER.value,
        help="role announced to the relay",
    )
    parser.add_argument("--offer", action="store_true", help="send an offer as soon as the peer is available")
    parser.add_argument("--play-from", default=None, help="media file or device to publish")
    parser.add_argument("--play-format", default=None, help="ffmpeg input format for --play-from")
    parser.add_argument("--record-to", default=None, help="write received media to this file")
    parser.add_argument("--ice-server", action="append", default=None, help="STUN/TURN URL (repeatable)")
    parser.add_argument("--config", default=None, help="optional YAML configuration file")
    parser.add_argument("--log-level", default="INFO", help="logging level (DEBUG, INFO, ...)")
    return parser.parse_args(argv)


async def run_agent(args: argparse.Namespace) -> None:
    from aiortc.contrib.media import MediaPlayer

    config = load_config(args.config)
    ice_servers = args.ice_server or config.ice_servers
    role = Role(args.role)

    player = None
    tracks = tuple
    if args.play_from:
        player = MediaPlayer(args.play_from, format=args.play_format)
        tracks = player_tracks(player)

    if args.record_to:
        media_output = SinkMediaOutput.recorder(args.record_to)
    else:
        media_output = SinkMediaOutput.blackhole()

    client = SignalingClient(args.url)
    agent = NegotiationAgent(
        role,
        client.send,
        aiortc_factory(local_tracks=tracks),
        ice_servers=ice_servers,
        media_output=media_output,
        auto_offer=args.offer,
        expects_remote_media=player is None,
    )

    async def on_error(error: BaseException) -> None:
        agent.set_status("Connection error with signaling server.")

    client.on_message = agent.handle
    client.on_close = agent.on_transport_closed
    client.on_error = on_error

    agent.set_status("Connecting to signaling server...")
    await client.connect()
    try:
        await agent.announce()
        await client.run()
    finally:
        await agent.teardown()
        await client.close()


def run(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    configure_logging(args.log_level)
    try:
        asyncio.run(run_agent(args))
    except KeyboardInterrupt:
        LOG.info("Agent interrupted by user.")


if __name__ == "__main__":
    run()
