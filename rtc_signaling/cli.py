"""Unified CLI for rtc-signaling using Click."""

import asyncio
import json
import logging
import sys

import click
from loguru import logger

from rtc_signaling.config import get_config
from rtc_signaling.errors import SignalingError

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.remove()
    logger.add(sys.stderr, level=level.upper())


@click.group()
def cli():
    pass


# =============================================================================
# Server Commands
# =============================================================================


@cli.command()
@click.option("--host", default=None, help="Host to bind to (default: from config, localhost).")
@click.option("--port", type=int, default=None, help="Port to listen on (default: from config, 8080).")
@click.option("--max-clients", type=int, default=None, help="Maximum number of connected clients.")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Logging verbosity.",
)
def serve(host, port, max_clients, log_level):
    """Run the signaling relay.

    Clients connect over WebSocket, receive their id, and exchange
    offer/answer/ice-candidate/bye messages addressed by id.

    Example:
        rtc-signaling serve --host 0.0.0.0 --port 9000
    """
    from rtc_signaling.server import main

    _configure_logging(log_level)
    config = get_config()
    if max_clients is not None:
        if max_clients < 1:
            raise click.BadParameter("must be at least 1", param_hint="--max-clients")
        config.server.max_clients = max_clients

    try:
        asyncio.run(main(config, host=host, port=port))
    except KeyboardInterrupt:
        logger.info("Server stopped")
    except OSError as e:
        logger.error(f"Failed to start server: {e}")
        sys.exit(1)


# =============================================================================
# Client Commands
# =============================================================================


async def _list_peers(url: str, timeout: float):
    from rtc_signaling.peer.signaling_client import SignalingClient

    client = SignalingClient(url)
    client_id = await client.connect(timeout=timeout)
    runner = asyncio.create_task(client.run())
    try:
        peers = await client.list_peers(timeout=timeout)
    finally:
        await client.close()
        await asyncio.gather(runner, return_exceptions=True)
    return client_id, peers


@cli.command()
@click.option("--url", default=None, help="Relay WebSocket URL (default: from config).")
@click.option("--timeout", default=5.0, show_default=True, help="Seconds to wait for replies.")
def peers(url, timeout):
    """List the clients connected to a relay.

    Example:
        rtc-signaling peers --url ws://localhost:8080
    """
    url = url or get_config().client.signaling_url
    try:
        client_id, peer_ids = asyncio.run(_list_peers(url, timeout))
    except (OSError, asyncio.TimeoutError, SignalingError) as e:
        logger.error(f"Could not query {url}: {e}")
        sys.exit(1)

    click.echo(f"Connected as {client_id}")
    if not peer_ids:
        click.echo("No other peers connected")
        return
    click.echo(f"{len(peer_ids)} peer(s):")
    for peer_id in peer_ids:
        click.echo(f"  {peer_id}")


# =============================================================================
# Config Commands (subgroup)
# =============================================================================


@cli.group()
def config():
    """Inspect rtc-signaling configuration."""
    pass


@config.command(name="show")
def config_show():
    """Print the effective configuration as JSON."""
    cfg = get_config()
    if cfg.source:
        click.echo(f"# loaded from {cfg.source}")
    click.echo(json.dumps(cfg.to_dict(), indent=2))


if __name__ == "__main__":
    cli()
