"""Unified CLI for dm-rtc using Click."""

import sys

import click
from loguru import logger

from dm_rtc.exceptions import ChannelError
from dm_rtc.relay_server import run_relay
from dm_rtc.rtc_call import run_answer, run_call


@click.group()
def cli():
    pass


# =============================================================================
# Relay
# =============================================================================


@cli.command()
@click.option("--host", default="localhost", help="Host to bind to.")
@click.option("--port", type=int, default=8765, help="Port to listen on.")
def relay(host, port):
    """Run a local conversation relay.

    Stands in for the hosted realtime channel so two machines (or two
    terminals) can place calls to each other.

    Example:
        dm-rtc relay --port 8765
    """
    run_relay(host, port)


# =============================================================================
# Call Commands
# =============================================================================


def call_options(f):
    """Options shared by the call and answer commands."""
    options = [
        click.option(
            "--conversation",
            "-c",
            "conversation_id",
            required=True,
            help="Conversation hosting the call.",
        ),
        click.option(
            "--peer-id",
            "-p",
            required=True,
            help="Your participant id in the conversation.",
        ),
        click.option("--creator-id", default=None, help="Creator's participant id."),
        click.option(
            "--subscriber-id", default=None, help="Subscriber's participant id."
        ),
        click.option(
            "--relay-url",
            default=None,
            help="Relay websocket URL. Overrides config file value.",
        ),
        click.option(
            "--record",
            type=click.Path(dir_okay=False),
            default=None,
            help="Record remote audio/video to this file.",
        ),
        click.option(
            "--duration",
            type=float,
            default=None,
            help="Hang up automatically after this many seconds.",
        ),
    ]
    for option in reversed(options):
        f = option(f)
    return f


@cli.command()
@call_options
def call(**kwargs):
    """Start a video call in a conversation.

    Example:
        dm-rtc call -c conv-1 -p creator-1 --creator-id creator-1
    """
    try:
        run_call(**kwargs)
    except ChannelError as e:
        logger.error(f"Could not join conversation: {e}")
        sys.exit(1)


@cli.command()
@call_options
@click.option(
    "--auto-accept",
    is_flag=True,
    default=False,
    help="Accept the first incoming call without prompting.",
)
def answer(**kwargs):
    """Wait for an incoming video call and answer it.

    Example:
        dm-rtc answer -c conv-1 -p sub-1 --subscriber-id sub-1
    """
    try:
        run_answer(**kwargs)
    except ChannelError as e:
        logger.error(f"Could not join conversation: {e}")
        sys.exit(1)


# =============================================================================
# Config Commands (subgroup)
# =============================================================================


@cli.group()
def config():
    """Inspect dm-rtc configuration."""
    pass


@config.command(name="show")
def config_show():
    """Show the effective configuration.

    Merges defaults, the config file and environment variables.
    """
    from dm_rtc.config import get_config

    cfg = get_config()
    click.echo(f"Environment:      {cfg.environment}")
    click.echo(f"Relay websocket:  {cfg.relay_websocket}")
    click.echo(f"Connect timeout:  {cfg.call.connect_timeout or 'disabled'}")
    click.echo(f"Camera retries:   {cfg.call.camera_switch_attempts}")
    click.echo("STUN servers:")
    for url in cfg.ice.stun_urls:
        click.echo(f"  {url}")
    if cfg.ice.turn_urls:
        click.echo("TURN servers:")
        for url in cfg.ice.turn_urls:
            click.echo(f"  {url}")
    else:
        click.echo("TURN servers:     none")
    click.echo(f"Front camera:     {cfg.media.front_camera}")
    click.echo(f"Back camera:      {cfg.media.back_camera or 'none'}")
    click.echo(f"Microphone:       {cfg.media.microphone}")


if __name__ == "__main__":
    cli()
