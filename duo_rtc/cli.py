"""Unified CLI for duo-rtc using Click."""

import sys

import click
from loguru import logger

from duo_rtc.exceptions import InvalidRoomError
from duo_rtc.protocol import DEFAULT_LINK_BASE, generate_room_id, make_room_link, room_from_link


@click.group()
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Minimum level of log messages written to stderr.",
)
def cli(log_level):
    logger.remove()
    logger.add(sys.stderr, level=log_level.upper())


@cli.command()
@click.option("--host", type=str, required=False, help="Interface to bind. Overrides config.")
@click.option("--port", "-p", type=int, required=False, help="Port to listen on. Overrides config.")
@click.option(
    "--case-insensitive",
    is_flag=True,
    default=False,
    help="Treat room identities case-insensitively.",
)
def server(host, port, case_insensitive):
    """Run the signaling server.

    Pairs at most two clients per room and relays their offer, answer and
    ICE candidate messages.

    Example:
        duo-rtc server --host 0.0.0.0 --port 8080
    """
    from duo_rtc.rtc_server import run_server

    run_server(
        host=host,
        port=port,
        case_sensitive=False if case_insensitive else None,
    )


@cli.command()
@click.argument("room")
@click.option(
    "--server",
    "-s",
    "server_url",
    type=str,
    envvar="DUO_RTC_SIGNALING_WS",
    required=False,
    help="Signaling server websocket URL. Can also use DUO_RTC_SIGNALING_WS env var.",
)
@click.option(
    "--record",
    type=click.Path(dir_okay=False, writable=True),
    required=False,
    help="Record the remote audio/video to this file.",
)
def call(room, server_url, record):
    """Join ROOM and start a video call.

    ROOM is a room id or a shareable link carrying a "room" parameter.

    Examples:
        duo-rtc call room1
        duo-rtc call "duo://join?room=room1"
    """
    from duo_rtc.rtc_call import run_call

    try:
        room_id = room_from_link(room)
    except InvalidRoomError as e:
        logger.error(f"Invalid room: {e}")
        sys.exit(1)

    error = run_call(room_id, server_url=server_url, record_to=record)
    if error is not None:
        click.echo(f"Error: {error}", err=True)
        sys.exit(1)


@cli.command(name="new-room")
@click.option(
    "--link-base",
    default=DEFAULT_LINK_BASE,
    show_default=True,
    help="Base URL for the shareable link.",
)
def new_room(link_base):
    """Create a fresh room id and print its shareable link."""
    room_id = generate_room_id()
    click.echo(f"Room ID: {room_id}")
    click.echo(f"Link:    {make_room_link(room_id, link_base)}")


if __name__ == "__main__":
    cli()
