"""
Device CLI entry point.

Main command group for the ServiceBell device CLI.
"""

import asyncio
import sys
from pathlib import Path
from typing import Optional

import click

from device.src import __version__
from device.src.api_client import ApiError, AuthenticationError, ServiceBellApiClient
from device.src.config import ConfigError, DeviceConfig
from device.src.notification_store import NotificationStore
from device.src.sync_client import DeviceSyncClient, display_title


def _load_config(config_path: Optional[Path]) -> DeviceConfig:
    try:
        config = DeviceConfig(config_path=config_path)
        config.validate()
    except ConfigError as e:
        click.echo(click.style(f"Configuration error: {e}", fg="red"), err=True)
        sys.exit(1)
    return config


@click.group()
@click.version_option(version=__version__, prog_name="servicebell-device")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Path to the device config file (default: platform config dir).",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[Path]) -> None:
    """
    ServiceBell Device - Restaurant notification receiver.

    Keeps the kitchen and floor devices in sync with bookings and orders,
    even across network drops.

    Use 'servicebell-device COMMAND --help' for more information on a command.
    """
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


@cli.command()
@click.pass_context
def run(ctx: click.Context) -> None:
    """Start the device: change stream, notification bridge and sync client."""
    from device.src.main import DeviceRunner

    config = _load_config(ctx.obj["config_path"])
    runner = DeviceRunner(config)
    sys.exit(asyncio.run(runner.run()))


@cli.command()
@click.pass_context
def sync(ctx: click.Context) -> None:
    """Pull queued notifications once and exit."""
    config = _load_config(ctx.obj["config_path"])
    if not config.is_configured:
        click.echo(click.style("Device is not configured.", fg="red"), err=True)
        sys.exit(1)

    async def _sync() -> int:
        async with ServiceBellApiClient(config.server_url, config.api_token) as api_client:
            client = DeviceSyncClient(
                api_client,
                NotificationStore(max_pings=config.max_pings),
                heartbeat_interval=config.heartbeat_interval_seconds,
                ping_interval=config.ping_interval_seconds,
            )
            return await client.sync_now()

    try:
        count = asyncio.run(_sync())
    except AuthenticationError as e:
        click.echo(click.style(f"Authentication failed: {e}", fg="red"), err=True)
        sys.exit(3)
    except ApiError as e:
        click.echo(click.style(f"Sync failed: {e}", fg="red"), err=True)
        sys.exit(4)

    click.echo(f"Received {count} notification(s).")


@cli.command()
@click.option("--all", "show_all", is_flag=True, help="Include acknowledged notifications.")
@click.pass_context
def status(ctx: click.Context, show_all: bool) -> None:
    """Show locally unacknowledged notifications."""
    config = _load_config(ctx.obj["config_path"])
    store = NotificationStore(max_pings=config.max_pings)
    notifications = store.all() if show_all else store.unacknowledged()

    click.echo(f"Server: {config.server_url or '(not configured)'}")
    click.echo(f"Persistent reminders: {'on' if store.persistent_enabled else 'off'}")
    if not notifications:
        click.echo("No unacknowledged notifications.")
        return

    for notification in notifications:
        state = "acknowledged" if notification.acknowledged else (
            "gave up" if notification.exhausted else f"pinged {notification.ping_count}/{notification.max_pings}"
        )
        click.echo(
            f"  #{notification.id}  {display_title(notification)}  "
            f"[{notification.received_at:%Y-%m-%d %H:%M}] ({state})"
        )


def main() -> None:
    """Main entry point for CLI."""
    cli(obj={})


if __name__ == "__main__":
    main()
