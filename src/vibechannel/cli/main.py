"""CLI entry point for VibeChannel (vc command)."""

import logging

import click

from vibechannel import __version__
from vibechannel.cli.init_cmd import init_cmd
from vibechannel.cli.sync_cmd import (
    channels_cmd,
    create_cmd,
    messages_cmd,
    quota_cmd,
    send_cmd,
    watch_cmd,
)


@click.group()
@click.version_option(version=__version__, prog_name="vibechannel")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """VibeChannel: git-backed chat channels, synced locally."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


cli.add_command(init_cmd)
cli.add_command(channels_cmd)
cli.add_command(create_cmd)
cli.add_command(messages_cmd)
cli.add_command(send_cmd)
cli.add_command(watch_cmd)
cli.add_command(quota_cmd)


if __name__ == "__main__":
    cli()
