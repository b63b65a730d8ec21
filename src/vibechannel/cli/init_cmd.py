"""CLI command for pointing VibeChannel at a repository."""

from __future__ import annotations

import logging
from pathlib import Path

import click
from keyring.errors import KeyringError

from vibechannel.core.config import load_config, resolve_home, save_config
from vibechannel.core.fileutil import ensure_dir

log = logging.getLogger(__name__)


@click.command("init")
@click.argument("repository")
@click.option("--name", default=None, help="Your sender name.")
@click.option("--branch", default=None, help="Branch holding the channels.")
@click.option("--token", default=None, help="GitHub token, saved to the system keyring.")
@click.option(
    "--home",
    type=click.Path(path_type=Path),
    default=None,
    help="Override VIBECHANNEL_HOME path.",
)
def init_cmd(
    repository: str,
    name: str | None,
    branch: str | None,
    token: str | None,
    home: Path | None,
) -> None:
    """Configure the repository to sync, as OWNER/REPO.

    Existing settings in config.yaml are kept; only the given ones change.
    """
    owner, sep, repo = repository.partition("/")
    if not sep or not owner or not repo or "/" in repo:
        click.echo(f"Error: expected OWNER/REPO, got {repository!r}")
        return

    home = (home or resolve_home()).expanduser().resolve()
    ensure_dir(home)
    cfg_path = home / "config.yaml"
    config = load_config(cfg_path)

    config["github"]["owner"] = owner
    config["github"]["repo"] = repo
    if branch:
        config["github"]["branch"] = branch
    if name:
        config["user"]["name"] = name

    if token:
        from vibechannel.remote.github import store_token

        try:
            store_token(token)
        except KeyringError as e:
            log.warning("Keyring write failed", exc_info=True)
            click.echo(f"Could not save token to keyring: {e}")
            click.echo("Set VIBECHANNEL_TOKEN instead.")
        else:
            click.echo("Token saved to keyring.")

    save_config(config, cfg_path)
    click.echo(f"Configured {owner}/{repo} in {cfg_path}")
