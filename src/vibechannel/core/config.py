"""Configuration loader for VibeChannel."""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path

import yaml

from vibechannel.core.fileutil import atomic_write

log = logging.getLogger(__name__)

DEFAULTS: dict = {
    "home": "~/.vibechannel",
    "user": {
        "name": None,  # sender name; falls back to git user.name
    },
    "github": {
        "owner": None,
        "repo": None,
        "base_url": "https://api.github.com",
        "branch": "vibechannel",
        "root": "",  # folder holding the channel directories
        "token": "keyring",
        "timeout": 30.0,
    },
    "sync": {
        "staleness_seconds": 60,
        "retention": 500,
        "poll_interval": 10,
    },
}


def resolve_home() -> Path:
    """Resolve VIBECHANNEL_HOME: env var > default ~/.vibechannel."""
    env_home = os.environ.get("VIBECHANNEL_HOME")
    if env_home:
        return Path(env_home).expanduser().resolve()
    return Path(DEFAULTS["home"]).expanduser().resolve()


def config_path(home: Path | None = None) -> Path:
    """Return the path to config.yaml."""
    if home is None:
        home = resolve_home()
    return home / "config.yaml"


def load_config(path: Path | None = None) -> dict:
    """Load config.yaml and merge with defaults.

    Args:
        path: Explicit path to config.yaml. If None, uses default location.

    Returns:
        Merged configuration dict.
    """
    if path is None:
        path = config_path()

    user_config: dict = {}
    if path.exists():
        try:
            raw = path.read_text(encoding="utf-8")
            user_config = yaml.safe_load(raw) or {}
        except (OSError, yaml.YAMLError):
            log.warning("Failed to read config at %s, using defaults", path, exc_info=True)

    merged = _deep_merge(DEFAULTS, user_config)

    home_str = os.environ.get("VIBECHANNEL_HOME") or merged.get("home", DEFAULTS["home"])
    merged["home"] = str(Path(home_str).expanduser().resolve())

    return merged


def save_config(config: dict, path: Path | None = None) -> Path:
    """Write the non-default part of a config dict to config.yaml."""
    if path is None:
        path = config_path(Path(config["home"]) if "home" in config else None)
    data = _diff(config, DEFAULTS)
    data.pop("home", None)
    content = yaml.dump(data, default_flow_style=False, allow_unicode=True, sort_keys=False)
    atomic_write(path, content)
    return path


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base, returning a new dict."""
    result = copy.deepcopy(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _diff(config: dict, defaults: dict) -> dict:
    """Keys of config whose values differ from defaults."""
    result: dict = {}
    for key, value in config.items():
        default = defaults.get(key)
        if isinstance(value, dict) and isinstance(default, dict):
            nested = _diff(value, default)
            if nested:
                result[key] = nested
        elif value != default:
            result[key] = value
    return result
