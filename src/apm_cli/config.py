"""Configuration management for APM-CLI."""

import os
import json
from dataclasses import dataclass
from pathlib import Path

from .utils.github_host import DEFAULT_HOST


CONFIG_DIR = os.path.expanduser("~/.apm-cli")
CONFIG_FILE = os.path.join(CONFIG_DIR, "config.json")

DEFAULT_MAX_DEPTH = 50
DEFAULT_MAX_WORKERS = 4


def ensure_config_exists():
    """Ensure the configuration directory and file exist."""
    if not os.path.exists(CONFIG_DIR):
        os.makedirs(CONFIG_DIR)

    if not os.path.exists(CONFIG_FILE):
        with open(CONFIG_FILE, "w") as f:
            json.dump({}, f)


def get_config():
    """Get the current configuration.

    Returns:
        dict: Current configuration, empty if no config file exists yet.
    """
    if not os.path.exists(CONFIG_FILE):
        return {}
    with open(CONFIG_FILE, "r") as f:
        return json.load(f)


def update_config(updates):
    """Update the configuration with new values.

    Args:
        updates (dict): Dictionary of configuration values to update.
    """
    ensure_config_exists()
    config = get_config()
    config.update(updates)

    with open(CONFIG_FILE, "w") as f:
        json.dump(config, f, indent=2)


@dataclass(frozen=True)
class ResolverConfig:
    """Explicit settings for dependency resolution, installation and verification."""
    max_depth: int = DEFAULT_MAX_DEPTH
    max_workers: int = DEFAULT_MAX_WORKERS
    default_host: str = DEFAULT_HOST
    apm_modules_dirname: str = "apm_modules"
    update_refs: bool = False

    def __post_init__(self):
        if self.max_depth < 1:
            raise ValueError(f"max_depth must be at least 1, got {self.max_depth}")
        if self.max_workers < 1:
            raise ValueError(f"max_workers must be at least 1, got {self.max_workers}")

    def apm_modules_dir(self, project_root):
        """Return the apm_modules directory for a project root."""
        return Path(project_root) / self.apm_modules_dirname

    @classmethod
    def load(cls, update_refs: bool = False, env=None) -> "ResolverConfig":
        """Build a config from the global config file and environment.

        Precedence: environment (GITHUB_HOST, APM_MAX_DEPTH, APM_MAX_WORKERS)
        over ~/.apm-cli/config.json over defaults.
        """
        if env is None:
            env = os.environ
        config = get_config()

        def _int_setting(env_name, config_name, default):
            raw = env.get(env_name, config.get(config_name, default))
            try:
                return int(raw)
            except (TypeError, ValueError):
                raise ValueError(f"{env_name} must be an integer, got {raw!r}")

        return cls(
            max_depth=_int_setting("APM_MAX_DEPTH", "max_depth", DEFAULT_MAX_DEPTH),
            max_workers=_int_setting("APM_MAX_WORKERS", "max_workers", DEFAULT_MAX_WORKERS),
            default_host=env.get("GITHUB_HOST") or config.get("default_host") or DEFAULT_HOST,
            update_refs=update_refs,
        )
