"""TOML configuration files for the orchestrator.

Settings come from ``default.toml`` layered with an optional per-environment
file. ``deep_merge`` is shared with the turn state, which merges parsed and
upserted conversation context with the same rules.
"""

import os
import tomllib
from pathlib import Path
from typing import Any

CONFIG_DIR_ENV = "SPIRITS_CONFIG_DIR"
ENVIRONMENT_ENV = "SPIRITS_ENV"
DEFAULT_ENVIRONMENT = "development"

# How many directories above the working directory to search for config/
CONFIG_SEARCH_DEPTH = 5


def get_config_dir() -> Path:
    """Directory holding the orchestrator TOML files.

    ``SPIRITS_CONFIG_DIR`` wins when set and must exist. Without it the
    nearest ``config/`` at or above the working directory is used, falling
    back to a relative ``config`` path.
    """
    configured = os.environ.get(CONFIG_DIR_ENV)
    if configured:
        path = Path(configured)
        if not path.is_dir():
            raise FileNotFoundError(f"{CONFIG_DIR_ENV} points to a missing directory: {configured}")
        return path

    return _find_config_dir(Path.cwd()) or Path("config")


def _find_config_dir(start: Path) -> Path | None:
    for directory in [start, *start.parents][: CONFIG_SEARCH_DEPTH + 1]:
        candidate = directory / "config"
        if candidate.is_dir():
            return candidate
    return None


def get_environment() -> str:
    return os.environ.get(ENVIRONMENT_ENV, DEFAULT_ENVIRONMENT)


def load_toml(file_path: Path) -> dict[str, Any]:
    """Read one TOML file.

    Raises:
        FileNotFoundError: If the file doesn't exist
        tomllib.TOMLDecodeError: If the TOML syntax is invalid
    """
    if not file_path.is_file():
        raise FileNotFoundError(f"Configuration file not found: {file_path}")

    with file_path.open("rb") as f:
        return tomllib.load(f)


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Merge ``override`` into a copy of ``base``.

    Tables (dicts) present on both sides are merged key by key. Anything
    else in ``override``, lists included, replaces the base value. Neither
    argument is modified, so conversation context snapshots taken before a
    merge stay intact.
    """
    merged = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = value
    return merged


def load_config() -> dict[str, Any]:
    """Raw settings from ``default.toml`` plus ``{SPIRITS_ENV}.toml``.

    The default file is required. The environment file is optional and its
    values win.
    """
    config_dir = get_config_dir()

    default_path = config_dir / "default.toml"
    if not default_path.is_file():
        raise FileNotFoundError(
            f"Default configuration file not found: {default_path}. "
            f"Create config/default.toml or set {CONFIG_DIR_ENV}."
        )
    config = load_toml(default_path)

    environment_path = config_dir / f"{get_environment()}.toml"
    if environment_path.is_file():
        config = deep_merge(config, load_toml(environment_path))
    return config
