"""
Configuration file helpers for unifi-lego.

Low-level utilities for reading and writing YAML configuration, merging it
over defaults and converting environment variable strings.
"""

import ast
import os
from pathlib import Path
from typing import Any

import yaml

CONFIG_PATH_ENV = "UNIFI_LEGO_CONFIG"
DEFAULT_CONFIG_PATH = Path("/data/unifi-lego/config.yaml")


def get_config_path(config_path: Path | None = None) -> Path:
    """Resolve the configuration file location.

    Args:
        config_path: Explicit path, typically from ``--config``

    Returns:
        The explicit path, else ``$UNIFI_LEGO_CONFIG``, else the default path
    """
    if config_path is not None:
        return config_path
    env_path = os.environ.get(CONFIG_PATH_ENV)
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_PATH


def deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> None:
    """Recursively merge ``updates`` into ``base`` in place."""
    for key, value in updates.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            deep_merge(base[key], value)
        else:
            base[key] = value


def load_yaml_config(
    config_path: Path, defaults: dict[str, Any] | None = None
) -> dict[str, Any]:
    """Load a YAML file merged over a copy of ``defaults``.

    A missing or empty file yields the defaults.

    Raises:
        ValueError: If the file exists but cannot be read or parsed
    """
    config: dict[str, Any] = copy_config(defaults) if defaults else {}

    if not config_path.exists():
        return config

    try:
        with config_path.open(encoding="utf-8") as f:
            loaded = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ValueError(f"Failed to load config from {config_path}: {e}") from e

    if not isinstance(loaded, dict):
        raise ValueError(
            f"Failed to load config from {config_path}: top level must be a mapping"
        )

    deep_merge(config, loaded)
    return config


def save_yaml_config(
    config: dict[str, Any], config_path: Path, comment: str | None = None
) -> None:
    """Write ``config`` as YAML, creating parent directories.

    Raises:
        ValueError: If the file cannot be written
    """
    try:
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with config_path.open("w", encoding="utf-8") as f:
            if comment:
                for line in comment.splitlines():
                    f.write(f"# {line}\n")
            yaml.dump(config, f, default_flow_style=False, sort_keys=False)
    except OSError as e:
        raise ValueError(f"Failed to save config to {config_path}: {e}") from e


def copy_config(config: dict[str, Any]) -> dict[str, Any]:
    """Return a deep copy of a nested configuration dict."""
    return {
        key: copy_config(value) if isinstance(value, dict) else _copy_leaf(value)
        for key, value in config.items()
    }


def _copy_leaf(value: Any) -> Any:
    if isinstance(value, list):
        return list(value)
    return value


def get_nested_value(config: dict[str, Any], path: str) -> Any:
    """Get a value by dotted path, e.g. ``keystore.alias``.

    Raises:
        KeyError: If any path component is missing
    """
    current: Any = config
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            raise KeyError(f"Config path not found: {path}")
        current = current[part]
    return current


def set_nested_value(config: dict[str, Any], path: str, value: Any) -> None:
    """Set a value by dotted path, creating intermediate sections."""
    parts = path.split(".")
    current = config
    for part in parts[:-1]:
        if part not in current:
            current[part] = {}
        elif not isinstance(current[part], dict):
            raise ValueError(f"Cannot set {path}: '{part}' is not a section")
        current = current[part]
    current[parts[-1]] = value


def convert_string_to_bool(value: str) -> bool:
    """Convert an environment style string to bool.

    Raises:
        ValueError: If the string is not a recognised boolean
    """
    lowered = value.strip().lower()
    if lowered in ("true", "yes", "1", "on"):
        return True
    if lowered in ("false", "no", "0", "off", ""):
        return False
    raise ValueError(f"Invalid boolean value: {value}")


def convert_string_to_list(value: str) -> list[str]:
    """Convert a comma separated or bracketed list string to a list."""
    value = value.strip()
    if not value:
        return []

    if value.startswith("[") and value.endswith("]"):
        try:
            parsed = ast.literal_eval(value)
            if isinstance(parsed, list):
                return [str(item) for item in parsed]
        except (ValueError, SyntaxError):
            pass

    items = [item.strip().strip("\"'") for item in value.split(",")]
    return [item for item in items if item]
