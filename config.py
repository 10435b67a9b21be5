"""Config loader and validator.

Provides `load_config` which accepts either a path to a YAML file,
a dictionary or None and returns a normalized configuration dict
using DEFAULTS for missing values.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

DEFAULTS: dict[str, Any] = {
    "page_size": 4096,  # bytes per page for the `io` working-set view
    "hot_block_limit": 20,  # rows printed by `block`, 0 = all
    "json_indent": 2,  # indentation of `function-info` / `at-virtual` output
    "hexdump_width": 16,  # bytes per line in the `epilogue` dump
}


class ConfigError(ValueError):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


def _convert_types(cfg: dict[str, Any]) -> None:
    """Normalize types for configuration values in-place.

    Raises ConfigError on conversion failure.
    """
    for key in ("page_size", "hot_block_limit", "json_indent", "hexdump_width"):
        v = cfg.get(key)
        if v is None:
            cfg[key] = DEFAULTS[key]
            continue
        # yaml turns `yes`/`no` into bools, which int() would accept
        if isinstance(v, bool):
            msg = f"Bad types in config: {key} must be an integer, got {v!r}"
            raise ConfigError(msg)
        try:
            cfg[key] = int(v)
        except (TypeError, ValueError) as e:
            msg = f"Bad types in config: {key}: {e}"
            raise ConfigError(msg) from e


def _validate_cfg(cfg: dict[str, Any]) -> None:
    """Perform semantic validation on normalized config dict.

    Raises ConfigError on invalid values.
    """
    if cfg["page_size"] <= 0:
        msg = "page_size must be positive"
        raise ConfigError(msg)

    if cfg["hot_block_limit"] < 0:
        msg = "hot_block_limit must be non-negative (0 means unlimited)"
        raise ConfigError(msg)

    if cfg["json_indent"] < 0:
        msg = "json_indent must be non-negative"
        raise ConfigError(msg)

    if cfg["hexdump_width"] <= 0:
        msg = "hexdump_width must be positive"
        raise ConfigError(msg)

    unknown = sorted(set(cfg) - set(DEFAULTS))
    if unknown:
        msg = f"Unknown config keys: {', '.join(unknown)}"
        raise ConfigError(msg)


def load_config(path_or_dict: str | dict[str, Any] | None = None) -> dict[str, Any]:
    """Load and normalize configuration.

    Accepts:
      - None -> returns DEFAULTS copy
      - dict -> overlay DEFAULTS with provided dict
      - str (path) -> load YAML and overlay DEFAULTS

    Returns a normalized dict or raises ConfigError.
    """
    if path_or_dict is None:
        cfg: dict[str, Any] = dict(DEFAULTS)
    elif isinstance(path_or_dict, dict):
        cfg = dict(DEFAULTS)
        cfg.update(path_or_dict)
    elif isinstance(path_or_dict, str):
        p = Path(path_or_dict)
        if not p.exists():
            msg = f"Config file not found: {path_or_dict}"
            raise ConfigError(msg)
        try:
            with p.open("r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            msg = f"Failed to load config file {path_or_dict}: {e}"
            raise ConfigError(msg) from e
        if not isinstance(data, dict):
            msg = f"Config file {path_or_dict} does not contain a mapping"
            raise ConfigError(msg)
        cfg = dict(DEFAULTS)
        cfg.update(data)
    else:
        msg = "Unsupported config input"
        raise ConfigError(msg)

    # convert types and validate semantics
    _convert_types(cfg)
    _validate_cfg(cfg)

    return cfg
