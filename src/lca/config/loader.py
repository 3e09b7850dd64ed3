# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/lca/config/loader.py

import logging
import os
import yaml
from pathlib import Path
from .models import AgentConfig

log = logging.getLogger("lca")

DEFAULT_CONFIG_PATH = Path("/etc/lca/config.yaml")


def _deep_merge(base: dict, override: dict) -> dict:
    """
    Recursively merge *override* into *base* (mutates base).
    Only overwrites when the override value is non-empty.
    """
    for key, value in override.items():
        if (
            key in base
            and isinstance(base[key], dict)
            and isinstance(value, dict)
        ):
            _deep_merge(base[key], value)
        else:
            if value not in (None, ""):
                base[key] = value
    return base


def _find_overrides_file(config_path: Path) -> Path | None:
    """
    Locate overrides.yaml using this priority:

    1. LCA_OVERRIDES_FILE environment variable (explicit override)
    2. overrides.yaml in the same directory as the agent config
    """
    env = os.environ.get("LCA_OVERRIDES_FILE")
    if env:
        p = Path(env)
        if p.is_file():
            return p
        log.warning("LCA_OVERRIDES_FILE=%s does not exist, skipping", env)
        return None

    p = config_path.parent / "overrides.yaml"
    if p.is_file():
        return p

    return None


def _load_yaml(path: Path) -> dict:
    """Load a YAML file, expanding ${ENV_VAR} references."""
    raw = path.read_text()
    expanded = os.path.expandvars(raw)
    return yaml.safe_load(expanded) or {}


def load_config(path: str | Path | None = None) -> AgentConfig:
    """
    Load and validate the agent config.

    ``path`` defaults to ``$LCA_CONFIG`` and then ``/etc/lca/config.yaml``.
    A missing file yields the built-in defaults, which match the layout of a
    single node host. ``${ENV_VAR}`` placeholders are expanded, and an
    ``overrides.yaml`` (or ``$LCA_OVERRIDES_FILE``) is deep-merged on top
    before pydantic validation.
    """
    if path is None:
        path = os.environ.get("LCA_CONFIG") or DEFAULT_CONFIG_PATH
    path = Path(path)

    data: dict = {}
    if path.is_file():
        data = _load_yaml(path)
    else:
        log.debug("No config at %s, using defaults", path)

    overrides_path = _find_overrides_file(path)
    if overrides_path:
        log.debug("Merging overrides from %s", overrides_path)
        _deep_merge(data, _load_yaml(overrides_path))

    return AgentConfig.model_validate(data)
