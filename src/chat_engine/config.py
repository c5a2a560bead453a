"""Configuration loading utilities for the chat engine.

This module handles layered configuration:
1. Explicit path argument (highest precedence)
2. Environment variable CHAT_ENGINE_CONFIG
3. Fallback to "config/default.yaml"

Built-in defaults are merged underneath whatever the file provides, and
environment variables with prefix ``CHAT_ENGINE__`` override both
(e.g., CHAT_ENGINE__AGENT__BASE_URL=http://10.0.0.5:8000).
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict

import yaml

logger = logging.getLogger(__name__)

ENV_PREFIX = "CHAT_ENGINE__"
ENV_CONFIG_PATH = "CHAT_ENGINE_CONFIG"

DEFAULTS: Dict[str, Any] = {
    "storage": {"data_dir": "data", "key": "chat_history"},
    "agent": {"base_url": None, "timeout_s": 10.0, "user_id": "default"},
    "rag": {"enabled": True},
    "model": {"model_dir": "models", "model_path": None, "n_ctx": 4096},
    "local": {"max_history_messages": 0},
    "server": {"cors_origins": ["*"]},
    "logging": {"level": "INFO"},
}


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _deep_merge(out[key], value)
        else:
            out[key] = value
    return out


def _coerce(value: str) -> Any:
    if value.lower() in {"true", "false"}:
        return value.lower() == "true"
    try:
        return float(value) if "." in value else int(value)
    except ValueError:
        return value


def _apply_env_overrides(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides with prefix CHAT_ENGINE__."""
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        # e.g., CHAT_ENGINE__AGENT__TIMEOUT_S -> cfg["agent"]["timeout_s"]
        parts = key[len(ENV_PREFIX):].lower().split("__")
        sub = cfg
        for p in parts[:-1]:
            if p not in sub or not isinstance(sub[p], dict):
                sub[p] = {}
            sub = sub[p]
        sub[parts[-1]] = _coerce(value)
    return cfg


def load_config(path: str | None = None) -> Dict[str, Any]:
    """Load YAML configuration for the chat engine.

    Parameters
    ----------
    path : str | None
        Optional path to a configuration file. If not provided, the
        environment variable ``CHAT_ENGINE_CONFIG`` is consulted. As a
        last resort ``config/default.yaml`` is used.

    Returns
    -------
    Dict[str, Any]
        Defaults merged with the file contents, environment overrides applied.
    """
    if path is None:
        path = os.environ.get(ENV_CONFIG_PATH, "config/default.yaml")

    path_obj = Path(path)
    if not path_obj.exists():
        logger.warning("Config file not found at %s; using defaults.", path_obj)
        return _apply_env_overrides(copy.deepcopy(DEFAULTS))

    with path_obj.open("r", encoding="utf-8") as f:
        try:
            loaded = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise RuntimeError(f"Failed to parse config file {path_obj}: {e}") from e

    if not isinstance(loaded, dict):
        raise RuntimeError(f"Invalid config format in {path_obj}, expected dict.")

    return _apply_env_overrides(_deep_merge(DEFAULTS, loaded))
