"""
Assist Core — Environment Config Loader

Three-tier configuration loading:
  1. Base YAML file (assist_config.yaml)
  2. Per-environment overlay files (config/{ASSIST_ENV}.yaml merged over base)
  3. Environment variable overrides (ASSIST_ prefixed)

Usage:
    from engine.config import load_config, OrchestratorSettings

    cfg = load_config(base_path="assist_config.yaml", env="prod")
    settings = OrchestratorSettings.from_config(cfg)

Environment variables:
    ASSIST_ENV                      — active profile (dev, staging, prod)
    ASSIST_CONFIG_DIR               — directory for overlay files (default: config/)
    ASSIST_APPROVAL_TIMEOUT         — orchestrator.approval_timeout_seconds
    ASSIST_CONFIG__a__b=value       — arbitrary override of a.b
"""

from __future__ import annotations

import copy
import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger("assist_core.config")


# ═══════════════════════════════════════════════════════════════════
# Deep Merge
# ═══════════════════════════════════════════════════════════════════

def deep_merge(base: dict, overlay: dict) -> dict:
    """
    Deep-merge overlay into base. Overlay values win.
    Lists are replaced (not appended). Dicts are recursed.
    """
    result = copy.deepcopy(base)
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def _set_nested(d: dict, keys: list[str], value: Any):
    """Set a nested dict value from a list of keys."""
    for key in keys[:-1]:
        d = d.setdefault(key, {})
    d[keys[-1]] = value


def _parse_scalar(value: str) -> Any:
    """Parse an env string as YAML (numbers, booleans, lists)."""
    try:
        return yaml.safe_load(value)
    except yaml.YAMLError:
        return value


# ═══════════════════════════════════════════════════════════════════
# Tier 2: Overlay Files
# ═══════════════════════════════════════════════════════════════════

def _load_overlay_file(
    base_path: str,
    env: str = "",
    config_dir: str = "",
) -> dict[str, Any]:
    """
    Load per-environment overlay file.
    Looks for config/{env}.yaml or {config_dir}/{env}.yaml.
    Returns empty dict if not found.
    """
    env = env or os.environ.get("ASSIST_ENV", "")
    if not env:
        return {}

    config_dir = config_dir or os.environ.get("ASSIST_CONFIG_DIR", "config")

    candidates = [
        Path(config_dir) / f"{env}.yaml",
        Path(config_dir) / f"{env}.yml",
        Path(os.path.dirname(base_path)) / "config" / f"{env}.yaml",
    ]

    for path in candidates:
        if path.exists():
            try:
                with open(path) as f:
                    overlay = yaml.safe_load(f) or {}
                logger.info("Loaded config overlay: %s (%d keys)", path, len(overlay))
                return overlay
            except (OSError, yaml.YAMLError) as e:
                logger.warning("Failed to load overlay %s: %s", path, e)

    logger.debug("No config overlay found for env=%s", env)
    return {}


# ═══════════════════════════════════════════════════════════════════
# Tier 3: Environment Variable Overrides
# ═══════════════════════════════════════════════════════════════════

# Mapping from ASSIST_* env vars to config dotted paths
_ENV_MAPPINGS: dict[str, str] = {
    "ASSIST_APPROVAL_TIMEOUT": "orchestrator.approval_timeout_seconds",
    "ASSIST_ENTITY_HISTORY_CAP": "orchestrator.entity_history_cap",
    "ASSIST_MAX_PARALLEL_WORKERS": "orchestrator.max_parallel_workers",
    "ASSIST_DEFAULT_DOMAIN": "orchestrator.default_domain",
    "ASSIST_CHECKPOINT_PATH": "checkpoint.path",
    "ASSIST_CHECKPOINT_ON_FINALIZE": "checkpoint.on_finalize",
    "ASSIST_MEMORY_RECALL_LIMIT": "memory.recall_limit",
    "ASSIST_MEMORY_MAX_RETRIES": "memory.max_retries",
    "ASSIST_LOG_LEVEL": "logging.level",
}


def _load_env_overrides() -> dict[str, Any]:
    """
    Load ASSIST_* environment variables and map to config paths.
    Also supports arbitrary ASSIST_CONFIG__path__to__key for unmapped overrides.
    """
    result: dict[str, Any] = {}

    for env_key, config_path in _ENV_MAPPINGS.items():
        value = os.environ.get(env_key)
        if value is not None:
            _set_nested(result, config_path.split("."), _parse_scalar(value))

    # Double underscores map to dots in the config path
    for key, value in os.environ.items():
        if key.startswith("ASSIST_CONFIG__"):
            config_path = key[len("ASSIST_CONFIG__"):].lower().replace("__", ".")
            _set_nested(result, config_path.split("."), _parse_scalar(value))

    if result:
        logger.debug("Loaded env var overrides: %s", sorted(result))
    return result


# ═══════════════════════════════════════════════════════════════════
# Main Loader
# ═══════════════════════════════════════════════════════════════════

def load_config(
    base_path: str = "assist_config.yaml",
    env: str = "",
    config_dir: str = "",
    include_env_vars: bool = True,
) -> dict[str, Any]:
    """
    Load configuration with three-tier merging.

    Priority (highest wins):
      1. Environment variable overrides (ASSIST_*)
      2. Per-environment overlay file (config/{env}.yaml)
      3. Base config file (assist_config.yaml)
    """
    config: dict[str, Any] = {}
    if os.path.exists(base_path):
        with open(base_path) as f:
            config = yaml.safe_load(f) or {}
        logger.debug("Loaded base config: %s", base_path)

    overlay = _load_overlay_file(base_path, env=env, config_dir=config_dir)
    if overlay:
        config = deep_merge(config, overlay)

    if include_env_vars:
        env_overrides = _load_env_overrides()
        if env_overrides:
            config = deep_merge(config, env_overrides)

    return config


def get_config_value(
    path: str,
    config: dict[str, Any] | None = None,
    default: Any = None,
) -> Any:
    """
    Get a nested config value by dotted path.

    Example:
        get_config_value("orchestrator.approval_timeout_seconds", cfg, 30)
    """
    if config is None:
        config = load_config()

    current: Any = config
    for key in path.split("."):
        if isinstance(current, dict) and key in current:
            current = current[key]
        else:
            return default
    return current


# ═══════════════════════════════════════════════════════════════════
# Orchestrator Settings
# ═══════════════════════════════════════════════════════════════════

DEFAULT_KNOWN_DOMAINS = ("calendar", "task", "workflow", "contact", "general")


@dataclass
class OrchestratorSettings:
    """Typed view of the settings the controller and dispatcher read."""
    approval_timeout_seconds: float = 30.0
    entity_history_cap: int = 10
    max_parallel_workers: int = 8
    recent_message_window: int = 6
    default_domain: str = "general"
    known_domains: tuple[str, ...] = DEFAULT_KNOWN_DOMAINS

    memory_recall_limit: int = 5
    memory_recall_threshold: float = 0.7
    memory_max_retries: int = 2

    checkpoint_path: str = "assist_checkpoints.db"
    checkpoint_on_finalize: bool = True

    log_level: str = "INFO"

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> OrchestratorSettings:
        orch = config.get("orchestrator", {}) or {}
        memory = config.get("memory", {}) or {}
        checkpoint = config.get("checkpoint", {}) or {}
        logging_cfg = config.get("logging", {}) or {}

        values: dict[str, Any] = {}
        for f in fields(cls):
            if f.name in orch:
                values[f.name] = orch[f.name]

        if "recall_limit" in memory:
            values["memory_recall_limit"] = int(memory["recall_limit"])
        if "recall_threshold" in memory:
            values["memory_recall_threshold"] = float(memory["recall_threshold"])
        if "max_retries" in memory:
            values["memory_max_retries"] = int(memory["max_retries"])
        if "path" in checkpoint:
            values["checkpoint_path"] = str(checkpoint["path"])
        if "on_finalize" in checkpoint:
            values["checkpoint_on_finalize"] = bool(checkpoint["on_finalize"])
        if "level" in logging_cfg:
            values["log_level"] = str(logging_cfg["level"])

        if "known_domains" in values:
            values["known_domains"] = tuple(values["known_domains"])

        return cls(**values)


def load_settings(
    base_path: str = "assist_config.yaml",
    env: str = "",
    config_dir: str = "",
) -> OrchestratorSettings:
    """Load config files + env overrides and return typed settings."""
    return OrchestratorSettings.from_config(
        load_config(base_path=base_path, env=env, config_dir=config_dir)
    )
