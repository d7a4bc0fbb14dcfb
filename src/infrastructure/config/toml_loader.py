"""TOML configuration loader with env overrides.

Resolution order (later wins): config/default.toml, config/<RLM_ENV>.toml
(RLM_ENV defaults to "development"; a missing overlay is skipped), then
environment variables.
"""

import logging
import os
import tomllib
from collections.abc import Callable
from pathlib import Path
from typing import Any

from src.domain.ports.config import (
    AppConfig,
    CheckpointConfig,
    DoomLoopConfig,
    LLMConfig,
    OllamaConfig,
    SecurityConfig,
    ServerConfig,
    SessionConfigSection,
    WorkflowConfig,
)

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path(__file__).resolve().parent.parent.parent.parent / "config"
_TRUTHY = ("1", "true", "yes", "on")

# env var -> (section, key, parser)
_ENV_OVERRIDES: dict[str, tuple[str, str, Callable[[str], Any]]] = {
    "LLM_PROVIDER": ("llm", "provider", str.strip),
    "LLM_MODEL": ("llm", "model", str.strip),
    "RLM_TEST_MODE": ("llm", "test_mode", lambda v: v.strip().lower() in _TRUTHY),
    "OLLAMA_HOST": ("ollama", "host", str.strip),
    "PORT": ("server", "port", int),
    "LOG_LEVEL": ("logging", "level", lambda v: v.strip().upper()),
    "LOG_FILE": ("logging", "file", str.strip),
    "CHECKPOINT_DIR": ("checkpoint", "dir", str.strip),
    "SHUTDOWN_TIMEOUT": ("session", "shutdown_timeout_seconds", float),
    "CORS_ORIGINS": ("security", "cors_origins", lambda v: [o.strip() for o in v.split(",")]),
    "RATE_LIMIT_PER_MINUTE": ("security", "rate_limit_requests_per_minute", int),
}


def _load_toml(path: Path) -> dict:
    with open(path, "rb") as f:
        return tomllib.load(f)


def _merge_sections(base: dict, overlay: dict) -> dict:
    """Overlay tables key by key; scalars and new tables replace."""
    merged = dict(base)
    for key, value in overlay.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value
    return merged


def _apply_env_overrides(config: dict) -> dict:
    """Apply environment variable overrides. Unparseable values are logged and ignored."""
    for name, (section, key, parse) in _ENV_OVERRIDES.items():
        raw = os.getenv(name)
        if not raw:
            continue
        try:
            value = parse(raw)
        except ValueError:
            logger.warning("Invalid %s env value: %r, ignoring", name, raw)
            continue
        config.setdefault(section, {})[key] = value
    return config


def load_config(config_dir: Path | None = None) -> AppConfig:
    """Load configuration from TOML files with env overrides."""
    config_dir = config_dir or DEFAULT_CONFIG_DIR

    config: dict = {}
    default_path = config_dir / "default.toml"
    if default_path.exists():
        config = _load_toml(default_path)

    env_name = os.getenv("RLM_ENV", "development").strip() or "development"
    overlay_path = config_dir / f"{env_name}.toml"
    if overlay_path.exists():
        config = _merge_sections(config, _load_toml(overlay_path))
        logger.debug("Config overlay applied: %s", overlay_path)

    config = _apply_env_overrides(config)

    logging_raw = config.get("logging") or {}
    return AppConfig(
        server=ServerConfig(**(config.get("server") or {})),
        llm=LLMConfig(**(config.get("llm") or {})),
        ollama=OllamaConfig(**(config.get("ollama") or {})),
        workflow=WorkflowConfig(**(config.get("workflow") or {})),
        doom_loop=DoomLoopConfig(**(config.get("doom_loop") or {})),
        checkpoint=CheckpointConfig(**(config.get("checkpoint") or {})),
        session=SessionConfigSection(**(config.get("session") or {})),
        security=SecurityConfig(**(config.get("security") or {})),
        log_level=logging_raw.get("level", "INFO"),
        log_file=(logging_raw.get("file") or "").strip(),
        log_rotation_max_mb=int(logging_raw.get("log_rotation_max_mb", 5)),
        log_rotation_backups=int(logging_raw.get("log_rotation_backups", 3)),
    )
