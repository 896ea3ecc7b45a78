"""Engine settings from config.yaml, overlaid on built-in defaults, plus .env.

``STAYCAL_CONFIG`` points at an alternative YAML file. Sections missing from
the file fall back to ``DEFAULTS`` key by key, so a deployment only has to
list what it changes.
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "STAYCAL_CONFIG"

DEFAULTS: dict[str, Any] = {
    "holds": {"default_ttl_minutes": 15, "max_ttl_minutes": 60, "lock_timeout_seconds": 10},
    "scheduler": {"hold_sweep_interval": 1, "sweep_batch_size": 500},
    "calendar": {"initialize_days_ahead": 365, "max_range_days": 730},
    "bulk": {"quick_action_months": 3, "boost_factor": 1.2, "boost_cap": 2.0},
    "notifications": {"timeout_seconds": 10},
    "listings": [],
}


def _find_project_root() -> Path:
    """Nearest ancestor of the package holding config.yaml, else the cwd."""
    for parent in Path(__file__).resolve().parents:
        if (parent / "config.yaml").exists():
            return parent
    return Path.cwd()


PROJECT_ROOT = _find_project_root()


def config_path() -> Path:
    override = os.environ.get(CONFIG_ENV_VAR)
    if override:
        return Path(override).expanduser()
    return PROJECT_ROOT / "config.yaml"


def load_env() -> None:
    """Load .env from the project root without overriding the real environment."""
    load_dotenv(PROJECT_ROOT / ".env")


def _merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in overlay.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_yaml_config(path: str | Path | None = None) -> dict[str, Any]:
    """Read the YAML file and overlay it on ``DEFAULTS``.

    A missing file yields the defaults. A file whose top level is not a
    mapping raises ``ValueError``.
    """
    path = Path(path) if path is not None else config_path()
    if not path.exists():
        logger.warning("No config file at %s, using defaults", path)
        return copy.deepcopy(DEFAULTS)
    with open(path) as f:
        loaded = yaml.safe_load(f) or {}
    if not isinstance(loaded, dict):
        raise ValueError(f"{path} must contain a mapping of sections")
    return _merge(DEFAULTS, loaded)


def reload_settings(path: str | Path | None = None) -> dict[str, Any]:
    """Re-read the config into the shared ``settings`` dict in place."""
    fresh = load_yaml_config(path)
    settings.clear()
    settings.update(fresh)
    return settings


def section(name: str) -> dict[str, Any]:
    """One top-level section; empty when neither the file nor the defaults have it."""
    return settings.get(name) or {}


def get_env(key: str, default: str | None = None) -> str | None:
    return os.environ.get(key, default)


def get_env_required(key: str) -> str:
    val = os.environ.get(key)
    if val is None:
        raise RuntimeError(f"Required environment variable {key!r} is not set")
    return val


def get_database_url() -> str:
    """``DATABASE_URL``, or a SQLite file next to config.yaml."""
    return get_env("DATABASE_URL", f"sqlite:///{PROJECT_ROOT / 'staycal.db'}")


load_env()
settings: dict[str, Any] = load_yaml_config()
