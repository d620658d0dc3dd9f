"""Settings loading and normalization.

Precedence (lowest to highest): built-in defaults < YAML file < IMGPRESS_*
environment variables < explicit keyword overrides.

Environment variables:
  IMGPRESS_TEMP_DIR=/path/to/managed/dir
  IMGPRESS_HANDSHAKE_TIMEOUT_S=10
  IMGPRESS_REQUEST_TIMEOUT_S=60
  IMGPRESS_BACKEND=module:Class
  IMGPRESS_BACKEND_PARAMS_JSON='{"tool": "mock"}'
  IMGPRESS_MAX_AGE_HOURS=24
"""
from __future__ import annotations

import json
import os
import sys
import tempfile
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .errors import ConfigError

DEFAULT_BACKEND = "imgpress.core.backends:PillowBackend"

ENV_KEYS = {
    "IMGPRESS_TEMP_DIR": "temp_dir",
    "IMGPRESS_HANDSHAKE_TIMEOUT_S": "handshake_timeout_s",
    "IMGPRESS_REQUEST_TIMEOUT_S": "request_timeout_s",
    "IMGPRESS_BACKEND": "backend",
    "IMGPRESS_BACKEND_PARAMS_JSON": "backend_params",
    "IMGPRESS_MAX_AGE_HOURS": "max_age_hours",
}


def _default_temp_dir() -> str:
    return str(Path(tempfile.gettempdir()) / "imgpress")


@dataclass
class Settings:
    temp_dir: str = field(default_factory=_default_temp_dir)
    handshake_timeout_s: float = 10.0
    request_timeout_s: float = 60.0
    backend: str = DEFAULT_BACKEND
    backend_params: Dict[str, Any] = field(default_factory=dict)
    max_age_hours: float = 24.0
    sweep_interval_s: float = 3600.0
    cleanup_on_exit: bool = True
    python: str = sys.executable

    @property
    def temp_path(self) -> Path:
        return Path(self.temp_dir)


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read config {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config {path} must be a mapping")
    return data


def _read_env() -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for env_key, attr in ENV_KEYS.items():
        raw = os.getenv(env_key)
        if raw is None or raw == "":
            continue
        if attr == "backend_params":
            try:
                out[attr] = json.loads(raw)
            except json.JSONDecodeError as e:
                raise ConfigError(f"Invalid {env_key}: {e}") from e
        else:
            out[attr] = raw
    return out


def _coerce(data: Dict[str, Any]) -> Dict[str, Any]:
    known = {f.name for f in fields(Settings)}
    unknown = set(data) - known
    if unknown:
        raise ConfigError(f"Unknown settings: {', '.join(sorted(unknown))}")
    out = dict(data)
    try:
        for key in ("handshake_timeout_s", "request_timeout_s", "max_age_hours", "sweep_interval_s"):
            if key in out:
                out[key] = float(out[key])
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid numeric setting: {e}") from e
    if "temp_dir" in out:
        out["temp_dir"] = str(Path(os.path.expanduser(str(out["temp_dir"]))))
    if "cleanup_on_exit" in out and isinstance(out["cleanup_on_exit"], str):
        out["cleanup_on_exit"] = out["cleanup_on_exit"].lower() in ("1", "true", "yes", "on")
    return out


def _validate(settings: Settings):
    if settings.handshake_timeout_s <= 0:
        raise ConfigError("handshake_timeout_s must be positive")
    if settings.request_timeout_s <= 0:
        raise ConfigError("request_timeout_s must be positive")
    if settings.max_age_hours < 0:
        raise ConfigError("max_age_hours must not be negative")
    if settings.sweep_interval_s <= 0:
        raise ConfigError("sweep_interval_s must be positive")
    if ":" not in settings.backend:
        raise ConfigError("backend must be 'module:Class'")
    if not isinstance(settings.backend_params, dict):
        raise ConfigError("backend_params must be a mapping")


def load_settings(path: Optional[Path | str] = None, **overrides: Any) -> Settings:
    merged: Dict[str, Any] = {}
    if path:
        merged.update(_read_yaml(Path(path)))
    merged.update(_read_env())
    merged.update({k: v for k, v in overrides.items() if v is not None})
    settings = Settings(**_coerce(merged))
    _validate(settings)
    return settings


__all__ = ["Settings", "load_settings", "DEFAULT_BACKEND", "ConfigError"]
