"""Helpers to load configuration from YAML and the environment."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict

import yaml

from .models import AppConfig


DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / "config" / "default.yaml"
ENV_CONFIG_PATH = "RENEWED_CONFIG_PATH"
SUPABASE_URL_ENV = "SUPABASE_URL"
SUPABASE_KEY_ENV = "SUPABASE_ANON_KEY"
SUPABASE_TIMEOUT_ENV = "SUPABASE_TIMEOUT"
SKIP_AUTH_ENV = "SKIP_AUTH"
DEFAULT_BACKEND_TIMEOUT = 10.0


@dataclass(frozen=True)
class BackendSettings:
    """Connection settings of the hosted Supabase backend."""

    url: str | None
    api_key: str | None
    timeout: float = DEFAULT_BACKEND_TIMEOUT

    @property
    def configured(self) -> bool:
        return bool(self.url and self.api_key)


def _normalize_routes(data: Any) -> Any:
    """Strip trailing slashes so '/book/' and '/book' match the same pages."""
    if isinstance(data, list):
        return [
            item.rstrip("/") or "/" if isinstance(item, str) else item
            for item in data
        ]
    return data


def load_config(path: Path | None = None) -> AppConfig:
    """Loads config from YAML file."""
    config_path = path or Path(os.getenv(ENV_CONFIG_PATH, DEFAULT_CONFIG_PATH))
    with open(config_path, "r", encoding="utf-8") as fh:
        raw_data: Dict[str, Any] = yaml.safe_load(fh) or {}
    normalized = raw_data.copy()
    routes = normalized.get("routes")
    if isinstance(routes, dict):
        normalized["routes"] = {
            key: _normalize_routes(value) if key in {"protected", "public"} else value
            for key, value in routes.items()
        }
    return AppConfig.model_validate(normalized)


def load_backend_settings() -> BackendSettings:
    """Read Supabase connection parameters from the environment."""

    raw_url = os.getenv(SUPABASE_URL_ENV, "").strip()
    raw_key = os.getenv(SUPABASE_KEY_ENV, "").strip()
    raw_timeout = os.getenv(SUPABASE_TIMEOUT_ENV, "").strip()
    try:
        timeout = float(raw_timeout) if raw_timeout else DEFAULT_BACKEND_TIMEOUT
    except ValueError:
        timeout = DEFAULT_BACKEND_TIMEOUT
    return BackendSettings(url=raw_url or None, api_key=raw_key or None, timeout=timeout)


def skip_auth_enabled() -> bool:
    return os.getenv(SKIP_AUTH_ENV, "").strip().lower() == "true"
