"""
Configuration loading.

Order (later wins): config/default.yaml, the file named by SIGNAL_HUB_CONFIG
(or the `path` argument), then environment variables. `.env.local` and `.env`
are read first so their values count as environment.
"""

import copy
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv

from src.signal_hub.errors import ConfigurationError

DEFAULT_CONFIG_PATH = Path(__file__).parent.parent.parent / "config" / "default.yaml"

# env var -> dotted config key
ENV_OVERRIDES = {
    "SIGNAL_HUB_PORT": "port",
    "SIGNAL_HUB_LOG_FILE": "log_file",
    "SIGNAL_HUB_DB_URL": "persistence.sqlite_url",
    "SIGNAL_HUB_SECRETS_PATH": "secrets_path",
    "WEATHER_LOCATION": "weather.location",
    "GOOGLE_CLIENT_ID": "google.client_id",
    "WHOOP_CLIENT_ID": "whoop.client_id",
    "OURA_CLIENT_ID": "oura.client_id",
}


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Could not load config from {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping")
    return data


def _set_dotted(config: Dict[str, Any], dotted: str, value: Any):
    *parents, leaf = dotted.split(".")
    target = config
    for part in parents:
        target = target.setdefault(part, {})
    target[leaf] = value


def load_config(path: Optional[str] = None, env: Optional[Dict[str, str]] = None, use_dotenv: bool = True) -> Dict[str, Any]:
    if use_dotenv and env is None:
        load_dotenv(".env.local", override=False)
        load_dotenv(".env", override=False)
    env = os.environ if env is None else env

    config = _read_yaml(DEFAULT_CONFIG_PATH) if DEFAULT_CONFIG_PATH.exists() else {}
    override_path = path or env.get("SIGNAL_HUB_CONFIG")
    if override_path:
        config = deep_merge(config, _read_yaml(Path(override_path)))

    for var, dotted in ENV_OVERRIDES.items():
        value = env.get(var)
        if value:
            _set_dotted(config, dotted, value)

    try:
        config["port"] = int(config.get("port", 8010))
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid port: {config.get('port')!r}") from e

    if env.get("SIGNAL_HUB_DB_URL"):
        config.setdefault("persistence", {})["backend"] = "sqlite"

    backend = config.get("persistence", {}).get("backend", "memory")
    if backend not in ("memory", "sqlite"):
        raise ConfigurationError(f"Unknown persistence backend: {backend}")
    return config
