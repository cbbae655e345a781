"""Configuration management for agent-worker.

Loads user settings from ~/.config/agentworker/config.cfg
Provides DaemonSettings (daemon lifecycle and model limits) and API key lookup.
"""

import configparser
from dataclasses import dataclass
import os
from pathlib import Path
from typing import Dict, Optional

from dotenv import dotenv_values

from agentworker.errors import InvalidArgumentError

# Default location for user configuration.
CONFIG_PATH = Path.home() / ".config" / "agentworker" / "config.cfg"

# Default state directory (registry, sockets, workflow context).
DEFAULT_HOME = Path.home() / ".agent-worker"

DEFAULT_IDLE_TIMEOUT = 30 * 60.0
DEFAULT_DRAIN_TIMEOUT = 10.0

# Environment variable names for each provider's API key.
API_KEY_ENV = {
    "mistralai": "MISTRAL_API_KEY",
    "google": "GOOGLE_API_KEY",
    "deepinfra": "DEEPINFRA_API_TOKEN",
}


@dataclass
class DaemonSettings:
    home: Path = DEFAULT_HOME
    idle_timeout: float = DEFAULT_IDLE_TIMEOUT
    drain_timeout: float = DEFAULT_DRAIN_TIMEOUT
    max_lifetime: float = 0.0
    max_tokens: int = 4096
    max_steps: int = 10

    @property
    def sessions_dir(self) -> Path:
        return self.home / "sessions"

    @property
    def tools_dir(self) -> Path:
        return self.home / "tools"


def load_raw_config(path: Path = CONFIG_PATH) -> Dict[str, str]:
    """
    Load configuration values from the standard config path.
    Values are returned with lowercase keys for convenience.
    """
    cfg = configparser.ConfigParser()
    data: Dict[str, str] = {}

    if path.exists():
        cfg.read(path)
        if "DEFAULT" in cfg:
            data.update({k.lower(): v for k, v in cfg["DEFAULT"].items()})
        if "API_KEYS" in cfg:
            data.update({k.lower(): v for k, v in cfg["API_KEYS"].items()})

    return data


def _get_float(raw: Dict[str, str], key: str, env: str, default: float) -> float:
    value = os.environ.get(env)
    if value is None or str(value).strip() == "":
        value = raw.get(key)
    if value is None or str(value).strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise InvalidArgumentError(f"Invalid number for '{key}': {value!r}")


def _get_int(raw: Dict[str, str], key: str, default: int) -> int:
    value = raw.get(key)
    if value is None or str(value).strip() == "":
        return default
    try:
        return int(float(value))
    except ValueError:
        raise InvalidArgumentError(f"Invalid number for '{key}': {value!r}")


def get_daemon_settings(raw: Optional[Dict[str, str]] = None) -> DaemonSettings:
    """
    Build DaemonSettings from raw configuration values and the environment.
    Environment variables win over the config file.
    """
    raw = load_raw_config() if raw is None else raw

    home_value = os.environ.get("AGENT_WORKER_HOME") or raw.get("home")
    home = Path(home_value).expanduser() if home_value else DEFAULT_HOME

    return DaemonSettings(
        home=home,
        idle_timeout=_get_float(
            raw, "idle_timeout", "AGENT_WORKER_IDLE_TIMEOUT_S", DEFAULT_IDLE_TIMEOUT
        ),
        drain_timeout=_get_float(
            raw, "drain_timeout", "AGENT_WORKER_DRAIN_TIMEOUT_S", DEFAULT_DRAIN_TIMEOUT
        ),
        max_lifetime=_get_float(raw, "max_lifetime", "AGENT_WORKER_MAX_LIFETIME_S", 0.0),
        max_tokens=_get_int(raw, "max_tokens", 4096),
        max_steps=_get_int(raw, "max_steps", 10),
    )


def get_api_key(provider: str, raw: Optional[Dict[str, str]] = None) -> Optional[str]:
    """
    Resolve the API key for a provider.

    Lookup order: process environment, ./.env file, config file [API_KEYS].
    Returns None when no key is configured.
    """
    env_name = API_KEY_ENV.get(provider)
    if env_name is None:
        return None

    value = os.environ.get(env_name)
    if value:
        return value

    value = dotenv_values().get(env_name)
    if value:
        return value

    raw = load_raw_config() if raw is None else raw
    return raw.get(env_name.lower()) or None
