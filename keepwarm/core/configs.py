"""Configuration management for keepwarm.

Loads user settings from ~/.config/keepwarm/config.cfg. Every key can be
overridden with a KEEPWARM_* environment variable, which wins over the file.

Example config.cfg:

    [DEFAULT]
    runtime_dir = /run/user/1000
    log_level = DEBUG
    bootstrap_grace = 0.5
"""

import configparser
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional


CONFIG_PATH = Path.home() / ".config" / "keepwarm" / "config.cfg"

DEFAULT_BOOTSTRAP_GRACE = 0.2
DEFAULT_RESTART_GRACE = 0.5
DEFAULT_KILL_TIMEOUT = 3.0
DEFAULT_LOG_LEVEL = "INFO"

_ENV_OVERRIDES = {
    "runtime_dir": "KEEPWARM_RUNTIME_DIR",
    "log_dir": "KEEPWARM_LOG_DIR",
    "log_level": "KEEPWARM_LOG_LEVEL",
    "bootstrap_grace": "KEEPWARM_BOOTSTRAP_GRACE_S",
    "restart_grace": "KEEPWARM_RESTART_GRACE_S",
    "kill_timeout": "KEEPWARM_KILL_TIMEOUT_S",
}


def default_runtime_dir() -> Path:
    """$XDG_RUNTIME_DIR when set, otherwise the system temp directory."""
    return Path(os.environ.get("XDG_RUNTIME_DIR") or tempfile.gettempdir())


@dataclass
class Settings:
    runtime_dir: Path
    log_dir: Path
    log_level: str = DEFAULT_LOG_LEVEL
    bootstrap_grace: float = DEFAULT_BOOTSTRAP_GRACE
    restart_grace: float = DEFAULT_RESTART_GRACE
    kill_timeout: float = DEFAULT_KILL_TIMEOUT


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

    return data


def _lookup(raw: Dict[str, str], key: str) -> Optional[str]:
    env_value = os.environ.get(_ENV_OVERRIDES[key])
    if env_value is not None and env_value.strip() != "":
        return env_value.strip()
    value = raw.get(key)
    if value is None or str(value).strip() == "":
        return None
    return str(value).strip()


def _get_seconds(raw: Dict[str, str], key: str, default: float) -> float:
    value = _lookup(raw, key)
    if value is None:
        return default
    try:
        seconds = float(value)
    except ValueError:
        raise ValueError(f"Invalid value for '{key}': {value!r} is not a number")
    if seconds < 0:
        raise ValueError(f"Invalid value for '{key}': must not be negative")
    return seconds


def get_settings(raw: Optional[Dict[str, str]] = None) -> Settings:
    """
    Build Settings from raw configuration values and the environment.
    Raises ValueError on malformed values.
    """
    raw = load_raw_config() if raw is None else raw

    runtime_dir = _lookup(raw, "runtime_dir")
    log_dir = _lookup(raw, "log_dir")
    log_level = (_lookup(raw, "log_level") or DEFAULT_LOG_LEVEL).upper()

    return Settings(
        runtime_dir=Path(runtime_dir).expanduser() if runtime_dir else default_runtime_dir(),
        log_dir=Path(log_dir).expanduser() if log_dir else Path(tempfile.gettempdir()),
        log_level=log_level,
        bootstrap_grace=_get_seconds(raw, "bootstrap_grace", DEFAULT_BOOTSTRAP_GRACE),
        restart_grace=_get_seconds(raw, "restart_grace", DEFAULT_RESTART_GRACE),
        kill_timeout=_get_seconds(raw, "kill_timeout", DEFAULT_KILL_TIMEOUT),
    )
