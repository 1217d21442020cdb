"""Configuration management for rong.

Settings are layered, later layers winning:
1. ~/.config/rong/config.cfg  ([DEFAULT] section)
2. ~/.config/rong/.env        (KEY=value, optional RONG_ prefix)
3. RONG_* environment variables

Keys are lowercased and stripped of the RONG_ prefix, so ``RONG_SOCKET``,
``SOCKET`` in .env and ``socket`` in config.cfg all set the same value.
"""

import configparser
import os
import tempfile
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, Mapping, Optional

from dotenv import dotenv_values

APP_NAME = "rong"
CONFIG_DIR = Path.home() / ".config" / APP_NAME
CONFIG_PATH = CONFIG_DIR / "config.cfg"
ENV_PATH = CONFIG_DIR / ".env"
ENV_PREFIX = "RONG_"


@dataclass
class DaemonConfig:
    socket_path: Path
    pid_path: Path
    log_path: Path
    lock_path: Path
    log_level: str = "INFO"
    timeout: float = 30.0
    chunk_size: int = 4096
    max_request_bytes: int = 1024 * 1024


def default_runtime_dir() -> Path:
    """Per-user directory under the system temp dir holding socket, pid and log."""
    return Path(tempfile.gettempdir()) / f"{APP_NAME}-{os.getuid()}"


def _normalize_key(key: str) -> str:
    key = key.strip().lower()
    prefix = ENV_PREFIX.lower()
    return key[len(prefix):] if key.startswith(prefix) else key


def load_raw_config(
    path: Path = CONFIG_PATH,
    env_path: Path = ENV_PATH,
    environ: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    """
    Load configuration values from all layers.

    Args:
        path: config.cfg location
        env_path: .env location
        environ: Environment to read RONG_* overrides from (default: os.environ)

    Returns:
        Dict with normalised lowercase keys
    """
    data: Dict[str, str] = {}

    if path.exists():
        cfg = configparser.ConfigParser(interpolation=None)
        cfg.read(path)
        data.update({_normalize_key(k): v for k, v in cfg["DEFAULT"].items()})

    if env_path.exists():
        for key, value in dotenv_values(env_path).items():
            if value is not None:
                data[_normalize_key(key)] = value

    environ = os.environ if environ is None else environ
    for key, value in environ.items():
        if key.upper().startswith(ENV_PREFIX):
            data[_normalize_key(key)] = value

    return data


def _get_number(raw: Dict[str, str], key: str, default, kind=float):
    value = raw.get(key)
    if value is None or str(value).strip() == "":
        return default
    try:
        number = kind(float(value)) if kind is int else kind(value)
    except ValueError:
        raise ValueError(f"Invalid value for '{key}': {value!r}")
    if number < 0:
        raise ValueError(f"Invalid value for '{key}': {value!r} (must be >= 0)")
    return number


def get_daemon_config(raw: Optional[Dict[str, str]] = None) -> DaemonConfig:
    """
    Build a DaemonConfig from raw configuration values.

    The pid, log and lock files default to siblings of the socket, so
    pointing ``socket`` elsewhere moves the whole runtime directory.

    Raises:
        ValueError: If a numeric setting cannot be parsed
    """
    raw = load_raw_config() if raw is None else raw

    socket = raw.get("socket", "").strip()
    socket_path = Path(socket).expanduser() if socket else default_runtime_dir() / "socket"
    runtime_dir = socket_path.parent

    def _path(key: str, name: str) -> Path:
        value = raw.get(key, "").strip()
        return Path(value).expanduser() if value else runtime_dir / name

    chunk_size = _get_number(raw, "chunk_size", 4096, int)
    if chunk_size == 0:
        raise ValueError("Invalid value for 'chunk_size': must be > 0")

    return DaemonConfig(
        socket_path=socket_path,
        pid_path=_path("pid_file", "rongd.pid"),
        log_path=_path("log_file", "rongd.log"),
        lock_path=_path("lock_file", f"{socket_path.name}.lock"),
        log_level=raw.get("log_level", "INFO").strip().upper() or "INFO",
        timeout=_get_number(raw, "timeout", 30.0),
        chunk_size=chunk_size,
        max_request_bytes=_get_number(raw, "max_request_bytes", 1024 * 1024, int),
    )


def with_socket_path(config: DaemonConfig, socket_path) -> DaemonConfig:
    """Return a copy of ``config`` whose runtime files sit next to ``socket_path``."""
    path = Path(socket_path).expanduser()
    return replace(
        config,
        socket_path=path,
        pid_path=path.parent / config.pid_path.name,
        log_path=path.parent / config.log_path.name,
        lock_path=path.parent / f"{path.name}.lock",
    )
