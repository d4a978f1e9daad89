from __future__ import annotations

import os
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import yaml
from dotenv import find_dotenv, load_dotenv

from .task_monitor import DEFAULT_FIRST_CHECK_DELAY_SEC, DEFAULT_POLL_INTERVAL_SEC


class ConfigError(ValueError):
    """Raised when runtime configuration cannot be resolved."""


# ---------- Typed sections ----------

@dataclass
class AppSection:
    run_id: Optional[str] = None


@dataclass
class ServerSection:
    url: str = ""
    user: str = ""
    password: str = ""       # secret – never log in clear text
    verify_tls: bool = True
    timeout_sec: float = 10.0


@dataclass
class TaskMonitorSection:
    first_check_delay_sec: float = DEFAULT_FIRST_CHECK_DELAY_SEC
    poll_interval_sec: float = DEFAULT_POLL_INTERVAL_SEC


@dataclass
class LoggingSection:
    base_dir: str = "logs"
    console_level: str = "INFO"   # INFO..CRITICAL
    file_level: str = "DEBUG"     # DEBUG..CRITICAL


@dataclass
class AppConfig:
    """Typed configuration object built by `load_config`."""
    app: AppSection
    server: ServerSection
    task_monitor: TaskMonitorSection
    logging: LoggingSection

    @property
    def run_id(self) -> str:
        """
        Return a stable run identifier for this process.
        Generated lazily when first accessed if not provided.
        """
        if not self.app.run_id:
            self.app.run_id = uuid.uuid4().hex[:12]
        return self.app.run_id


# ---------- Defaults ----------

_DEFAULT_FILES: Tuple[str, ...] = (
    "./apstra.yml",
    os.path.expanduser("~/.config/apstra-client/config.yml"),
    "/etc/apstra-client/config.yml",
)

_DEFAULTS: Dict[str, Any] = {
    "app": {"run_id": None},
    "server": {
        "url": "",
        "user": "",
        "password": "",
        "verify_tls": True,
        "timeout_sec": 10.0,
    },
    "task_monitor": {
        "first_check_delay_sec": DEFAULT_FIRST_CHECK_DELAY_SEC,
        "poll_interval_sec": DEFAULT_POLL_INTERVAL_SEC,
    },
    "logging": {"base_dir": "logs", "console_level": "INFO", "file_level": "DEBUG"},
}

_BOOL_KEYS = {"verify_tls"}
_FLOAT_KEYS = {"timeout_sec", "first_check_delay_sec", "poll_interval_sec"}


# ---------- Utilities ----------

def _deep_merge(base: Dict[str, Any], ext: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Deep-merge for dicts: maps merge recursively, lists/scalars override.
    `ext` wins over `base`. Returns a new dict.
    """
    if not ext:
        return dict(base)
    out: Dict[str, Any] = dict(base)
    for k, v in ext.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _read_yaml_file(path: str) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"Top-level YAML must be a mapping: {path}")
    return data


def _load_first_existing(files: Tuple[str, ...]) -> Dict[str, Any]:
    for p in files:
        if os.path.exists(p):
            return _read_yaml_file(p)
    return {}


def _env_to_dict(prefix: str = "APSTRA_") -> Dict[str, Any]:
    """
    Convert APSTRA_FOO__BAR=val to {"foo": {"bar": "val"}} (lowercased keys).
    Flat variables without "__" are ignored here; see `_legacy_env`.
    """
    out: Dict[str, Any] = {}
    plen = len(prefix)
    for key, val in os.environ.items():
        if not key.startswith(prefix) or "__" not in key:
            continue
        path = key[plen:].lower().split("__")
        cursor = out
        for part in path[:-1]:
            cursor = cursor.setdefault(part, {})
        cursor[path[-1]] = val
    return out


def _legacy_env() -> Dict[str, Any]:
    """
    Support the flat variables used by other Apstra tooling:
    APSTRA_URL, or APSTRA_SCHEME/APSTRA_HOST/APSTRA_PORT, plus APSTRA_USER/APSTRA_PASS.
    """
    server: Dict[str, Any] = {}
    url = os.environ.get("APSTRA_URL")
    host = os.environ.get("APSTRA_HOST")
    if url:
        server["url"] = url
    elif host:
        scheme = os.environ.get("APSTRA_SCHEME") or "https"
        port = os.environ.get("APSTRA_PORT")
        server["url"] = f"{scheme}://{host}:{port}" if port else f"{scheme}://{host}"
    if os.environ.get("APSTRA_USER"):
        server["user"] = os.environ["APSTRA_USER"]
    if os.environ.get("APSTRA_PASS"):
        server["password"] = os.environ["APSTRA_PASS"]
    return {"server": server} if server else {}


def _interpolate_env(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """
    Replace values like "${VAR}" with os.environ["VAR"] when present.
    """
    def repl(v: Any) -> Any:
        if isinstance(v, str) and v.startswith("${") and v.endswith("}"):
            return os.environ.get(v[2:-1], "")
        return v

    def walk(obj: Any) -> Any:
        if isinstance(obj, dict):
            return {k: walk(repl(v)) for k, v in obj.items()}
        if isinstance(obj, list):
            return [walk(x) for x in obj]
        return repl(obj)

    return walk(cfg)


def _coerce_types(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """
    Minimal type coercion for booleans and numbers in known keys.
    """
    def to_bool(x: Any) -> bool:
        return str(x).strip().lower() in {"1", "true", "yes", "y", "on"}

    def walk(obj: Any, key: str = "") -> Any:
        if isinstance(obj, dict):
            return {k: walk(v, k) for k, v in obj.items()}
        if key in _BOOL_KEYS and not isinstance(obj, bool):
            return to_bool(obj)
        if key in _FLOAT_KEYS:
            try:
                return float(obj)
            except (TypeError, ValueError):
                raise ConfigError(f"'{key}' must be a number, got {obj!r}")
        return obj

    return walk(cfg)


def _validate(cfg: Dict[str, Any]) -> None:
    missing = [
        f"server.{k}" for k in ("url", "user", "password")
        if not cfg.get("server", {}).get(k)
    ]
    if missing:
        raise ConfigError("Missing required configuration: " + ", ".join(missing))
    tm = cfg.get("task_monitor", {})
    for k in ("first_check_delay_sec", "poll_interval_sec"):
        if float(tm.get(k, 0)) <= 0:
            raise ConfigError(f"task_monitor.{k} must be > 0")


# ---------- Public API ----------

def load_config(
    cli_overrides: Optional[Dict[str, Any]] = None,
    files: Tuple[str, ...] = _DEFAULT_FILES,
    env_prefix: str = "APSTRA_",
    *,
    use_dotenv: bool = True,
) -> AppConfig:
    """
    Build an AppConfig from (in precedence order):
      1) CLI overrides
      2) Environment variables (prefix APSTRA_, nested via __; then legacy flat names)
      3) YAML file (first existing)
      4) Built-in defaults

    A `.env` file (searched from the CWD upwards) is loaded first without
    overriding variables already exported in the shell.

    Also performs:
      - ${ENV_VAR} interpolation
      - basic type coercion (bool/float)
      - validation of required fields
    """
    if use_dotenv:
        env_path = find_dotenv(usecwd=True)
        if env_path:
            load_dotenv(env_path, override=False)

    file_cfg = _load_first_existing(files)

    # Combine: defaults <- file <- legacy env <- env <- cli
    merged = _deep_merge(_DEFAULTS, file_cfg)
    merged = _deep_merge(merged, _legacy_env())
    merged = _deep_merge(merged, _env_to_dict(env_prefix))
    merged = _deep_merge(merged, cli_overrides or {})

    merged = _interpolate_env(merged)
    merged = _coerce_types(merged)

    _validate(merged)

    return AppConfig(
        app=AppSection(**merged.get("app", {})),
        server=ServerSection(**merged.get("server", {})),
        task_monitor=TaskMonitorSection(**merged.get("task_monitor", {})),
        logging=LoggingSection(**merged.get("logging", {})),
    )
