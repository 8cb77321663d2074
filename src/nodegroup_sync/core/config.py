from __future__ import annotations

import os
import socket
import uuid
from dataclasses import dataclass, fields
from typing import Any, Dict, Optional, Tuple

from dotenv import find_dotenv, load_dotenv

from .classifier_client import DEFAULT_MAX_ATTEMPTS, DEFAULT_PORT, DEFAULT_PREFIX, ClientOptions


class ConfigError(Exception):
    """Raised when runtime configuration cannot be resolved."""
    pass


# ---------- Typed sections ----------

@dataclass
class AppSection:
    run_id: Optional[str] = None
    dry_run: bool = False


@dataclass
class ClassifierSection:
    server: str = ""
    port: int = DEFAULT_PORT
    prefix: str = DEFAULT_PREFIX
    attempts: int = DEFAULT_MAX_ATTEMPTS
    retry_interval_sec: int = 10
    timeout_sec: int = 60


@dataclass
class TlsSection:
    cert: str = ""          # client certificate (PEM)
    key: str = ""           # private key – never log its content
    ca: str = ""            # CA bundle; empty means system defaults
    verify: bool = True


@dataclass
class LoggingSection:
    base_dir: str = "logs"
    console_level: str = "INFO"   # INFO..CRITICAL
    file_level: str = "DEBUG"     # DEBUG..CRITICAL


@dataclass
class AppConfig:
    """Typed configuration object built by `load_config`."""
    app: AppSection
    classifier: ClassifierSection
    tls: TlsSection
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

    def client_options(self) -> ClientOptions:
        """Translate the classifier/TLS sections into client options."""
        verify: Any = self.tls.ca or self.tls.verify
        cert = (self.tls.cert, self.tls.key) if self.tls.cert and self.tls.key else (self.tls.cert or None)
        return ClientOptions(
            max_attempts=self.classifier.attempts,
            retry_interval_sec=float(self.classifier.retry_interval_sec),
            timeout_sec=float(self.classifier.timeout_sec),
            verify=verify,
            cert=cert,
        )


# ---------- Defaults ----------

_DEFAULTS: Dict[str, Any] = {
    "app": {"run_id": None, "dry_run": False},
    "classifier": {
        "server": "",
        "port": DEFAULT_PORT,
        "prefix": DEFAULT_PREFIX,
        "attempts": DEFAULT_MAX_ATTEMPTS,
        "retry_interval_sec": 10,
        "timeout_sec": 60,
    },
    "tls": {"cert": "", "key": "", "ca": "", "verify": True},
    "logging": {"base_dir": "logs", "console_level": "INFO", "file_level": "DEBUG"},
}


# ---------- Utilities ----------

def _deep_merge(base: Dict[str, Any], ext: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Deep-merge for dicts: maps merge recursively, lists/scalars override.
    `ext` wins over `base`. Empty strings and None in `ext` do not override.
    """
    if not ext:
        return dict(base)
    out: Dict[str, Any] = dict(base)
    for k, v in ext.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        elif v is None or v == "":
            continue
        else:
            out[k] = v
    return out


def _env_to_dict(prefix: str = "NGS_") -> Dict[str, Any]:
    """
    Convert NGS_FOO__BAR=val to {"foo": {"bar": "val"}} (lowercased keys).
    Variables without a section separator are ignored.
    """
    out: Dict[str, Any] = {}
    plen = len(prefix)
    for key, val in os.environ.items():
        if not key.startswith(prefix) or "__" not in key[plen:]:
            continue
        path = key[plen:].lower().split("__")
        cursor = out
        for part in path[:-1]:
            cursor = cursor.setdefault(part, {})
        cursor[path[-1]] = val
    return out


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
    Minimal type coercion for booleans and integers in known keys.
    """
    def to_bool(x: Any) -> bool:
        return str(x).strip().lower() in {"1", "true", "yes", "y", "on"}

    def walk(obj: Any, key_path: Tuple[str, ...] = ()) -> Any:
        if isinstance(obj, dict):
            return {k: walk(v, key_path + (k,)) for k, v in obj.items()}
        # heuristics by key
        if key_path[-1:] in [("verify",), ("dry_run",)]:
            return to_bool(obj)
        if key_path[-1:] in [("port",), ("attempts",), ("retry_interval_sec",), ("timeout_sec",)]:
            try:
                return int(obj)
            except (TypeError, ValueError):
                raise ConfigError(f"{'.'.join(key_path)} must be an integer, got {obj!r}")
        return obj

    return walk(cfg)


def _default_server() -> str:
    """The agent's own certname stands in for a missing classifier server."""
    return os.environ.get("NGS_CERTNAME") or socket.getfqdn()


def _validate(cfg: Dict[str, Any]) -> None:
    """
    Validate the resolved settings. TLS material is required unless dry_run.
    """
    if int(cfg["classifier"]["attempts"]) < 1:
        raise ConfigError("classifier.attempts must be at least 1")
    if bool(cfg.get("app", {}).get("dry_run", False)):
        return
    tls = cfg.get("tls", {})
    missing = [f"tls.{k}" for k in ("cert", "key") if not tls.get(k)]
    if missing:
        raise ConfigError(
            "Missing required configuration for non-dry run: " + ", ".join(missing)
            + ". Export NGS_TLS__CERT / NGS_TLS__KEY or pass --cert/--key."
        )


def _section(cls, data: Optional[Dict[str, Any]]):
    """Instantiate a section dataclass, ignoring keys it does not declare."""
    names = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in (data or {}).items() if k in names})


# ---------- Public API ----------

def load_config(
    cli_overrides: Optional[Dict[str, Any]] = None,
    env_prefix: str = "NGS_",
    use_dotenv: bool = True,
) -> AppConfig:
    """
    Build an AppConfig from (in precedence order):
      1) CLI overrides
      2) Environment variables (prefix NGS_, nested via __), after loading .env
      3) Built-in defaults

    Also performs:
      - ${ENV_VAR} interpolation
      - basic type coercion (bool/int)
      - server fallback to the agent certname
      - validation of TLS material when not in dry_run
    """
    if use_dotenv:
        env_path = find_dotenv(usecwd=True)
        if env_path:
            load_dotenv(env_path, override=False)

    merged = _deep_merge(_DEFAULTS, _env_to_dict(env_prefix))
    merged = _deep_merge(merged, cli_overrides or {})

    merged = _interpolate_env(merged)
    merged = _coerce_types(merged)
    if not merged["classifier"].get("server"):
        merged["classifier"]["server"] = _default_server()
    merged["classifier"]["prefix"] = str(merged["classifier"]["prefix"]).rstrip("/")

    _validate(merged)

    return AppConfig(
        app=_section(AppSection, merged.get("app")),
        classifier=_section(ClassifierSection, merged.get("classifier")),
        tls=_section(TlsSection, merged.get("tls")),
        logging=_section(LoggingSection, merged.get("logging")),
    )
