from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Literal

AppEnv = Literal["dev", "test", "prod"]
LogLevel = Literal["debug", "info", "warning", "error"]
CacheBackend = Literal["memcached", "redis"]

_TRUE = ("1", "true", "yes", "on")
_FALSE = ("", "0", "false", "no", "off")


def _getenv(name: str, default: str) -> str:
    return os.environ.get(name, default).strip()


def _getbool(name: str, default: str = "false") -> bool:
    raw = _getenv(name, default).lower()
    if raw in _TRUE:
        return True
    if raw in _FALSE:
        return False
    raise ValueError(f"{name} must be a boolean (got {raw!r})")


def _getfloat(name: str, default: str, *, allow_zero: bool = False) -> float:
    raw = _getenv(name, default)
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number (got {raw!r})") from None
    if not (value > 0 or (allow_zero and value == 0)):
        qualifier = "non-negative" if allow_zero else "positive"
        raise ValueError(f"{name} must be {qualifier} (got {raw!r})")
    return value


@dataclass(frozen=True)
class Settings:
    app_env: AppEnv
    log_level: LogLevel
    log_json: bool
    bind_host: str
    port: int
    cache_backend: CacheBackend
    cache_host: str
    cache_timeout_secs: float
    refresh_secs: float
    shutdown_grace_secs: float
    rules_path: str | None
    tls_enabled: bool = False
    tls_ca: str | None = None
    tls_cert: str | None = None
    tls_key: str | None = None
    tls_server_name: str | None = None

    @property
    def is_dev(self) -> bool:
        return self.app_env == "dev"

    @property
    def is_test(self) -> bool:
        return self.app_env == "test"

    @property
    def is_prod(self) -> bool:
        return self.app_env == "prod"


def load_settings() -> Settings:
    app_env_raw = _getenv("APP_ENV", "dev").lower()
    log_level_raw = _getenv("LOG_LEVEL", "info").lower()
    port_raw = _getenv("PORT", "9761")
    backend_raw = _getenv("CACHE_BACKEND", "memcached").lower()

    if app_env_raw not in ("dev", "test", "prod"):
        raise ValueError(f"APP_ENV must be dev|test|prod (got {app_env_raw!r})")

    if log_level_raw not in ("debug", "info", "warning", "error"):
        raise ValueError(
            f"LOG_LEVEL must be debug|info|warning|error (got {log_level_raw!r})"
        )

    if backend_raw not in ("memcached", "redis"):
        raise ValueError(f"CACHE_BACKEND must be memcached|redis (got {backend_raw!r})")

    try:
        port = int(port_raw)
    except ValueError:
        raise ValueError(f"PORT must be an integer (got {port_raw!r})") from None

    default_host = "localhost:6379" if backend_raw == "redis" else "localhost:11211"
    cache_host = _getenv("CACHE_HOST", default_host)
    if not cache_host:
        raise ValueError("CACHE_HOST must not be empty")

    tls_cert = _getenv("TLS_CERT", "") or None
    tls_key = _getenv("TLS_KEY", "") or None
    if (tls_cert is None) != (tls_key is None):
        raise ValueError("TLS_CERT and TLS_KEY must be set together")

    return Settings(  # type: ignore[arg-type]
        app_env=app_env_raw,
        log_level=log_level_raw,
        log_json=_getbool("LOG_JSON"),
        bind_host=_getenv("BIND_HOST", "0.0.0.0"),
        port=port,
        cache_backend=backend_raw,
        cache_host=cache_host,
        cache_timeout_secs=_getfloat("CACHE_TIMEOUT_SECS", "30"),
        refresh_secs=_getfloat("REFRESH_SECS", "60"),
        shutdown_grace_secs=_getfloat("SHUTDOWN_GRACE_SECS", "5", allow_zero=True),
        rules_path=_getenv("RULES_PATH", "") or None,
        tls_enabled=_getbool("TLS_ENABLED"),
        tls_ca=_getenv("TLS_CA", "") or None,
        tls_cert=tls_cert,
        tls_key=tls_key,
        tls_server_name=_getenv("TLS_SERVER_NAME", "") or None,
    )
