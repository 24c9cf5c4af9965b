"""Gateway configuration.

All settings come from environment variables so the same image can run in
development, CI, and production. Numeric values that fail to parse fall back
to their defaults rather than crashing startup.

Environment variables:
- FLAGS_ENV: dev|prod (default dev)
- FLAGS_DEVELOPMENT: if '1', bypass the auth gate and identity verification
- FLAGS_DEV_USER_SUBJECT: user subject substituted in development mode
- FLAGS_JWT_SIGNING_KEY / FLAGS_JWT_SIGNING_KEY_FILE: capability token key
- FLAGS_ALLOW_PLACEHOLDER_KEY: if '1', allow the placeholder key in prod
- FLAGS_API_KEY_TTL_DAYS: capability token lifetime (default 365)
- FLAGS_API_KEY_ISSUER: `iss` claim of issued tokens (default flags.gg)
- FLAGS_STRICT_API_KEYS: if '1', an invalid X-API-Key is not replaced by headers
- FLAGS_DB_PATH: sqlite database path (default flags_gateway.db)
- FLAGS_DB_CONNECT_TIMEOUT_SECONDS: sqlite connect timeout
- FLAGS_QUERY_TIMEOUT_SECONDS: per-request store deadline (0 disables)
- FLAGS_IDP_URL, FLAGS_IDP_REALM, FLAGS_IDP_CLIENT_ID, FLAGS_IDP_CLIENT_SECRET,
  FLAGS_IDP_TIMEOUT_SECONDS: identity provider (keycloak) access
- FLAGS_DEFAULT_INTERVAL_SECONDS, FLAGS_UNSCOPED_INTERVAL_SECONDS,
  FLAGS_DEGRADED_INTERVAL_SECONDS: polling intervals handed to agents
- FLAGS_METRICS_ENABLED, FLAGS_METRICS_TOKEN: /metrics exposure
- FLAGS_LOG_LEVEL: root log level for the CLI entry point
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional


def _env_str(name: str, default: str = "") -> str:
    return (os.getenv(name, default) or default).strip()


def _env_bool(name: str, default: bool = False) -> bool:
    v = (os.getenv(name, "") or "").strip().lower()
    if not v:
        return default
    return v in ("1", "true", "yes", "on")


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    try:
        value = int(os.getenv(name, str(default)).strip())
    except Exception:
        return default
    if value < minimum:
        return default
    return value


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    try:
        value = float(os.getenv(name, str(default)).strip())
    except Exception:
        return default
    if value < minimum:
        return default
    return value


def _read_signing_key() -> Optional[str]:
    raw = _env_str("FLAGS_JWT_SIGNING_KEY")
    if raw:
        return raw
    path = _env_str("FLAGS_JWT_SIGNING_KEY_FILE")
    if path:
        with open(path, "r", encoding="utf-8") as f:
            key = f.read().strip()
        return key or None
    return None


@dataclass(frozen=True)
class IdentityProviderConfig:
    url: str = ""
    realm: str = ""
    client_id: str = ""
    client_secret: str = ""
    timeout_seconds: float = 5.0

    def configured(self) -> bool:
        return bool(self.url and self.realm)


@dataclass(frozen=True)
class GatewayConfig:
    """Process-wide configuration, read once at startup."""

    env: str = "dev"
    development: bool = False
    dev_user_subject: str = ""

    signing_key: Optional[str] = None
    allow_placeholder_key: bool = False
    api_key_ttl_days: int = 365
    api_key_issuer: str = "flags.gg"
    strict_api_keys: bool = False

    db_path: str = "flags_gateway.db"
    db_connect_timeout_seconds: float = 5.0
    query_timeout_seconds: float = 10.0

    identity: IdentityProviderConfig = IdentityProviderConfig()

    default_interval_seconds: int = 60
    unscoped_interval_seconds: int = 600
    degraded_interval_seconds: int = 900

    metrics_enabled: bool = True
    metrics_token: str = ""
    log_level: str = "INFO"

    @property
    def is_production(self) -> bool:
        return self.env in ("prod", "production")

    @classmethod
    def from_env(cls) -> "GatewayConfig":
        identity = IdentityProviderConfig(
            url=_env_str("FLAGS_IDP_URL").rstrip("/"),
            realm=_env_str("FLAGS_IDP_REALM"),
            client_id=_env_str("FLAGS_IDP_CLIENT_ID"),
            client_secret=_env_str("FLAGS_IDP_CLIENT_SECRET"),
            timeout_seconds=_env_float("FLAGS_IDP_TIMEOUT_SECONDS", 5.0, minimum=0.01),
        )
        return cls(
            env=_env_str("FLAGS_ENV", "dev").lower() or "dev",
            development=_env_bool("FLAGS_DEVELOPMENT"),
            dev_user_subject=_env_str("FLAGS_DEV_USER_SUBJECT"),
            signing_key=_read_signing_key(),
            allow_placeholder_key=_env_bool("FLAGS_ALLOW_PLACEHOLDER_KEY"),
            api_key_ttl_days=_env_int("FLAGS_API_KEY_TTL_DAYS", 365, minimum=1),
            api_key_issuer=_env_str("FLAGS_API_KEY_ISSUER", "flags.gg"),
            strict_api_keys=_env_bool("FLAGS_STRICT_API_KEYS"),
            db_path=_env_str("FLAGS_DB_PATH", "flags_gateway.db"),
            db_connect_timeout_seconds=_env_float("FLAGS_DB_CONNECT_TIMEOUT_SECONDS", 5.0, minimum=0.01),
            query_timeout_seconds=_env_float("FLAGS_QUERY_TIMEOUT_SECONDS", 10.0),
            identity=identity,
            default_interval_seconds=_env_int("FLAGS_DEFAULT_INTERVAL_SECONDS", 60, minimum=1),
            unscoped_interval_seconds=_env_int("FLAGS_UNSCOPED_INTERVAL_SECONDS", 600, minimum=1),
            degraded_interval_seconds=_env_int("FLAGS_DEGRADED_INTERVAL_SECONDS", 900, minimum=1),
            metrics_enabled=_env_bool("FLAGS_METRICS_ENABLED", True),
            metrics_token=_env_str("FLAGS_METRICS_TOKEN"),
            log_level=_env_str("FLAGS_LOG_LEVEL", "INFO").upper(),
        )
