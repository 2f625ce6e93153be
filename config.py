import os
from functools import lru_cache
from typing import List, Mapping, Optional
from urllib.parse import quote_plus, urlparse


REQUIRED_ENV_VARS = ["SUPABASE_URL", "SUPABASE_SERVICE_KEY"]
DB_PART_VARS = ["DB_HOST", "DB_PORT", "DB_USERNAME", "DB_PASSWORD", "DB_DATABASE"]

TRUTHY = {"1", "true", "yes", "on"}


class ConfigError(RuntimeError):
    pass


def _flag(value: Optional[str], default: bool) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in TRUTHY


def _database_url(env: Mapping[str, str]) -> Optional[str]:
    if env.get("DATABASE_URL"):
        return env["DATABASE_URL"]
    host = env.get("DB_HOST")
    if not host:
        return None
    port = env.get("DB_PORT", "27017")
    user = env.get("DB_USERNAME")
    if user:
        password = quote_plus(env.get("DB_PASSWORD", ""))
        return f"mongodb://{quote_plus(user)}:{password}@{host}:{port}"
    return f"mongodb://{host}:{port}"


class Settings:
    """Runtime configuration read from the environment."""

    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        env = os.environ if environ is None else environ
        self.app_env = env.get("APP_ENV", "development")
        self.port = int(env.get("PORT", 8000))
        self.database_url = _database_url(env) or "mongodb://localhost:27017"
        self.database_name = env.get("DATABASE_NAME") or env.get("DB_DATABASE") or "storefront"
        self.mongo_transactions = _flag(env.get("MONGO_TRANSACTIONS"), True)
        self.supabase_url = (env.get("SUPABASE_URL") or "").rstrip("/")
        self.supabase_service_key = env.get("SUPABASE_SERVICE_KEY", "")
        self.storage_bucket = env.get("STORAGE_BUCKET", "product-images")
        self.payment_mode = env.get("PAYMENT_MODE", "mock")
        self.payment_failure_rate = float(env.get("PAYMENT_FAILURE_RATE", 0.1))
        self.payment_latency = float(env.get("PAYMENT_LATENCY", 0.5))
        self.product_cache_ttl = int(env.get("PRODUCT_CACHE_TTL", 300))
        self.cors_origins = [o.strip() for o in env.get("CORS_ORIGINS", "http://localhost:5173").split(",") if o.strip()]
        self.log_level = env.get("LOG_LEVEL", "INFO").upper()

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"


def validate_env(environ: Optional[Mapping[str, str]] = None) -> None:
    """Fail fast on a missing or malformed environment.

    A database location is required either as ``DATABASE_URL`` or as the
    ``DB_*`` parts; the identity provider URL must be an absolute http(s) URL
    and ``DB_PORT``, when given, must be numeric.
    """
    env = os.environ if environ is None else environ
    missing: List[str] = [key for key in REQUIRED_ENV_VARS if not env.get(key)]
    if not env.get("DATABASE_URL"):
        missing.extend(key for key in ("DB_HOST", "DB_DATABASE") if not env.get(key))
    if missing:
        raise ConfigError("Missing required environment variables: " + ", ".join(missing))

    parsed = urlparse(env["SUPABASE_URL"])
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ConfigError("Invalid SUPABASE_URL format")

    port = env.get("DB_PORT")
    if port is not None and not port.isdigit():
        raise ConfigError("DB_PORT must be a number")


@lru_cache()
def get_settings() -> Settings:
    return Settings()
