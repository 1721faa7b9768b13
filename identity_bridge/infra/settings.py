from __future__ import annotations

import os


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


DATABASE_URL = os.getenv(
    "DATABASE_URL",
    "postgresql+psycopg://bridge:bridge@db:5432/identity",
)
DATABASE_POOL_PRE_PING = _env_bool("DATABASE_POOL_PRE_PING", True)
FEDERATION_PROVIDER_ID = os.getenv("FEDERATION_PROVIDER_ID", "identity-bridge")
ROLE_GRANT_BATCH_SIZE = _env_int("ROLE_GRANT_BATCH_SIZE", 100)
CONSUMER_ID_PATCH_ATTEMPTS = _env_int("CONSUMER_ID_PATCH_ATTEMPTS", 2)
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
