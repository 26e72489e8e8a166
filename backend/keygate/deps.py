"""FastAPI dependency helpers."""
from __future__ import annotations

from fastapi import Depends

from keygate.core.config import Settings, get_settings
from keygate.db.session import get_session_maker
from keygate.services.api_keys import ApiKeyStore, FileApiKeyStore, SQLApiKeyStore
from keygate.services.rate_limit import RateLimiter


def get_api_key_store(settings: Settings = Depends(get_settings)) -> ApiKeyStore:
    """Return the key store selected by settings.

    - If DATABASE_URL is set, returns the SQL-backed store
    - Otherwise returns the JSONL file store
    """
    if settings.database_url:
        return SQLApiKeyStore(get_session_maker(settings))
    return FileApiKeyStore(settings.api_key_store_path)


def get_rate_limiter(
    settings: Settings = Depends(get_settings),
    store: ApiKeyStore = Depends(get_api_key_store),
) -> RateLimiter:
    """Provide a rate limiter bound to the request's key store."""

    return RateLimiter(
        store,
        key_prefix=settings.api_key_prefix,
        default_limit=settings.default_usage_limit,
        default_window=settings.default_rate_limit_window,
        max_attempts=settings.rate_limit_max_attempts,
    )
