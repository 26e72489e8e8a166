"""Admin Basic auth and API key extraction from incoming requests.

Passwords are verified with PBKDF2-HMAC; no external crypto dependency.
"""
from __future__ import annotations

import base64
import hashlib
import hmac
import logging
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from keygate.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

_basic = HTTPBasic(auto_error=False)

API_KEY_HEADERS = ("X-API-Key", "apiKey")


def hash_password(password: str, *, salt: bytes, rounds: int = 200_000) -> str:
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, rounds)
    return f"pbkdf2_sha256${rounds}${base64.b64encode(salt).decode()}${base64.b64encode(digest).decode()}"


def verify_password(password: str, encoded: str) -> bool:
    try:
        algo, rounds_s, salt_b64, hash_b64 = encoded.split("$", 3)
        if algo != "pbkdf2_sha256":
            return False
        rounds = int(rounds_s)
        salt = base64.b64decode(salt_b64)
        expected = base64.b64decode(hash_b64)
    except ValueError:
        return False
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, rounds)
    return hmac.compare_digest(digest, expected)


def _configured_hash(settings: Settings) -> Optional[str]:
    if settings.auth_basic_password_hash:
        return settings.auth_basic_password_hash
    if settings.auth_basic_password_plain:
        # static per-process salt; sufficient for dev setups
        salt = hashlib.sha256(b"keygate-basic-salt").digest()[:16]
        return hash_password(settings.auth_basic_password_plain, salt=salt)
    return None


async def require_basic_user(
    settings: Settings = Depends(get_settings),
    credentials: HTTPBasicCredentials | None = Depends(_basic),
) -> dict:
    """Validate HTTP Basic credentials against the configured admin user."""

    if not credentials or not settings.auth_basic_username:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Admin authentication required",
            headers={"WWW-Authenticate": "Basic"},
        )

    encoded = _configured_hash(settings)
    if (
        credentials.username != settings.auth_basic_username
        or not encoded
        or not verify_password(credentials.password or "", encoded)
    ):
        logger.warning("Rejected admin credentials", extra={"username": credentials.username})
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication failed",
            headers={"WWW-Authenticate": "Basic"},
        )
    return {"username": credentials.username, "roles": ["admin"]}


def api_key_from_headers(request: Request) -> str | None:
    """Find an API key in the request headers, if any was sent."""

    for name in API_KEY_HEADERS:
        value = request.headers.get(name)
        if value:
            return value.strip()
    authorization = request.headers.get("Authorization")
    if authorization:
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() == "bearer" and token:
            return token.strip()
    return None
