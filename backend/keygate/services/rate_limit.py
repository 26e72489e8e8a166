"""Per-key usage accounting with window rollover and optimistic locking.

Each call re-reads the key from the store; nothing about usage is cached in
process. An increment is only persisted through ``conditional_update``, which
matches on the usage value that was read, so two concurrent callers can never
both spend the last unit of quota. A lost race restarts the whole sequence,
up to ``max_attempts`` times.

Public operations never raise for request outcomes. Failures are reported as
values carrying a :class:`DecisionError` code so the HTTP layer can always
build a well-formed response.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Iterable

from keygate.services.api_keys import ApiKeyRecord, ApiKeyStore, UsagePatch, parse_permissions
from keygate.services.rate_windows import RateWindow, calculate_next_reset

logger = logging.getLogger(__name__)

DEFAULT_USAGE_LIMIT = 1000
DEFAULT_RETRY_AFTER_SECONDS = 3600
DEFAULT_MAX_ATTEMPTS = 5
# Reported as the reset time when a decision has none
UNKNOWN_RESET = datetime(1970, 1, 1, tzinfo=timezone.utc)

RATE_LIMIT_HEADERS = (
    "X-RateLimit-Limit",
    "X-RateLimit-Remaining",
    "X-RateLimit-Reset",
    "X-RateLimit-Window",
)


class DecisionError(str, Enum):
    INVALID_FORMAT = "invalid_format"
    NOT_FOUND = "not_found"
    PERMISSION_DENIED = "permission_denied"
    QUOTA_EXCEEDED = "quota_exceeded"
    CONTENTION = "contention"
    INVALID_INCREMENT = "invalid_increment"
    SERVICE_ERROR = "service_error"


class ApiKeyError(RuntimeError):
    """Base for failures that end a validation or accounting call."""

    code = DecisionError.SERVICE_ERROR

    def __init__(self, message: str, *, record: ApiKeyRecord | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.record = record


class FormatError(ApiKeyError):
    code = DecisionError.INVALID_FORMAT


class NotFoundError(ApiKeyError):
    code = DecisionError.NOT_FOUND


class ApiKeyPermissionError(ApiKeyError):
    code = DecisionError.PERMISSION_DENIED


class ContentionError(ApiKeyError):
    code = DecisionError.CONTENTION


class ServiceError(ApiKeyError):
    code = DecisionError.SERVICE_ERROR


@dataclass(slots=True)
class RateLimitInfo:
    limit: int = 0
    remaining: int = 0
    reset_at: datetime | None = None
    window: RateWindow | None = None
    current: int = 0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "limit": self.limit,
            "remaining": self.remaining,
            "resetAt": self.reset_at.isoformat() if self.reset_at else None,
            "window": self.window.value if self.window else None,
            "current": self.current,
        }
        if self.error:
            payload["error"] = self.error
        return payload


@dataclass(slots=True)
class KeyValidation:
    valid: bool
    record: ApiKeyRecord | None = None
    error: str | None = None
    error_code: DecisionError | None = None


@dataclass(slots=True)
class UsageDecision:
    allowed: bool
    rate_limit_info: RateLimitInfo
    record: ApiKeyRecord | None = None
    error_code: DecisionError | None = None


@dataclass(slots=True)
class ShapedResponse:
    status_code: int
    headers: dict[str, str]
    body: dict[str, Any] | None = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def calculate_retry_after(reset_at: datetime | None, now: datetime) -> int:
    """Whole seconds until ``reset_at``, never negative."""

    if reset_at is None:
        return DEFAULT_RETRY_AFTER_SECONDS
    return max(0, math.ceil((reset_at - now).total_seconds()))


def shape_response(
    info: RateLimitInfo, status_code: int = 429, *, now: datetime | None = None
) -> ShapedResponse:
    """Build rate limit headers, plus a denial body for 429 responses."""

    now = now or _utcnow()
    headers = {
        "X-RateLimit-Limit": str(info.limit or 0),
        "X-RateLimit-Remaining": str(info.remaining or 0),
        "X-RateLimit-Reset": (info.reset_at or UNKNOWN_RESET).isoformat(),
        "X-RateLimit-Window": (info.window or RateWindow.MONTHLY).value,
    }
    if status_code != 429:
        return ShapedResponse(status_code=status_code, headers=headers)

    body = {
        "success": False,
        "error": info.error or "Rate limit exceeded",
        "rateLimitInfo": {
            "limit": info.limit,
            "remaining": info.remaining,
            "resetAt": info.reset_at.isoformat() if info.reset_at else None,
            "window": info.window.value if info.window else None,
            "retryAfter": calculate_retry_after(info.reset_at, now),
        },
    }
    return ShapedResponse(status_code=status_code, headers=headers, body=body)


def _denied(code: DecisionError, message: str) -> UsageDecision:
    return UsageDecision(
        allowed=False, rate_limit_info=RateLimitInfo(error=message), error_code=code
    )


class RateLimiter:
    """Validate API keys and spend their per-window quota."""

    def __init__(
        self,
        store: ApiKeyStore,
        *,
        key_prefix: str = "api_",
        default_limit: int = DEFAULT_USAGE_LIMIT,
        default_window: RateWindow | str = RateWindow.MONTHLY,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._key_prefix = key_prefix
        self._default_limit = default_limit
        self._default_window = RateWindow.parse(default_window)
        self._max_attempts = max(1, max_attempts)
        self._clock = clock

    def limit_for(self, record: ApiKeyRecord) -> int:
        return record.usage_limit or self._default_limit

    def window_for(self, record: ApiKeyRecord) -> RateWindow:
        return RateWindow.parse(record.rate_limit_window, self._default_window)

    async def validate_key(
        self, key: str | None, required_permissions: Iterable[str] = ("read",)
    ) -> KeyValidation:
        """Check key format, existence and capabilities without spending quota."""

        try:
            record = await self._validate(key, list(required_permissions))
        except ApiKeyError as exc:
            return KeyValidation(
                valid=False, record=exc.record, error=exc.message, error_code=exc.code
            )
        return KeyValidation(valid=True, record=record)

    async def _validate(self, key: str | None, required: list[str]) -> ApiKeyRecord:
        if not key or not key.startswith(self._key_prefix):
            raise FormatError(
                f'Invalid API key format. Must start with "{self._key_prefix}"'
            )
        try:
            record = await self._store.read_by_key(key)
        except Exception as exc:
            logger.exception("API key lookup failed during validation")
            raise ServiceError("API key validation failed") from exc
        if record is None:
            raise NotFoundError("Invalid API key")

        granted = parse_permissions(record.permissions)
        if not set(required).issubset(granted):
            raise ApiKeyPermissionError(
                f"Insufficient permissions. Required: {', '.join(required)}",
                record=record,
            )
        return record

    async def check_and_increment_usage(self, key: str, increment_by: int = 1) -> UsageDecision:
        """Spend ``increment_by`` units of the key's quota if it fits the current window.

        An ``increment_by`` that is not a positive integer is denied with
        ``INVALID_INCREMENT`` before the store is touched.
        """

        if isinstance(increment_by, bool) or not isinstance(increment_by, int) or increment_by < 1:
            logger.warning("Rejected usage increment", extra={"increment_by": repr(increment_by)})
            return _denied(
                DecisionError.INVALID_INCREMENT, "Usage increment must be a positive integer"
            )

        try:
            for attempt in range(1, self._max_attempts + 1):
                decision = await self._attempt(key, increment_by)
                if decision is not None:
                    return decision
                logger.warning(
                    "Usage update lost a concurrent race, retrying",
                    extra={"attempt": attempt, "max_attempts": self._max_attempts},
                )
            raise ContentionError("Rate limit contention, retry later")
        except ContentionError as exc:
            logger.error(
                "Usage update gave up after repeated conflicts",
                extra={"max_attempts": self._max_attempts},
            )
            return _denied(exc.code, exc.message)
        except Exception:
            logger.exception("Rate limiter error")
            return _denied(DecisionError.SERVICE_ERROR, "Rate limiting service error")

    async def _attempt(self, key: str, increment_by: int) -> UsageDecision | None:
        """Run one read/check/write pass; ``None`` means a concurrent writer won."""

        record = await self._store.read_by_key(key)
        if record is None:
            return _denied(DecisionError.NOT_FOUND, "Invalid API key")

        now = self._clock()
        window = self.window_for(record)
        limit = self.limit_for(record)
        usage = record.usage
        reset_at = record.rate_limit_reset_at

        if reset_at is None or reset_at <= now:
            reset_at = calculate_next_reset(window, now)
            reset = await self._store.update(
                key, UsagePatch(usage=0, last_used=now, rate_limit_reset_at=reset_at)
            )
            if reset is None:
                return _denied(DecisionError.NOT_FOUND, "Invalid API key")
            usage = 0

        prospective = usage + increment_by
        if prospective > limit:
            logger.warning(
                "Rate limit exceeded",
                extra={"key_id": record.id, "usage": usage, "limit": limit},
            )
            return UsageDecision(
                allowed=False,
                rate_limit_info=RateLimitInfo(
                    limit=limit,
                    remaining=max(0, limit - usage),
                    reset_at=reset_at,
                    window=window,
                    current=usage,
                    error="Rate limit exceeded",
                ),
                record=record,
                error_code=DecisionError.QUOTA_EXCEEDED,
            )

        updated = await self._store.conditional_update(
            key, usage, UsagePatch(usage=prospective, last_used=now)
        )
        if updated is None:
            return None

        return UsageDecision(
            allowed=True,
            rate_limit_info=RateLimitInfo(
                limit=limit,
                remaining=max(0, limit - prospective),
                reset_at=updated.rate_limit_reset_at or reset_at,
                window=self.window_for(updated),
                current=prospective,
            ),
            record=updated,
        )

    def shape_response(self, info: RateLimitInfo, status_code: int = 429) -> ShapedResponse:
        return shape_response(info, status_code, now=self._clock())


__all__ = [
    "ApiKeyError",
    "ApiKeyPermissionError",
    "ContentionError",
    "DecisionError",
    "FormatError",
    "KeyValidation",
    "NotFoundError",
    "RATE_LIMIT_HEADERS",
    "RateLimitInfo",
    "RateLimiter",
    "ServiceError",
    "ShapedResponse",
    "UNKNOWN_RESET",
    "UsageDecision",
    "calculate_retry_after",
    "shape_response",
]
