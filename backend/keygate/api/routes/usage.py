"""Metering endpoint that spends API key quota on behalf of a caller."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse

from keygate.deps import get_rate_limiter
from keygate.schemas.api_keys import UsageRequest
from keygate.security import api_key_from_headers
from keygate.services.rate_limit import DecisionError, RateLimiter

router = APIRouter(tags=["usage"])

REQUIRED_PERMISSIONS = ("read",)

_VALIDATION_STATUS = {
    DecisionError.INVALID_FORMAT: status.HTTP_401_UNAUTHORIZED,
    DecisionError.NOT_FOUND: status.HTTP_401_UNAUTHORIZED,
    DecisionError.PERMISSION_DENIED: status.HTTP_403_FORBIDDEN,
    DecisionError.SERVICE_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


@router.post("/usage", summary="Record usage against an API key")
async def record_usage(
    request: Request,
    payload: Optional[UsageRequest] = None,
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> JSONResponse:
    """Validate the caller's key, then spend ``incrementBy`` units of its quota.

    The key is read from the ``X-API-Key``/``apiKey``/``Authorization`` headers
    or from the JSON body. Every outcome past validation carries the
    ``X-RateLimit-*`` headers.
    """
    payload = payload or UsageRequest()
    api_key = api_key_from_headers(request) or payload.api_key
    if not api_key:
        return _error(
            status.HTTP_400_BAD_REQUEST,
            'API key is required. Send it in the "X-API-Key" header or as {"apiKey": "your_key"}',
        )

    validation = await limiter.validate_key(api_key, REQUIRED_PERMISSIONS)
    if not validation.valid:
        code = validation.error_code or DecisionError.SERVICE_ERROR
        return _error(_VALIDATION_STATUS.get(code, status.HTTP_403_FORBIDDEN), validation.error or "")

    decision = await limiter.check_and_increment_usage(api_key, payload.increment_by)
    if not decision.allowed:
        shaped = limiter.shape_response(decision.rate_limit_info, status.HTTP_429_TOO_MANY_REQUESTS)
        headers = dict(shaped.headers)
        headers["Retry-After"] = str(shaped.body["rateLimitInfo"]["retryAfter"])
        return JSONResponse(status_code=shaped.status_code, content=shaped.body, headers=headers)

    shaped = limiter.shape_response(decision.rate_limit_info, status.HTTP_200_OK)
    return JSONResponse(
        status_code=shaped.status_code,
        content={"success": True, "rateLimitInfo": decision.rate_limit_info.to_dict()},
        headers=shaped.headers,
    )
