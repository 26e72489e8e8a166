"""Public API key validation endpoint."""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from keygate.deps import get_rate_limiter
from keygate.schemas.api_keys import KeyDetails, ValidateKeyRequest, ValidateKeyResponse
from keygate.services.api_keys import parse_permissions
from keygate.services.rate_limit import DecisionError, RateLimiter

router = APIRouter(tags=["keys"])

# Test keys stop validating once they pass this much usage.
TEST_KEY_USAGE_CEILING = 1000


@router.post("/validate-api-key", response_model=ValidateKeyResponse, summary="Check an API key")
async def validate_api_key(
    payload: ValidateKeyRequest,
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> ValidateKeyResponse:
    if not payload.api_key:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="API key is required")

    result = await limiter.validate_key(payload.api_key, required_permissions=())
    if result.error_code is DecisionError.SERVICE_ERROR:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=result.error)
    if result.error_code is DecisionError.NOT_FOUND:
        return ValidateKeyResponse(isValid=False, message="API key not found in our system")
    if not result.valid or result.record is None:
        return ValidateKeyResponse(isValid=False, message=result.error or "Invalid API key")

    record = result.record
    if record.type == "test" and record.usage > TEST_KEY_USAGE_CEILING:
        return ValidateKeyResponse(
            isValid=False, message="Test API key has exceeded usage limits"
        )
    return ValidateKeyResponse(
        isValid=True,
        message="API key is valid and active",
        keyDetails=KeyDetails(
            name=record.name,
            description=record.description,
            type=record.type,
            usage=record.usage,
            permissions=sorted(parse_permissions(record.permissions)),
            created_at=record.created_at,
        ),
    )
