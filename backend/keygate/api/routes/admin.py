"""Admin endpoints for API key management (requires Basic auth)."""
from __future__ import annotations

import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, status

from keygate.core.config import Settings, get_settings
from keygate.deps import get_api_key_store
from keygate.schemas.api_keys import (
    ApiKeyCreateRequest,
    ApiKeyCreateResponse,
    ApiKeyItem,
    ApiKeyUpdateRequest,
    UsageAnalytics,
)
from keygate.security import require_basic_user
from keygate.services.api_keys import ApiKeyStore, new_api_key_record

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post(
    "/api-keys",
    response_model=ApiKeyCreateResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Issue an API key",
)
async def create_api_key(
    payload: ApiKeyCreateRequest,
    _: dict = Depends(require_basic_user),
    store: ApiKeyStore = Depends(get_api_key_store),
    settings: Settings = Depends(get_settings),
) -> ApiKeyCreateResponse:
    record = new_api_key_record(
        name=payload.name,
        description=payload.description,
        permissions=payload.permissions,
        key_type=payload.type,
        usage_limit=payload.usage_limit,
        rate_limit_window=payload.rate_limit_window,
        prefix=settings.api_key_prefix,
    )
    await store.create(record)
    logger.info("Issued API key", extra={"key_id": record.id, "key_name": record.name})
    item = ApiKeyItem.from_record(record)
    return ApiKeyCreateResponse(**item.model_dump(), api_key=record.key)


@router.get("/api-keys", response_model=List[ApiKeyItem], summary="List API keys")
async def list_api_keys(
    _: dict = Depends(require_basic_user),
    store: ApiKeyStore = Depends(get_api_key_store),
) -> list[ApiKeyItem]:
    return [ApiKeyItem.from_record(record) for record in await store.list_keys()]


@router.get("/api-keys/usage", response_model=UsageAnalytics, summary="Usage across all keys")
async def get_usage_analytics(
    _: dict = Depends(require_basic_user),
    store: ApiKeyStore = Depends(get_api_key_store),
) -> UsageAnalytics:
    records = sorted(await store.list_keys(), key=lambda r: r.usage, reverse=True)
    return UsageAnalytics(
        total_usage=sum(r.usage for r in records),
        total_keys=len(records),
        active_keys=sum(1 for r in records if r.last_used),
        keys=[ApiKeyItem.from_record(r) for r in records],
    )


@router.get("/api-keys/{key_id}", response_model=ApiKeyItem, summary="Fetch one API key")
async def get_api_key(
    key_id: str,
    _: dict = Depends(require_basic_user),
    store: ApiKeyStore = Depends(get_api_key_store),
) -> ApiKeyItem:
    record = await store.get(key_id)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="API key not found")
    return ApiKeyItem.from_record(record)


@router.put("/api-keys/{key_id}", response_model=ApiKeyItem, summary="Update an API key")
async def update_api_key(
    key_id: str,
    payload: ApiKeyUpdateRequest,
    _: dict = Depends(require_basic_user),
    store: ApiKeyStore = Depends(get_api_key_store),
) -> ApiKeyItem:
    """Rename a key and replace its description and permissions."""

    if not payload.name:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Name is required")
    record = await store.update_details(
        key_id,
        name=payload.name,
        description=payload.description or "",
        permissions=payload.permissions or [],
    )
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="API key not found")
    logger.info("Updated API key", extra={"key_id": key_id, "key_name": record.name})
    return ApiKeyItem.from_record(record)


@router.delete("/api-keys/{key_id}", summary="Delete an API key")
async def delete_api_key(
    key_id: str,
    _: dict = Depends(require_basic_user),
    store: ApiKeyStore = Depends(get_api_key_store),
) -> dict:
    if not await store.delete(key_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="API key not found")
    logger.info("Deleted API key", extra={"key_id": key_id})
    return {"deleted": True}
