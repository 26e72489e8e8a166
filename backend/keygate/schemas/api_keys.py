"""Request and response models for API key endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from keygate.services.api_keys import ApiKeyRecord, parse_permissions
from keygate.services.rate_windows import RateWindow


class ApiKeyCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, description="Display name of the key")
    description: str = Field(default="", description="Free-form description")
    permissions: List[str] = Field(default_factory=lambda: ["read"], description="Granted capabilities")
    type: str = Field(default="dev", description="dev or prod")
    usage_limit: Optional[int] = Field(default=None, ge=1, description="Units allowed per window")
    rate_limit_window: RateWindow = Field(default=RateWindow.MONTHLY, description="Accounting period")


class ApiKeyUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, description="New display name; required")
    description: Optional[str] = Field(default=None, description="Blank when omitted")
    permissions: Optional[List[str]] = Field(default=None, description="Empty when omitted")


class ApiKeyItem(BaseModel):
    id: str
    name: str
    description: str
    type: str
    permissions: List[str]
    usage: int
    usage_limit: Optional[int] = None
    rate_limit_window: Optional[str] = None
    rate_limit_reset_at: Optional[datetime] = None
    last_used: Optional[datetime] = None
    created_at: datetime

    @classmethod
    def from_record(cls, record: ApiKeyRecord) -> "ApiKeyItem":
        return cls(
            id=record.id,
            name=record.name,
            description=record.description,
            type=record.type,
            permissions=sorted(parse_permissions(record.permissions)),
            usage=record.usage,
            usage_limit=record.usage_limit,
            rate_limit_window=record.rate_limit_window,
            rate_limit_reset_at=record.rate_limit_reset_at,
            last_used=record.last_used,
            created_at=record.created_at,
        )


class ApiKeyCreateResponse(ApiKeyItem):
    api_key: str = Field(..., description="Full API key, only returned on creation")


class UsageAnalytics(BaseModel):
    total_usage: int
    total_keys: int
    active_keys: int
    keys: List[ApiKeyItem]


class ValidateKeyRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    api_key: Optional[str] = Field(default=None, alias="apiKey")


class KeyDetails(BaseModel):
    name: str
    description: str
    type: str
    usage: int
    permissions: List[str]
    created_at: Optional[datetime] = None


class ValidateKeyResponse(BaseModel):
    isValid: bool
    message: str
    keyDetails: Optional[KeyDetails] = None


class UsageRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    api_key: Optional[str] = Field(default=None, alias="apiKey")
    increment_by: int = Field(default=1, ge=1, alias="incrementBy")
