"""Pydantic schemas for request/response validation in the URL shortener.

Schema Hierarchy
=================
::
    ShortenRequest (Input)              ShortenResponse (Output)
    ├─ url                              ├─ shortCode
    ├─ customCode?                      ├─ customCode?
    └─ expiresAt?                       ├─ shortUrl / originalUrl
                                        └─ createdAt / expiresAt
    AliasRequest (Input)
    └─ customCode                       AliasResponse (Output)

    URLStats, OwnedURL, HealthResponse (Output)

    AllocateRequest / AllocateResponse  (keygen service)

Key Behaviours
===============
- JSON field names are camelCase; Python attributes are snake_case.
- URL and custom-code rules live in ``shortener.codec`` and surface as 422.
- Naive datetimes are interpreted as UTC.
"""

import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from shortener.codec import validate_custom_code, validate_target_url
from shortener.enums import HealthStatus

__all__ = [
    "AliasRequest",
    "AliasResponse",
    "AllocateRequest",
    "AllocateResponse",
    "HealthResponse",
    "OwnedURLResponse",
    "ShortenRequest",
    "ShortenResponse",
    "URLStats",
]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class ShortenRequest(CamelModel):
    url: str
    custom_code: str | None = None
    expires_at: datetime.datetime | None = None

    @field_validator("url")
    @classmethod
    def check_url(cls, v: str) -> str:
        return validate_target_url(v.strip())

    @field_validator("custom_code")
    @classmethod
    def check_custom_code(cls, v: str | None) -> str | None:
        if not v:
            return None
        return validate_custom_code(v)

    @field_validator("expires_at")
    @classmethod
    def check_expires_at(cls, v: datetime.datetime | None) -> datetime.datetime | None:
        if v is None:
            return None
        if v.tzinfo is None:
            v = v.replace(tzinfo=datetime.UTC)
        if v <= datetime.datetime.now(datetime.UTC):
            raise ValueError("expiresAt must be in the future")
        return v


class ShortenResponse(CamelModel):
    short_code: str
    custom_code: str | None = None
    short_url: str
    original_url: str
    created_at: datetime.datetime
    expires_at: datetime.datetime | None = None


class AliasRequest(CamelModel):
    custom_code: str

    @field_validator("custom_code")
    @classmethod
    def check_custom_code(cls, v: str) -> str:
        return validate_custom_code(v)


class AliasResponse(CamelModel):
    short_code: str
    custom_code: str
    custom_url: str
    created_at: datetime.datetime


class URLStats(CamelModel):
    short_code: str
    original_url: str
    short_url: str
    clicks: int
    created_at: datetime.datetime
    expires_at: datetime.datetime | None = None
    custom_aliases: list[str] = Field(default_factory=list)


class OwnedURLResponse(CamelModel):
    short_code: str
    original_url: str
    short_url: str
    clicks: int
    created_at: datetime.datetime
    expires_at: datetime.datetime | None = None
    is_active: bool
    custom_aliases: list[str] = Field(default_factory=list)


class HealthResponse(BaseModel):
    status: HealthStatus
    database: HealthStatus
    cache: HealthStatus
    allocator: HealthStatus
    allocator_info: dict = Field(default_factory=dict)


class AllocateRequest(BaseModel):
    size: int = 1000


class AllocateResponse(BaseModel):
    start: int
    end: int
