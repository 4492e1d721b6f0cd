"""Pydantic schemas for request/response validation in the shortlink service.

Schema Hierarchy
=================
::
    LinkCreate (Input)            LinkEdit (Input, partial)
    ├─ target: str                ├─ target / address / description
    ├─ address: str | None        ├─ expire_in
    ├─ domain: str | None         └─ password ("" clears it)
    ├─ password: str | None
    ├─ description: str | None
    ├─ expire_in: datetime | None
    └─ captcha_token: str | None

    LinkResponse / LinkStats (Output)
    CachedLinkPayload (Redis value, also the store's lookup result)
    ProtectedLinkRequest / ProtectedLinkResponse
    ResolutionResponse (non-redirect redirect-surface outcomes)

Key Behaviours
===============
- Target URLs are validated with the validators library; a missing scheme is
  completed with ``http://`` before validation.
- Custom addresses are restricted to letters, digits, ``-`` and ``_``.
- ``CachedLinkPayload`` carries the owner and domain ban flags so the
  resolver can apply every gate from one cache read.
"""

import datetime
import re

import validators
from pydantic import BaseModel, Field, field_validator

from shortlink.enums import HealthStatus, OutcomeKind

__all__ = [
    "ApiKeyResponse",
    "BanRequest",
    "BanResponse",
    "CachedLinkPayload",
    "DomainCreate",
    "DomainResponse",
    "ErrorResponse",
    "HealthResponse",
    "LinkCreate",
    "LinkEdit",
    "LinkList",
    "LinkResponse",
    "LinkStats",
    "ProtectedLinkRequest",
    "ProtectedLinkResponse",
    "ResolutionResponse",
]

ADDRESS_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")
MAX_ADDRESS_LENGTH = 64
MAX_DESCRIPTION_LENGTH = 2040
MIN_PASSWORD_LENGTH = 3


def _normalize_target(value: str) -> str:
    value = value.strip()
    if value and "://" not in value:
        value = f"http://{value}"
    if not validators.url(value):
        raise ValueError("Invalid URL provided")
    return value


def _bare_host(value: str) -> str:
    # Domains are matched on the Host header without its port.
    return value.strip().lower().rsplit(":", 1)[0]


def _check_address(value: str | None) -> str | None:
    if value is None:
        return value
    if len(value) > MAX_ADDRESS_LENGTH:
        raise ValueError(f"Custom address must be at most {MAX_ADDRESS_LENGTH} characters")
    if not ADDRESS_PATTERN.match(value):
        raise ValueError("Custom address may only contain letters, numbers, '-' and '_'")
    return value


class LinkCreate(BaseModel):
    target: str
    address: str | None = None
    domain: str | None = None
    password: str | None = Field(None, min_length=MIN_PASSWORD_LENGTH, max_length=64)
    description: str | None = Field(None, max_length=MAX_DESCRIPTION_LENGTH)
    expire_in: datetime.datetime | None = None
    captcha_token: str | None = None

    @field_validator("target")
    @classmethod
    def validate_target(cls, v: str) -> str:
        return _normalize_target(v)

    @field_validator("address")
    @classmethod
    def validate_address(cls, v: str | None) -> str | None:
        return _check_address(v)

    @field_validator("domain")
    @classmethod
    def validate_domain(cls, v: str | None) -> str | None:
        return _bare_host(v) if v else None


class LinkEdit(BaseModel):
    target: str | None = None
    address: str | None = None
    description: str | None = Field(None, max_length=MAX_DESCRIPTION_LENGTH)
    expire_in: datetime.datetime | None = None
    password: str | None = Field(None, max_length=64)

    @field_validator("target")
    @classmethod
    def validate_target(cls, v: str | None) -> str | None:
        return _normalize_target(v) if v is not None else None

    @field_validator("address")
    @classmethod
    def validate_address(cls, v: str | None) -> str | None:
        return _check_address(v)

    @field_validator("password")
    @classmethod
    def validate_password(cls, v: str | None) -> str | None:
        if v and len(v) < MIN_PASSWORD_LENGTH:
            raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
        return v


class CachedLinkPayload(BaseModel):
    """Denormalized link row shared by the cache tier and the store lookups."""

    id: int
    address: str
    target: str
    domain_id: int | None = None
    domain: str | None = None
    user_id: int | None = None
    password: str | None = None
    description: str | None = None
    expire_in: datetime.datetime | None = None
    banned: bool = False
    owner_banned: bool = False
    domain_banned: bool = False
    visit_count: int = 0
    created_at: datetime.datetime
    updated_at: datetime.datetime

    model_config = {"from_attributes": True}


class LinkResponse(BaseModel):
    id: int
    address: str
    target: str
    link: str
    domain: str | None = None
    description: str | None = None
    password: bool
    banned: bool
    expire_in: datetime.datetime | None = None
    visit_count: int
    created_at: datetime.datetime
    updated_at: datetime.datetime


class LinkList(BaseModel):
    total: int
    skip: int
    limit: int
    data: list[LinkResponse]


class LinkStats(BaseModel):
    id: int
    address: str
    target: str
    link: str
    visit_count: int
    total: int
    browser: dict[str, int]
    os: dict[str, int]
    country: dict[str, int]
    referrer: dict[str, int]


class ProtectedLinkRequest(BaseModel):
    password: str = Field(..., min_length=1)


class ProtectedLinkResponse(BaseModel):
    target: str


class ResolutionResponse(BaseModel):
    """Body of a non-redirect response on the redirect surface. Never carries a target."""

    status: OutcomeKind
    address: str | None = None


class BanRequest(BaseModel):
    user: bool = False
    user_links: bool = False
    host: bool = False
    domain: bool = False


class BanResponse(BaseModel):
    message: str


class DomainCreate(BaseModel):
    address: str = Field(..., min_length=3, max_length=255)
    homepage: str | None = None

    @field_validator("address")
    @classmethod
    def validate_address(cls, v: str) -> str:
        v = _bare_host(v)
        if not validators.domain(v):
            raise ValueError("Invalid domain provided")
        return v

    @field_validator("homepage")
    @classmethod
    def validate_homepage(cls, v: str | None) -> str | None:
        return _normalize_target(v) if v else None


class DomainResponse(BaseModel):
    id: int
    address: str
    homepage: str | None = None
    banned: bool

    model_config = {"from_attributes": True}


class ApiKeyResponse(BaseModel):
    apikey: str


class ErrorResponse(BaseModel):
    error: str


class HealthResponse(BaseModel):
    status: HealthStatus
    database: HealthStatus
    cache: HealthStatus
