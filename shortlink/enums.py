"""Shared enums for the shortlink service.

This module defines all status and classification enums used across the codebase.
Using enums instead of string literals provides type safety and prevents typos.
"""

from enum import StrEnum

__all__ = [
    "BanReason",
    "Browser",
    "HealthStatus",
    "OperatingSystem",
    "OutcomeKind",
    "RequestStatus",
    "StatsKind",
]


class HealthStatus(StrEnum):
    """Health check status values."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class RequestStatus(StrEnum):
    """Request status values for metrics and logging."""

    SUCCESS = "success"
    VALIDATION_ERROR = "validation_error"
    ERROR = "error"


class OutcomeKind(StrEnum):
    """Resolution outcome labels, used for metrics and response bodies."""

    REDIRECT = "redirect"
    EXTERNAL_REDIRECT = "external_redirect"
    PASSWORD_REQUIRED = "password_required"
    BANNED = "banned"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"


class BanReason(StrEnum):
    LINK = "link"
    OWNER = "owner"
    DOMAIN = "domain"


class Browser(StrEnum):
    CHROME = "chrome"
    EDGE = "edge"
    FIREFOX = "firefox"
    IE = "ie"
    OPERA = "opera"
    SAFARI = "safari"
    OTHER = "other"

    @property
    def column(self) -> str:
        return f"br_{self.value}"


class OperatingSystem(StrEnum):
    ANDROID = "android"
    IOS = "ios"
    LINUX = "linux"
    MACOS = "macos"
    WINDOWS = "windows"
    OTHER = "other"

    @property
    def column(self) -> str:
        return f"os_{self.value}"


class StatsKind(StrEnum):
    """Open-ended visit maps stored as capped key rows."""

    COUNTRY = "country"
    REFERRER = "referrer"
