"""Shared enums for the URL shortener application.

This module defines all status and state enums used across the codebase.
Using enums instead of string literals provides type safety and prevents typos.
"""

from enum import StrEnum

__all__ = ["AllocatorState", "CacheStatus", "HealthStatus", "RangeStatus", "RequestStatus"]


class HealthStatus(StrEnum):
    """Health check status values."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class RequestStatus(StrEnum):
    """Request status values for metrics and logging."""

    SUCCESS = "success"
    VALIDATION_ERROR = "validation_error"
    CONFLICT = "conflict"
    UNAVAILABLE = "unavailable"
    ERROR = "error"
    NOT_FOUND = "not_found"


class CacheStatus(StrEnum):
    """Cache status values for metrics."""

    HIT = "true"
    MISS = "false"


class RangeStatus(StrEnum):
    """Lifecycle of a range handed to one service instance."""

    ACTIVE = "ACTIVE"
    EXHAUSTED = "EXHAUSTED"
    EXPIRED = "EXPIRED"


class AllocatorState(StrEnum):
    """Range allocator state machine."""

    UNINITIALIZED = "uninitialized"
    ACTIVE = "active"
    FAILED = "failed"
    CLOSED = "closed"
