"""Pydantic schemas for request and response bodies."""

from .visitor import (
    LeaveRequest,
    LeaveResponse,
    TrackRequest,
    TrackResponse,
    VisitorStats,
)

__all__ = [
    "LeaveRequest",
    "LeaveResponse",
    "TrackRequest",
    "TrackResponse",
    "VisitorStats",
]
