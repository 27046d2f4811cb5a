"""Visitor presence Pydantic schemas.

Field names on the wire are camelCase to match the admin frontends.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from folio_shield.models.visitor import SESSION_ID_MAX_LENGTH, SOCKET_ID_MAX_LENGTH


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class TrackRequest(_CamelModel):
    """Heartbeat / first contact from a browser session."""

    # Optional at the schema level so a missing id maps to a 400, not a 422.
    session_id: str | None = Field(
        default=None, alias="sessionId", max_length=SESSION_ID_MAX_LENGTH
    )
    page: str | None = Field(default=None, description="Current client route")
    socket_id: str | None = Field(
        default=None, alias="socketId", max_length=SOCKET_ID_MAX_LENGTH
    )


class LeaveRequest(_CamelModel):
    """Explicit end of a browser session."""

    session_id: str | None = Field(
        default=None, alias="sessionId", max_length=SESSION_ID_MAX_LENGTH
    )


class TrackResponse(_CamelModel):
    success: bool = True
    message: str = "Visitor tracked successfully"
    session_id: str = Field(alias="sessionId")
    live_count: int = Field(alias="liveCount")


class LeaveResponse(_CamelModel):
    success: bool = True
    message: str = "Visitor marked as inactive"
    live_count: int = Field(alias="liveCount")


class VisitorStats(_CamelModel):
    """Aggregate visitor counters computed from ``first_visit`` cohorts."""

    live_viewers: int = Field(alias="liveViewers")
    visitors_last_hour: int = Field(alias="visitorsLastHour")
    visitors_today: int = Field(alias="visitorsToday")
    visitors_this_month: int = Field(alias="visitorsThisMonth")
    total_visitors: int = Field(alias="totalVisitors")
    timestamp: datetime
