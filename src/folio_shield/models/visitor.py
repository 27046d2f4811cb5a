"""SQLAlchemy model for live visitor sessions."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from folio_shield.db.session import Base
from folio_shield.db.time import utcnow

SESSION_ID_MAX_LENGTH = 128
SOCKET_ID_MAX_LENGTH = 64


class Visitor(Base):
    """One browser session, shared by its HTTP heartbeats and WebSocket connection.

    ``session_id`` is client generated and unique; ``socket_id`` belongs to the
    currently connected transport and is cleared when the session goes inactive.
    Rows are deleted by the retention sweep once ``last_activity`` is older
    than the configured retention window.
    """

    __tablename__ = "visitor"
    __table_args__ = (
        Index("ix_visitor_last_activity_is_active", "last_activity", "is_active"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(
        String(SESSION_ID_MAX_LENGTH), unique=True, nullable=False
    )
    socket_id: Mapped[str | None] = mapped_column(
        String(SOCKET_ID_MAX_LENGTH), nullable=True, index=True
    )

    # Captured on first contact only.
    ip_address: Mapped[str] = mapped_column(String(64), nullable=False)
    user_agent: Mapped[str] = mapped_column(Text, nullable=False, default="")
    country: Mapped[str] = mapped_column(String(64), nullable=False, default="Unknown")
    city: Mapped[str] = mapped_column(String(128), nullable=False, default="Unknown")

    page: Mapped[str] = mapped_column(Text, nullable=False, default="/")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)
    last_activity: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    first_visit: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )
