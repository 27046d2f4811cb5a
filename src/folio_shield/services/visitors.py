"""Visitor presence store operations.

All mutators are idempotent per ``session_id``: a session maps to at most one
row, created on first contact and refreshed afterwards. Concurrent updates
for the same session resolve last-write-wins.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from folio_shield.core.settings import settings
from folio_shield.db.time import utcnow
from folio_shield.models import Visitor
from folio_shield.schemas import VisitorStats

logger = logging.getLogger(__name__)

DEFAULT_PAGE = "/"


class VisitorService:
    """Reads and mutations over the ``visitor`` table."""

    def __init__(
        self,
        live_window_seconds: int | None = None,
        retention_seconds: int | None = None,
    ) -> None:
        self.live_window = timedelta(
            seconds=live_window_seconds or settings.presence_live_window_seconds
        )
        self.retention = timedelta(
            seconds=retention_seconds or settings.presence_retention_seconds
        )

    # --- Queries ---------------------------------------------------------------------
    def get_live_count(self, db: Session, now: datetime | None = None) -> int:
        """Count sessions flagged active whose last activity is inside the live window.

        Recomputed on every call so a stale ``is_active`` flag never inflates it.
        """
        cutoff = (now or utcnow()) - self.live_window
        stmt = (
            select(func.count())
            .select_from(Visitor)
            .where(Visitor.is_active.is_(True), Visitor.last_activity >= cutoff)
        )
        return int(db.scalar(stmt) or 0)

    def get_by_session(self, db: Session, session_id: str) -> Visitor | None:
        return db.scalar(select(Visitor).where(Visitor.session_id == session_id))

    def get_stats(self, db: Session, now: datetime | None = None) -> VisitorStats:
        """Return live and cohort counters; read-only."""
        now = now or utcnow()
        local_now = now.astimezone()
        start_of_day = local_now.replace(hour=0, minute=0, second=0, microsecond=0)
        start_of_month = start_of_day.replace(day=1)

        def _count_since(since: datetime | None) -> int:
            stmt = select(func.count()).select_from(Visitor)
            if since is not None:
                stmt = stmt.where(Visitor.first_visit >= since.astimezone(UTC))
            return int(db.scalar(stmt) or 0)

        return VisitorStats(
            live_viewers=self.get_live_count(db, now),
            visitors_last_hour=_count_since(now - timedelta(hours=1)),
            visitors_today=_count_since(start_of_day),
            visitors_this_month=_count_since(start_of_month),
            total_visitors=_count_since(None),
            timestamp=now,
        )

    # --- Mutators --------------------------------------------------------------------
    def track(
        self,
        db: Session,
        session_id: str,
        *,
        page: str | None = None,
        socket_id: str | None = None,
        ip_address: str = "unknown",
        user_agent: str = "",
        now: datetime | None = None,
    ) -> Visitor:
        """Create the session on first contact, otherwise refresh it.

        IP address and user agent are only written when the row is created.
        """
        now = now or utcnow()
        visitor = self.get_by_session(db, session_id)
        if visitor is not None:
            self._refresh(visitor, page, socket_id, now)
            db.commit()
            return visitor

        visitor = Visitor(
            session_id=session_id,
            socket_id=socket_id or None,
            ip_address=ip_address,
            user_agent=user_agent or "",
            page=page or DEFAULT_PAGE,
            is_active=True,
            last_activity=now,
            first_visit=now,
        )
        db.add(visitor)
        try:
            db.commit()
        except IntegrityError:
            # Another request created the same session first; update that row instead.
            db.rollback()
            visitor = self.get_by_session(db, session_id)
            if visitor is None:
                raise
            self._refresh(visitor, page, socket_id, now)
            db.commit()
        else:
            logger.debug("New visitor session %s from %s", session_id, ip_address)
        return visitor

    def update_activity(
        self,
        db: Session,
        session_id: str,
        *,
        page: str | None = None,
        socket_id: str | None = None,
        now: datetime | None = None,
    ) -> Visitor | None:
        """Refresh an existing session; never creates one."""
        visitor = self.get_by_session(db, session_id)
        if visitor is None:
            return None
        self._refresh(visitor, page, socket_id, now or utcnow())
        db.commit()
        return visitor

    def mark_inactive(
        self, db: Session, session_id: str, *, owner_socket_id: str | None = None
    ) -> bool:
        """Mark a session inactive and clear its socket.

        With ``owner_socket_id`` the update only applies while that socket (or
        no socket) still owns the session, so a stale disconnect cannot end a
        session that already reconnected elsewhere.
        """
        stmt = update(Visitor).where(Visitor.session_id == session_id)
        if owner_socket_id is not None:
            stmt = stmt.where(
                or_(Visitor.socket_id == owner_socket_id, Visitor.socket_id.is_(None))
            )
        result = db.execute(
            stmt
            .values(is_active=False, socket_id=None, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return bool(result.rowcount)

    def mark_inactive_by_socket(self, db: Session, socket_id: str) -> bool:
        result = db.execute(
            update(Visitor)
            .where(Visitor.socket_id == socket_id)
            .values(is_active=False, socket_id=None, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return bool(result.rowcount)

    def sweep_inactive(self, db: Session, now: datetime | None = None) -> int:
        """Deactivate active sessions idle for longer than the live window."""
        cutoff = (now or utcnow()) - self.live_window
        result = db.execute(
            update(Visitor)
            .where(Visitor.is_active.is_(True), Visitor.last_activity < cutoff)
            .values(is_active=False, socket_id=None, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return int(result.rowcount or 0)

    def purge_expired(self, db: Session, now: datetime | None = None) -> int:
        """Delete sessions whose last activity is older than the retention window.

        Applies regardless of the active flag.
        """
        cutoff = (now or utcnow()) - self.retention
        result = db.execute(
            delete(Visitor)
            .where(Visitor.last_activity < cutoff)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return int(result.rowcount or 0)

    @staticmethod
    def _refresh(
        visitor: Visitor, page: str | None, socket_id: str | None, now: datetime
    ) -> None:
        visitor.last_activity = now
        visitor.is_active = True
        visitor.page = page or DEFAULT_PAGE
        if socket_id:
            visitor.socket_id = socket_id


_visitor_service = VisitorService()


def get_visitor_service() -> VisitorService:
    """Return the shared visitor service instance."""
    return _visitor_service
