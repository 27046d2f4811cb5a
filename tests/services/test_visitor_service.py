"""Tests for the visitor store service."""

from datetime import UTC, datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from folio_shield.models import Visitor
from folio_shield.services.visitors import VisitorService

NOW = datetime(2026, 3, 14, 12, 0, tzinfo=UTC)


def _count(db: Session) -> int:
    return int(db.scalar(select(func.count()).select_from(Visitor)) or 0)


def test_track_creates_then_refreshes(db_session: Session, visitor_service: VisitorService) -> None:
    created = visitor_service.track(
        db_session, "s1", page="/", ip_address="203.0.113.1", user_agent="ua-1", now=NOW
    )
    refreshed = visitor_service.track(
        db_session,
        "s1",
        page="/blog",
        ip_address="198.51.100.2",
        user_agent="ua-2",
        now=NOW + timedelta(seconds=30),
    )

    assert created.id == refreshed.id
    assert _count(db_session) == 1
    assert refreshed.page == "/blog"
    # First-contact metadata is never overwritten.
    assert refreshed.ip_address == "203.0.113.1"
    assert refreshed.user_agent == "ua-1"


def test_track_reactivates_inactive_session(db_session: Session, visitor_service: VisitorService) -> None:
    visitor_service.track(db_session, "s1", now=NOW)
    visitor_service.mark_inactive(db_session, "s1")
    visitor_service.track(db_session, "s1", now=NOW)

    visitor = visitor_service.get_by_session(db_session, "s1")
    db_session.refresh(visitor)
    assert visitor.is_active is True


def test_live_count_respects_window(db_session: Session, visitor_service: VisitorService) -> None:
    visitor_service.track(db_session, "fresh", now=NOW - timedelta(seconds=10))
    visitor_service.track(db_session, "edge", now=NOW - timedelta(seconds=299))
    visitor_service.track(db_session, "stale", now=NOW - timedelta(seconds=301))

    assert visitor_service.get_live_count(db_session, now=NOW) == 2


def test_live_count_excludes_inactive(db_session: Session, visitor_service: VisitorService) -> None:
    visitor_service.track(db_session, "a", now=NOW)
    visitor_service.track(db_session, "b", now=NOW)
    visitor_service.mark_inactive(db_session, "b")

    assert visitor_service.get_live_count(db_session, now=NOW) == 1


def test_update_activity_never_creates(db_session: Session, visitor_service: VisitorService) -> None:
    assert visitor_service.update_activity(db_session, "ghost", page="/", now=NOW) is None
    assert _count(db_session) == 0


def test_mark_inactive_clears_socket(db_session: Session, visitor_service: VisitorService) -> None:
    visitor_service.track(db_session, "s1", socket_id="sock-1", now=NOW)
    assert visitor_service.mark_inactive(db_session, "s1") is True

    db_session.expire_all()
    visitor = visitor_service.get_by_session(db_session, "s1")
    assert visitor.is_active is False
    assert visitor.socket_id is None


def test_mark_inactive_ignores_stale_owner(db_session: Session, visitor_service: VisitorService) -> None:
    visitor_service.track(db_session, "s1", socket_id="old-socket", now=NOW)
    visitor_service.track(db_session, "s1", socket_id="new-socket", now=NOW)

    assert visitor_service.mark_inactive(db_session, "s1", owner_socket_id="old-socket") is False

    db_session.expire_all()
    visitor = visitor_service.get_by_session(db_session, "s1")
    assert visitor.is_active is True
    assert visitor.socket_id == "new-socket"


def test_mark_inactive_by_socket(db_session: Session, visitor_service: VisitorService) -> None:
    visitor_service.track(db_session, "s1", socket_id="sock-9", now=NOW)

    assert visitor_service.mark_inactive_by_socket(db_session, "sock-9") is True
    assert visitor_service.mark_inactive_by_socket(db_session, "sock-unknown") is False

    db_session.expire_all()
    assert visitor_service.get_by_session(db_session, "s1").is_active is False


def test_sweep_inactive(db_session: Session, visitor_service: VisitorService) -> None:
    visitor_service.track(db_session, "idle", socket_id="x", now=NOW - timedelta(minutes=10))
    visitor_service.track(db_session, "busy", now=NOW - timedelta(minutes=1))

    assert visitor_service.sweep_inactive(db_session, now=NOW) == 1

    db_session.expire_all()
    idle = visitor_service.get_by_session(db_session, "idle")
    assert idle.is_active is False
    assert idle.socket_id is None
    assert visitor_service.get_by_session(db_session, "busy").is_active is True


def test_purge_expired_removes_old_sessions(db_session: Session, visitor_service: VisitorService) -> None:
    visitor_service.track(db_session, "ancient", now=NOW - timedelta(hours=25))
    visitor_service.track(db_session, "recent", now=NOW - timedelta(hours=23))
    # Retention applies whether or not the session is still flagged active.
    assert visitor_service.purge_expired(db_session, now=NOW) == 1

    assert visitor_service.get_by_session(db_session, "ancient") is None
    assert visitor_service.get_by_session(db_session, "recent") is not None


def test_stats(db_session: Session, visitor_service: VisitorService) -> None:
    now = datetime.now(UTC)
    visitor_service.track(db_session, "now", now=now)
    visitor_service.track(db_session, "two-hours", now=now - timedelta(hours=2))
    visitor_service.track(db_session, "last-year", now=now - timedelta(days=400))

    stats = visitor_service.get_stats(db_session, now=now)

    assert stats.live_viewers == 1
    assert stats.visitors_last_hour == 1
    assert stats.total_visitors == 3
    assert stats.visitors_this_month <= 2
    assert stats.visitors_today <= stats.visitors_this_month
