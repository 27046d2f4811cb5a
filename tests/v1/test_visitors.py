"""Tests for the visitor tracking endpoints."""

from fastapi import status
from fastapi.testclient import TestClient
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from folio_shield.models import Visitor


def test_track_twice_updates_single_session(client: TestClient, db_session: Session) -> None:
    """Two heartbeats for the same session keep exactly one row."""
    first = client.post("/api/visitors/track", json={"sessionId": "s1", "page": "/"})
    assert first.status_code == status.HTTP_200_OK
    second = client.post("/api/visitors/track", json={"sessionId": "s1", "page": "/"})
    assert second.status_code == status.HTTP_200_OK

    data = second.json()
    assert data["success"] is True
    assert data["sessionId"] == "s1"
    assert data["liveCount"] == 1

    rows = db_session.scalar(select(func.count()).select_from(Visitor))
    assert rows == 1


def test_track_records_client_metadata_on_creation(client: TestClient, db_session: Session) -> None:
    r = client.post(
        "/api/visitors/track",
        json={"sessionId": "meta", "page": "/projects"},
        headers={"X-Forwarded-For": "198.51.100.4, 10.0.0.1", "User-Agent": "pytest-browser"},
    )
    assert r.status_code == status.HTTP_200_OK

    visitor = db_session.scalar(select(Visitor).where(Visitor.session_id == "meta"))
    assert visitor is not None
    assert visitor.ip_address == "198.51.100.4"
    assert visitor.user_agent == "pytest-browser"
    assert visitor.page == "/projects"
    assert visitor.is_active is True


def test_track_defaults_page_to_root(client: TestClient, db_session: Session) -> None:
    client.post("/api/visitors/track", json={"sessionId": "nopage"})
    visitor = db_session.scalar(select(Visitor).where(Visitor.session_id == "nopage"))
    assert visitor is not None
    assert visitor.page == "/"


def test_track_without_session_id_is_rejected(client: TestClient) -> None:
    r = client.post("/api/visitors/track", json={"page": "/"})
    assert r.status_code == status.HTTP_400_BAD_REQUEST
    assert r.json() == {"error": "Session ID is required"}


def test_track_with_empty_session_id_is_rejected(client: TestClient) -> None:
    r = client.post("/api/visitors/track", json={"sessionId": "  ", "page": "/"})
    assert r.status_code == status.HTTP_400_BAD_REQUEST


def test_track_with_oversized_ids_is_rejected(client: TestClient, db_session: Session) -> None:
    r = client.post("/api/visitors/track", json={"sessionId": "s" * 129, "page": "/"})
    assert r.status_code == status.HTTP_400_BAD_REQUEST
    body = r.json()
    assert body["error"] == "Invalid request"
    assert any("sessionId" in field for field in body["fields"])

    r = client.post("/api/visitors/track", json={"sessionId": "ok", "socketId": "k" * 65})
    assert r.status_code == status.HTTP_400_BAD_REQUEST

    r = client.post("/api/visitors/leave", json={"sessionId": "s" * 129})
    assert r.status_code == status.HTTP_400_BAD_REQUEST

    assert db_session.scalar(select(func.count()).select_from(Visitor)) == 0


def test_track_ignores_oversized_forwarded_header(client: TestClient, db_session: Session) -> None:
    r = client.post(
        "/api/visitors/track",
        json={"sessionId": "s" * 128},
        headers={"X-Forwarded-For": "not-an-address-" + "z" * 200},
    )
    assert r.status_code == status.HTTP_200_OK

    visitor = db_session.scalar(select(Visitor).where(Visitor.session_id == "s" * 128))
    assert visitor is not None
    assert visitor.ip_address == "testclient"


def test_leave_marks_session_inactive(client: TestClient, db_session: Session) -> None:
    client.post("/api/visitors/track", json={"sessionId": "bye", "page": "/"})

    r = client.post("/api/visitors/leave", json={"sessionId": "bye"})
    assert r.status_code == status.HTTP_200_OK
    assert r.json() == {
        "success": True,
        "message": "Visitor marked as inactive",
        "liveCount": 0,
    }

    visitor = db_session.scalar(select(Visitor).where(Visitor.session_id == "bye"))
    assert visitor is not None
    assert visitor.is_active is False
    assert visitor.socket_id is None


def test_leave_unknown_session_is_not_an_error(client: TestClient) -> None:
    r = client.post("/api/visitors/leave", json={"sessionId": "never-seen"})
    assert r.status_code == status.HTTP_200_OK
    assert r.json()["liveCount"] == 0


def test_leave_without_session_id_is_rejected(client: TestClient) -> None:
    r = client.post("/api/visitors/leave", json={})
    assert r.status_code == status.HTTP_400_BAD_REQUEST
    assert "error" in r.json()


def test_stats_counts_sessions(client: TestClient) -> None:
    for session_id in ("a", "b", "c"):
        client.post("/api/visitors/track", json={"sessionId": session_id, "page": "/"})
    client.post("/api/visitors/leave", json={"sessionId": "c"})

    r = client.get("/api/visitors/stats/all")
    assert r.status_code == status.HTTP_200_OK
    data = r.json()
    assert data["liveViewers"] == 2
    assert data["visitorsLastHour"] == 3
    assert data["visitorsToday"] == 3
    assert data["visitorsThisMonth"] == 3
    assert data["totalVisitors"] == 3
    assert "timestamp" in data


def test_visitor_responses_carry_security_headers(client: TestClient) -> None:
    r = client.post("/api/visitors/track", json={"sessionId": "hdr", "page": "/"})
    assert r.headers["X-Content-Type-Options"] == "nosniff"
    assert r.headers["X-Frame-Options"] == "DENY"
    assert "X-RateLimit-Limit" in r.headers
    assert "server" not in r.headers
