# tests/conftest.py
from __future__ import annotations

import asyncio
import os
import tempfile
from collections.abc import Callable, Iterator
from typing import Any

import pytest
from fastapi import FastAPI, HTTPException, Request
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

_TEST_DIR = tempfile.mkdtemp(prefix="folio-shield-tests-")

os.environ.setdefault("PYTEST_RUNNING", "true")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TEST_DIR, 'test.db')}"
os.environ["LOG_DIR"] = os.path.join(_TEST_DIR, "logs")
os.environ["ENVIRONMENT"] = "test"
os.environ.pop("REDIS_URL", None)
os.environ.pop("IP_ALLOWLIST", None)
os.environ.pop("IP_BLOCKLIST", None)

from folio_shield.api.errors import register_exception_handlers  # noqa: E402
from folio_shield.core.settings import Settings  # noqa: E402
from folio_shield.db.session import Base, SessionLocal, create_tables, drop_tables, engine  # noqa: E402
from folio_shield.main import app as fastapi_app  # noqa: E402
from folio_shield.security.middleware import SecurityMiddleware  # noqa: E402
from folio_shield.security.pipeline import SecurityState, build_pipeline  # noqa: E402
from folio_shield.services.presence import get_presence_hub  # noqa: E402
from folio_shield.services.visitors import VisitorService  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
def database() -> Iterator[None]:
    create_tables()
    try:
        yield
    finally:
        drop_tables()
        engine.dispose()


@pytest.fixture(autouse=True)
def clean_database() -> Iterator[None]:
    yield
    # Ensure each test sees a clean database even if commits occurred.
    with engine.begin() as cleanup_conn:
        for table in reversed(Base.metadata.sorted_tables):
            cleanup_conn.execute(table.delete())


@pytest.fixture()
def db_session() -> Iterator[Session]:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(scope="session")
def app() -> FastAPI:
    return fastapi_app


@pytest.fixture(autouse=True)
def reset_app_state(app: FastAPI) -> Iterator[None]:
    """Give every test fresh limiter counters and an empty presence registry."""
    loop = asyncio.new_event_loop()
    try:
        loop.run_until_complete(app.state.security.reset())
    finally:
        loop.close()
    hub = get_presence_hub()
    hub._connections.clear()
    hub._sessions.clear()
    yield


@pytest.fixture()
def client(app: FastAPI) -> Iterator[TestClient]:
    with TestClient(app, base_url="http://test") as test_client:
        yield test_client


@pytest.fixture()
def visitor_service() -> VisitorService:
    return VisitorService(live_window_seconds=300, retention_seconds=24 * 60 * 60)


def _build_security_app(config: Settings, state: SecurityState | None = None) -> FastAPI:
    """Small app behind the security middleware with routes that echo what they received."""
    pipeline = build_pipeline(config, state)
    security_app = FastAPI()
    security_app.state.security = pipeline.state
    security_app.add_middleware(
        SecurityMiddleware,
        pipeline=pipeline,
        max_body_bytes=config.max_json_body_bytes,
    )
    register_exception_handlers(security_app)

    @security_app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @security_app.get("/ping")
    async def ping() -> dict[str, str]:
        return {"status": "pong"}

    @security_app.get("/api/items")
    async def list_items(request: Request) -> dict[str, Any]:
        return {"query": list(request.query_params.multi_items())}

    @security_app.post("/api/echo")
    async def echo(request: Request) -> dict[str, Any]:
        return {"body": await request.json()}

    @security_app.post("/api/form")
    async def form_echo(request: Request) -> dict[str, Any]:
        form = await request.form()
        return {"form": list(form.multi_items())}

    @security_app.delete("/api/items/{item_id}")
    async def delete_item(item_id: str) -> dict[str, str]:
        return {"deleted": item_id}

    @security_app.post("/api/auth/login")
    async def login(request: Request) -> Any:
        payload = await request.json()
        if payload.get("password") != "correct-horse":
            raise HTTPException(status_code=401, detail="Invalid credentials")
        return {"token": "ok"}

    @security_app.get("/boom")
    async def boom() -> None:
        raise ValueError("kaboom")

    return security_app


@pytest.fixture()
def make_security_client() -> Iterator[Callable[..., TestClient]]:
    """Factory for a TestClient over :func:`_build_security_app` with settings overrides."""
    clients: list[TestClient] = []

    def _factory(state: SecurityState | None = None, **overrides: Any) -> TestClient:
        defaults: dict[str, Any] = {
            "ip_allowlist": "",
            "ip_blocklist": "",
            "redis_url": None,
        }
        defaults.update(overrides)
        config = Settings(**defaults)
        test_client = TestClient(
            _build_security_app(config, state),
            base_url="http://test",
            raise_server_exceptions=False,
        )
        test_client.__enter__()
        clients.append(test_client)
        return test_client

    try:
        yield _factory
    finally:
        for test_client in clients:
            test_client.__exit__(None, None, None)
