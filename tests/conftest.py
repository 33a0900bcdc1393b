"""
Test fixtures for studio-analytics tests.

Provides database engine/session fixtures, a fresh analytics runtime per test
and an API client wired to that runtime.
"""

import os
from datetime import datetime, timedelta
from typing import Generator, List

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

import app.models  # noqa: F401  (registers table metadata)
from app.api import deps
from app.core.events import EventEmitter
from app.models import Conversion, PageVisit, utcnow
from app.services.analytics_repository import AnalyticsRepository
from app.services.runtime import AnalyticsRuntime, build_runtime


def pytest_collection_modifyitems(config, items):
    """Skip integration tests in CI (they need a real database)."""
    if os.environ.get("CI") == "true":
        skip_integration = pytest.mark.skip(reason="Integration tests skipped in CI (no database)")
        for item in items:
            if "integration" in item.keywords:
                item.add_marker(skip_integration)


# Use in-memory SQLite for unit tests (fast, isolated)
TEST_DATABASE_URL = "sqlite:///:memory:"

ADMIN_KEY = "test-admin-key"


@pytest.fixture(scope="function")
def test_engine():
    """Create a test database engine with in-memory SQLite."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(scope="function")
def test_session(test_engine) -> Generator[Session, None, None]:
    """Provide a test database session."""
    with Session(test_engine) as session:
        yield session


@pytest.fixture
def repository(test_engine) -> AnalyticsRepository:
    """Repository without retry delays."""
    return AnalyticsRepository(test_engine, max_retries=1, base_delay=0, max_delay=0)


@pytest.fixture
def emitter() -> EventEmitter:
    return EventEmitter()


@pytest.fixture
def runtime(test_engine) -> Generator[AnalyticsRuntime, None, None]:
    """A started runtime (aggregator and auto-attribution subscribed)."""
    rt = build_runtime(test_engine, max_retries=1, retry_base_delay=0)
    rt.start()
    yield rt
    rt.shutdown()


@pytest.fixture
def client(runtime, monkeypatch) -> Generator[TestClient, None, None]:
    """API client bound to the test runtime, with a known admin key."""
    from app.core.config import settings
    from app.main import app

    monkeypatch.setattr(settings, "ADMIN_API_KEY", ADMIN_KEY)
    app.dependency_overrides[deps.get_runtime] = lambda: runtime
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers() -> dict:
    return {"X-Admin-Key": ADMIN_KEY}


@pytest.fixture
def session_visits(repository) -> List[PageVisit]:
    """
    Three visits of one session, an hour apart, ending 10 minutes ago.

    t1: /landing from google (landing page)
    t2: /classes
    t3: /pricing
    """
    t3 = utcnow() - timedelta(minutes=10)
    rows = [
        ("/landing", "https://www.google.com/", "google", "cpc", "spring", True, t3 - timedelta(hours=2)),
        ("/classes", None, None, None, None, False, t3 - timedelta(hours=1)),
        ("/pricing", None, None, None, None, False, t3),
    ]
    visits = []
    for page_url, referrer, source, medium, campaign, landing, visit_time in rows:
        visits.append(
            repository.insert_page_visit(
                PageVisit(
                    page_url=page_url,
                    referrer=referrer,
                    utm_source=source,
                    utm_medium=medium,
                    utm_campaign=campaign,
                    session_id="session-abc",
                    device_type="desktop",
                    is_landing_page=landing,
                    visit_time=visit_time,
                )
            )
        )
    return visits


@pytest.fixture
def session_conversion(repository, session_visits) -> Conversion:
    """A contact-form conversion five minutes after the last visit."""
    last = session_visits[-1]
    return repository.insert_conversion(
        Conversion(
            visit_id=last.id,
            conversion_type="contact_form",
            conversion_value=50.0,
            conversion_time=last.visit_time + timedelta(minutes=5),
        )
    )


@pytest.fixture
def landing_visits(repository):
    """Factory inserting ``count`` single-page landing sessions."""

    def make(
        count: int,
        page_url: str = "/landing",
        utm_source: str | None = None,
        visit_time: datetime | None = None,
        session_prefix: str = "s",
    ) -> List[PageVisit]:
        when = visit_time or utcnow() - timedelta(hours=1)
        return [
            repository.insert_page_visit(
                PageVisit(
                    page_url=page_url,
                    utm_source=utm_source,
                    session_id=f"{session_prefix}-{page_url}-{utm_source}-{i}",
                    is_landing_page=True,
                    visit_time=when,
                )
            )
            for i in range(count)
        ]

    return make
