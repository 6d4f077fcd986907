"""Pytest configuration and fixtures"""

import os

# Settings are read at import time; point them at throwaway backends first
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("MAIL_API_KEY", "")
os.environ.setdefault("BASE_DOMAIN", "gatehouse.test")
os.environ.setdefault("PERMISSION_CACHE_BACKEND", "memory")

import pytest
from sqlalchemy.pool import StaticPool
from sqlalchemy.orm import sessionmaker
from fastapi.testclient import TestClient

# Disable rate limiting BEFORE importing app (which calls init_redis on startup)
from gatehouse.middleware import rate_limiting
rate_limiting.init_redis = lambda: None

from gatehouse.database.database import Base, build_engine, get_db
from gatehouse.main import app
from gatehouse.middleware.auth_middleware import get_notifier, get_permission_cache, get_token_denylist
from gatehouse.security.token_denylist import InMemoryTokenDenyList
from gatehouse.services.notification_service import NotificationService
from gatehouse.services.permission_cache import InMemoryPermissionCache
from gatehouse.templates import seed_system_catalog

rate_limiting.redis_client = None

engine = build_engine("sqlite://", poolclass=StaticPool)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: fast tests of a single component")
    config.addinivalue_line("markers", "integration: tests through the HTTP API")


class RecordingNotifier(NotificationService):
    """Keeps every templated email instead of calling the mail API"""

    def __init__(self):
        super().__init__(base_url="http://mail.invalid", api_key="test-key")
        self.sent = []

    def send_template(self, recipient, template_name, variables, organization=None):
        self.sent.append({
            "recipient": recipient,
            "template": template_name,
            "variables": variables,
            "organization_id": getattr(organization, "id", None),
        })
        return {"status": "queued"}

    def templates_sent_to(self, recipient):
        return [m["template"] for m in self.sent if m["recipient"] == recipient]

    def last_to(self, recipient, template_name=None):
        for message in reversed(self.sent):
            if message["recipient"] == recipient and template_name in (None, message["template"]):
                return message
        return None


@pytest.fixture(scope="function")
def db():
    """Fresh in-memory schema per test, with the system catalog seeded"""
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    seed_system_catalog(session)
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def other_db(db):
    """A second session on the same database, standing in for a concurrent request"""
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def cache():
    return InMemoryPermissionCache()


@pytest.fixture
def denylist():
    return InMemoryTokenDenyList()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture(scope="function")
def client(db, cache, denylist, notifier):
    """Create a test client sharing the test session and collaborators."""
    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_permission_cache] = lambda: cache
    app.dependency_overrides[get_token_denylist] = lambda: denylist
    app.dependency_overrides[get_notifier] = lambda: notifier
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def organization(db):
    from gatehouse.services.organization_service import OrganizationService
    return OrganizationService.create_organization(db, name="Acme Inc")


@pytest.fixture
def auth_service(db, cache, denylist, notifier):
    from gatehouse.services.auth_service import AuthService
    return AuthService(db, cache, denylist, notifier)
