from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from config import Settings
from database import LocalBackend
from main import app, build_context
from payments import MockProcessor
from schemas import User


@pytest.fixture
def test_settings(tmp_path):
    return Settings(
        STORAGE_BACKEND="local",
        LOCAL_STORE_PATH=str(tmp_path / "store.json"),
        DATABASE_URL="",
        STRIPE_SECRET_KEY="",
        SECRET_KEY="test-secret",
        ADMIN_REGISTRATION_KEY="let-me-in",
        PLATFORM_FEE_RATE=Decimal("0.05"),
    )


@pytest.fixture
def store(test_settings):
    return LocalBackend(test_settings.LOCAL_STORE_PATH)


@pytest.fixture
def processor():
    return MockProcessor()


@pytest.fixture
def ctx(test_settings, store, processor):
    return build_context(test_settings, store=store, processor=processor)


@pytest.fixture
def make_user(store):
    def _make(role="club", name=None, **extra):
        user = User(name=name or f"Test {role}", email=f"{role}-{len(store.get_documents('user'))}@example.com", role=role, **extra)
        user.id = store.create_document("user", user)
        return user

    return _make


@pytest.fixture
def client(ctx):
    app.state.ctx = ctx
    try:
        with TestClient(app) as c:
            yield c
    finally:
        app.state.ctx = None
