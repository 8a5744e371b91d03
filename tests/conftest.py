import os
import tempfile

os.environ["STRIPE_API_KEY"] = "sk_test_dummy"
os.environ["STRIPE_ENDPOINT_SECRET"] = "whsec_test_dummy"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["LOG_DIR"] = tempfile.mkdtemp(prefix="oddsly-billing-logs-")

from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from oddsly_billing.app import app
from oddsly_billing.db.base import Base
from oddsly_billing.db.init_db import init_db
from oddsly_billing.db.session import get_db
from oddsly_billing.routers.billing_router import get_clock

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(bind=engine, autoflush=False)

FIXED_NOW = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def db_session():
    init_db(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def now():
    return FIXED_NOW


@pytest.fixture
def client(db_session, now):
    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_clock] = lambda: (lambda: now)
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
