"""Pytest configuration and fixtures."""

import os

os.environ.setdefault("SECRET_KEY", "test-secret-key-for-pytest-only")
os.environ.setdefault("GOOGLE_CLIENT_ID", "test-client-id")
os.environ.setdefault("GOOGLE_CLIENT_SECRET", "test-client-secret")

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from coparent import models_external_calendar  # noqa: F401
from coparent.auth import create_access_token
from coparent.database import Base, get_db
from coparent.domain.external_calendar.dependencies import get_sync_orchestrator, get_token_vault
from coparent.domain.external_calendar.sync import SyncOrchestrator
from coparent.domain.external_calendar.token_vault import TokenVault, encrypt_token
from coparent.models import Child, User, utcnow
from coparent.models_external_calendar import ExternalCalendarAccount

from .fakes import FakeGoogleCalendar

SHARED_CALENDAR_ID = FakeGoogleCalendar.SHARED_CALENDAR_ID


@pytest.fixture
def engine():
    """Fresh in-memory database per test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def mom(db):
    user = User(email="mom@example.com", first_name="Maria", last_name="Lopez")
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def dad(db):
    user = User(email="dad@example.com", first_name="Tom", last_name="Lopez")
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def stranger(db):
    user = User(email="stranger@example.com")
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def child(db, mom, dad):
    kid = Child(first_name="Sam", last_name="Lopez", color="#33b679")
    kid.parents = [mom, dad]
    db.add(kid)
    db.commit()
    return kid


@pytest.fixture
def google():
    """In-memory stand-in for the Google Calendar client."""
    return FakeGoogleCalendar()


@pytest.fixture
def vault(google):
    return TokenVault(google)


@pytest.fixture
def orchestrator(session_factory, google, vault):
    return SyncOrchestrator(session_factory, google, vault)


@pytest.fixture
def connect_account(db):
    """Store a connected account with a long-lived access token."""

    def _connect(user, calendar_id=SHARED_CALENDAR_ID, expires_in=timedelta(hours=1), **fields):
        account = ExternalCalendarAccount(
            user_id=user.id,
            access_token=encrypt_token(f"access-{user.id}"),
            refresh_token=encrypt_token(f"refresh-{user.id}"),
            token_expires_at=utcnow() + expires_in,
            external_email=user.email,
            calendar_id=calendar_id,
            **fields,
        )
        db.add(account)
        db.commit()
        return account

    return _connect


@pytest.fixture
def auth_headers():
    def _headers(user):
        return {"Authorization": f"Bearer {create_access_token(user.id)}"}

    return _headers


@pytest.fixture
def client(session_factory, vault, orchestrator):
    """Test client wired to the test database and the fake provider."""
    from coparent.main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_token_vault] = lambda: vault
    app.dependency_overrides[get_sync_orchestrator] = lambda: orchestrator
    yield TestClient(app)
    app.dependency_overrides.clear()
