"""
Pytest configuration and shared fixtures.

Test defaults are set before any smscrm import so the engine and settings
pick them up; variables already present in the environment win.
"""

import os

import pytest
from fastapi.testclient import TestClient

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_smscrm.db")
os.environ.setdefault("CONVERSATION_PROVIDER", "memory")
os.environ.setdefault("WEBHOOK_SIGNATURE_MODE", "off")
os.environ.setdefault("LOG_LEVEL", "WARNING")

# Clear settings cache before any app imports to ensure test env vars are used
from smscrm.config import get_settings  # noqa: E402
get_settings.cache_clear()

from smscrm.provider import InMemoryProviderFactory  # noqa: E402
from tests.fakes import ScriptedConversationProvider  # noqa: E402
from smscrm.storage import Base, SessionLocal, create_sender_account, create_sender_phone_number, engine  # noqa: E402


SENDER_PHONE = "+15550009999"
SECOND_SENDER_PHONE = "+15550008888"
CUSTOMER_PHONE = "+15551234567"


@pytest.fixture(scope="function")
def db():
    """Session on a fresh schema for each test."""
    from smscrm import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def provider_factory():
    return InMemoryProviderFactory(provider_class=ScriptedConversationProvider)


@pytest.fixture
def account(db):
    _, account = create_sender_account(
        db,
        account_name="Main",
        account_sid="AC" + "0" * 32,
        auth_token="secret-token",
    )
    return account


@pytest.fixture
def sender(db, account):
    """Active sender phone on the test account."""
    return create_sender_phone_number(db, account_id=account.id, phone_number=SENDER_PHONE, is_primary=True)


@pytest.fixture
def second_sender(db, account):
    return create_sender_phone_number(db, account_id=account.id, phone_number=SECOND_SENDER_PHONE)


@pytest.fixture
def provider(provider_factory, account):
    """The in-memory provider the resolver gets for the test account."""
    return provider_factory(account)


@pytest.fixture(scope="function")
def client(db, provider_factory):
    """Test client sharing the fresh schema and the in-memory provider factory."""
    from smscrm.main import app, get_provider_factory

    app.dependency_overrides[get_provider_factory] = lambda: provider_factory
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
