"""Shared test fixtures."""
from datetime import datetime
from typing import Generator

import httpx
import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from activity_sync.adapters.http import RetryPolicy
from activity_sync.db.engine import import_models
from activity_sync.models.credential import Credential, CredentialType, Platform
from activity_sync.vault.vault import CredentialVault

# Import all models so SQLModel.metadata knows about them
import_models()

TEST_KEY = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"
STEAM_KEY = "ABCDEF0123456789ABCDEF0123456789"
STEAM_ID = "76561198012345678"


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite engine. Tables recreated fresh for each test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="test_session")
def test_session_fixture(engine) -> Generator[Session, None, None]:
    """Provides a DB session connected to in-memory SQLite."""
    with Session(engine) as session:
        yield session


@pytest.fixture(name="vault")
def vault_fixture() -> CredentialVault:
    return CredentialVault(key_hex=TEST_KEY)


@pytest.fixture(name="no_retry")
def no_retry_fixture() -> RetryPolicy:
    """Retry policy that never sleeps, so retry paths run instantly."""

    async def _no_sleep(_seconds):
        return None

    return RetryPolicy(max_attempts=3, backoff_seconds=0, sleep=_no_sleep)


@pytest.fixture(name="steam_credential")
def steam_credential_fixture(test_session: Session, vault: CredentialVault) -> Credential:
    """A persisted, encrypted Steam credential."""
    credential = Credential(
        platform=Platform.STEAM,
        type=CredentialType.API_KEY,
        value=vault.encrypt(STEAM_KEY),
        metadata_json={"steamUserId": STEAM_ID},
        auto_sync=True,
        created_at=datetime(2025, 1, 1),
    )
    test_session.add(credential)
    test_session.commit()
    test_session.refresh(credential)
    return credential


def mock_client(handler) -> httpx.AsyncClient:
    """AsyncClient whose requests are answered by `handler(request) -> Response`."""
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))
