from __future__ import annotations

from pathlib import Path

import pytest

from passkey_rp import create_app
from passkey_rp.challenges import ChallengeCache, ChallengeSession
from passkey_rp.config import RPSettings
from passkey_rp.store import InMemoryCredentialStore

from .soft_authenticator import SoftAuthenticator

ORIGIN = "http://localhost:3000"


@pytest.fixture
def settings(tmp_path: Path) -> RPSettings:
    return RPSettings(
        store_backend="memory",
        database_url=f"sqlite:///{tmp_path / 'rp.db'}",
        store_directory=str(tmp_path / "users"),
        secret_key="test-secret",
        origin=ORIGIN,
    )


@pytest.fixture
def store() -> InMemoryCredentialStore:
    return InMemoryCredentialStore()


@pytest.fixture
def app(settings, store):
    app = create_app(settings, store=store)
    app.config.update(TESTING=True)
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def authenticator() -> SoftAuthenticator:
    return SoftAuthenticator()


@pytest.fixture
def challenges() -> ChallengeCache:
    return ChallengeCache(ttl_seconds=300)


@pytest.fixture
def ceremony_session(challenges) -> ChallengeSession:
    return ChallengeSession(challenges, "session-1")
