"""Shared test fixtures and configuration for backend tests."""
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from citruslab.auth.tokens import issue_token
from citruslab.collaboration.schemas import EmailStatus
from citruslab.collaboration.service import CollaborationService
from citruslab.collaboration.store import CollaborationStore
from citruslab.config import AppConfig, DatabaseSettings, JWTSecrets, Secrets
from citruslab.main import create_app

TEST_SECRET = "test-secret"

OWNER = "owner@example.com"
ALICE = "alice@example.com"
BOB = "bob@example.com"


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingMailer:
    """Stands in for MailSender; records every invitation."""

    def __init__(self, sent: bool = True):
        self.sent = sent
        self.calls = []

    async def send_invitation(self, **kwargs) -> EmailStatus:
        self.calls.append(kwargs)
        if self.sent:
            return EmailStatus(sent=True, provider="recording")
        return EmailStatus(sent=False, provider="recording", error="smtp down")


@pytest.fixture
def config():
    return AppConfig(
        database=DatabaseSettings(path=":memory:"),
        secrets=Secrets(jwt=JWTSecrets(secret_key=TEST_SECRET)),
    )


@pytest.fixture
def app(config):
    return create_app(config)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def store():
    s = CollaborationStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def service(store, mailer, clock):
    return CollaborationService(store, mailer, clock=clock)


def auth_headers(email: str, name: str = None) -> dict:
    token = issue_token(email, name, secret_key=TEST_SECRET)
    return {"Authorization": f"Bearer {token}"}
