import pytest
from fastapi.testclient import TestClient

from main import create_app
from settings import Settings
from signature import compute_signature

SECRET = "test-webhook-secret"
WEBHOOK_PATH = "/api/sahha/webhook"


def signed_headers(body: bytes, external_id: str, event_type: str, secret: str = SECRET) -> dict:
    return {
        "Content-Type": "application/json",
        "X-Signature": compute_signature(secret, body),
        "X-External-Id": external_id,
        "X-Event-Type": event_type,
    }


@pytest.fixture
def cfg(tmp_path):
    return Settings(
        webhook_secret=SECRET,
        environment="development",
        allow_signature_bypass=True,
        data_dir=tmp_path,
    )


@pytest.fixture
def app(cfg):
    return create_app(cfg)


@pytest.fixture
def client(app):
    # Entering the client runs the lifespan, so the activity log is
    # flushed when the block exits.
    with TestClient(app) as c:
        yield c
