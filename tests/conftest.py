import os
from types import SimpleNamespace

os.environ.setdefault("MCP_ENABLED", "false")

import mongomock
import pytest
from fastapi.testclient import TestClient

from ai import AIGateway
from config import Settings
from identity import IdentityGateway
from main import create_app
from mongo import DocumentStore


class FakeCompletions:
    def __init__(self, reply="**Rest** and fluids."):
        self.reply = reply
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        if isinstance(self.reply, Exception):
            raise self.reply
        message = SimpleNamespace(content=self.reply)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def fake_openai(reply="**Rest** and fluids."):
    completions = FakeCompletions(reply)
    return SimpleNamespace(chat=SimpleNamespace(completions=completions))


@pytest.fixture
def store():
    return DocumentStore(mongomock.MongoClient()["FelanoCareTest"])


@pytest.fixture
def identity(store):
    return IdentityGateway(store, session_ttl_hours=1)


@pytest.fixture
def ai_client():
    return fake_openai()


@pytest.fixture
def client(store, identity, ai_client):
    app = create_app(Settings(mcp_enabled=False), store=store, identity=identity, ai=AIGateway(client=ai_client))
    return TestClient(app)


def signup(client, email, user_type="patient", name=None, **extra):
    body = {
        "name": name or email.split("@")[0].title(),
        "email": email,
        "password": "secret123",
        "userType": user_type,
        **extra,
    }
    if user_type == "doctor":
        body.setdefault("licenseNumber", "LIC-001")
    resp = client.post("/auth/signup", json=body)
    assert resp.status_code == 200, resp.text
    data = resp.json()
    return data["uid"], {"Authorization": f"Bearer {data['token']}"}


@pytest.fixture
def patient(client):
    return signup(client, "jane@example.com", name="Jane")


@pytest.fixture
def doctor(client):
    return signup(client, "house@example.com", user_type="doctor", name="Dr. House")
