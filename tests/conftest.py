import os
import tempfile
from datetime import datetime, timedelta
from pathlib import Path
from types import SimpleNamespace

import pytest

DB_PATH = Path(tempfile.gettempdir()) / f"cluckhub-test-{os.getpid()}.db"
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{DB_PATH}"
os.environ.setdefault("OPENAI_API_KEY", "test-key")

from fastapi.testclient import TestClient  # noqa: E402

from cluckhub import auth  # noqa: E402
from cluckhub.advisor import PoultryAdvisor, get_advisor  # noqa: E402
from cluckhub.main import app  # noqa: E402

TEST_UID = "farmer-1"


class FakeCompletions:
    """Stands in for client.chat.completions; replies are queued JSON strings."""

    def __init__(self):
        self.replies = []
        self.calls = []
        self.error = None

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        content = self.replies.pop(0)
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


class FakeOpenAI:
    def __init__(self):
        self.chat = SimpleNamespace(completions=FakeCompletions())


def _token_for(uid):
    return lambda: {"uid": uid, "email": f"{uid}@example.com", "name": uid.title()}


@pytest.fixture
def fake_openai():
    return FakeOpenAI()


@pytest.fixture
def client(fake_openai, monkeypatch):
    if DB_PATH.exists():
        DB_PATH.unlink()
    monkeypatch.setattr(auth, "init_firebase", lambda: None)
    app.dependency_overrides[auth.verify_firebase_token] = _token_for(TEST_UID)
    app.dependency_overrides[get_advisor] = lambda: PoultryAdvisor(
        client=fake_openai, model="test-model", vision_model="test-vision-model"
    )
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
    if DB_PATH.exists():
        DB_PATH.unlink()


@pytest.fixture
def switch_user(client):
    def _switch(uid):
        app.dependency_overrides[auth.verify_firebase_token] = _token_for(uid)
    return _switch


def today():
    return datetime.utcnow().date()


@pytest.fixture
def make_flock(client):
    def _make(**overrides):
        payload = {
            "breed": "Cobb 500",
            "type": "Broiler",
            "count": 100,
            "initial_count": 100,
            "hatch_date": (today() - timedelta(weeks=4)).isoformat(),
            "average_weight": 0.1,
        }
        payload.update(overrides)
        r = client.post("/flocks/", json=payload)
        assert r.status_code == 200, r.text
        return r.json()
    return _make


@pytest.fixture
def get_flock(client):
    def _get(flock_id):
        r = client.get(f"/flocks/{flock_id}")
        assert r.status_code == 200, r.text
        return r.json()
    return _get
