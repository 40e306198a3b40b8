"""
Shared pytest fixtures for the grievance portal test suite.

Provides an in-memory MongoDB (mongomock), a notifier that records
outgoing mail instead of sending it, an httpx AsyncClient over the ASGI
app, and pre-authenticated headers for each seeded role.
"""

import os
import sys
from pathlib import Path

os.environ.setdefault("JWT_SECRET", "test-only-secret-0123456789abcdefghijklmnopqrstuvwxyz")
os.environ["ENVIRONMENT"] = "test"

import mongomock
import pytest
import pytest_asyncio
import httpx

# Ensure the package is importable when running from a source checkout
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from grievance_portal import uploads
from grievance_portal.app import app, limiter
from grievance_portal.db import ensure_indexes, get_db
from grievance_portal.notifications import get_notifier
from grievance_portal.seed.users import import_users, USERS


class RecordingNotifier:
    """Stands in for the SMTP notifier; keeps every message it is asked to send."""

    def __init__(self, deliver: bool = True):
        self.deliver = deliver
        self.sent = []

    def _record(self, kind, to_email, **payload):
        self.sent.append({"kind": kind, "to": to_email, **payload})
        return self.deliver

    def of_kind(self, kind):
        return [m for m in self.sent if m["kind"] == kind]

    async def send_otp(self, to_email, code):
        return self._record("otp", to_email, code=code)

    async def send_verification_email(self, to_email, token):
        return self._record("verify_email", to_email, token=token)

    async def send_status_update(self, to_email, grievance, status):
        return self._record("status_update", to_email, tracking_id=grievance["tracking_id"], status=status)

    async def send_reminder(self, to_email, grievance, message=""):
        return self._record("reminder", to_email, tracking_id=grievance["tracking_id"], message=message)


@pytest.fixture
def mongo_db():
    database = mongomock.MongoClient().grievance_portal_test
    ensure_indexes(database)
    return database


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture(autouse=True)
def upload_dir(tmp_path, monkeypatch):
    target = tmp_path / "uploads"
    monkeypatch.setattr(uploads, "UPLOAD_DIR", target)
    return target


@pytest.fixture
def seeded(mongo_db):
    """Seed verified student/staff/admin accounts. Returns {key: user_id}."""
    return import_users(mongo_db)


@pytest.fixture
def users(mongo_db, seeded):
    """Seeded user documents keyed like ``seeded``."""
    return {key: mongo_db.users.find_one({"_id": uid}) for key, uid in seeded.items()}


@pytest_asyncio.fixture
async def client(mongo_db, notifier):
    """In-process httpx AsyncClient wired to the in-memory database."""
    # Disable rate limiting so login fixtures aren't throttled
    limiter.enabled = False
    app.dependency_overrides[get_db] = lambda: mongo_db
    app.dependency_overrides[get_notifier] = lambda: notifier
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c
    app.dependency_overrides.clear()


def seed_credentials(key: str) -> dict:
    u = next(u for u in USERS if u["key"] == key)
    return {"email": u["email"], "password": u["password"]}


async def _login(client: httpx.AsyncClient, key: str) -> dict:
    """Log in and return Authorization headers dict."""
    resp = await client.post("/api/auth/login", json=seed_credentials(key))
    assert resp.status_code == 200, f"Login failed for {key}: {resp.text}"
    return {"Authorization": f"Bearer {resp.json()['token']}"}


@pytest_asyncio.fixture
async def student_headers(client, seeded):
    return await _login(client, "student1")


@pytest_asyncio.fixture
async def other_student_headers(client, seeded):
    return await _login(client, "student2")


@pytest_asyncio.fixture
async def staff_headers(client, seeded):
    return await _login(client, "staff")


@pytest_asyncio.fixture
async def admin_headers(client, seeded):
    return await _login(client, "admin")
