"""Shared fixtures: in-memory stand-ins for Firebase Auth, Firestore and Resend."""
import hashlib
import hmac
import json
import threading

import pytest
from fastapi.testclient import TestClient

from core.config import WebhookSettings, get_webhook_settings
from utils.eduzz import IdentityExistsError

SECRET = "test-webhook-secret"


class FakeStore:
    def __init__(self):
        self.entitlements: dict[str, dict] = {}
        self.events: dict[str, dict] = {}
        self.entitlement_writes = 0
        self.event_writes = 0
        self._lock = threading.Lock()

    def get_entitlement(self, uid):
        with self._lock:
            doc = self.entitlements.get(uid)
            return dict(doc) if doc else None

    def merge_entitlement(self, uid, fields):
        with self._lock:
            self.entitlements.setdefault(uid, {}).update(fields)
            self.entitlement_writes += 1

    def merge_event(self, event_id, fields, received_at=None):
        with self._lock:
            if received_at is not None and event_id not in self.events:
                fields = {**fields, "receivedAt": received_at}
            self.events.setdefault(event_id, {}).update(fields)
            self.event_writes += 1


class FakeIdentity:
    def __init__(self):
        self.users: dict[str, str] = {}
        self.created: list[str] = []
        self.links: list[str] = []
        self.lookups = 0
        self._lock = threading.Lock()

    def find_uid_by_email(self, email):
        with self._lock:
            self.lookups += 1
            return self.users.get(email)

    def create_student(self, email):
        with self._lock:
            if email in self.users:
                raise IdentityExistsError(email)
            uid = f"uid-{len(self.users) + 1}"
            self.users[email] = uid
            self.created.append(uid)
            return uid

    def credential_setup_link(self, email, continue_url=""):
        link = f"https://auth.example.test/reset?email={email}&continue={continue_url}"
        self.links.append(link)
        return link


class FakeMailer:
    def __init__(self):
        self.sent: list[dict] = []

    def send(self, to_addr, subject, html, text=None):
        self.sent.append({"to": to_addr, "subject": subject, "html": html, "text": text})


def sign(body: bytes, secret: str = SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def envelope(event: str, email: str = "a@b.com", event_id: str = "evt-1", **data) -> bytes:
    payload = {
        "id": event_id,
        "event": event,
        "sentDate": "2026-10-01T12:00:00Z",
        "data": {"buyer": {"email": email} if email else {}, **data},
    }
    return json.dumps(payload).encode()


@pytest.fixture
def settings():
    return WebhookSettings(
        webhook_secret=SECRET,
        resend_api_key="re_test",
        resend_from_email="Banco <no-reply@example.test>",
        app_base_url="https://app.example.test",
    )


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def identity():
    return FakeIdentity()


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def client(settings, store, identity, mailer):
    from main import app
    from core.auth import get_identity_provider
    from core.database import get_store
    from utils.emailing import get_mailer

    app.dependency_overrides[get_webhook_settings] = lambda: settings
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_identity_provider] = lambda: identity
    app.dependency_overrides[get_mailer] = lambda: mailer
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
