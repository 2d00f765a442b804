"""
Pytest configuration and fixtures for the backend tests.

Mongo is replaced by small in-memory collections that understand the handful
of operators the OTP stores use, and ``smtplib.SMTP`` by a recorder class, so
nothing here opens a socket.
"""
import copy
import os
import re
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

# Settings are read at import time
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["ENVIRONMENT"] = "development"
os.environ["LOG_TO_FILE"] = "false"
os.environ["SMTP_VERIFY_ON_STARTUP"] = "false"
os.environ["MONGO_URI"] = ""
for _name in ("SMTP_HOST", "SMTP_PORT", "SMTP_USERNAME", "SMTP_PASSWORD", "EMAIL_HOST", "EMAIL_PORT", "EMAIL_USER", "EMAIL_PASS"):
    os.environ.pop(_name, None)

import pytest
from bson import ObjectId
from faker import Faker
from fastapi.testclient import TestClient
from pymongo.errors import DuplicateKeyError

from main import app
from api.dependencies import get_db
from core.security import get_password_hash
from services.mail_transport import ClientCache, MailTransport, SMTPClient
from services.otp_service import OTPService
from services.otp_store import EmbeddedOTPStore, StandaloneOTPStore

# Initialize Faker for test data generation
fake = Faker()

_MISSING = object()
OTP_IN_TEXT = re.compile(r"is: (\d{6})")


def _lookup(doc, dotted):
    current = doc
    for part in dotted.split("."):
        if not isinstance(current, dict) or part not in current:
            return _MISSING
        current = current[part]
    return current


def _matches(doc, query):
    for key, expected in query.items():
        value = _lookup(doc, key)
        if isinstance(expected, dict) and "$exists" in expected:
            if (value is not _MISSING) != bool(expected["$exists"]):
                return False
        elif value is _MISSING or value != expected:
            return False
    return True


def _set_path(doc, dotted, value):
    parts = dotted.split(".")
    for part in parts[:-1]:
        doc = doc.setdefault(part, {})
    doc[parts[-1]] = copy.deepcopy(value)


def _unset_path(doc, dotted):
    parts = dotted.split(".")
    for part in parts[:-1]:
        doc = doc.get(part)
        if not isinstance(doc, dict):
            return
    doc.pop(parts[-1], None)


class FakeCollection:
    """The subset of motor's collection API used by the services."""

    def __init__(self, name):
        self.name = name
        self.docs = []
        self.indexes = []
        # Exceptions queued here are raised by the next insert_one calls
        self.insert_errors = []

    async def find_one(self, query):
        for doc in self.docs:
            if _matches(doc, query):
                return copy.deepcopy(doc)
        return None

    async def insert_one(self, doc):
        if self.insert_errors:
            raise self.insert_errors.pop(0)
        stored = copy.deepcopy(doc)
        stored.setdefault("_id", ObjectId())
        self.docs.append(stored)
        return SimpleNamespace(inserted_id=stored["_id"])

    async def update_one(self, query, update, upsert=False):
        for doc in self.docs:
            if _matches(doc, query):
                before = copy.deepcopy(doc)
                for key, value in update.get("$set", {}).items():
                    _set_path(doc, key, value)
                for key in update.get("$unset", {}):
                    _unset_path(doc, key)
                modified = 0 if doc == before else 1
                return SimpleNamespace(matched_count=1, modified_count=modified, upserted_id=None)
        return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None)

    async def replace_one(self, query, replacement, upsert=False):
        for index, doc in enumerate(self.docs):
            if _matches(doc, query):
                stored = copy.deepcopy(replacement)
                stored["_id"] = doc["_id"]
                self.docs[index] = stored
                return SimpleNamespace(matched_count=1, modified_count=1, upserted_id=None)
        if upsert:
            result = await self.insert_one(replacement)
            return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=result.inserted_id)
        return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None)

    async def delete_one(self, query):
        for index, doc in enumerate(self.docs):
            if _matches(doc, query):
                del self.docs[index]
                return SimpleNamespace(deleted_count=1)
        return SimpleNamespace(deleted_count=0)

    async def delete_many(self, query):
        kept = [doc for doc in self.docs if not _matches(doc, query)]
        deleted = len(self.docs) - len(kept)
        self.docs = kept
        return SimpleNamespace(deleted_count=deleted)

    async def create_index(self, keys, **kwargs):
        self.indexes.append((keys, kwargs))
        return kwargs.get("name", str(keys))

    def matching(self, **query):
        return [doc for doc in self.docs if _matches(doc, query)]


class FakeDatabase:
    def __init__(self):
        self.users = FakeCollection("users")
        self.otps = FakeCollection("otps")

    async def command(self, cmd):
        return {"ok": 1}


class SMTPRecorder:
    """Collects what the fake SMTP classes were asked to do."""

    def __init__(self):
        self.connections = []
        self.logins = []
        self.sent = []
        self.starttls_calls = 0
        self.noops = 0
        self.offer_starttls = True
        self.connect_error = None
        self.login_error = None
        self.send_error = None

    @property
    def attempts(self):
        return len(self.connections)

    def smtp_class(self, implicit_tls=False):
        recorder = self

        class _FakeSMTP:
            def __init__(self, host, port, timeout=None, context=None):
                recorder.connections.append({"host": host, "port": port, "implicit_tls": implicit_tls, "timeout": timeout})
                if recorder.connect_error is not None:
                    raise recorder.connect_error

            def set_debuglevel(self, level):
                pass

            def ehlo(self):
                return 250, b"ok"

            def has_extn(self, name):
                return recorder.offer_starttls

            def starttls(self, context=None):
                recorder.starttls_calls += 1

            def login(self, user, password):
                recorder.logins.append((user, password))
                if recorder.login_error is not None:
                    raise recorder.login_error

            def send_message(self, message):
                if recorder.send_error is not None:
                    raise recorder.send_error
                recorder.sent.append(message)

            def noop(self):
                recorder.noops += 1
                return 250, b"ok"

            def quit(self):
                pass

            def close(self):
                pass

        return _FakeSMTP

    def client_factory(self, config):
        return SMTPClient(config, smtp_class=self.smtp_class(), smtp_ssl_class=self.smtp_class(implicit_tls=True))

    def last_code(self):
        body = self.sent[-1].get_body(preferencelist=("plain",)).get_content()
        return OTP_IN_TEXT.search(body).group(1)


class MutableClock:
    def __init__(self, start=None):
        self.now = start or datetime(2026, 1, 15, 9, 30, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


def smtp_settings(**overrides):
    values = {
        "SMTP_HOST": "smtp.gmail.com",
        "SMTP_PORT": "587",
        "SMTP_USERNAME": "loans.portal@gmail.com",
        "SMTP_PASSWORD": "app-password-1",
        "SMTP_FROM_EMAIL": None,
        "SMTP_FROM_NAME": "Loan Portal",
        "SMTP_TIMEOUT": 5,
        "SMTP_DEBUG": False,
        "OTP_TTL_SECONDS": 600,
    }
    values.update(overrides)
    return SimpleNamespace(**values)


@pytest.fixture
def fake_db():
    return FakeDatabase()


@pytest.fixture
def clock():
    return MutableClock()


@pytest.fixture
def otp_service(fake_db, clock):
    return OTPService(
        embedded=EmbeddedOTPStore(fake_db.users),
        standalone=StandaloneOTPStore(fake_db.otps),
        ttl_seconds=600,
        code_length=6,
        clock=clock,
    )


@pytest.fixture
def smtp():
    return SMTPRecorder()


@pytest.fixture
def smtp_config():
    return smtp_settings()


@pytest.fixture
def transport(smtp, smtp_config):
    return MailTransport(ClientCache(client_factory=smtp.client_factory), config_provider=lambda: smtp_config)


@pytest.fixture
def client(fake_db, transport):
    """Test client backed by the in-memory database and the recording SMTP transport."""
    app.dependency_overrides[get_db] = lambda: fake_db
    original_transport = app.state.mail_transport
    app.state.mail_transport = transport

    with TestClient(app) as test_client:
        yield test_client

    app.state.mail_transport = original_transport
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(fake_db):
    """Insert a user document and return it."""

    def _make(email=None, phone=None, password="OldPassw0rd!", **fields):
        doc = {
            "_id": ObjectId(),
            "name": fake.name(),
            "email": email if email is not None else fake.unique.email(),
            "phone": phone,
            "password": get_password_hash(password),
            "role": "user",
            "is_verified": {"email": False, "phone": False},
        }
        if doc["phone"] is None:
            doc.pop("phone")
        doc.update(fields)
        fake_db.users.docs.append(doc)
        return copy.deepcopy(doc)

    return _make


@pytest.fixture
def duplicate_key_error():
    return DuplicateKeyError("E11000 duplicate key error collection: otps index: u_active_email_otp")

