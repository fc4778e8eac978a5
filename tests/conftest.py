from __future__ import annotations
import os
import tempfile

# Settings are read at import time; point them at a throwaway database first.
_TMP_DIR = tempfile.mkdtemp(prefix="inbox-triage-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TMP_DIR, 'app.db')}"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["CRON_SECRET"] = "cron-secret"
os.environ["OPENAI_API_KEY"] = ""
os.environ["INTERNAL_SYNC_CRON_ENABLED"] = "false"
os.environ["GOOGLE_CLIENT_ID"] = "client-id"
os.environ["GOOGLE_CLIENT_SECRET"] = "client-secret"

import base64
from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, SQLModel

from inbox_triage import repository as repo
from inbox_triage.crypto import encrypt_str
from inbox_triage.db import create_db_engine, get_session
from inbox_triage.main import app

# 2100-01-01, always after a mailbox's connection time
FUTURE_INTERNAL_DATE = "4102444800000"


def b64(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode("utf-8")).decode("ascii").rstrip("=")


@pytest.fixture(scope="function")
def test_engine(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'test.db'}")
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def session(test_engine):
    with Session(test_engine) as session:
        yield session
        session.rollback()


@pytest.fixture(scope="function")
def client(session):
    def override_get_session():
        yield session

    app.dependency_overrides[get_session] = override_get_session
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def test_user(session):
    return repo.users.create(session, {"email": "test@example.com", "name": "Test User"})


@pytest.fixture
def other_user(session):
    return repo.users.create(session, {"email": "other@example.com", "name": "Other User"})


@pytest.fixture
def logged_in_user(client, test_user):
    with patch("inbox_triage.main.get_current_user", return_value=test_user):
        yield test_user


@pytest.fixture
def test_gmail_account(session, test_user):
    return repo.gmail_accounts.create(
        session,
        {
            "user_id": test_user.id,
            "email": "test@gmail.com",
            "google_sub": "google-sub-123",
            "refresh_token": encrypt_str("test_refresh_token"),
        },
    )


@pytest.fixture
def test_category(session, test_user):
    return repo.categories.create(
        session,
        {"user_id": test_user.id, "name": "Newsletters", "description": "Marketing and newsletters"},
    )


@pytest.fixture
def test_email_message(session, test_user, test_gmail_account, test_category):
    return repo.email_messages.create(
        session,
        {
            "user_id": test_user.id,
            "gmail_account_id": test_gmail_account.id,
            "category_id": test_category.id,
            "gmail_message_id": "test_message_id",
            "gmail_thread_id": "test_thread_id",
            "internal_date_ms": 1704110400000,
            "from_name": "Sender",
            "from_email": "sender@example.com",
            "subject": "Test Subject",
            "snippet": "Test snippet",
            "body_text": "Test body",
            "summary": "A short summary.",
            "list_unsubscribe": "<https://example.com/unsubscribe>",
            "unsubscribe_links": {
                "http_links": ["https://example.com/unsubscribe"],
                "mailto_links": [],
                "guessed_links": [],
                "one_click": True,
            },
        },
    )


@pytest.fixture
def mock_gmail_service():
    service = MagicMock()

    service.users.return_value.messages.return_value.list.return_value.execute.return_value = {
        "messages": [{"id": "msg1"}, {"id": "msg2"}]
    }

    service.users.return_value.messages.return_value.get.return_value.execute.return_value = {
        "id": "msg1",
        "threadId": "thread1",
        "snippet": "Test snippet",
        "payload": {
            "mimeType": "multipart/alternative",
            "headers": [
                {"name": "From", "value": "News <news@example.com>"},
                {"name": "Subject", "value": "Test Subject"},
                {"name": "List-Unsubscribe", "value": "<https://example.com/unsub?u=1>, <mailto:unsub@example.com>"},
                {"name": "List-Unsubscribe-Post", "value": "List-Unsubscribe=One-Click"},
            ],
            "body": {"data": ""},
            "parts": [
                {"mimeType": "text/plain", "body": {"data": b64("test body")}},
                {"mimeType": "text/html", "body": {"data": b64("<p>test body</p>")}},
            ],
        },
        "internalDate": FUTURE_INTERNAL_DATE,
    }

    service.users.return_value.messages.return_value.modify.return_value.execute.return_value = {}
    service.users.return_value.messages.return_value.trash.return_value.execute.return_value = {}
    service.users.return_value.history.return_value.list.return_value.execute.return_value = {
        "history": [],
        "historyId": "12345",
    }
    service.users.return_value.getProfile.return_value.execute.return_value = {
        "historyId": "12345"
    }

    return service


@pytest.fixture
def gmail_factory(mock_gmail_service):
    def factory(gmail_account):
        return mock_gmail_service

    return factory
