from __future__ import annotations
import pytest
from datetime import datetime, timedelta
from sqlalchemy.exc import IntegrityError

from inbox_triage import repository as repo
from inbox_triage.crypto import encrypt_str
from inbox_triage.errors import ForeignKeyConstraintError, UniqueConstraintError
from inbox_triage.models import (
    EmailAction,
    EmailActionStatus,
    EmailActionType,
    EmailImportStatus,
    User,
)


def _message(user, gmail_account, category, gmail_message_id="msg-1", **extra):
    data = {
        "user_id": user.id,
        "gmail_account_id": gmail_account.id,
        "category_id": category.id,
        "gmail_message_id": gmail_message_id,
    }
    data.update(extra)
    return data


def test_user_creation(session):
    user = User(email="new@example.com")
    session.add(user)
    session.commit()
    session.refresh(user)

    assert user.id
    assert user.email == "new@example.com"
    assert isinstance(user.created_at, datetime)
    assert isinstance(user.updated_at, datetime)


def test_user_email_is_unique(session, test_user):
    session.add(User(email=test_user.email))
    with pytest.raises(IntegrityError):
        session.commit()


def test_email_message_defaults(session, test_email_message):
    assert test_email_message.import_status == EmailImportStatus.IMPORTED
    assert test_email_message.internal_date_ms == 1704110400000


def test_duplicate_gmail_message_is_rejected(session, test_user, test_gmail_account, test_category):
    repo.email_messages.create(session, _message(test_user, test_gmail_account, test_category, "dup"))

    with pytest.raises(UniqueConstraintError):
        repo.email_messages.create(session, _message(test_user, test_gmail_account, test_category, "dup"))


def test_same_gmail_message_in_two_mailboxes(session, test_user, test_gmail_account, test_category):
    second = repo.gmail_accounts.create(
        session,
        {
            "user_id": test_user.id,
            "email": "second@gmail.com",
            "google_sub": "sub-2",
            "refresh_token": encrypt_str("r2"),
        },
    )
    repo.email_messages.create(session, _message(test_user, test_gmail_account, test_category, "same"))
    repo.email_messages.create(session, _message(test_user, second, test_category, "same"))

    assert repo.email_messages.count(session, where={"gmail_message_id": "same"}) == 2


def test_category_name_unique_per_user(session, test_user, other_user, test_category):
    with pytest.raises(UniqueConstraintError):
        repo.categories.create(session, {"user_id": test_user.id, "name": test_category.name})

    other = repo.categories.create(session, {"user_id": other_user.id, "name": test_category.name})
    assert other.id != test_category.id


def test_gmail_account_unique_email_per_user(session, test_user, test_gmail_account):
    with pytest.raises(UniqueConstraintError):
        repo.gmail_accounts.create(
            session,
            {
                "user_id": test_user.id,
                "email": test_gmail_account.email,
                "google_sub": "different-sub",
                "refresh_token": encrypt_str("r"),
            },
        )


def test_gmail_account_unique_google_sub_per_user(session, test_user, test_gmail_account):
    with pytest.raises(UniqueConstraintError):
        repo.gmail_accounts.create(
            session,
            {
                "user_id": test_user.id,
                "email": "different@gmail.com",
                "google_sub": test_gmail_account.google_sub,
                "refresh_token": encrypt_str("r"),
            },
        )


def test_account_provider_linkage_is_globally_unique(session, test_user, other_user):
    repo.accounts.create(
        session, {"user_id": test_user.id, "provider": "google", "provider_account_id": "123"}
    )
    with pytest.raises(UniqueConstraintError):
        repo.accounts.create(
            session, {"user_id": other_user.id, "provider": "google", "provider_account_id": "123"}
        )


def test_verification_token_identifier_token_unique(session):
    expires = datetime.utcnow() + timedelta(hours=1)
    repo.verification_tokens.create(session, {"identifier": "a@b.c", "token": "t1", "expires": expires})
    session.expunge_all()
    with pytest.raises(UniqueConstraintError):
        repo.verification_tokens.create(session, {"identifier": "a@b.c", "token": "t1", "expires": expires})


def test_verification_token_value_is_unique(session):
    expires = datetime.utcnow() + timedelta(hours=1)
    repo.verification_tokens.create(session, {"identifier": "a@b.c", "token": "t2", "expires": expires})
    with pytest.raises(UniqueConstraintError):
        repo.verification_tokens.create(session, {"identifier": "x@y.z", "token": "t2", "expires": expires})


def test_session_token_unique(session, test_user):
    expires = datetime.utcnow() + timedelta(days=1)
    repo.user_sessions.create(session, {"user_id": test_user.id, "session_token": "tok", "expires": expires})
    with pytest.raises(UniqueConstraintError):
        repo.user_sessions.create(session, {"user_id": test_user.id, "session_token": "tok", "expires": expires})


def test_email_message_requires_existing_category(session, test_user, test_gmail_account):
    with pytest.raises(ForeignKeyConstraintError):
        repo.email_messages.create(
            session,
            {
                "user_id": test_user.id,
                "gmail_account_id": test_gmail_account.id,
                "category_id": "missing-category",
                "gmail_message_id": "orphan",
            },
        )


def test_unsubscribe_links_round_trip(session, test_user, test_gmail_account, test_category):
    links = {
        "http_links": ["https://example.com/u?id=1&x=%20"],
        "mailto_links": ["mailto:unsub@example.com?subject=unsubscribe"],
        "guessed_links": [],
        "one_click": False,
        "nested": {"order": [3, 1, 2], "unicode": "désabonner"},
    }
    created = repo.email_messages.create(
        session, _message(test_user, test_gmail_account, test_category, unsubscribe_links=links)
    )
    session.expire_all()

    loaded = repo.email_messages.find_unique(session, id=created.id)
    assert loaded.unsubscribe_links == links


def test_deleting_user_cascades(session, test_user, test_gmail_account, test_category, test_email_message):
    repo.accounts.create(
        session, {"user_id": test_user.id, "provider": "google", "provider_account_id": "sub"}
    )
    repo.user_sessions.create(
        session,
        {"user_id": test_user.id, "session_token": "s", "expires": datetime.utcnow() + timedelta(days=1)},
    )
    repo.email_actions.create(
        session, {"email_message_id": test_email_message.id, "type": EmailActionType.ARCHIVE}
    )

    repo.users.delete(session, id=test_user.id)

    assert repo.users.count(session) == 0
    assert repo.accounts.count(session) == 0
    assert repo.user_sessions.count(session) == 0
    assert repo.gmail_accounts.count(session) == 0
    assert repo.categories.count(session) == 0
    assert repo.email_messages.count(session) == 0
    assert repo.email_actions.count(session) == 0


def test_deleting_gmail_account_removes_its_messages(session, test_user, test_gmail_account, test_category, test_email_message):
    repo.gmail_accounts.delete(session, id=test_gmail_account.id)

    assert repo.email_messages.count(session) == 0
    assert repo.categories.count(session) == 1
    assert repo.users.count(session) == 1


def test_email_action_defaults_to_pending(session, test_email_message):
    action = EmailAction(email_message_id=test_email_message.id, type=EmailActionType.TRASH)
    session.add(action)
    session.commit()
    session.refresh(action)

    assert action.status == EmailActionStatus.PENDING
    assert action.details is None


def test_updated_at_bumped_on_update(session, test_category):
    before = test_category.updated_at
    updated = repo.categories.update(
        session, {"id": test_category.id}, {"description": "changed"}
    )
    assert updated.updated_at >= before
    assert updated.description == "changed"
