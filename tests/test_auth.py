from __future__ import annotations
import pytest
from datetime import datetime, timedelta
from unittest.mock import Mock
from fastapi import Request

from inbox_triage import repository as repo
from inbox_triage.auth import (
    SESSION_KEY,
    connect_gmail_account,
    create_user_session,
    create_verification_token,
    end_user_session,
    get_current_user,
    sign_in_with_google,
    use_verification_token,
)
from inbox_triage.crypto import decrypt_str
from inbox_triage.errors import OAuthFlowError


def _request(session_data=None):
    request = Mock(spec=Request)
    request.session = dict(session_data or {})
    return request


def _token(**overrides):
    token = {
        "access_token": "ya29.access",
        "refresh_token": "1//refresh",
        "expires_at": 1893456000,
        "token_type": "Bearer",
        "scope": "openid email profile https://www.googleapis.com/auth/gmail.modify",
        "id_token": "id.token.value",
    }
    token.update(overrides)
    return {k: v for k, v in token.items() if v is not None}


USERINFO = {
    "sub": "google-sub-999",
    "email": "new.person@gmail.com",
    "name": "New Person",
    "picture": "https://example.com/p.png",
    "email_verified": True,
}


def test_get_current_user(session, test_user):
    user_session = create_user_session(session, test_user)

    user = get_current_user(_request({SESSION_KEY: user_session.session_token}), session)

    assert user is not None
    assert user.id == test_user.id


def test_get_current_user_no_session(session):
    assert get_current_user(_request(), session) is None
    assert get_current_user(_request({SESSION_KEY: "unknown"}), session) is None


def test_get_current_user_expired_session(session, test_user):
    repo.user_sessions.create(
        session,
        {"user_id": test_user.id, "session_token": "old", "expires": datetime.utcnow() - timedelta(minutes=1)},
    )
    request = _request({SESSION_KEY: "old"})

    assert get_current_user(request, session) is None
    assert SESSION_KEY not in request.session
    assert repo.user_sessions.count(session) == 0


def test_end_user_session(session, test_user):
    user_session = create_user_session(session, test_user)
    request = _request({SESSION_KEY: user_session.session_token})

    end_user_session(request, session)

    assert request.session == {}
    assert repo.user_sessions.count(session) == 0


def test_verification_token_is_single_use(session):
    vt = create_verification_token(session, "someone@example.com")

    used = use_verification_token(session, "someone@example.com", vt.token)
    assert used is not None
    assert use_verification_token(session, "someone@example.com", vt.token) is None


def test_expired_verification_token_is_consumed(session):
    vt = create_verification_token(session, "someone@example.com", ttl=timedelta(seconds=-1))

    assert use_verification_token(session, "someone@example.com", vt.token) is None
    assert repo.verification_tokens.count(session) == 0


def test_sign_in_creates_user_account_and_mailbox(session):
    user = sign_in_with_google(session, _token(), USERINFO)

    assert user.email == "new.person@gmail.com"
    assert user.name == "New Person"
    assert user.email_verified is not None

    account = repo.accounts.find_unique(session, provider="google", provider_account_id="google-sub-999")
    assert account.user_id == user.id
    assert decrypt_str(account.refresh_token) == "1//refresh"

    gmail_account = repo.gmail_accounts.find_unique(session, user_id=user.id, email=user.email)
    assert gmail_account.google_sub == "google-sub-999"
    assert decrypt_str(gmail_account.refresh_token) == "1//refresh"
    assert decrypt_str(gmail_account.access_token) == "ya29.access"
    assert gmail_account.token_expiry == datetime(2030, 1, 1)


def test_repeated_sign_in_updates_in_place(session):
    first = sign_in_with_google(session, _token(), USERINFO)
    second = sign_in_with_google(session, _token(refresh_token=None, access_token="ya29.newer"), USERINFO)

    assert second.id == first.id
    assert repo.users.count(session) == 1
    assert repo.accounts.count(session) == 1
    assert repo.gmail_accounts.count(session) == 1
    gmail_account = repo.gmail_accounts.find_first(session)
    # refresh token from the first consent is kept
    assert decrypt_str(gmail_account.refresh_token) == "1//refresh"
    assert decrypt_str(gmail_account.access_token) == "ya29.newer"


def test_sign_in_without_refresh_token_skips_mailbox(session):
    user = sign_in_with_google(session, _token(refresh_token=None), USERINFO)

    assert user.id
    assert repo.gmail_accounts.count(session) == 0


def test_sign_in_requires_identity(session):
    with pytest.raises(OAuthFlowError):
        sign_in_with_google(session, _token(), {"email": "x@gmail.com"})


def test_connect_additional_mailbox(session, test_user, test_gmail_account):
    userinfo = {"sub": "second-sub", "email": "second@gmail.com"}

    gmail_account = connect_gmail_account(session, test_user, _token(), userinfo)

    assert gmail_account.user_id == test_user.id
    assert repo.gmail_accounts.count(session, where={"user_id": test_user.id}) == 2


def test_connect_without_refresh_token(session, test_user):
    with pytest.raises(OAuthFlowError, match="missing_refresh_token"):
        connect_gmail_account(
            session, test_user, _token(refresh_token=None), {"sub": "s", "email": "n@gmail.com"}
        )
