from __future__ import annotations
import logging
import secrets
from datetime import datetime, timedelta
from typing import Any, Dict, Optional
from fastapi import Request
from sqlmodel import Session

from . import repository as repo
from .crypto import encrypt_str, encrypt_optional
from .errors import OAuthFlowError
from .models import GmailAccount, User, UserSession, VerificationToken
from .settings import settings

logger = logging.getLogger(__name__)

SESSION_KEY = "session_token"
GOOGLE_PROVIDER = "google"


def create_user_session(session: Session, user: User) -> UserSession:
    return repo.user_sessions.create(
        session,
        {
            "user_id": user.id,
            "session_token": secrets.token_urlsafe(32),
            "expires": datetime.utcnow() + timedelta(days=settings.SESSION_MAX_AGE_DAYS),
        },
    )


def get_current_user(request: Request, session: Session) -> Optional[User]:
    token = request.session.get(SESSION_KEY)
    if not token:
        return None
    user_session = repo.user_sessions.find_unique(session, session_token=token)
    if not user_session:
        return None
    if user_session.expires <= datetime.utcnow():
        repo.user_sessions.delete(session, id=user_session.id)
        request.session.pop(SESSION_KEY, None)
        return None
    return repo.users.find_unique(session, id=user_session.user_id)


def end_user_session(request: Request, session: Session) -> None:
    token = request.session.pop(SESSION_KEY, None)
    if token:
        repo.user_sessions.delete_many(session, where={"session_token": token})


def create_verification_token(
    session: Session, identifier: str, ttl: timedelta = timedelta(hours=24)
) -> VerificationToken:
    return repo.verification_tokens.create(
        session,
        {
            "identifier": identifier,
            "token": secrets.token_urlsafe(32),
            "expires": datetime.utcnow() + ttl,
        },
    )


def use_verification_token(session: Session, identifier: str, token: str) -> Optional[VerificationToken]:
    """Consume a token. Returns None when unknown or expired; a token works once."""
    found = repo.verification_tokens.find_unique(session, identifier=identifier, token=token)
    if not found:
        return None
    expires = found.expires
    repo.verification_tokens.delete(session, identifier=identifier, token=token)
    if expires <= datetime.utcnow():
        return None
    return found


def _expires_at(token: Dict[str, Any]) -> Optional[datetime]:
    expires_at = token.get("expires_at")
    if not expires_at:
        return None
    return datetime.utcfromtimestamp(int(expires_at))


def _upsert_gmail_account(
    session: Session, user: User, token: Dict[str, Any], email: str, google_sub: str
) -> Optional[GmailAccount]:
    existing = repo.gmail_accounts.find_unique(session, user_id=user.id, email=email)
    refresh_token = token.get("refresh_token")
    if not refresh_token and not existing:
        return None

    update: Dict[str, Any] = {"google_sub": google_sub}
    if refresh_token:
        update["refresh_token"] = encrypt_str(refresh_token)
    if token.get("access_token"):
        update["access_token"] = encrypt_str(token["access_token"])
        update["token_expiry"] = _expires_at(token)
    return repo.gmail_accounts.upsert(
        session,
        {"user_id": user.id, "email": email},
        create=update,
        update=update,
    )


def _identity(userinfo: Dict[str, Any]):
    email = userinfo.get("email")
    google_sub = userinfo.get("sub")
    if not email or not google_sub:
        raise OAuthFlowError("missing_userinfo")
    return email, google_sub


def sign_in_with_google(session: Session, token: Dict[str, Any], userinfo: Dict[str, Any]) -> User:
    """Create or refresh the User, its Google Account link and its primary mailbox."""
    email, google_sub = _identity(userinfo)

    profile = {"name": userinfo.get("name"), "image": userinfo.get("picture")}
    if userinfo.get("email_verified"):
        profile["email_verified"] = datetime.utcnow()
    user = repo.users.upsert(
        session,
        {"email": email},
        create=profile,
        update={k: v for k, v in profile.items() if v is not None},
    )

    link = {
        "user_id": user.id,
        "type": "oauth",
        "refresh_token": encrypt_optional(token.get("refresh_token")),
        "access_token": encrypt_optional(token.get("access_token")),
        "expires_at": token.get("expires_at"),
        "token_type": token.get("token_type"),
        "scope": token.get("scope"),
        "id_token": token.get("id_token"),
    }
    repo.accounts.upsert(
        session,
        {"provider": GOOGLE_PROVIDER, "provider_account_id": google_sub},
        create=link,
        update={k: v for k, v in link.items() if v is not None},
    )

    if _upsert_gmail_account(session, user, token, email, google_sub) is None:
        logger.warning(
            f"Token for {email} has no refresh_token; mailbox not connected. "
            "Revoke the app's access in the Google account and sign in again."
        )
    return user


def connect_gmail_account(
    session: Session, user: User, token: Dict[str, Any], userinfo: Dict[str, Any]
) -> GmailAccount:
    """Attach an additional mailbox to an already signed-in user."""
    email, google_sub = _identity(userinfo)
    gmail_account = _upsert_gmail_account(session, user, token, email, google_sub)
    if gmail_account is None:
        raise OAuthFlowError("missing_refresh_token")
    logger.info(f"Connected Gmail account {email} for user {user.email}")
    return gmail_account
