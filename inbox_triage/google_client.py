from __future__ import annotations
import logging
from datetime import timezone
from typing import Any, Dict
from authlib.integrations.starlette_client import OAuth, OAuthError
from fastapi import Request
from google.oauth2.credentials import Credentials
from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request as GRequest
from googleapiclient.discovery import build

from .settings import settings
from .crypto import encrypt_str, decrypt_str
from .errors import GmailAuthError, OAuthFlowError
from .models import GmailAccount

logger = logging.getLogger(__name__)

GMAIL_SCOPES = [
    "openid",
    "email",
    "profile",
    "https://www.googleapis.com/auth/gmail.modify",
]

oauth = OAuth()
oauth.register(
    name="google",
    client_id=settings.GOOGLE_CLIENT_ID,
    client_secret=settings.GOOGLE_CLIENT_SECRET,
    server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
    client_kwargs={"scope": " ".join(GMAIL_SCOPES)},
)


def redirect_uri() -> str:
    return settings.BASE_URL.rstrip("/") + settings.GOOGLE_REDIRECT_PATH


async def oauth_login(request: Request):
    # prompt=consent makes Google return a refresh_token on every sign-in.
    return await oauth.google.authorize_redirect(
        request,
        redirect_uri(),
        prompt="consent",
        access_type="offline",
        include_granted_scopes="true",
    )


async def oauth_callback(request: Request) -> Dict[str, Any]:
    try:
        token = await oauth.google.authorize_access_token(request)
    except OAuthError as e:
        # State mismatch usually means the session cookie was lost between redirects.
        raise OAuthFlowError(f"OAuth error: {e} (redirect_uri={redirect_uri()})") from e
    userinfo = token.get("userinfo")
    if not userinfo:
        userinfo = await oauth.google.userinfo(token=token)
    return {"token": token, "userinfo": dict(userinfo or {})}


def credentials_for_account(gmail_account: GmailAccount) -> Credentials:
    if not settings.GOOGLE_CLIENT_ID or not settings.GOOGLE_CLIENT_SECRET:
        raise GmailAuthError("GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET must be set in settings")
    if not gmail_account.refresh_token:
        raise GmailAuthError(f"No refresh token stored for {gmail_account.email}")

    access_token = decrypt_str(gmail_account.access_token) if gmail_account.access_token else None
    return Credentials(
        token=access_token,
        refresh_token=decrypt_str(gmail_account.refresh_token),
        token_uri="https://oauth2.googleapis.com/token",
        client_id=settings.GOOGLE_CLIENT_ID,
        client_secret=settings.GOOGLE_CLIENT_SECRET,
        scopes=GMAIL_SCOPES,
    )


def build_gmail_service(gmail_account: GmailAccount):
    """Build a Gmail API client for a connected mailbox.

    The access token is refreshed up front and written back (encrypted) onto
    ``gmail_account`` together with its expiry; the caller commits.
    """
    creds = credentials_for_account(gmail_account)
    try:
        creds.refresh(GRequest())
    except RefreshError as e:
        logger.error(f"Token refresh failed for {gmail_account.email}: {e}")
        raise GmailAuthError(
            f"Refresh token for {gmail_account.email} was rejected; reconnect the account"
        ) from e

    gmail_account.access_token = encrypt_str(creds.token)
    if creds.expiry:
        # google-auth reports naive UTC
        expiry = creds.expiry
        if expiry.tzinfo is not None:
            expiry = expiry.astimezone(timezone.utc).replace(tzinfo=None)
        gmail_account.token_expiry = expiry

    return build("gmail", "v1", credentials=creds, cache_discovery=False)
