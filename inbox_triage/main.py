from __future__ import annotations
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from fastapi import FastAPI, Request, Depends
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel
from starlette.middleware.sessions import SessionMiddleware
from starlette.status import HTTP_303_SEE_OTHER
from sqlmodel import Session

from . import repository as repo
from .settings import settings
from .db import init_db, get_session
from .models import Category, EmailImportStatus, EmailMessage, GmailAccount, User
from .auth import (
    SESSION_KEY,
    connect_gmail_account,
    create_user_session,
    end_user_session,
    get_current_user,
    sign_in_with_google,
)
from .email_actions import archive_emails, trash_emails, unsubscribe_emails
from .errors import (
    ForeignKeyConstraintError,
    GmailAuthError,
    OAuthFlowError,
    RecordNotFoundError,
    UniqueConstraintError,
)
from .google_client import oauth_login, oauth_callback
from .logging_config import setup_logging
from .scheduler import start_scheduler, stop_scheduler
from .sync import sync_all_users, sync_user_inboxes

logger = logging.getLogger(__name__)

app = FastAPI(title=settings.APP_NAME)

app.add_middleware(
    SessionMiddleware,
    secret_key=settings.SECRET_KEY,
    same_site="lax",
    https_only=False,
    session_cookie="inbox_triage_session",
    max_age=60 * 60 * 24 * settings.SESSION_MAX_AGE_DAYS,
)

MAX_LIST_EMAILS = 200
NOT_TRASHED = {"not": EmailImportStatus.TRASHED}


class CategoryIn(BaseModel):
    name: str
    description: str = ""


class UnreadCountsIn(BaseModel):
    category_ids: List[str] = []
    last_seen_by_category_id: Dict[str, Optional[str]] = {}


class BulkEmailsIn(BaseModel):
    email_ids: List[str] = []


def _error(error: str, status_code: int) -> JSONResponse:
    return JSONResponse(content={"error": error}, status_code=status_code)


def _unauthorized() -> JSONResponse:
    return _error("unauthorized", 401)


def _parse_since(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _user_json(user: User) -> Dict[str, Any]:
    return user.model_dump(mode="json")


def _gmail_account_json(ga: GmailAccount) -> Dict[str, Any]:
    return ga.model_dump(mode="json", exclude={"refresh_token", "access_token", "token_expiry"})


def _email_json(e: EmailMessage, with_body: bool = False) -> Dict[str, Any]:
    exclude = set() if with_body else {"body_text", "body_html"}
    return e.model_dump(mode="json", exclude=exclude)


def _owned_category(session: Session, user: User, category_id: str) -> Optional[Category]:
    return repo.categories.find_first(session, where={"id": category_id, "user_id": user.id})


@app.exception_handler(RecordNotFoundError)
def _not_found(request: Request, exc: RecordNotFoundError):
    return _error("not_found", 404)


@app.exception_handler(UniqueConstraintError)
def _conflict(request: Request, exc: UniqueConstraintError):
    return _error("already_exists", 409)


@app.exception_handler(ForeignKeyConstraintError)
def _bad_reference(request: Request, exc: ForeignKeyConstraintError):
    return _error("invalid_reference", 400)


@app.exception_handler(GmailAuthError)
def _gmail_auth(request: Request, exc: GmailAuthError):
    logger.error(f"Gmail auth error: {exc}")
    return _error("gmail_auth_failed", 400)


@app.on_event("startup")
def _startup():
    setup_logging()
    if settings.SECRET_KEY == "change-me":
        logger.warning(
            "SECRET_KEY is still the default value 'change-me'. "
            "Session cookies and stored OAuth tokens are not protected; set SECRET_KEY in .env."
        )
    init_db()
    start_scheduler()


@app.on_event("shutdown")
def _shutdown():
    stop_scheduler()


@app.get("/")
def home(request: Request, session: Session = Depends(get_session)):
    user = get_current_user(request, session)
    return {"app": settings.APP_NAME, "authenticated": user is not None}


@app.get("/auth/google")
async def auth_google(request: Request):
    request.session["oauth_mode"] = request.query_params.get("mode", "login")
    return await oauth_login(request)


@app.get(settings.GOOGLE_REDIRECT_PATH)
async def auth_google_callback(request: Request, session: Session = Depends(get_session)):
    try:
        data = await oauth_callback(request)
    except OAuthFlowError as e:
        logger.error(f"OAuth callback error: {e}")
        return RedirectResponse("/?error=oauth_failed", status_code=HTTP_303_SEE_OTHER)

    token, userinfo = data["token"], data["userinfo"]
    oauth_mode = request.session.pop("oauth_mode", "login")
    try:
        if oauth_mode == "connect":
            user = get_current_user(request, session)
            if not user:
                return RedirectResponse("/", status_code=HTTP_303_SEE_OTHER)
            connect_gmail_account(session, user, token, userinfo)
        else:
            user = sign_in_with_google(session, token, userinfo)
            user_session = create_user_session(session, user)
            request.session[SESSION_KEY] = user_session.session_token
    except OAuthFlowError as e:
        logger.warning(f"Google {oauth_mode} rejected: {e}")
        return RedirectResponse(f"/?error={quote(str(e))}", status_code=HTTP_303_SEE_OTHER)

    return RedirectResponse("/", status_code=HTTP_303_SEE_OTHER)


@app.get("/auth/logout")
def logout(request: Request, session: Session = Depends(get_session)):
    end_user_session(request, session)
    request.session.clear()
    return RedirectResponse("/", status_code=HTTP_303_SEE_OTHER)


@app.get("/api/me")
def me(request: Request, session: Session = Depends(get_session)):
    user = get_current_user(request, session)
    if not user:
        return _unauthorized()
    gmail_accounts = repo.gmail_accounts.find_many(
        session, where={"user_id": user.id}, order_by={"created_at": "asc"}
    )
    return {
        "user": _user_json(user),
        "gmail_accounts": [_gmail_account_json(ga) for ga in gmail_accounts],
    }


@app.post("/api/accounts/{account_id}/disconnect")
def disconnect_account(account_id: str, request: Request, session: Session = Depends(get_session)):
    user = get_current_user(request, session)
    if not user:
        return _unauthorized()

    gmail_account = repo.gmail_accounts.find_first(
        session, where={"id": account_id, "user_id": user.id}
    )
    if not gmail_account:
        return _error("not_found", 404)

    email_count = repo.email_messages.count(session, where={"gmail_account_id": account_id})
    repo.gmail_accounts.delete(session, id=account_id)
    logger.info(
        f"Disconnected Gmail account {gmail_account.email} for user {user.email}. "
        f"Deleted {email_count} email records."
    )
    return {"ok": True, "deleted_emails": email_count}


@app.get("/api/categories")
def list_categories(request: Request, session: Session = Depends(get_session)):
    user = get_current_user(request, session)
    if not user:
        return _unauthorized()

    categories = repo.categories.find_many(
        session, where={"user_id": user.id}, order_by={"created_at": "asc"}
    )
    rows = repo.email_messages.group_by(
        session,
        by=["category_id"],
        where={"user_id": user.id, "import_status": NOT_TRASHED},
    )
    counts = {row["category_id"]: row["count"] for row in rows}
    return {
        "categories": [
            {**c.model_dump(mode="json"), "email_count": counts.get(c.id, 0)} for c in categories
        ]
    }


@app.post("/api/categories")
def create_category(body: CategoryIn, request: Request, session: Session = Depends(get_session)):
    user = get_current_user(request, session)
    if not user:
        return _unauthorized()

    name = body.name.strip()
    if not name:
        return _error("name_required", 400)
    category = repo.categories.create(
        session, {"user_id": user.id, "name": name, "description": body.description.strip()}
    )
    return JSONResponse(content=category.model_dump(mode="json"), status_code=201)


@app.delete("/api/categories/{category_id}")
def delete_category(category_id: str, request: Request, session: Session = Depends(get_session)):
    user = get_current_user(request, session)
    if not user:
        return _unauthorized()
    if not _owned_category(session, user, category_id):
        return _error("not_found", 404)
    repo.categories.delete(session, id=category_id)
    return {"ok": True}


@app.post("/api/categories/unread-counts")
def unread_counts(body: UnreadCountsIn, request: Request, session: Session = Depends(get_session)):
    user = get_current_user(request, session)
    if not user:
        return _unauthorized()
    if not body.category_ids:
        return {"ok": True, "counts": {}}

    owned = repo.categories.find_many(
        session, where={"user_id": user.id, "id": {"in": body.category_ids}}
    )
    owned_ids = {c.id for c in owned}

    counts: Dict[str, int] = {}
    for category_id in body.category_ids:
        if category_id not in owned_ids:
            continue
        where: Dict[str, Any] = {
            "user_id": user.id,
            "category_id": category_id,
            "import_status": NOT_TRASHED,
        }
        since = _parse_since(body.last_seen_by_category_id.get(category_id))
        if since:
            where["created_at"] = {"gt": since}
        counts[category_id] = repo.email_messages.count(session, where=where)
    return {"ok": True, "counts": counts}


@app.get("/api/categories/{category_id}/emails")
def category_emails(category_id: str, request: Request, session: Session = Depends(get_session)):
    user = get_current_user(request, session)
    if not user:
        return _unauthorized()

    category = _owned_category(session, user, category_id)
    if not category:
        return _error("not_found", 404)

    emails = repo.email_messages.find_many(
        session,
        where={"category_id": category_id, "user_id": user.id, "import_status": NOT_TRASHED},
        order_by=[{"internal_date_ms": "desc"}, {"created_at": "desc"}],
        take=MAX_LIST_EMAILS,
    )
    return {
        "category": category.model_dump(mode="json"),
        "emails": [_email_json(e) for e in emails],
    }


@app.get("/api/emails/{email_id}")
def email_detail(email_id: str, request: Request, session: Session = Depends(get_session)):
    user = get_current_user(request, session)
    if not user:
        return _unauthorized()

    email = repo.email_messages.find_first(session, where={"id": email_id, "user_id": user.id})
    if not email:
        return _error("not_found", 404)

    actions = repo.email_actions.find_many(
        session, where={"email_message_id": email.id}, order_by={"created_at": "asc"}
    )
    return {
        "email": _email_json(email, with_body=True),
        "actions": [a.model_dump(mode="json") for a in actions],
    }


def _bulk(request: Request, session: Session, body: BulkEmailsIn, run):
    user = get_current_user(request, session)
    if not user:
        return _unauthorized()
    if not body.email_ids:
        return _error("no_email_ids", 400)
    results = run(session, user.id, body.email_ids)
    return {"ok": True, "results": [r.to_dict() for r in results]}


@app.post("/api/emails/bulk-archive")
def bulk_archive(body: BulkEmailsIn, request: Request, session: Session = Depends(get_session)):
    return _bulk(request, session, body, archive_emails)


@app.post("/api/emails/bulk-trash")
def bulk_trash(body: BulkEmailsIn, request: Request, session: Session = Depends(get_session)):
    return _bulk(request, session, body, trash_emails)


@app.post("/api/emails/bulk-unsubscribe")
def bulk_unsubscribe(body: BulkEmailsIn, request: Request, session: Session = Depends(get_session)):
    return _bulk(request, session, body, unsubscribe_emails)


@app.post("/api/sync")
def sync_now(request: Request, session: Session = Depends(get_session)):
    user = get_current_user(request, session)
    if not user:
        return _unauthorized()
    results = sync_user_inboxes(session, user.id, settings.SYNC_MAX_PER_INBOX)
    return {"ok": True, "inboxes": [r.to_dict() for r in results]}


@app.post("/api/cron/sync")
def cron_sync(request: Request, session: Session = Depends(get_session)):
    auth_header = request.headers.get("Authorization", "")
    token = auth_header[len("Bearer "):] if auth_header.startswith("Bearer ") else None
    if not settings.CRON_SECRET or token != settings.CRON_SECRET:
        return _unauthorized()
    results = sync_all_users(session, settings.SYNC_MAX_PER_INBOX)
    return {"ok": True, "results": results}
