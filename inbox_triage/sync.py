"""
Gmail ingestion: pull new inbox messages, classify + summarise them, store them
and archive them in Gmail.

A mailbox with a ``last_history_id`` watermark is synced incrementally from the
Gmail history API; without one, or when Gmail no longer accepts the watermark,
a query sync (``SYNC_QUERY``) runs and the watermark is re-seeded from the
mailbox profile.
"""
from __future__ import annotations
import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from googleapiclient.errors import HttpError
from sqlmodel import Session

from . import repository as repo
from .ai import classify_and_summarize_email
from .email_actions import complete_action, fail_action, start_action
from .errors import UniqueConstraintError
from .gmail_service import (
    archive_message,
    fetch_full_message,
    get_profile_history_id,
    list_history_message_ids,
    list_message_ids,
)
from .google_client import build_gmail_service
from .models import (
    Category,
    EmailActionType,
    EmailImportStatus,
    EmailMessage,
    GmailAccount,
)
from .settings import settings
from .unsubscribe import extract_unsubscribe_links

logger = logging.getLogger(__name__)

UNCATEGORIZED_NAME = "Uncategorized"
UNCATEGORIZED_DESCRIPTION = "Catch-all category for emails that do not match other categories."

# Gmail answers 404 (sometimes 400) when startHistoryId is too old.
_STALE_HISTORY_STATUSES = (400, 404)

GmailServiceFactory = Callable[[GmailAccount], Any]


@dataclass
class InboxSyncResult:
    gmail_account_id: str
    email: str
    imported: int = 0
    skipped: int = 0
    failed: int = 0
    mode: str = "query"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def ensure_categories(session: Session, user_id: str) -> List[Category]:
    categories = repo.categories.find_many(
        session, where={"user_id": user_id}, order_by={"created_at": "asc"}
    )
    if categories:
        return categories
    return [
        repo.categories.create(
            session,
            {"user_id": user_id, "name": UNCATEGORIZED_NAME, "description": UNCATEGORIZED_DESCRIPTION},
        )
    ]


def _joined_at_ms(gmail_account: GmailAccount) -> int:
    # created_at is naive UTC
    return int((gmail_account.created_at - datetime(1970, 1, 1)).total_seconds() * 1000)


def import_message(
    session: Session,
    gmail_service,
    gmail_account: GmailAccount,
    categories: List[Category],
    gmail_message_id: str,
) -> Optional[EmailMessage]:
    """Import one Gmail message; None when it was skipped."""
    already = repo.email_messages.find_unique(
        session, gmail_account_id=gmail_account.id, gmail_message_id=gmail_message_id
    )
    if already:
        return None

    fetched = fetch_full_message(gmail_service, gmail_message_id)
    # Only mail that arrived after the mailbox was connected is imported (and archived).
    if fetched.internal_date_ms and fetched.internal_date_ms < _joined_at_ms(gmail_account):
        return None

    ai = classify_and_summarize_email(
        categories,
        subject=fetched.subject,
        from_email=fetched.from_email,
        snippet=fetched.snippet,
        body_text=fetched.body_text,
    )
    links = extract_unsubscribe_links(
        fetched.list_unsubscribe,
        fetched.list_unsubscribe_post,
        fetched.body_text,
        fetched.body_html,
    )
    links["guessed_links"] = list(dict.fromkeys(links["guessed_links"] + ai.unsubscribe_urls))

    try:
        message = repo.email_messages.create(
            session,
            {
                "user_id": gmail_account.user_id,
                "gmail_account_id": gmail_account.id,
                "category_id": ai.category_id or categories[0].id,
                "gmail_message_id": fetched.gmail_message_id,
                "gmail_thread_id": fetched.gmail_thread_id,
                "internal_date_ms": fetched.internal_date_ms,
                "from_name": fetched.from_name,
                "from_email": fetched.from_email,
                "subject": fetched.subject,
                "snippet": fetched.snippet,
                "body_text": fetched.body_text,
                "body_html": fetched.body_html,
                "summary": ai.summary,
                "list_unsubscribe": fetched.list_unsubscribe,
                "unsubscribe_links": links,
            },
        )
    except UniqueConstraintError:
        # Imported concurrently by another sync.
        logger.info(f"Message {gmail_message_id} already imported for {gmail_account.email}")
        return None

    action = start_action(session, message, EmailActionType.ARCHIVE, {"source": "sync"})
    try:
        archive_message(gmail_service, "me", message.gmail_message_id)
    except Exception as archive_error:
        logger.warning(f"Failed to archive email {message.gmail_message_id}: {archive_error}")
        fail_action(session, action, str(archive_error))
        return message

    complete_action(session, action)
    return repo.email_messages.update(
        session, {"id": message.id}, {"import_status": EmailImportStatus.ARCHIVED}
    )


def _import_all(
    session: Session,
    gmail_service,
    gmail_account: GmailAccount,
    categories: List[Category],
    message_ids: List[str],
    result: InboxSyncResult,
) -> None:
    for mid in message_ids:
        try:
            imported = import_message(session, gmail_service, gmail_account, categories, mid)
        except Exception as e:
            logger.error(f"Error processing email {mid} for {gmail_account.email}: {e}")
            session.rollback()
            result.failed += 1
            continue
        if imported is None:
            result.skipped += 1
        else:
            result.imported += 1


def _is_stale_history(error: HttpError) -> bool:
    status = getattr(error.resp, "status", None)
    try:
        return int(status) in _STALE_HISTORY_STATUSES
    except (TypeError, ValueError):
        return False


def sync_gmail_account(
    session: Session,
    gmail_service,
    gmail_account: GmailAccount,
    categories: List[Category],
    max_results: Optional[int] = None,
) -> InboxSyncResult:
    max_results = max_results or settings.SYNC_MAX_PER_INBOX
    result = InboxSyncResult(gmail_account_id=gmail_account.id, email=gmail_account.email)

    message_ids: Optional[List[str]] = None
    new_history_id: Optional[str] = None
    if gmail_account.last_history_id:
        try:
            message_ids, new_history_id = list_history_message_ids(
                gmail_service, "me", gmail_account.last_history_id
            )
            result.mode = "history"
        except HttpError as e:
            if not _is_stale_history(e):
                raise
            logger.warning(
                f"Invalid startHistoryId for {gmail_account.email}, falling back to query sync"
            )

    if message_ids is None:
        message_ids = list_message_ids(gmail_service, "me", settings.SYNC_QUERY, max_results=max_results)
        new_history_id = get_profile_history_id(gmail_service)

    _import_all(session, gmail_service, gmail_account, categories, message_ids, result)

    data: Dict[str, Any] = {"last_synced_at": datetime.utcnow()}
    # Failed ids are retried next tick from the old watermark; imported ones dedupe.
    if new_history_id and not result.failed:
        data["last_history_id"] = new_history_id
    elif result.failed:
        logger.warning(
            f"Keeping history watermark for {gmail_account.email}: {result.failed} message(s) failed"
        )
    repo.gmail_accounts.update(session, {"id": gmail_account.id}, data)

    logger.info(
        f"{result.mode.capitalize()} sync for {gmail_account.email}: "
        f"imported={result.imported} skipped={result.skipped} failed={result.failed}"
    )
    return result


def sync_user_inboxes(
    session: Session,
    user_id: str,
    max_per_inbox: Optional[int] = None,
    service_factory: GmailServiceFactory = build_gmail_service,
) -> List[InboxSyncResult]:
    gmail_accounts = repo.gmail_accounts.find_many(
        session, where={"user_id": user_id}, order_by={"created_at": "asc"}
    )
    categories = ensure_categories(session, user_id)

    results = []
    for gmail_account in gmail_accounts:
        gmail_service = service_factory(gmail_account)
        # persist the refreshed access token
        session.add(gmail_account)
        session.commit()
        results.append(
            sync_gmail_account(session, gmail_service, gmail_account, categories, max_per_inbox)
        )
    return results


def sync_all_users(
    session: Session,
    max_per_inbox: Optional[int] = None,
    service_factory: GmailServiceFactory = build_gmail_service,
) -> List[Dict[str, Any]]:
    """Sync every user that has a connected mailbox; one user's failure never stops the rest."""
    user_ids = [
        row["user_id"] for row in repo.gmail_accounts.group_by(session, by=["user_id"], count=False)
    ]
    results: List[Dict[str, Any]] = []
    for user_id in user_ids:
        try:
            inboxes = sync_user_inboxes(session, user_id, max_per_inbox, service_factory)
            results.append({"user_id": user_id, "inboxes": [r.to_dict() for r in inboxes]})
        except Exception as e:
            logger.error(f"Sync failed for user {user_id}: {e}", exc_info=True)
            session.rollback()
            results.append({"user_id": user_id, "error": str(e)})
    return results
