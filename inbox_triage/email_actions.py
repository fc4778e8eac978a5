"""
Archive, trash and unsubscribe actions on imported messages.

Every attempt is recorded as an EmailAction that starts PENDING and ends either
SUCCEEDED or FAILED once the Gmail/HTTP call returns. Bulk operations process
messages one by one; a failing message is recorded and the batch continues.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import httpx
from sqlmodel import Session

from . import repository as repo
from .errors import InvalidActionTransitionError
from .gmail_service import archive_message, trash_message
from .google_client import build_gmail_service
from .models import (
    EmailAction,
    EmailActionStatus,
    EmailActionType,
    EmailImportStatus,
    EmailMessage,
    GmailAccount,
)
from .settings import settings
from .unsubscribe import (
    METHOD_HTTP,
    METHOD_MAILTO,
    METHOD_ONE_CLICK,
    attempt_link_unsubscribe,
    attempt_one_click_unsubscribe,
    choose_unsubscribe_method,
    extract_unsubscribe_links,
)

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    EmailActionStatus.PENDING: {EmailActionStatus.SUCCEEDED, EmailActionStatus.FAILED},
    EmailActionStatus.SUCCEEDED: set(),
    EmailActionStatus.FAILED: set(),
}

GmailServiceFactory = Callable[[GmailAccount], Any]


@dataclass
class ActionResult:
    id: str
    ok: bool
    method: Optional[str] = None
    url: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in self.__dict__.items() if v is not None}


def start_action(
    session: Session,
    message: EmailMessage,
    action_type: EmailActionType,
    details: Optional[Dict[str, Any]] = None,
) -> EmailAction:
    return repo.email_actions.create(
        session,
        {"email_message_id": message.id, "type": action_type, "details": details},
    )


def _transition(
    session: Session,
    action: EmailAction,
    status: EmailActionStatus,
    details: Optional[Dict[str, Any]],
) -> EmailAction:
    if status not in ALLOWED_TRANSITIONS[EmailActionStatus(action.status)]:
        raise InvalidActionTransitionError(
            f"EmailAction {action.id} cannot move from {action.status.value} to {status.value}"
        )
    data: Dict[str, Any] = {"status": status}
    if details:
        data["details"] = {**(action.details or {}), **details}
    return repo.email_actions.update(session, {"id": action.id}, data)


def complete_action(
    session: Session, action: EmailAction, details: Optional[Dict[str, Any]] = None
) -> EmailAction:
    return _transition(session, action, EmailActionStatus.SUCCEEDED, details)


def fail_action(
    session: Session,
    action: EmailAction,
    error: str,
    details: Optional[Dict[str, Any]] = None,
) -> EmailAction:
    return _transition(session, action, EmailActionStatus.FAILED, {**(details or {}), "error": error})


def _owned_messages(session: Session, user_id: str, email_ids: List[str]) -> List[EmailMessage]:
    return repo.email_messages.find_many(
        session, where={"user_id": user_id, "id": {"in": email_ids}}
    )


def _gmail_action(
    session: Session,
    user_id: str,
    email_ids: List[str],
    action_type: EmailActionType,
    call: Callable[[Any, str, str], Any],
    new_status: EmailImportStatus,
    service_factory: GmailServiceFactory,
) -> List[ActionResult]:
    results: List[ActionResult] = []
    services: Dict[str, Any] = {}
    for message in _owned_messages(session, user_id, email_ids):
        action = start_action(session, message, action_type)
        try:
            if message.gmail_account_id not in services:
                gmail_account = repo.gmail_accounts.find_unique_or_throw(
                    session, id=message.gmail_account_id
                )
                services[message.gmail_account_id] = service_factory(gmail_account)
                session.add(gmail_account)
                session.commit()
            call(services[message.gmail_account_id], "me", message.gmail_message_id)
        except Exception as e:
            logger.warning(f"{action_type.value} failed for email {message.id}: {e}")
            session.rollback()
            fail_action(session, action, str(e))
            results.append(ActionResult(id=message.id, ok=False, error=f"{action_type.value.lower()}_failed"))
            continue

        repo.email_messages.update(session, {"id": message.id}, {"import_status": new_status})
        complete_action(session, action)
        results.append(ActionResult(id=message.id, ok=True))
    return results


def archive_emails(
    session: Session,
    user_id: str,
    email_ids: List[str],
    service_factory: GmailServiceFactory = build_gmail_service,
) -> List[ActionResult]:
    return _gmail_action(
        session, user_id, email_ids, EmailActionType.ARCHIVE, archive_message,
        EmailImportStatus.ARCHIVED, service_factory,
    )


def trash_emails(
    session: Session,
    user_id: str,
    email_ids: List[str],
    service_factory: GmailServiceFactory = build_gmail_service,
) -> List[ActionResult]:
    # Trashed rows are kept (status TRASHED) so their action history survives.
    return _gmail_action(
        session, user_id, email_ids, EmailActionType.TRASH, trash_message,
        EmailImportStatus.TRASHED, service_factory,
    )


def _unsubscribe_http_client() -> httpx.Client:
    return httpx.Client(
        headers={"User-Agent": settings.UNSUBSCRIBE_USER_AGENT},
        timeout=settings.UNSUBSCRIBE_TIMEOUT_SECONDS,
    )


def unsubscribe_email(session: Session, http_client, message: EmailMessage) -> ActionResult:
    links = message.unsubscribe_links
    if links is None:
        links = extract_unsubscribe_links(
            message.list_unsubscribe, None, message.body_text, message.body_html
        )
        repo.email_messages.update(session, {"id": message.id}, {"unsubscribe_links": links})

    method, url = choose_unsubscribe_method(links)
    action = start_action(session, message, EmailActionType.UNSUBSCRIBE_ATTEMPT, {"method": method, "url": url})

    if method == METHOD_MAILTO:
        fail_action(session, action, "mailto_unsubscribe_not_supported")
        return ActionResult(id=message.id, ok=False, method=method, url=url, error="mailto_unsubscribe_not_supported")
    if method not in (METHOD_ONE_CLICK, METHOD_HTTP):
        fail_action(session, action, "no_unsubscribe_link_found")
        return ActionResult(id=message.id, ok=False, method=method, error="no_unsubscribe_link_found")

    try:
        if method == METHOD_ONE_CLICK:
            ok, status_code, detail = attempt_one_click_unsubscribe(http_client, url)
        else:
            ok, status_code, detail = attempt_link_unsubscribe(http_client, url)
    except Exception as e:
        logger.warning(f"Unsubscribe request failed for email {message.id}: {e}")
        fail_action(session, action, str(e))
        return ActionResult(id=message.id, ok=False, method=method, url=url, error="unsubscribe_failed")

    if ok:
        complete_action(session, action, {"status": status_code, "detail": detail})
        return ActionResult(id=message.id, ok=True, method=method, url=url)
    fail_action(session, action, detail, {"status": status_code})
    return ActionResult(id=message.id, ok=False, method=method, url=url, error=f"{method}_unsubscribe_failed")


def unsubscribe_emails(
    session: Session,
    user_id: str,
    email_ids: List[str],
    http_client=None,
) -> List[ActionResult]:
    owns_client = http_client is None
    client = http_client or _unsubscribe_http_client()
    results: List[ActionResult] = []
    try:
        for message in _owned_messages(session, user_id, email_ids):
            message_id = message.id
            try:
                results.append(unsubscribe_email(session, client, message))
            except Exception as e:
                logger.error(f"Unsubscribe failed for email {message_id}: {e}", exc_info=True)
                session.rollback()
                results.append(ActionResult(id=message_id, ok=False, error="unsubscribe_failed"))
    finally:
        if owns_client:
            client.close()
    logger.info(
        f"Unsubscribe batch for user {user_id}: "
        f"{sum(r.ok for r in results)}/{len(results)} succeeded"
    )
    return results
