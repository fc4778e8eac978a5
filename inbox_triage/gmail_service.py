from __future__ import annotations
import base64
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
from bs4 import BeautifulSoup

# Name <a@b.com> | "Name, Inc." <a@b.com> | a@b.com
_FROM_RE = re.compile(r'^(?:"?([^"]*)"?\s)?<?([^<>\s]+@[^<>\s]+)>?$')


@dataclass
class FetchedMessage:
    gmail_message_id: str
    gmail_thread_id: Optional[str] = None
    internal_date_ms: Optional[int] = None
    subject: Optional[str] = None
    snippet: Optional[str] = None
    from_name: Optional[str] = None
    from_email: Optional[str] = None
    list_unsubscribe: Optional[str] = None
    list_unsubscribe_post: Optional[str] = None
    body_text: Optional[str] = None
    body_html: Optional[str] = None


def _b64url_decode(data: str) -> bytes:
    return base64.urlsafe_b64decode(data + "===")


def extract_headers(msg: Dict[str, Any]) -> Dict[str, str]:
    headers = msg.get("payload", {}).get("headers", [])
    out = {}
    for h in headers:
        name = h.get("name", "")
        value = h.get("value", "")
        if name:
            out[name.lower()] = value
    return out


def _walk_parts(payload: Dict[str, Any]) -> List[Dict[str, Any]]:
    # Depth-first, in document order.
    parts = []
    stack = [payload]
    while stack:
        p = stack.pop()
        parts.append(p)
        children = p.get("parts") or []
        stack.extend(reversed(children))
    return parts


def extract_bodies(msg: Dict[str, Any]) -> Tuple[Optional[str], Optional[str]]:
    payload = msg.get("payload") or {}
    text, html = None, None
    for p in _walk_parts(payload):
        mime = p.get("mimeType", "")
        body = p.get("body", {}) or {}
        data = body.get("data")
        if not data:
            continue
        content = _b64url_decode(data).decode("utf-8", errors="replace")
        if mime == "text/plain" and text is None:
            text = content
        if mime == "text/html" and html is None:
            html = content
    # Fallback: if only HTML, produce a readable text version
    if text is None and html:
        soup = BeautifulSoup(html, "lxml")
        text = soup.get_text("\n")
    return text, html


def parse_internal_date_ms(msg: Dict[str, Any]) -> Optional[int]:
    ms = msg.get("internalDate")
    if not ms:
        return None
    try:
        return int(ms)
    except (TypeError, ValueError):
        return None


def parse_from_header(from_header: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """Split a From header into (name, email)."""
    if not from_header:
        return None, None
    match = _FROM_RE.match(from_header.strip())
    if not match:
        return from_header, None
    from_name = (match.group(1) or "").strip() or None
    from_email = (match.group(2) or "").strip() or None
    return from_name, from_email


def fetch_full_message(gmail_service, message_id: str, user_id: str = "me") -> FetchedMessage:
    full = (
        gmail_service.users()
        .messages()
        .get(userId=user_id, id=message_id, format="full")
        .execute()
    )
    headers = extract_headers(full)
    from_name, from_email = parse_from_header(headers.get("from"))
    body_text, body_html = extract_bodies(full)
    return FetchedMessage(
        gmail_message_id=full.get("id") or message_id,
        gmail_thread_id=full.get("threadId"),
        internal_date_ms=parse_internal_date_ms(full),
        subject=headers.get("subject"),
        snippet=full.get("snippet"),
        from_name=from_name,
        from_email=from_email,
        list_unsubscribe=headers.get("list-unsubscribe"),
        list_unsubscribe_post=headers.get("list-unsubscribe-post"),
        body_text=body_text,
        body_html=body_html,
    )


def archive_message(gmail_service, user_id: str, message_id: str):
    gmail_service.users().messages().modify(
        userId=user_id,
        id=message_id,
        body={"removeLabelIds": ["INBOX"]},
    ).execute()


def trash_message(gmail_service, user_id: str, message_id: str):
    gmail_service.users().messages().trash(userId=user_id, id=message_id).execute()


def list_message_ids(
    gmail_service, user_id: str, q: str, max_results: int = 10
) -> List[str]:
    resp = (
        gmail_service.users()
        .messages()
        .list(userId=user_id, q=q, maxResults=max_results)
        .execute()
    )
    msgs = resp.get("messages", []) or []
    return [m["id"] for m in msgs if "id" in m]


def list_history_message_ids(
    gmail_service, user_id: str, start_history_id: str, max_results: int = 100
) -> Tuple[List[str], str]:
    """Message ids added to INBOX since ``start_history_id`` and the new watermark.

    Raises googleapiclient's HttpError when Gmail no longer knows the watermark.
    """
    message_ids: List[str] = []
    new_history_id = start_history_id
    page_token = None
    while True:
        resp = (
            gmail_service.users()
            .history()
            .list(
                userId=user_id,
                startHistoryId=start_history_id,
                historyTypes=["messageAdded"],
                labelId="INBOX",
                maxResults=max_results,
                pageToken=page_token,
            )
            .execute()
        )
        for record in resp.get("history", []) or []:
            for added in record.get("messagesAdded", []) or []:
                msg_id = (added.get("message") or {}).get("id")
                if msg_id and msg_id not in message_ids:
                    message_ids.append(msg_id)
            new_history_id = record.get("id", new_history_id)
        new_history_id = resp.get("historyId", new_history_id)
        page_token = resp.get("nextPageToken")
        if not page_token:
            break
    return message_ids, str(new_history_id)


def get_profile_history_id(gmail_service, user_id: str = "me") -> Optional[str]:
    profile = gmail_service.users().getProfile(userId=user_id).execute()
    history_id = profile.get("historyId")
    return str(history_id) if history_id else None
