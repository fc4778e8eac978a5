from __future__ import annotations
import logging
import re
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urljoin
from bs4 import BeautifulSoup

logger = logging.getLogger(__name__)

_BRACKETED_RE = re.compile(r"<([^>]+)>")
_URL_RE = re.compile(r"https?://[^\s\"'<>]+")
_ONE_CLICK_RE = re.compile(r"list-unsubscribe\s*=\s*one-click", re.IGNORECASE)

SUCCESS_STATUS = range(200, 400)

METHOD_ONE_CLICK = "one_click"
METHOD_HTTP = "http"
METHOD_MAILTO = "mailto"
METHOD_NONE = "none"


def _uniq(items: List[str]) -> List[str]:
    return list(dict.fromkeys(items))


def _html_to_text(html: str) -> str:
    if not html:
        return ""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style"]):
        tag.decompose()
    hrefs = " ".join(a.get("href", "") for a in soup.find_all("a", href=True))
    return f"{soup.get_text(' ')} {hrefs}"


def is_one_click(list_unsubscribe_post: Optional[str]) -> bool:
    """RFC 8058: ``List-Unsubscribe-Post: List-Unsubscribe=One-Click``."""
    value = (list_unsubscribe_post or "").strip()
    return bool(value) and bool(_ONE_CLICK_RE.search(value))


def extract_unsubscribe_links(
    list_unsubscribe: Optional[str] = None,
    list_unsubscribe_post: Optional[str] = None,
    body_text: Optional[str] = None,
    body_html: Optional[str] = None,
) -> Dict[str, Any]:
    """Collect unsubscribe targets from the List-Unsubscribe header and the body.

    The result is stored as-is in ``EmailMessage.unsubscribe_links``.
    """
    http_links: List[str] = []
    mailto_links: List[str] = []
    guessed_links: List[str] = []

    header = list_unsubscribe or ""
    bracketed = [m.strip() for m in _BRACKETED_RE.findall(header)]
    raw_parts = bracketed if bracketed else header.split(",")
    for part in raw_parts:
        value = part.strip()
        lower = value.lower()
        if lower.startswith("mailto:"):
            mailto_links.append(value)
        elif lower.startswith("http://") or lower.startswith("https://"):
            http_links.append(value)

    text = f"{body_text or ''}\n{_html_to_text(body_html or '')}"
    for url in _URL_RE.findall(text):
        if "unsub" in url.lower():
            guessed_links.append(url)

    return {
        "http_links": _uniq(http_links),
        "mailto_links": _uniq(mailto_links),
        "guessed_links": _uniq(guessed_links),
        "one_click": bool(http_links) and is_one_click(list_unsubscribe_post),
    }


def choose_unsubscribe_method(links: Optional[Dict[str, Any]]) -> Tuple[str, Optional[str]]:
    links = links or {}
    http_links = links.get("http_links") or []
    guessed_links = links.get("guessed_links") or []
    mailto_links = links.get("mailto_links") or []
    if http_links and links.get("one_click"):
        return METHOD_ONE_CLICK, http_links[0]
    if http_links or guessed_links:
        return METHOD_HTTP, (http_links or guessed_links)[0]
    if mailto_links:
        return METHOD_MAILTO, mailto_links[0]
    return METHOD_NONE, None


def attempt_one_click_unsubscribe(http_client, url: str) -> Tuple[bool, int, str]:
    logger.info(f"Attempting one-click unsubscribe: {url}")
    response = http_client.post(
        url,
        content="List-Unsubscribe=One-Click",
        headers={"Content-Type": "application/x-www-form-urlencoded"},
        follow_redirects=True,
    )
    logger.info(f"One-click unsubscribe response status: {response.status_code}")
    if response.status_code in SUCCESS_STATUS:
        return True, response.status_code, f"One-click unsubscribe successful (status {response.status_code})"
    return False, response.status_code, f"One-click unsubscribe returned status {response.status_code}"


def _find_unsubscribe_form(soup: BeautifulSoup):
    for form in soup.find_all("form"):
        action = (form.get("action") or "").lower()
        if "unsubscribe" in action or "unsubscribe" in form.get_text().lower():
            return form
    return None


def _form_fields(form) -> Dict[str, str]:
    form_data = {}
    for input_tag in form.find_all("input"):
        input_type = (input_tag.get("type") or "text").lower()
        input_name = input_tag.get("name") or ""
        if input_type in ("text", "email", "hidden") and input_name:
            form_data[input_name] = input_tag.get("value") or ""
    return form_data


def attempt_link_unsubscribe(http_client, url: str) -> Tuple[bool, int, str]:
    """Open an unsubscribe link; submit the page's unsubscribe form when it has one."""
    logger.info(f"Attempting link unsubscribe: {url}")
    response = http_client.get(url, follow_redirects=True)
    if response.status_code not in SUCCESS_STATUS:
        return False, response.status_code, f"Failed to fetch unsubscribe page (status {response.status_code})"

    soup = BeautifulSoup(response.text or "", "html.parser")
    form = _find_unsubscribe_form(soup)
    if form is None:
        return True, response.status_code, f"Unsubscribe link opened (status {response.status_code})"

    form_action = form.get("action") or ""
    submit_url = urljoin(str(response.url or url), form_action) if form_action else url
    form_method = (form.get("method") or "GET").upper()
    form_data = _form_fields(form)
    logger.info(f"Submitting unsubscribe form to {submit_url} via {form_method}, fields: {list(form_data)}")

    if form_method == "POST":
        submitted = http_client.post(submit_url, data=form_data, follow_redirects=True)
    else:
        submitted = http_client.get(submit_url, params=form_data, follow_redirects=True)

    if submitted.status_code in SUCCESS_STATUS:
        return True, submitted.status_code, f"Unsubscribe form submitted (status {submitted.status_code})"
    return False, submitted.status_code, f"Unsubscribe form returned status {submitted.status_code}"
