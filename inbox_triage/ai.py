from __future__ import annotations
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, List, Optional
from urllib.parse import urlparse
from openai import OpenAI
from pydantic import BaseModel, ValidationError, constr
from .settings import settings
from .models import Category

logger = logging.getLogger(__name__)

MAX_BODY_CHARS = 6000
MAX_UNSUBSCRIBE_URLS = 10
NO_SUMMARY = "(No summary available.)"

SYSTEM_PROMPT = (
    "You classify emails into user-defined categories, write concise summaries, "
    "and extract unsubscribe URLs when present. Respond with ONLY valid JSON."
)

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)


class _AiResult(BaseModel):
    category_name: constr(strip_whitespace=True, min_length=1)
    summary: constr(strip_whitespace=True, min_length=1)
    unsubscribe_urls: List[str] = []


@dataclass
class Classification:
    category_id: Optional[str]
    summary: str
    unsubscribe_urls: List[str] = field(default_factory=list)


def _client() -> OpenAI:
    return OpenAI(api_key=settings.OPENAI_API_KEY)


def _safe_json(text: str) -> Any:
    try:
        return json.loads(text)
    except (TypeError, ValueError):
        # Models sometimes wrap the JSON in a code fence.
        fence = _FENCE_RE.search(text or "")
        if fence:
            try:
                return json.loads(fence.group(1))
            except ValueError:
                return None
        return None


def _is_http_url(raw: str) -> bool:
    try:
        parsed = urlparse(raw)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def _build_prompt(categories: List[Category], subject, from_email, snippet, body_text) -> str:
    categories_text = "\n".join(f"- {c.name}: {c.description}" for c in categories)
    email_parts = [
        f"Subject: {subject}" if subject else "",
        f"From: {from_email}" if from_email else "",
        f"Snippet: {snippet}" if snippet else "",
        f"Body:\n{body_text[:MAX_BODY_CHARS]}" if body_text else "",
    ]
    email_text = "\n\n".join(p for p in email_parts if p)
    return "\n".join(
        [
            "Categories (name + description):",
            categories_text or "(no categories provided)",
            "",
            "Email:",
            email_text or "(no email content provided)",
            "",
            'Return JSON: {"category_name": "...", "summary": "...", "unsubscribe_urls": ["https://..."]}',
            "Rules:",
            "- category_name MUST exactly match one of the provided category names when possible.",
            "- summary should be 2-5 sentences, capturing action items and key details.",
            "- If the email contains an unsubscribe link in the body, include it in unsubscribe_urls.",
            "- unsubscribe_urls should include only http/https URLs that look like unsubscribe or preference opt-out endpoints.",
            "- If none found, use an empty array.",
        ]
    )


def classify_and_summarize_email(
    categories: List[Category],
    subject: Optional[str],
    from_email: Optional[str],
    snippet: Optional[str],
    body_text: Optional[str],
) -> Classification:
    """Pick a category and write a summary with a single chat completion.

    Anything unusable in the reply falls back to the first category and the snippet.
    """
    fallback = Classification(
        category_id=categories[0].id if categories else None,
        summary=snippet or NO_SUMMARY,
    )
    if not settings.OPENAI_API_KEY:
        logger.warning("OPENAI_API_KEY not set, using fallback classification")
        return fallback

    resp = _client().chat.completions.create(
        model=settings.OPENAI_MODEL,
        temperature=0,
        response_format={"type": "json_object"},
        messages=[
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": _build_prompt(categories, subject, from_email, snippet, body_text)},
        ],
    )
    content = resp.choices[0].message.content or ""
    try:
        parsed = _AiResult.model_validate(_safe_json(content))
    except ValidationError:
        logger.warning(f"Unusable classification reply, falling back: {content[:200]!r}")
        return fallback

    match = next((c for c in categories if c.name == parsed.category_name), None)
    urls = [u for u in parsed.unsubscribe_urls if _is_http_url(u)][:MAX_UNSUBSCRIBE_URLS]
    return Classification(
        category_id=match.id if match else fallback.category_id,
        summary=parsed.summary,
        unsubscribe_urls=urls,
    )
