from __future__ import annotations
import pytest
import httpx
from unittest.mock import MagicMock, Mock

from inbox_triage.unsubscribe import (
    METHOD_HTTP,
    METHOD_MAILTO,
    METHOD_NONE,
    METHOD_ONE_CLICK,
    attempt_link_unsubscribe,
    attempt_one_click_unsubscribe,
    choose_unsubscribe_method,
    extract_unsubscribe_links,
    is_one_click,
)


def test_is_one_click():
    assert is_one_click("List-Unsubscribe=One-Click") is True
    assert is_one_click("list-unsubscribe = one-click") is True
    assert is_one_click("") is False
    assert is_one_click(None) is False


def test_extract_links_from_header():
    links = extract_unsubscribe_links(
        list_unsubscribe="<mailto:unsub@example.com?subject=stop>, <https://example.com/unsubscribe?u=1>",
        list_unsubscribe_post="List-Unsubscribe=One-Click",
    )

    assert links["http_links"] == ["https://example.com/unsubscribe?u=1"]
    assert links["mailto_links"] == ["mailto:unsub@example.com?subject=stop"]
    assert links["guessed_links"] == []
    assert links["one_click"] is True


def test_extract_links_unbracketed_header():
    links = extract_unsubscribe_links(list_unsubscribe="https://example.com/u, mailto:u@example.com")

    assert links["http_links"] == ["https://example.com/u"]
    assert links["mailto_links"] == ["mailto:u@example.com"]
    assert links["one_click"] is False


def test_one_click_requires_http_link():
    links = extract_unsubscribe_links(
        list_unsubscribe="<mailto:unsub@example.com>",
        list_unsubscribe_post="List-Unsubscribe=One-Click",
    )
    assert links["one_click"] is False


def test_extract_links_guessed_from_body():
    html = """
    <html><body>
      <a href="https://news.example.com/unsubscribe?id=42">Unsubscribe</a>
      <a href="https://news.example.com/article">Read more</a>
      <a href="https://news.example.com/unsubscribe?id=42">Unsubscribe again</a>
    </body></html>
    """
    links = extract_unsubscribe_links(
        body_text="Manage mail at https://news.example.com/prefs/unsub-all today",
        body_html=html,
    )

    assert links["http_links"] == []
    assert links["guessed_links"] == [
        "https://news.example.com/prefs/unsub-all",
        "https://news.example.com/unsubscribe?id=42",
    ]


def test_extract_links_nothing_found():
    links = extract_unsubscribe_links(body_text="Hi, lunch tomorrow?")

    assert links == {"http_links": [], "mailto_links": [], "guessed_links": [], "one_click": False}


@pytest.mark.parametrize(
    "links, expected",
    [
        ({"http_links": ["https://a/u"], "one_click": True}, (METHOD_ONE_CLICK, "https://a/u")),
        ({"http_links": ["https://a/u"], "one_click": False}, (METHOD_HTTP, "https://a/u")),
        ({"guessed_links": ["https://b/unsub"], "mailto_links": ["mailto:x@y"]}, (METHOD_HTTP, "https://b/unsub")),
        ({"mailto_links": ["mailto:x@y"]}, (METHOD_MAILTO, "mailto:x@y")),
        ({}, (METHOD_NONE, None)),
        (None, (METHOD_NONE, None)),
    ],
)
def test_choose_unsubscribe_method(links, expected):
    assert choose_unsubscribe_method(links) == expected


def test_attempt_one_click_unsubscribe_success():
    http_client = MagicMock()
    response = Mock()
    response.status_code = 200
    http_client.post.return_value = response

    ok, status, detail = attempt_one_click_unsubscribe(http_client, "https://example.com/unsubscribe")

    assert ok is True
    assert status == 200
    assert "successful" in detail
    call_kwargs = http_client.post.call_args.kwargs
    assert call_kwargs["content"] == "List-Unsubscribe=One-Click"
    assert call_kwargs["headers"]["Content-Type"] == "application/x-www-form-urlencoded"


def test_attempt_one_click_unsubscribe_failure():
    http_client = MagicMock()
    response = Mock()
    response.status_code = 500
    http_client.post.return_value = response

    ok, status, detail = attempt_one_click_unsubscribe(http_client, "https://example.com/unsubscribe")

    assert ok is False
    assert status == 500


def test_attempt_link_unsubscribe_without_form():
    def handler(request):
        return httpx.Response(200, text="<html><body>You have been unsubscribed.</body></html>")

    with httpx.Client(transport=httpx.MockTransport(handler)) as http_client:
        ok, status, detail = attempt_link_unsubscribe(http_client, "https://example.com/unsubscribe?id=1")

    assert ok is True
    assert status == 200
    assert "opened" in detail


def test_attempt_link_unsubscribe_submits_form():
    seen = []
    page = """
    <html><body>
      <form action="/unsubscribe/confirm" method="post">
        <input type="hidden" name="token" value="abc">
        <input type="email" name="email" value="me@example.com">
        <input type="checkbox" name="reason" value="spam">
        <button type="submit">Unsubscribe</button>
      </form>
    </body></html>
    """

    def handler(request):
        seen.append(request)
        if request.method == "GET":
            return httpx.Response(200, text=page)
        return httpx.Response(200, text="Done")

    with httpx.Client(transport=httpx.MockTransport(handler)) as http_client:
        ok, status, detail = attempt_link_unsubscribe(http_client, "https://example.com/prefs?id=1")

    assert ok is True
    assert "form submitted" in detail
    post = seen[-1]
    assert post.method == "POST"
    assert str(post.url) == "https://example.com/unsubscribe/confirm"
    body = post.content.decode()
    assert "token=abc" in body
    assert "email=me%40example.com" in body
    assert "reason" not in body


def test_attempt_link_unsubscribe_page_error():
    def handler(request):
        return httpx.Response(404, text="gone")

    with httpx.Client(transport=httpx.MockTransport(handler)) as http_client:
        ok, status, detail = attempt_link_unsubscribe(http_client, "https://example.com/unsubscribe")

    assert ok is False
    assert status == 404
