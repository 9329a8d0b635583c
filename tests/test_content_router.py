"""Tests for content-type dispatch and response header policy."""

import pytest

from core.proxy.content_rewriter import RewriteContext
from core.proxy.content_router import ContentKind, classify, route_response
from core.proxy.fetcher import FetchResult
from core.proxy.url_guard import TargetRequest


def context(url="https://site.example/page"):
    return RewriteContext.from_target(TargetRequest(url), proxy_origin="http://127.0.0.1:61000")


def result(body, content_type, url="https://site.example/page"):
    headers = {'Content-Type': content_type} if content_type else {}
    return FetchResult(status=200, url=url, body=body, headers=headers, charset='utf-8')


@pytest.mark.parametrize("content_type, url, resource, expected", [
    ("text/html; charset=utf-8", "https://a.example/", False, ContentKind.HTML),
    ("application/xhtml+xml", "https://a.example/", False, ContentKind.HTML),
    ("text/html", "https://a.example/", True, ContentKind.PASSTHROUGH),
    ("application/javascript", "https://a.example/app", True, ContentKind.JAVASCRIPT),
    ("text/plain", "https://a.example/app.js?v=2", True, ContentKind.JAVASCRIPT),
    ("text/plain", "https://a.example/app.js", False, ContentKind.PASSTHROUGH),
    ("image/png", "https://a.example/i.png", True, ContentKind.PASSTHROUGH),
    ("", "https://a.example/blob", False, ContentKind.PASSTHROUGH),
])
def test_classify(content_type, url, resource, expected):
    assert classify(content_type, url, resource) is expected


def test_html_is_rewritten_and_not_cached():
    body, headers = route_response(result(b'<a href="/x">x</a>', "text/html"), context())
    assert b"/api/proxy?url=https%3A%2F%2Fsite.example%2Fx" in body
    assert headers['Content-Type'] == 'text/html; charset=utf-8'
    assert headers['Cache-Control'] == 'no-cache, no-store, must-revalidate'
    assert headers['X-Frame-Options'] == 'SAMEORIGIN'
    assert headers['X-Content-Type-Options'] == 'nosniff'


def test_passthrough_is_byte_exact_with_long_cache():
    payload = bytes(range(256))
    body, headers = route_response(result(payload, "image/png"), context(), resource=True)
    assert body == payload
    assert headers['Content-Type'] == 'image/png'
    assert headers['Cache-Control'] == 'public, max-age=3600'
    assert headers['Access-Control-Allow-Origin'] == '*'


def test_navigate_passthrough_has_no_cors_and_default_type():
    body, headers = route_response(result(b"%PDF", None), context())
    assert body == b"%PDF"
    assert headers['Content-Type'] == 'application/octet-stream'
    assert 'Access-Control-Allow-Origin' not in headers


def test_html_on_resource_endpoint_is_not_rewritten():
    raw = b'<a href="/x">x</a>'
    body, _ = route_response(result(raw, "text/html"), context(), resource=True)
    assert body == raw


def test_scripts_are_rewritten_on_resource_endpoint():
    script = result(b'fetch("/data")', "application/javascript", url="https://site.example/app.js")
    body, headers = route_response(script, context("https://site.example/app.js"), resource=True)
    assert body == b'fetch("http://127.0.0.1:61000/api/proxy?url=https%3A%2F%2Fsite.example%2Fdata")'
    assert headers['Content-Type'] == 'application/javascript; charset=utf-8'
    assert headers['Access-Control-Allow-Origin'] == '*'
    assert headers['Cache-Control'] == 'public, max-age=3600'


@pytest.mark.parametrize("charset", ["x-user-defined", "utf8mb4", "definitely-not-a-codec"])
def test_unknown_charset_still_rewrites(charset):
    page = FetchResult(
        status=200,
        url="https://site.example/page",
        body='<a href="/x">café</a>'.encode('utf-8'),
        headers={'Content-Type': f'text/html; charset={charset}'},
        charset=charset,
    )
    body, headers = route_response(page, context())
    assert "café".encode('utf-8') in body
    assert b"/api/proxy?url=https%3A%2F%2Fsite.example%2Fx" in body
    assert headers['Content-Type'] == 'text/html; charset=utf-8'


def test_known_charset_is_honoured():
    page = FetchResult(200, "https://site.example/", 'café'.encode('latin-1'), {}, charset='iso-8859-1')
    assert page.text == 'café'
