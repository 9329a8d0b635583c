"""Fetcher tests against real local upstreams."""

import asyncio
import json

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from core.proxy.errors import (
    ForwardingProxyError,
    InvalidRequest,
    UpstreamHTTPError,
    UpstreamNetworkError,
    UpstreamTimeout,
)
from core.proxy.fetcher import FetchTimeouts, build_dispatcher, fetch_target, parse_forward_proxy
from core.proxy.url_guard import TargetRequest


async def page(request):
    return web.Response(text="<p>ok</p>", content_type="text/html")


async def echo_headers(request):
    return web.json_response(dict(request.headers))


async def missing(request):
    return web.Response(status=404, reason="Not Found", text="gone " * 100)


async def slow(request):
    await asyncio.sleep(1.0)
    return web.Response(text="late")


async def redirect(request):
    raise web.HTTPFound("/page")


@pytest.fixture
async def upstream():
    app = web.Application()
    app.router.add_get("/page", page)
    app.router.add_get("/headers", echo_headers)
    app.router.add_get("/missing", missing)
    app.router.add_get("/slow", slow)
    app.router.add_get("/redirect", redirect)
    server = TestServer(app)
    await server.start_server()
    yield server
    await server.close()


@pytest.fixture
async def forwarding_proxy():
    """Answers every absolute-form request itself, recording what it was asked for."""
    seen = []

    async def relay(request):
        seen.append(str(request.url))
        return web.Response(text="relayed", content_type="text/plain")

    app = web.Application()
    app.router.add_route("*", "/{tail:.*}", relay)
    server = TestServer(app)
    await server.start_server()
    server.seen = seen
    yield server
    await server.close()


def url_of(server, path):
    return str(server.make_url(path))


async def test_successful_fetch(upstream):
    result = await fetch_target(TargetRequest(url_of(upstream, "/page")))
    assert result.status == 200
    assert result.content_type.startswith("text/html")
    assert result.text == "<p>ok</p>"


async def test_browser_identity_is_sent(upstream):
    result = await fetch_target(TargetRequest(url_of(upstream, "/headers")))
    headers = json.loads(result.text)
    assert "Chrome/120" in headers["User-Agent"]
    assert headers["Sec-Fetch-Mode"] == "navigate"


async def test_redirects_are_followed(upstream):
    result = await fetch_target(TargetRequest(url_of(upstream, "/redirect")))
    assert result.url.endswith("/page")
    assert result.text == "<p>ok</p>"


async def test_non_2xx_is_an_explicit_error(upstream):
    with pytest.raises(UpstreamHTTPError) as exc_info:
        await fetch_target(TargetRequest(url_of(upstream, "/missing")), excerpt_chars=50)
    error = exc_info.value
    assert error.status == 404
    assert error.message == "Failed to fetch: 404 Not Found. Proxy might be down or blocked."
    assert len(error.excerpt) == 50
    assert error.to_payload()["upstream_excerpt"].startswith("gone gone")


async def test_timeout_is_distinct_from_network_error(upstream):
    with pytest.raises(UpstreamTimeout) as exc_info:
        await fetch_target(TargetRequest(url_of(upstream, "/slow")), timeouts=FetchTimeouts(total=0.2))
    assert exc_info.value.status == 408
    assert not isinstance(exc_info.value, UpstreamNetworkError)


async def test_connection_refused_is_a_network_error(unused_tcp_port):
    with pytest.raises(UpstreamNetworkError) as exc_info:
        await fetch_target(TargetRequest(f"http://127.0.0.1:{unused_tcp_port}/"))
    assert exc_info.value.status == 500
    assert exc_info.value.via_forward_proxy is False
    assert "forwarding proxy" not in exc_info.value.message


async def test_unreachable_forwarding_proxy_is_named(upstream, unused_tcp_port):
    target = TargetRequest(url_of(upstream, "/page"), forward_proxy=f"127.0.0.1:{unused_tcp_port}")
    with pytest.raises(UpstreamNetworkError) as exc_info:
        await fetch_target(target)
    assert exc_info.value.via_forward_proxy is True
    assert "forwarding proxy" in exc_info.value.message


async def test_egress_goes_through_forwarding_proxy(upstream, forwarding_proxy):
    target_url = url_of(upstream, "/page")
    target = TargetRequest(target_url, forward_proxy=f"127.0.0.1:{forwarding_proxy.port}")
    result = await fetch_target(target)
    assert result.text == "relayed"
    assert forwarding_proxy.seen and forwarding_proxy.seen[0].endswith("/page")


async def test_malformed_forwarding_proxy_is_a_construction_failure(upstream):
    target = TargetRequest(url_of(upstream, "/page"), forward_proxy="not-a-proxy")
    with pytest.raises(ForwardingProxyError) as exc_info:
        await fetch_target(target)
    assert exc_info.value.status == 500
    assert isinstance(exc_info.value, InvalidRequest)
    assert not isinstance(exc_info.value, UpstreamNetworkError)


@pytest.mark.parametrize("value, expected", [
    (None, None),
    ("", None),
    ("1.2.3.4:8080", "http://1.2.3.4:8080"),
    (" proxy.example:3128 ", "http://proxy.example:3128"),
])
def test_parse_forward_proxy(value, expected):
    assert parse_forward_proxy(value) == expected


@pytest.mark.parametrize("value", ["1.2.3.4", ":8080", "host:0", "host:65536", "host:http"])
def test_parse_forward_proxy_rejects_malformed(value):
    with pytest.raises(ForwardingProxyError):
        parse_forward_proxy(value)


def test_forwarding_timeouts_are_nested_in_total():
    timeout = FetchTimeouts(total=5, forward_connect=10, forward_body=30).client_timeout(via_proxy=True)
    assert timeout.total == 5
    assert timeout.sock_connect == 5
    assert timeout.sock_read == 5

    direct = FetchTimeouts(total=5).client_timeout(via_proxy=False)
    assert direct.sock_connect is None


async def test_each_request_gets_its_own_dispatcher():
    timeouts = FetchTimeouts(total=5)
    proxied, proxy_url = build_dispatcher("10.0.0.1:8080", timeouts)
    direct, no_proxy = build_dispatcher(None, timeouts)
    again, _ = build_dispatcher("10.0.0.1:8080", timeouts)
    try:
        assert proxy_url == "http://10.0.0.1:8080"
        assert no_proxy is None
        sessions = [proxied, direct, again]
        assert len({id(s) for s in sessions}) == 3
        assert len({id(s.connector) for s in sessions}) == 3
        assert all(s.connector.force_close for s in sessions)
        assert proxied.timeout.sock_connect == 5
        assert direct.timeout.sock_connect is None
    finally:
        for session in (proxied, direct, again):
            await session.close()


async def test_sequential_requests_do_not_share_forwarding_route(upstream, forwarding_proxy):
    # первый запрос через forwarding proxy, второй напрямую
    via = TargetRequest(url_of(upstream, "/page"), forward_proxy=f"127.0.0.1:{forwarding_proxy.port}")
    assert (await fetch_target(via)).text == "relayed"
    direct = await fetch_target(TargetRequest(url_of(upstream, "/page")))
    assert direct.text == "<p>ok</p>"
    assert len(forwarding_proxy.seen) == 1
