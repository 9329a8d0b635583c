"""
Proxy modules package.

Guard → Fetcher → Content Router → (HTML Rewriter + runtime script | JS Rewriter | passthrough).
No state survives a single request.
"""

from core.proxy.content_rewriter import (
    NAVIGATE_PATH,
    RESOURCE_PATH,
    ContentRewriter,
    ProxyLink,
    RewriteContext,
)
from core.proxy.content_router import ContentKind, classify, route_response
from core.proxy.errors import (
    ForwardingProxyError,
    InvalidRequest,
    ProxyError,
    UpstreamHTTPError,
    UpstreamNetworkError,
    UpstreamTimeout,
)
from core.proxy.fetcher import FetchResult, FetchTimeouts, fetch_target
from core.proxy.url_guard import TargetRequest, validate_target

__all__ = [
    'NAVIGATE_PATH',
    'RESOURCE_PATH',
    'ContentRewriter',
    'ProxyLink',
    'RewriteContext',
    'ContentKind',
    'classify',
    'route_response',
    'ProxyError',
    'InvalidRequest',
    'ForwardingProxyError',
    'UpstreamTimeout',
    'UpstreamHTTPError',
    'UpstreamNetworkError',
    'FetchResult',
    'FetchTimeouts',
    'fetch_target',
    'TargetRequest',
    'validate_target',
]
