# core/proxy/content_router.py
"""Выбор способа обработки ответа по content-type"""

import logging
from enum import Enum
from typing import Dict, Tuple
from urllib.parse import urlsplit

from core.proxy.content_rewriter import RewriteContext, rewrite_html, rewrite_js
from core.proxy.fetcher import FetchResult

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    'Access-Control-Allow-Origin': '*',
    'Access-Control-Allow-Methods': 'GET, POST, PUT, DELETE, OPTIONS',
    'Access-Control-Allow-Headers': 'Content-Type, Authorization',
}

HTML_HEADERS = {
    'Content-Type': 'text/html; charset=utf-8',
    'X-Frame-Options': 'SAMEORIGIN',
    'X-Content-Type-Options': 'nosniff',
    'Cache-Control': 'no-cache, no-store, must-revalidate',
}

LONG_CACHE = 'public, max-age=3600'
DEFAULT_CONTENT_TYPE = 'application/octet-stream'


class ContentKind(str, Enum):
    HTML = 'html'
    JAVASCRIPT = 'javascript'
    PASSTHROUGH = 'passthrough'


def classify(content_type: str, url: str, resource: bool) -> ContentKind:
    """
    Определяет ветку обработки

    Args:
        content_type: Content-Type ответа
        url: Целевой URL (для суффикса .js)
        resource: True для resource endpoint

    Returns:
        ContentKind: html / javascript / passthrough
    """
    content_type = content_type.lower()
    if resource:
        # resource endpoint никогда не отдаёт перезаписанный HTML
        if 'javascript' in content_type or urlsplit(url).path.lower().endswith('.js'):
            return ContentKind.JAVASCRIPT
        return ContentKind.PASSTHROUGH
    if 'html' in content_type:
        return ContentKind.HTML
    return ContentKind.PASSTHROUGH


def route_response(result: FetchResult,
                   context: RewriteContext,
                   resource: bool = False) -> Tuple[bytes, Dict[str, str]]:
    """
    Обрабатывает FetchResult и возвращает тело и заголовки ответа клиенту

    Args:
        result: Ответ целевого сайта
        context: Контекст перезаписи исходного запроса
        resource: True для resource endpoint

    Returns:
        tuple: (body, headers)
    """
    content_type = result.content_type
    kind = classify(content_type, context.base_url, resource)
    logger.debug(f"📦 {context.base_url}: {content_type or 'no content-type'} → {kind.value}")

    if kind is ContentKind.HTML:
        body = rewrite_html(result.text, context).encode('utf-8')
        return body, dict(HTML_HEADERS)

    if kind is ContentKind.JAVASCRIPT:
        body = rewrite_js(result.text, context).encode('utf-8')
        headers = {
            'Content-Type': 'application/javascript; charset=utf-8',
            'Cache-Control': LONG_CACHE,
        }
        headers.update(CORS_HEADERS)
        return body, headers

    headers = {
        'Content-Type': content_type or DEFAULT_CONTENT_TYPE,
        'Cache-Control': LONG_CACHE,
    }
    if resource:
        headers.update(CORS_HEADERS)
    return result.body, headers
