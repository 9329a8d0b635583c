# core/proxy/url_guard.py
"""Проверка целевых URL до любого сетевого запроса (защита от SSRF)"""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Tuple
from urllib.parse import urlsplit

from core.proxy.errors import InvalidRequest

logger = logging.getLogger(__name__)

ALLOWED_SCHEMES = ('http', 'https')

# Подстроки hostname, которые запрещены. Проверка намеренно грубая:
# "10." блокирует и 10.0.0.1, и любой хост, содержащий "10."
BLOCKED_HOST_TOKENS: Tuple[str, ...] = (
    'localhost',
    '127.0.0.1',
    '::1',
    '0.0.0.0',
    '10.',
    '172.',
    '192.168.',
    'metadata.google.internal',
    '169.254.169.254',  # AWS / GCP metadata
)


@dataclass(frozen=True)
class TargetRequest:
    """Абсолютный целевой URL + опциональный forwarding proxy (host:port)"""

    url: str
    forward_proxy: Optional[str] = None


def blocked_token(hostname: str, extra_blocked: Iterable[str] = ()) -> Optional[str]:
    """Возвращает первую совпавшую запрещённую подстроку или None"""
    host = hostname.lower()
    for token in (*BLOCKED_HOST_TOKENS, *extra_blocked):
        if token and token.lower() in host:
            return token
    return None


def validate_target(url: Optional[str], extra_blocked: Iterable[str] = ()) -> str:
    """
    Проверяет целевой URL

    Args:
        url: Значение параметра url из запроса
        extra_blocked: Дополнительные запрещённые подстроки из конфига

    Returns:
        str: URL без окружающих пробелов

    Raises:
        InvalidRequest: URL отсутствует, некорректен или заблокирован
    """
    if not url or not url.strip():
        raise InvalidRequest("URL parameter is required")

    url = url.strip()
    try:
        parts = urlsplit(url)
        hostname = parts.hostname
    except ValueError:
        raise InvalidRequest("Invalid or blocked URL")

    if parts.scheme.lower() not in ALLOWED_SCHEMES or not hostname:
        logger.warning(f"🚫 Rejected target (scheme/host): {url}")
        raise InvalidRequest("Invalid or blocked URL")

    token = blocked_token(hostname, extra_blocked)
    if token:
        logger.warning(f"🚫 Rejected target {url}: host matches blocked token '{token}'")
        raise InvalidRequest("Invalid or blocked URL")

    return url


def is_allowed(url: Optional[str], extra_blocked: Iterable[str] = ()) -> bool:
    """validate_target() без исключения"""
    try:
        validate_target(url, extra_blocked)
        return True
    except InvalidRequest:
        return False
