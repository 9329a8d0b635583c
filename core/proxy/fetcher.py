# core/proxy/fetcher.py
"""Исходящие запросы к целевому сайту (напрямую или через forwarding proxy)"""

import asyncio
import codecs
import logging
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Tuple

from aiohttp import (
    ClientError,
    ClientHttpProxyError,
    ClientProxyConnectionError,
    ClientSession,
    ClientTimeout,
    InvalidURL,
    TCPConnector,
)
from yarl import URL

from core.proxy.errors import (
    ForwardingProxyError,
    InvalidRequest,
    UpstreamHTTPError,
    UpstreamNetworkError,
    UpstreamTimeout,
)
from core.proxy.url_guard import TargetRequest

logger = logging.getLogger(__name__)

_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

# Заголовки "настоящего браузера" для загрузки документа
DOCUMENT_HEADERS: Mapping[str, str] = {
    'User-Agent': _USER_AGENT,
    'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8',
    'Accept-Language': 'en-US,en;q=0.5',
    'DNT': '1',
    'Upgrade-Insecure-Requests': '1',
    'Sec-Fetch-Dest': 'document',
    'Sec-Fetch-Mode': 'navigate',
    'Sec-Fetch-Site': 'none',
}

# Заголовки для подресурсов (скрипты, картинки, стили)
RESOURCE_HEADERS: Mapping[str, str] = {
    'User-Agent': _USER_AGENT,
    'Accept': '*/*',
    'Accept-Language': 'en-US,en;q=0.5',
    'DNT': '1',
    'Sec-Fetch-Dest': 'script',
    'Sec-Fetch-Mode': 'no-cors',
    'Sec-Fetch-Site': 'cross-site',
}


@dataclass(frozen=True)
class FetchTimeouts:
    """Ограничения времени (секунды); forward_* действуют только через forwarding proxy"""

    total: float = 30.0
    forward_connect: float = 10.0
    forward_body: float = 30.0

    def client_timeout(self, via_proxy: bool) -> ClientTimeout:
        if not via_proxy:
            return ClientTimeout(total=self.total)
        # Внутренние лимиты не могут превышать общий
        return ClientTimeout(
            total=self.total,
            sock_connect=min(self.forward_connect, self.total),
            sock_read=min(self.forward_body, self.total),
        )


@dataclass
class FetchResult:
    """Ответ целевого сайта, живёт только в рамках одного запроса"""

    status: int
    url: str
    body: bytes
    headers: Dict[str, str] = field(default_factory=dict)
    charset: Optional[str] = None

    @property
    def content_type(self) -> str:
        for key, value in self.headers.items():
            if key.lower() == 'content-type':
                return value
        return ''

    @property
    def text(self) -> str:
        encoding = self.charset or 'utf-8'
        try:
            codecs.lookup(encoding)
        except LookupError:
            # x-user-defined, utf8mb4 и прочие неизвестные Python кодировки
            logger.debug(f"Unknown charset '{encoding}' for {self.url}, decoding as utf-8")
            encoding = 'utf-8'
        return self.body.decode(encoding, errors='replace')


def parse_forward_proxy(value: Optional[str]) -> Optional[str]:
    """
    Превращает "host:port" в URL forwarding proxy

    Args:
        value: Значение параметра proxy (или None)

    Returns:
        str | None: "http://host:port" или None, если proxy не задан

    Raises:
        ForwardingProxyError: Значение не является host:port
    """
    if value is None or not value.strip():
        return None

    host, sep, port = value.strip().rpartition(':')
    if not sep or not host or not port.isdigit() or not 0 < int(port) < 65536:
        raise ForwardingProxyError("Invalid proxy configuration")

    try:
        proxy_url = URL.build(scheme='http', host=host, port=int(port))
    except (TypeError, ValueError) as e:
        raise ForwardingProxyError("Invalid proxy configuration") from e
    return str(proxy_url)


def build_dispatcher(forward_proxy: Optional[str],
                     timeouts: FetchTimeouts) -> Tuple[ClientSession, Optional[str]]:
    """
    Создаёт новую сессию для одного запроса

    Сессия и connector никогда не переиспользуются между запросами, чтобы
    forwarding proxy одного запроса не попал в пул соединений другого.

    Returns:
        tuple: (ClientSession, URL forwarding proxy или None)
    """
    proxy_url = parse_forward_proxy(forward_proxy)
    try:
        connector = TCPConnector(limit=10, force_close=True)
        session = ClientSession(
            connector=connector,
            timeout=timeouts.client_timeout(via_proxy=proxy_url is not None),
        )
    except Exception as e:
        logger.error(f"❌ Failed to create dispatcher for {forward_proxy}: {e}")
        raise ForwardingProxyError("Invalid proxy configuration") from e
    return session, proxy_url


async def fetch_target(target: TargetRequest,
                       timeouts: Optional[FetchTimeouts] = None,
                       headers: Mapping[str, str] = DOCUMENT_HEADERS,
                       excerpt_chars: int = 500) -> FetchResult:
    """
    Загружает целевой URL

    Args:
        target: Проверенный Guard'ом запрос
        timeouts: Ограничения времени
        headers: Исходящие заголовки
        excerpt_chars: Сколько символов тела ошибки вернуть клиенту

    Returns:
        FetchResult: Успешный (2xx) ответ

    Raises:
        UpstreamTimeout, UpstreamHTTPError, UpstreamNetworkError,
        ForwardingProxyError, InvalidRequest
    """
    timeouts = timeouts or FetchTimeouts()
    session, proxy_url = build_dispatcher(target.forward_proxy, timeouts)
    via = f"via proxy {target.forward_proxy}" if proxy_url else "directly"
    logger.debug(f"🌐 Fetching {target.url} {via}")

    try:
        async with session:
            async with session.get(
                target.url,
                headers=dict(headers),
                proxy=proxy_url,
                allow_redirects=True,
            ) as response:
                if not 200 <= response.status < 300:
                    error_text = await response.text(errors='replace')
                    logger.error(
                        f"❌ Upstream error for {target.url} {via}: "
                        f"{response.status} {response.reason} - {error_text[:200]}"
                    )
                    raise UpstreamHTTPError(
                        response.status,
                        response.reason or "",
                        error_text[:excerpt_chars],
                    )

                body = await response.read()
                return FetchResult(
                    status=response.status,
                    url=str(response.url),
                    body=body,
                    headers=dict(response.headers),
                    charset=response.charset,
                )

    except asyncio.TimeoutError as e:
        logger.error(f"⏱️ Timeout fetching {target.url} {via} (>{timeouts.total}s)")
        raise UpstreamTimeout(
            "Request timeout - the website took too long to respond via proxy."
        ) from e

    except (ClientProxyConnectionError, ClientHttpProxyError) as e:
        logger.error(f"❌ Forwarding proxy {target.forward_proxy} failed: {e}")
        raise UpstreamNetworkError(
            "Failed to fetch the requested URL. The forwarding proxy may be down or blocking requests.",
            via_forward_proxy=True,
        ) from e

    except InvalidURL as e:
        raise InvalidRequest("Invalid or blocked URL") from e

    except ClientError as e:
        logger.error(f"❌ Network error fetching {target.url} {via}: {e}")
        if proxy_url:
            message = ("Failed to fetch the requested URL. The website may be down or "
                       "blocking requests, or the forwarding proxy is not working.")
        else:
            message = "Failed to fetch the requested URL. The website may be down or blocking requests."
        raise UpstreamNetworkError(message, via_forward_proxy=proxy_url is not None) from e
