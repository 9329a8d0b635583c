# core/proxy_pool.py
"""
Примитивы внешних коллабораторов: поиск кандидатов, проверка и ротация
forwarding proxy. Состояние ротации (курсор) принадлежит вызывающему.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

from core.proxy.errors import ProxyError
from core.proxy.fetcher import FetchTimeouts, fetch_target, parse_forward_proxy
from core.proxy.url_guard import TargetRequest

logger = logging.getLogger(__name__)

DEFAULT_SOURCE_URL = (
    "https://api.proxyscrape.com/v4/free-proxy-list/get?request=displayproxies"
    "&protocol=http&timeout=10000&country=all&ssl=all&anonymity=all&skip=0&limit=10"
)
DEFAULT_PROBE_URL = "https://api.ipify.org?format=json"

SOURCE_HEADERS = {
    'User-Agent': (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    'Accept': 'text/plain',
    'Cache-Control': 'no-cache',
}


@dataclass(frozen=True)
class ProbeResult:
    """Результат реальной проверки proxy"""

    address: str
    reachable: bool
    latency_ms: Optional[int] = None
    error: Optional[str] = None


def parse_candidates(text: str) -> List[str]:
    """
    Извлекает host:port из текстового списка (по одному на строку)

    Некорректные строки пропускаются, дубликаты убираются с сохранением порядка.
    """
    candidates = []
    seen = set()
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith('#') or ':' not in line:
            continue
        # "1.2.3.4:8080 US-H-S" - берём только адрес
        address = line.split()[0]
        try:
            if parse_forward_proxy(address) is None:
                continue
        except ProxyError:
            logger.debug(f"Skipping malformed candidate: {line}")
            continue
        if address not in seen:
            seen.add(address)
            candidates.append(address)
    return candidates


async def fetch_candidates(source_url: str = DEFAULT_SOURCE_URL, timeout: float = 10.0) -> List[str]:
    """
    Загружает список кандидатов из источника

    Raises:
        ProxyError: Источник недоступен или вернул ошибку
    """
    result = await fetch_target(
        TargetRequest(url=source_url),
        timeouts=FetchTimeouts(total=timeout),
        headers=SOURCE_HEADERS,
    )
    candidates = parse_candidates(result.text)
    logger.info(f"📥 Loaded {len(candidates)} proxy candidates from {source_url}")
    return candidates


async def probe_proxy(address: str,
                      probe_url: str = DEFAULT_PROBE_URL,
                      timeout: float = 5.0) -> ProbeResult:
    """
    Делает настоящий запрос к probe_url через proxy и замеряет задержку

    Args:
        address: host:port
        probe_url: Лёгкий endpoint для проверки
        timeout: Общий лимит (сек), подключение к proxy - не дольше 3 сек

    Returns:
        ProbeResult: reachable=True только при 2xx ответе
    """
    timeouts = FetchTimeouts(total=timeout, forward_connect=min(3.0, timeout), forward_body=timeout)
    started = time.monotonic()
    try:
        await fetch_target(TargetRequest(url=probe_url, forward_proxy=address), timeouts=timeouts)
    except ProxyError as e:
        logger.debug(f"Proxy {address} failed probe: {e.message}")
        return ProbeResult(address=address, reachable=False, error=e.message)

    latency_ms = int((time.monotonic() - started) * 1000)
    logger.debug(f"Proxy {address} reachable in {latency_ms} ms")
    return ProbeResult(address=address, reachable=True, latency_ms=latency_ms)


async def probe_all(addresses: Iterable[str],
                    probe_url: str = DEFAULT_PROBE_URL,
                    timeout: float = 5.0,
                    concurrency: int = 10) -> List[ProbeResult]:
    """Проверяет несколько proxy параллельно; рабочие - первыми, по задержке"""
    semaphore = asyncio.Semaphore(concurrency)

    async def run(address: str) -> ProbeResult:
        async with semaphore:
            return await probe_proxy(address, probe_url, timeout)

    results = await asyncio.gather(*(run(address) for address in addresses))
    return sorted(results, key=lambda r: (not r.reachable, r.latency_ms or 0))


def next_proxy(pool: Sequence[str], cursor: int = 0) -> Tuple[Optional[str], int]:
    """
    Round-robin выбор без глобального состояния

    Returns:
        tuple: (адрес или None для пустого пула, следующий курсор)
    """
    if not pool:
        return None, 0
    index = cursor % len(pool)
    return pool[index], (index + 1) % len(pool)
