# core/proxy/errors.py
"""Ошибки прокси-браузера и их HTTP статусы"""

from typing import Optional


class ProxyError(Exception):
    """Базовая ошибка: несёт HTTP статус и текст для клиента"""

    status = 500

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status is not None:
            self.status = status

    def to_payload(self) -> dict:
        return {'error': self.message}


class InvalidRequest(ProxyError):
    """Отсутствующий, некорректный или заблокированный URL"""

    status = 400


class ForwardingProxyError(InvalidRequest):
    """Не удалось построить dispatcher для forwarding proxy"""

    status = 500


class UpstreamTimeout(ProxyError):
    """Целевой сайт не ответил за отведённое время"""

    status = 408


class UpstreamHTTPError(ProxyError):
    """Целевой сайт вернул не-2xx ответ"""

    def __init__(self, status: int, reason: str = "", excerpt: str = ""):
        message = f"Failed to fetch: {status} {reason}".rstrip()
        super().__init__(f"{message}. Proxy might be down or blocked.", status=status)
        self.reason = reason
        self.excerpt = excerpt

    def to_payload(self) -> dict:
        payload = super().to_payload()
        if self.excerpt:
            payload['upstream_excerpt'] = self.excerpt
        return payload


class UpstreamNetworkError(ProxyError):
    """DNS / соединение / TLS / forwarding proxy"""

    status = 500

    def __init__(self, message: str, via_forward_proxy: bool = False):
        super().__init__(message)
        self.via_forward_proxy = via_forward_proxy
