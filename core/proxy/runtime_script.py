# core/proxy/runtime_script.py
"""Runtime-скрипт, который внедряется в каждую перезаписанную HTML страницу"""

import json
import logging
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

# Тип сообщения для встраивающего окна: {type, url, timestamp}
BRIDGE_MESSAGE_TYPE = 'PROXY_NAVIGATION'
FORM_MARKER = 'data-proxy-form'

_TEMPLATE_PATH = Path(__file__).parent / 'static' / 'runtime_override.js'
_CONFIG_PLACEHOLDER = '__PROXY_CONFIG__'
_template: Optional[str] = None


def _load_template() -> str:
    global _template
    if _template is None:
        _template = _TEMPLATE_PATH.read_text(encoding='utf-8')
        logger.debug(f"Runtime script template loaded: {_TEMPLATE_PATH}")
    return _template


def _js_literal(value: dict) -> str:
    # "<" экранируется, чтобы значение не могло закрыть <script> внутри документа
    return (json.dumps(value, ensure_ascii=True)
            .replace('<', '\\u003c')
            .replace('>', '\\u003e')
            .replace('&', '\\u0026'))


def render_runtime_script(target_url: str,
                          origin: str,
                          navigate_path: str,
                          resource_path: str,
                          marker: str,
                          forward_proxy: Optional[str] = None,
                          proxy_origin: str = '') -> str:
    """
    Возвращает готовый тег <script> для внедрения

    Args:
        target_url: Исходный URL страницы (его видят скрипты через location)
        origin: Origin целевой страницы
        navigate_path: Путь navigate endpoint
        resource_path: Путь resource endpoint
        marker: Атрибут уже перезаписанных ссылок
        forward_proxy: host:port forwarding proxy текущего запроса
        proxy_origin: Origin самого прокси (пусто - взять из location в браузере)

    Returns:
        str: <script>...</script>
    """
    config = {
        'targetUrl': target_url,
        'origin': origin,
        'proxyOrigin': proxy_origin,
        'navigatePath': navigate_path,
        'resourcePath': resource_path,
        'forwardProxy': forward_proxy or '',
        'marker': marker,
        'formMarker': FORM_MARKER,
        'bridgeType': BRIDGE_MESSAGE_TYPE,
    }
    body = _load_template().replace(_CONFIG_PLACEHOLDER, _js_literal(config), 1)
    return f"<script>\n{body}</script>\n"
