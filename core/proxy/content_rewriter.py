# core/proxy/content_rewriter.py
"""Модуль для перезаписи URL в контенте"""

import html
import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Tuple
from urllib.parse import parse_qs, quote, urljoin, urlsplit

from core.proxy.runtime_script import render_runtime_script
from core.proxy.url_guard import TargetRequest

logger = logging.getLogger(__name__)

NAVIGATE_PATH = '/api/proxy'
RESOURCE_PATH = '/api/resource'

# Маркер уже перезаписанной ссылки (используется и runtime-скриптом)
PROXY_LINK_MARKER = 'data-proxy-link'

_SKIPPED_PREFIXES = ('#', 'mailto:', 'tel:', 'javascript:')
_SCHEME_PATTERN = re.compile(r'^[a-zA-Z][a-zA-Z0-9+.-]*:')
_ENTITY_PATTERN = re.compile(r'&(?:#\d+|#[xX][0-9a-fA-F]+|[a-zA-Z]+);')


@dataclass(frozen=True)
class RewriteContext:
    """База документа и origin целевой страницы на время одного прохода"""

    base_url: str
    origin: str
    forward_proxy: Optional[str] = None
    # Origin самого прокси: ссылки абсолютные, иначе их перехватит внедрённый <base>
    proxy_origin: str = ''

    @classmethod
    def from_target(cls, target: TargetRequest, proxy_origin: str = '') -> 'RewriteContext':
        parts = urlsplit(target.url)
        return cls(
            base_url=target.url,
            origin=f"{parts.scheme}://{parts.netloc}",
            forward_proxy=target.forward_proxy,
            proxy_origin=proxy_origin.rstrip('/'),
        )


@dataclass(frozen=True)
class ProxyLink:
    """Ссылка на endpoint прокси с исходным абсолютным URL в параметре url"""

    target: str
    endpoint: str = NAVIGATE_PATH
    forward_proxy: Optional[str] = None
    proxy_origin: str = ''

    @property
    def href(self) -> str:
        link = f"{self.proxy_origin}{self.endpoint}?url={quote(self.target, safe='')}"
        if self.forward_proxy:
            link += f"&proxy={quote(self.forward_proxy, safe='')}"
        return link

    @classmethod
    def parse(cls, href: str) -> Optional['ProxyLink']:
        """Разбирает href обратно в ProxyLink (None, если это не ссылка прокси)"""
        parts = urlsplit(html.unescape(href))
        if parts.path not in (NAVIGATE_PATH, RESOURCE_PATH):
            return None
        params = parse_qs(parts.query)
        if 'url' not in params:
            return None
        return cls(
            target=params['url'][0],
            endpoint=parts.path,
            forward_proxy=params.get('proxy', [None])[0],
            proxy_origin=f"{parts.scheme}://{parts.netloc}" if parts.netloc else '',
        )


def _decode_entities(value: str) -> str:
    # Только полные сущности с ';' - "&copy=1" в query должен остаться как есть
    return _ENTITY_PATTERN.sub(lambda m: html.unescape(m.group(0)), value)


def split_srcset(value: str) -> List[Tuple[str, str]]:
    """
    Разбирает srcset на пары (url, дескриптор)

    URL кандидата - непрерывная строка без пробелов, поэтому запятые внутри
    data: URI не разделяют кандидатов; дескриптор тянется до следующей запятой.
    """
    candidates = []
    position, length = 0, len(value)
    while position < length:
        while position < length and (value[position].isspace() or value[position] == ','):
            position += 1
        if position >= length:
            break

        start = position
        while position < length and not value[position].isspace():
            position += 1
        url = value[start:position]

        descriptor = ''
        if url.endswith(','):
            url = url.rstrip(',')
        else:
            start = position
            while position < length and value[position] != ',':
                position += 1
            descriptor = value[start:position].strip()

        if url:
            candidates.append((url, descriptor))
    return candidates


def resolve_reference(value: str, context: RewriteContext) -> Optional[str]:
    """
    Превращает ссылку из документа в абсолютный URL

    Args:
        value: Значение атрибута / url()
        context: Контекст перезаписи

    Returns:
        str | None: Абсолютный http(s) URL или None, если ссылку трогать нельзя
    """
    value = value.strip()
    if not value:
        return None

    lowered = value.lower()
    if lowered.startswith(_SKIPPED_PREFIXES):
        return None

    if lowered.startswith(('http://', 'https://')):
        return value

    if value.startswith('//'):
        # protocol-relative: схема берётся у документа
        return urljoin(context.base_url, value)

    if value.startswith('/'):
        return context.origin + value

    if _SCHEME_PATTERN.match(value):
        # data:, blob:, about:, ftp: ...
        return None

    try:
        return urljoin(context.base_url, value)
    except ValueError:
        return None


class ContentRewriter:
    """Класс для перезаписи URL в HTML/CSS/JS контенте"""

    # Предкомпилированные регулярные выражения
    _TAG_PATTERN = re.compile(r'<(?P<name>[a-zA-Z][a-zA-Z0-9:-]*)(?P<attrs>\s[^<>]*)?>')
    _ATTR_PATTERN = re.compile(
        r'(?P<lead>\s)(?P<attr>href|src|poster|srcset|style)(?P<eq>\s*=\s*)'
        r'(?P<quote>["\'])(?P<value>.*?)(?P=quote)',
        re.IGNORECASE | re.DOTALL,
    )
    _CSS_URL_PATTERN = re.compile(
        r'(?<![\w.$])url\(\s*(?P<quote>["\']?)(?P<value>[^"\')]+)(?P=quote)\s*\)'
    )
    _STYLE_BLOCK_PATTERN = re.compile(r'(<style\b[^>]*>)(.*?)(</style\s*>)', re.IGNORECASE | re.DOTALL)
    _HEAD_OPEN_PATTERN = re.compile(r'<head(?:\s[^>]*)?>', re.IGNORECASE)
    _HEAD_CLOSE_PATTERN = re.compile(r'</head\s*>', re.IGNORECASE)
    _JS_FETCH_PATTERN = re.compile(
        r'(?P<call>\bfetch\s*\(\s*)(?P<quote>["\'])(?P<value>[^"\'\n]+)(?P=quote)'
    )
    _JS_OPEN_PATTERN = re.compile(
        r'(?P<call>\.open\s*\(\s*(?P<mquote>["\'])[A-Za-z]+(?P=mquote)\s*,\s*)'
        r'(?P<quote>["\'])(?P<value>[^"\'\n]+)(?P=quote)'
    )

    _NAVIGABLE_TAGS = frozenset({'a', 'area'})

    def __init__(self, context: RewriteContext):
        """
        Инициализация ContentRewriter

        Args:
            context: Базовый URL документа, origin и forwarding proxy запроса
        """
        self.context = context
        self.rewritten = 0
        logger.debug(f"ContentRewriter: base={context.base_url} origin={context.origin}")

    def proxy_link(self, value: str, endpoint: str, decode_entities: bool = True) -> Optional[str]:
        """
        Возвращает href прокси для ссылки или None, если её не нужно трогать

        decode_entities=False для CSS и JS: там "&amp;" - это просто текст
        """
        if decode_entities:
            value = _decode_entities(value)
        absolute = resolve_reference(value, self.context)
        if absolute is None:
            return None
        self.rewritten += 1
        return ProxyLink(
            absolute, endpoint, self.context.forward_proxy, self.context.proxy_origin
        ).href

    def rewrite_html(self, content: str) -> str:
        """
        Перезаписывает URL в HTML контенте и внедряет <base> и runtime-скрипт

        Args:
            content: HTML контент

        Returns:
            str: Обработанный HTML
        """
        content = self._TAG_PATTERN.sub(self._rewrite_tag, content)
        content = self._STYLE_BLOCK_PATTERN.sub(
            lambda m: m.group(1) + self.rewrite_css(m.group(2)) + m.group(3), content
        )
        content = self._inject(content)
        logger.debug(f"ContentRewriter: {self.rewritten} references rewritten in {self.context.base_url}")
        return content

    def rewrite_css(self, content: str) -> str:
        """
        Перезаписывает url() в CSS (блоки <style>, атрибуты style)

        Args:
            content: CSS или HTML с CSS внутри

        Returns:
            str: Обработанный контент
        """
        def replace(match: re.Match) -> str:
            link = self.proxy_link(match.group('value'), RESOURCE_PATH, decode_entities=False)
            if link is None:
                return match.group(0)
            quote_char = match.group('quote')
            return f"url({quote_char}{link}{quote_char})"

        return self._CSS_URL_PATTERN.sub(replace, content)

    def rewrite_js(self, content: str) -> str:
        """
        Перезаписывает строковые URL-литералы в fetch() и xhr.open()

        Трогаются только абсолютные и root-relative формы; вычисляемые
        аргументы остаются как есть.
        """
        def replace(match: re.Match) -> str:
            value = match.group('value')
            if not value.lower().startswith(('http://', 'https://', '/')):
                return match.group(0)
            link = self.proxy_link(value, NAVIGATE_PATH, decode_entities=False)
            if link is None:
                return match.group(0)
            quote_char = match.group('quote')
            return f"{match.group('call')}{quote_char}{link}{quote_char}"

        content = self._JS_FETCH_PATTERN.sub(replace, content)
        content = self._JS_OPEN_PATTERN.sub(replace, content)
        return content

    def _rewrite_tag(self, match: re.Match) -> str:
        name = match.group('name').lower()
        attrs = match.group('attrs')
        if not attrs or name == 'base':
            return match.group(0)

        navigable = name in self._NAVIGABLE_TAGS
        marked = [False]

        def replace_attr(attr_match: re.Match) -> str:
            attr = attr_match.group('attr').lower()
            value = attr_match.group('value')

            if attr == 'srcset':
                new_value = self._rewrite_srcset(value)
            elif attr == 'style':
                # url(&quot;...&quot;) становится обычным CSS только после декодирования
                css = html.unescape(value)
                rewritten = self.rewrite_css(css)
                new_value = None if rewritten == css else html.escape(rewritten, quote=True)
            elif attr == 'href' and navigable:
                new_value = self.proxy_link(value, NAVIGATE_PATH)
                if new_value is not None:
                    marked[0] = True
            else:
                new_value = self.proxy_link(value, RESOURCE_PATH)

            if new_value is None:
                return attr_match.group(0)
            quote_char = attr_match.group('quote')
            return (f"{attr_match.group('lead')}{attr_match.group('attr')}"
                    f"{attr_match.group('eq')}{quote_char}{new_value}{quote_char}")

        new_attrs = self._ATTR_PATTERN.sub(replace_attr, attrs)
        if marked[0] and PROXY_LINK_MARKER not in new_attrs.lower():
            new_attrs = self._append_marker(new_attrs)
        return f"<{match.group('name')}{new_attrs}>"

    @staticmethod
    def _append_marker(attrs: str) -> str:
        # Перед закрывающим "/" у самозакрывающихся тегов
        stripped = attrs.rstrip()
        if stripped.endswith('/'):
            return f'{stripped[:-1].rstrip()} {PROXY_LINK_MARKER}="true" /'
        return f'{stripped} {PROXY_LINK_MARKER}="true"'

    def _rewrite_srcset(self, value: str) -> Optional[str]:
        candidates = []
        changed = False
        for url, descriptor in split_srcset(value):
            link = self.proxy_link(url, RESOURCE_PATH)
            if link is not None:
                changed = True
                url = link
            candidates.append(f"{url} {descriptor}".rstrip())
        return ', '.join(candidates) if changed else None

    def _inject(self, content: str) -> str:
        base_tag = f'<base href="{html.escape(self.context.origin, quote=True)}/">'
        content, count = self._HEAD_OPEN_PATTERN.subn(
            lambda m: m.group(0) + base_tag, content, count=1
        )
        if not count:
            content = base_tag + content

        script = render_runtime_script(
            target_url=self.context.base_url,
            origin=self.context.origin,
            forward_proxy=self.context.forward_proxy,
            navigate_path=NAVIGATE_PATH,
            resource_path=RESOURCE_PATH,
            marker=PROXY_LINK_MARKER,
            proxy_origin=self.context.proxy_origin,
        )
        content, count = self._HEAD_CLOSE_PATTERN.subn(
            lambda m: script + m.group(0), content, count=1
        )
        if not count:
            content = script + content
        return content


def rewrite_html(content: str, context: RewriteContext) -> str:
    return ContentRewriter(context).rewrite_html(content)


def rewrite_js(content: str, context: RewriteContext) -> str:
    return ContentRewriter(context).rewrite_js(content)


def decode_proxy_link(href: str) -> Tuple[Optional[str], Optional[str]]:
    """(endpoint, исходный URL) для ссылки прокси или (None, None)"""
    link = ProxyLink.parse(href)
    if link is None:
        return None, None
    return link.endpoint, link.target
