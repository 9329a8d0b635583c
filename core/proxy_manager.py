# proxy_manager.py
import asyncio
import logging
import time
import threading
from typing import Optional

from aiohttp import web

from core.config_manager import ConfigManager, get_config
from core.proxy.content_rewriter import NAVIGATE_PATH, RESOURCE_PATH, RewriteContext
from core.proxy.content_router import CORS_HEADERS, route_response
from core.proxy.errors import ProxyError
from core.proxy.fetcher import DOCUMENT_HEADERS, RESOURCE_HEADERS, FetchTimeouts, fetch_target
from core.proxy.url_guard import TargetRequest, validate_target
from utils.port_utils import check_port_availability

logger = logging.getLogger(__name__)


class BrowserProxy:
    def __init__(self, config: Optional[ConfigManager] = None):
        """
        Args:
            config: Конфигурация (по умолчанию - глобальная)
        """
        self.config = config or get_config()

        # Статистика производительности
        self.stats = {
            'total_requests': 0,
            'total_responses': 0,
            'active_connections': 0,
            'errors': 0,
            'rejected': 0,
        }

    def create_app(self) -> web.Application:
        """Создаёт aiohttp приложение с endpoint'ами прокси"""
        app = web.Application()
        app.router.add_get(NAVIGATE_PATH, self.handle_navigate)
        app.router.add_get(RESOURCE_PATH, self.handle_resource)
        app.router.add_get('/health', self.handle_health)
        return app

    def _timeouts(self, resource: bool) -> FetchTimeouts:
        fetch_config = self.config.get_fetch_config()
        total_key = 'resource_timeout' if resource else 'navigate_timeout'
        return FetchTimeouts(
            total=float(fetch_config.get(total_key, 10 if resource else 30)),
            forward_connect=float(fetch_config.get('forward_connect_timeout', 10)),
            forward_body=float(fetch_config.get('forward_body_timeout', 30)),
        )

    def _parse_target(self, request: web.Request) -> TargetRequest:
        """Guard: проверка до любого сетевого запроса"""
        url = validate_target(request.query.get('url'), self.config.get_blocked_hosts())
        forward_proxy = request.query.get('proxy') or None
        return TargetRequest(url=url, forward_proxy=forward_proxy)

    async def handle_navigate(self, request: web.Request) -> web.StreamResponse:
        """GET /api/proxy?url=...&proxy=host:port - страница для просмотра"""
        return await self._handle(request, resource=False)

    async def handle_resource(self, request: web.Request) -> web.StreamResponse:
        """GET /api/resource?url=... - картинки, скрипты, стили"""
        return await self._handle(request, resource=True)

    async def handle_health(self, request: web.Request) -> web.StreamResponse:
        return web.json_response({'status': 'ok', 'stats': self.get_full_stats()})

    async def _handle(self, request: web.Request, resource: bool) -> web.StreamResponse:
        self.stats['total_requests'] += 1
        self.stats['active_connections'] += 1
        error_headers = CORS_HEADERS if resource else None

        try:
            target = self._parse_target(request)
            fetch_config = self.config.get_fetch_config()

            result = await fetch_target(
                target,
                timeouts=self._timeouts(resource),
                headers=RESOURCE_HEADERS if resource else DOCUMENT_HEADERS,
                excerpt_chars=int(fetch_config.get('error_excerpt_chars', 500)),
            )

            context = RewriteContext.from_target(target, proxy_origin=str(request.url.origin()))
            body, headers = route_response(result, context, resource=resource)

            self.stats['total_responses'] += 1
            return web.Response(body=body, status=200, headers=headers)

        except ProxyError as e:
            self.stats['errors'] += 1
            if e.status == 400:
                self.stats['rejected'] += 1
            logger.debug(f"Proxy error {e.status} for {request.path_qs}: {e.message}")
            return web.json_response(e.to_payload(), status=e.status, headers=error_headers)

        except Exception as e:
            self.stats['errors'] += 1
            logger.error(f"❌ Unexpected proxy error for {request.path_qs}: {e}", exc_info=True)
            message = ("Failed to fetch the requested resource" if resource
                       else "Failed to fetch the requested URL. The website may be down or blocking requests.")
            return web.json_response({'error': message}, status=500, headers=error_headers)

        finally:
            self.stats['active_connections'] -= 1

    def get_full_stats(self):
        """Получить полную статистику прокси"""
        return {
            'requests': self.stats['total_requests'],
            'responses': self.stats['total_responses'],
            'active': self.stats['active_connections'],
            'errors': self.stats['errors'],
            'rejected': self.stats['rejected'],
        }


class ProxyManager:
    def __init__(self, config: Optional[ConfigManager] = None):
        self.config = config or get_config()
        self.is_running = False
        self.host = self.config.get('server.host', '127.0.0.1')
        self.local_port = int(self.config.get('server.port', 61000))
        self.proxy = None
        self.runner = None
        self.site = None
        self.loop = None
        self.thread = None
        self.app_name = "Proxy Browser"

        # Error tracking
        self.last_error_type = None  # Тип последней ошибки: 'port', 'server', 'unknown'
        self.last_error_details = None  # Детали последней ошибки

    def start(self, host: Optional[str] = None, port: Optional[int] = None) -> bool:
        """
        Запуск прокси сервера

        Args:
            host: Адрес для прослушивания (по умолчанию из конфига)
            port: Порт (по умолчанию из конфига)

        Returns:
            bool: True если успешно запущен
        """
        if self.is_running:
            logger.warning("⚠️ Прокси уже запущен")
            return False

        if host:
            self.host = host
        if port:
            self.local_port = int(port)

        # Проверка порта
        port_available, port_message = check_port_availability(self.local_port, self.host)
        if not port_available:
            logger.error(f"❌ {port_message}")
            self.last_error_type = 'port'
            self.last_error_details = port_message
            return False

        try:
            # Запускаем сервер в отдельном потоке
            self.thread = threading.Thread(
                target=self._run_server,
                daemon=True
            )
            self.thread.start()

            # Ждём запуска (максимум 5 секунд)
            for _ in range(50):
                if self.is_running or not self.thread.is_alive():
                    break
                time.sleep(0.1)

            if not self.is_running:
                logger.error("❌ Прокси не запустился за отведенное время")
                self.last_error_type = self.last_error_type or 'server'
                return False

            logger.info(f"✅ Proxy server started on http://{self.host}:{self.local_port}")
            return True

        except Exception as e:
            logger.error(f"❌ Failed to start proxy: {e}")
            self.last_error_type = 'unknown'
            self.last_error_details = str(e)
            self.stop()
            return False

    def _run_server(self):
        """Запускает сервер в отдельном event loop"""
        try:
            # Создаем новый event loop для этого потока
            self.loop = asyncio.new_event_loop()
            asyncio.set_event_loop(self.loop)

            # Запускаем сервер; при ошибке цикл не крутим впустую
            if not self.loop.run_until_complete(self._start_server()):
                return

            # Запускаем event loop
            self.loop.run_forever()

        except Exception as e:
            logger.error(f"❌ Ошибка в event loop: {e}")
            self.is_running = False
        finally:
            if self.loop:
                self.loop.close()

    async def _start_server(self) -> bool:
        """Асинхронный запуск сервера"""
        try:
            self.proxy = BrowserProxy(self.config)
            app = self.proxy.create_app()

            # Отмена обработчика при разрыве соединения клиентом прерывает и исходящий запрос
            self.runner = web.AppRunner(app, access_log=None, handler_cancellation=True)
            await self.runner.setup()

            self.site = web.TCPSite(
                self.runner,
                host=self.host,
                port=self.local_port,
            )

            await self.site.start()
            self.is_running = True
            logger.info(f"✅ Сервер успешно запущен на {self.host}:{self.local_port}")
            return True

        except Exception as e:
            logger.error(f"❌ Ошибка запуска сервера: {e}")
            self.last_error_type = 'server'
            self.last_error_details = str(e)
            self.is_running = False
            if self.runner:
                await self.runner.cleanup()
            return False

    def stop(self):
        """Остановка прокси сервера"""
        if not self.is_running:
            logger.warning("⚠️ Прокси не запущен")
            return

        try:
            logger.info("🛑 Stopping proxy...")

            self.is_running = False

            # Останавливаем aiohttp сервер
            if self.loop and self.loop.is_running():
                future = asyncio.run_coroutine_threadsafe(self._stop_server(), self.loop)
                future.result(timeout=5)

                # Останавливаем event loop
                self.loop.call_soon_threadsafe(self.loop.stop)

            # Ждем завершения потока
            if self.thread and self.thread.is_alive():
                self.thread.join(timeout=5)

            # Логируем статистику
            if self.proxy:
                stats = self.proxy.get_full_stats()
                logger.info(
                    f"📊 Session statistics:\n"
                    f"   Total requests: {stats.get('requests', 0)}\n"
                    f"   Total responses: {stats.get('responses', 0)}\n"
                    f"   Errors: {stats.get('errors', 0)}\n"
                    f"   Rejected by guard: {stats.get('rejected', 0)}"
                )

            logger.info("✅ Proxy stopped")

        except Exception as e:
            logger.error(f"❌ Error stopping proxy: {e}")
            logger.exception("Full traceback:")

    async def _stop_server(self):
        """Асинхронная остановка сервера"""
        try:
            if self.site:
                await self.site.stop()
            if self.runner:
                await self.runner.cleanup()
            logger.debug("✅ Сервер успешно остановлен")
        except Exception as e:
            logger.error(f"❌ Ошибка при остановке сервера: {e}")

    def get_status(self):
        """Возвращает статус прокси"""
        status = {
            'running': self.is_running,
            'host': self.host,
            'port': self.local_port,
            'last_error_type': self.last_error_type,
            'last_error_details': self.last_error_details,
        }

        # Добавляем статистику прокси
        if self.proxy and self.is_running:
            status['proxy_stats'] = self.proxy.get_full_stats()

        return status
