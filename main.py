# main.py
import asyncio
import logging
import sys
import time
from pathlib import Path
from typing import Optional

import typer

from core.config_manager import ConfigManager, get_app_data_dir, get_config

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="proxy-browser",
    help="Content-rewriting browsing proxy.",
    no_args_is_help=True,
)


def setup_logging(config: ConfigManager):
    """Настраивает логирование ДО всех операций с ротацией"""
    from logging.handlers import RotatingFileHandler

    logs_dir = get_app_data_dir() / "logs"
    logs_dir.mkdir(exist_ok=True)

    log_file = logs_dir / "proxy_browser.log"
    formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    # Ротирующий обработчик: по умолчанию макс 5MB, 5 резервных копий
    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=int(config.get('logging.max_bytes', 5 * 1024 * 1024)),
        backupCount=int(config.get('logging.backup_count', 5)),
        encoding='utf-8'
    )
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    level = str(config.get('logging.level', 'INFO')).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        handlers=[console_handler, file_handler],
        force=True,
    )


def setup_exception_handler():
    """Настраивает глобальный обработчик исключений"""

    def exception_handler(exc_type, exc_value, exc_traceback):
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_traceback)
            return

        logger.critical("Необработанное исключение:",
                        exc_info=(exc_type, exc_value, exc_traceback))

    sys.excepthook = exception_handler


def _load_config(config_path: Optional[Path]) -> ConfigManager:
    return ConfigManager(config_path) if config_path else get_config()


@app.command("serve")
def serve(
    host: Optional[str] = typer.Option(None, help="Listen address (default from config)."),
    port: Optional[int] = typer.Option(None, help="Listen port (default from config)."),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config.json."),
) -> None:
    """Run the proxy server until interrupted."""
    from core.proxy_manager import ProxyManager

    config = _load_config(config_path)
    setup_logging(config)
    setup_exception_handler()

    logger.info("🚀 Запуск Proxy Browser")
    manager = ProxyManager(config)
    if not manager.start(host, port):
        status = manager.get_status()
        typer.echo(f"❌ Failed to start: {status['last_error_details'] or status['last_error_type']}")
        raise typer.Exit(1)

    typer.echo(f"✅ Listening on http://{manager.host}:{manager.local_port}/api/proxy?url=...")
    try:
        while manager.is_running:
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("👋 Остановка по Ctrl+C")
    finally:
        if manager.is_running:
            manager.stop()


@app.command("probe-proxy")
def probe_proxy_command(
    address: str = typer.Argument(..., help="Forwarding proxy as HOST:PORT."),
    probe_url: Optional[str] = typer.Option(None, "--probe-url", help="Endpoint requested through the proxy."),
    timeout: float = typer.Option(5.0, help="Overall probe timeout in seconds."),
) -> None:
    """Check that a forwarding proxy actually relays a request."""
    from core.proxy_pool import DEFAULT_PROBE_URL, probe_proxy

    result = asyncio.run(probe_proxy(address, probe_url or DEFAULT_PROBE_URL, timeout))
    if result.reachable:
        typer.echo(f"✅ {result.address} reachable ({result.latency_ms} ms)")
        return
    typer.echo(f"❌ {result.address} unreachable: {result.error}")
    raise typer.Exit(1)


@app.command("scan")
def scan(
    source_url: Optional[str] = typer.Option(None, "--source", help="Plain-text HOST:PORT list."),
    limit: int = typer.Option(10, help="How many candidates to probe."),
    timeout: float = typer.Option(5.0, help="Per-probe timeout in seconds."),
) -> None:
    """Load proxy candidates and probe them."""
    from core.proxy.errors import ProxyError
    from core.proxy_pool import DEFAULT_SOURCE_URL, fetch_candidates, probe_all

    async def run():
        candidates = await fetch_candidates(source_url or DEFAULT_SOURCE_URL)
        return await probe_all(candidates[:limit], timeout=timeout)

    try:
        results = asyncio.run(run())
    except ProxyError as e:
        typer.echo(f"❌ Failed to load candidates: {e.message}")
        raise typer.Exit(1)

    if not results:
        typer.echo("No candidates found.")
        return
    for result in results:
        if result.reachable:
            typer.echo(f"  ✅ {result.address}  {result.latency_ms} ms")
        else:
            typer.echo(f"  ❌ {result.address}  {result.error}")


if __name__ == '__main__':
    app()
