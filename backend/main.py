"""
Application entry point.

Wires the credential client, raw credential cache, resolver and context
cache together, announces the domain map, and runs the dual-protocol
listener until SIGINT/SIGTERM.
"""
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

from fastapi import FastAPI

from config import ConfigurationError, Settings, get_settings
from routers import all_routers
from tls.announcer import announce_all, default_domain_map
from tls.context_cache import SecureContextCache
from tls.credential_client import CredentialClient
from tls.https_server import DualProtocolListener
from tls.resolver import HostnameCredentialResolver
from tls.routes import router as tls_router
from tls.storage import RawCredentialCache


logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: str = "INFO") -> None:
    """Configure root logging once at startup."""
    logging.basicConfig(level=level, format=LOG_FORMAT)


def set_log_level(level: str) -> None:
    """Change the root log level at runtime."""
    logging.getLogger().setLevel(level.upper())
    logger.info("Log level set to %s", level.upper())


app = FastAPI(
    title="SNI Credential Relay",
    description="Serves HTTP/HTTPS/WS/WSS for any hostname the credential service provisions.",
    docs_url="/api/docs",
    openapi_url="/api/openapi.json",
)
for _router in all_routers:
    app.include_router(_router)
app.include_router(tls_router)


def build_context_cache(
    settings: Settings, client: CredentialClient
) -> tuple[SecureContextCache, Optional[RawCredentialCache]]:
    """Create the resolver stack for the given settings."""
    raw_cache = RawCredentialCache(Path(settings.cache_dir)) if settings.cache_dir else None
    resolver = HostnameCredentialResolver(
        client,
        raw_cache=raw_cache,
        retries=settings.fetch_retries,
        base_delay_seconds=settings.retry_base_delay_seconds,
        max_delay_seconds=settings.retry_max_delay_seconds,
    )
    return SecureContextCache(resolver), raw_cache


def resolve_domain_map(settings: Settings) -> dict[str, str]:
    """Explicit domains if configured, otherwise one name per private address."""
    if settings.domains:
        return dict(settings.domains)
    return default_domain_map(settings.domain_name)


def log_endpoints(domain_map: dict[str, str], http_port: int, https_port: int) -> None:
    """Log the URLs each hostname can be reached at."""
    logger.info("Server started! Try any of the following endpoints:")
    for hostname in domain_map:
        logger.info("  http://%s:%s/", hostname, http_port)
        logger.info("  https://%s:%s/", hostname, https_port)
        logger.info("  ws://%s:%s/ws", hostname, http_port)
        logger.info("  wss://%s:%s/ws", hostname, https_port)


async def serve(settings: Settings, stop_event: Optional[asyncio.Event] = None) -> None:
    """
    Run the server until stop_event is set.

    Startup order: announce every hostname (best-effort), then bind the
    listeners. Announce failures never prevent the listeners from starting.
    """
    stop_event = stop_event or asyncio.Event()

    async with CredentialClient(
        settings.server_name,
        settings.server_username,
        settings.server_password,
        timeout=settings.request_timeout_seconds,
    ) as client:
        context_cache, raw_cache = build_context_cache(settings, client)
        domain_map = resolve_domain_map(settings)

        app.state.context_cache = context_cache
        app.state.raw_cache = raw_cache
        app.state.announce_results = await announce_all(client, domain_map)

        listener = DualProtocolListener(
            app,
            context_cache,
            host=settings.host,
            http_port=settings.http_port,
            https_port=settings.https_port,
            handshake_timeout=settings.handshake_timeout_seconds,
        )
        app.state.listener = listener

        await listener.start()
        log_endpoints(domain_map, listener.http_port, listener.https_port)
        try:
            await stop_event.wait()
        finally:
            await listener.stop()


async def _run_until_signal(settings: Settings) -> None:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)
    await serve(settings, stop_event)


def main() -> int:
    """Console entry point."""
    setup_logging()
    try:
        settings = get_settings()
    except ConfigurationError as e:
        logger.error("[CONFIG] Invalid configuration: %s", e)
        return 1

    set_log_level(settings.log_level)
    missing = settings.missing_required()
    if missing:
        logger.error("[CONFIG] Required configuration is missing: %s", ", ".join(missing))
        logger.error(
            "[CONFIG] Set it in settings.json or via environment variables, e.g. "
            "DOMAIN_NAME=lan.example.com SERVER_NAME=certs.example.com SERVER_PASSWORD=..."
        )
        return 1

    try:
        asyncio.run(_run_until_signal(settings))
    except OSError as e:
        logger.error("Cannot start listener: %s", e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
