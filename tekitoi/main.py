# tekitoi/main.py
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI
from fastapi.requests import Request
from fastapi.responses import JSONResponse, RedirectResponse

from . import __version__
from .oauth.endpoints import api_router, oauth_router
from .oauth.errors import OAuthError, RedirectableError
from .oauth.models import Clock, utc_now
from .registry.client_registry import ClientRegistry
from .settings import Settings, configure_logging
from .storage import AbstractCorrelationStore, build_correlation_store, run_expiry_sweeper
from .utils.security import FernetEncryptor

logger = logging.getLogger(__name__)


def _load_registry(settings: Settings) -> ClientRegistry:
    if not settings.dataset_path:
        logger.warning("No dataset_path configured. The broker starts without any application.")
        return ClientRegistry()
    return ClientRegistry.from_dataset_file(settings.dataset_path)


async def redirectable_error_handler(request: Request, exc: RedirectableError) -> RedirectResponse:
    logger.info(
        f"Redirecting error '{exc.inner.error}' on {request.url.path} back to the relying application."
    )
    return RedirectResponse(url=exc.redirect_url(), status_code=307)


async def oauth_error_handler(request: Request, exc: OAuthError) -> JSONResponse:
    log = logger.error if exc.status_code >= 500 else logger.info
    log(f"OAuth error on {request.url.path}: {exc.status_code} {exc.detail}")
    return JSONResponse(status_code=exc.status_code, content=exc.detail, headers=exc.headers)


def create_app(
    settings: Optional[Settings] = None,
    registry: Optional[ClientRegistry] = None,
    store: Optional[AbstractCorrelationStore] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    clock: Clock = utc_now
) -> FastAPI:
    """
    Build the broker application.

    Every collaborator can be injected; missing ones are built from settings.
    Stores and HTTP clients built here are also closed here on shutdown.
    """
    settings = settings or Settings()
    configure_logging(settings)

    registry = registry if registry is not None else _load_registry(settings)
    store = store if store is not None else build_correlation_store(settings, clock=clock)
    encryptor = FernetEncryptor(settings.token_encryption_key) if settings.token_encryption_key else None
    owns_http_client = http_client is None

    @asynccontextmanager
    async def tekitoi_lifespan(app_instance: FastAPI):
        """Open the correlation store and the upstream HTTP client, run the expiry sweeper."""
        logger.info("Application startup initiated.")
        if owns_http_client:
            app_instance.state.http_client = httpx.AsyncClient(timeout=settings.upstream_timeout_seconds)
        await store.initialize()
        logger.info(f"Correlation store {type(store).__name__} initialized.")

        sweeper_task: Optional[asyncio.Task] = None
        if settings.expiry_sweep_interval_seconds > 0:
            sweeper_task = asyncio.create_task(
                run_expiry_sweeper(store, settings.expiry_sweep_interval_seconds)
            )
        try:
            yield
        finally:
            logger.info("Application shutdown initiated.")
            if sweeper_task is not None:
                sweeper_task.cancel()
                try:
                    await sweeper_task
                except asyncio.CancelledError:
                    pass
            try:
                await store.teardown()
            except Exception as e_td:
                logger.error(f"Teardown error: {e_td}", exc_info=True)
            if owns_http_client:
                await app_instance.state.http_client.aclose()
            logger.info("All components torn down.")

    app = FastAPI(
        title=settings.app_name,
        debug=settings.debug_mode,
        version=__version__,
        lifespan=tekitoi_lifespan
    )
    app.state.settings = settings
    app.state.registry = registry
    app.state.store = store
    app.state.encryptor = encryptor
    app.state.clock = clock
    app.state.http_client = http_client

    # RedirectableError subclasses nothing from OAuthError, both handlers are needed
    app.add_exception_handler(RedirectableError, redirectable_error_handler)
    app.add_exception_handler(OAuthError, oauth_error_handler)

    app.include_router(oauth_router, tags=["Authorization"])
    app.include_router(api_router, tags=["API"])

    logger.info(
        f"{settings.app_name} initialized. Storage: {settings.storage_backend}. "
        f"Applications: {len(registry.applications)}."
    )
    return app
