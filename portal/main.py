import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.responses import Response

from portal.access import AccessRequestService
from portal.auth import BootstrapCredentials, TokenIssuer
from portal.chat import ChatService
from portal.circuit_breaker import CircuitBreaker
from portal.config import Settings, get_settings
from portal.database import create_chat_store, create_portal_store
from portal.errors import register_exception_handlers
from portal.mailer import create_mailer
from portal.metrics import (
    REQUEST_COUNT,
    REQUEST_LATENCY,
    get_metrics_content,
    CONTENT_TYPE_LATEST,
)
from portal.papers import PaperService
from portal.profiles import ProfileService
from portal.routes import routers
from portal.uploads import create_upload_store

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def _breaker(name: str, settings: Settings) -> CircuitBreaker:
    return CircuitBreaker(
        name,
        max_failures=settings.cb_max_failures,
        reset_timeout=settings.cb_reset_timeout,
        call_timeout=settings.cb_call_timeout
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI lifespan context manager for startup and shutdown."""
    # Startup
    logger.info("Starting Research Portal...")
    settings: Settings = app.state.settings
    settings.storage_root.mkdir(parents=True, exist_ok=True)
    settings.uploads_dir.mkdir(parents=True, exist_ok=True)

    portal_store = create_portal_store(settings)
    chat_store = create_chat_store(settings)
    await portal_store.initialize()
    await chat_store.initialize()

    uploads = create_upload_store(settings, _breaker("uploads", settings))
    mailer = create_mailer(settings, _breaker("mail", settings))

    bootstrap = BootstrapCredentials.from_settings(settings)
    if bootstrap.enabled:
        logger.warning("Bootstrap credentials are ENABLED; set BOOTSTRAP_ENABLED=false in production")

    # Store in app state
    app.state.portal_store = portal_store
    app.state.chat_store = chat_store
    app.state.uploads = uploads
    app.state.mailer = mailer
    app.state.bootstrap = bootstrap
    app.state.token_issuer = TokenIssuer(settings.jwt_secret, settings.jwt_algorithm, settings.token_ttl_minutes)
    app.state.papers = PaperService(portal_store, uploads)
    app.state.access = AccessRequestService(
        portal_store,
        mailer,
        bootstrap,
        signin_url=settings.signin_url,
        pin_ttl_days=settings.pin_ttl_days,
    )
    app.state.profiles = ProfileService(portal_store)
    app.state.chat = ChatService(chat_store, portal_store, history_limit=settings.chat_history_limit)

    logger.info(f"Research Portal started (data: {settings.storage_root}, uploads: {settings.upload_backend})")

    yield

    # Shutdown
    logger.info("Shutting down Research Portal...")
    await uploads.close()
    await mailer.close()
    logger.info("Research Portal shut down complete")


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(
        title="Research Portal",
        description="Paper workflow, access requests and staff chat",
        version="0.1.0",
        lifespan=lifespan
    )
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(app)

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        """Middleware to collect request metrics."""
        start_time = time.time()
        status = "500"
        try:
            response = await call_next(request)
            status = str(response.status_code)
        finally:
            duration = time.time() - start_time
            route = request.scope.get("route")
            endpoint = getattr(route, "path", request.url.path)
            method = request.method

            REQUEST_COUNT.labels(method=method, endpoint=endpoint, status=status).inc()
            REQUEST_LATENCY.labels(method=method, endpoint=endpoint).observe(duration)

        return response

    for router in routers:
        app.include_router(router)

    @app.get("/health")
    async def health(request: Request):
        """Health check endpoint."""
        current: Settings = request.app.state.settings
        directories = {
            "dataDir": current.storage_root.is_dir(),
            "uploadsDir": current.uploads_dir.is_dir(),
            "dbFile": current.db_file.is_file(),
        }
        directories["writable"] = all(
            os.access(path, os.W_OK) for path in (current.storage_root, current.uploads_dir) if path.exists()
        )
        status = "UP" if directories["dataDir"] and directories["writable"] else "DEGRADED"
        return {"status": status, "directories": directories}

    @app.get("/metrics")
    async def metrics():
        """Prometheus metrics endpoint."""
        return Response(
            content=get_metrics_content(),
            media_type=CONTENT_TYPE_LATEST
        )

    return app


app = create_app()
