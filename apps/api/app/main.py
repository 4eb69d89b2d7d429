from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
import httpx
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from app.api.errors import crm_error_handler
from app.api.routes import router as api_router
from app.core.config import get_settings
from app.core.database import init_db
from app.core.errors import CRMError
from app.logging import configure_logging
from app.middleware.correlation_id import CorrelationIdMiddleware
from app.middleware.request_logging import RequestLoggingMiddleware
from app.otel import get_fastapi_server_request_hook, setup_otel
from app.storage.memory import KeyValueStore


configure_logging()
logger = logging.getLogger("app.lifecycle")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    init_db()
    owns_client = settings.storage_backend == "rest" and getattr(app.state, "http_client", None) is None
    if owns_client:
        app.state.http_client = httpx.Client(timeout=settings.rest_store_timeout_seconds)
    logger.info("system.started", extra={"operation": "startup", "backend": settings.storage_backend})
    try:
        yield
    finally:
        if owns_client:
            app.state.http_client.close()
            app.state.http_client = None
        logger.info("system.stopped", extra={"operation": "shutdown"})


def create_app() -> FastAPI:
    settings = get_settings()
    application = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
    application.state.kv_store = KeyValueStore()
    application.add_middleware(RequestLoggingMiddleware)
    application.add_middleware(CorrelationIdMiddleware)
    application.add_exception_handler(CRMError, crm_error_handler)
    application.include_router(api_router)

    if settings.otel_enabled:
        setup_otel("aether-crm", True)

    if not getattr(application, "_is_instrumented_by_opentelemetry", False):
        FastAPIInstrumentor().instrument_app(application, server_request_hook=get_fastapi_server_request_hook())
    return application


app = create_app()
