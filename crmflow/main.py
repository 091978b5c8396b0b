import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from crmflow.api.routes import router as api_router
from crmflow.core.config import get_settings
from crmflow.logging import configure_logging
from crmflow.middleware.correlation_id import CorrelationIdMiddleware
from crmflow.middleware.request_logging import RequestLoggingMiddleware
from crmflow.otel import instrument_app, setup_otel


configure_logging()
logger = logging.getLogger("crmflow.lifecycle")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info("service.started", extra={"store_backend": settings.store_backend, "environment": settings.app_env})
    yield
    logger.info("service.stopped")


settings = get_settings()
setup_otel(settings)

app = FastAPI(title=settings.app_name, version="0.1.0", debug=settings.app_debug, lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router, prefix="/api")

instrument_app(app)
