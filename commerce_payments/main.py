from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from commerce_payments.config import get_settings
from commerce_payments.database import Base, engine
from commerce_payments.errors import PaymentError
from commerce_payments.logging_config import configure_logging
from commerce_payments.routes import get_provider, router

settings = get_settings()
configure_logging(settings.log_level)
log = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    Base.metadata.create_all(bind=engine)
    if get_provider not in app.dependency_overrides:
        # Missing provider credentials fail the start-up, not the first request
        provider = get_provider()
        log.info("payment_provider_ready", provider=provider.kind().value)
    yield


app = FastAPI(title=settings.app_name, lifespan=lifespan)

app.include_router(router)


@app.exception_handler(PaymentError)
async def payment_error_handler(request: Request, exc: PaymentError):
    if exc.status_code >= 500:
        log.error("request_failed", path=request.url.path, error=exc.detail, error_type=type(exc).__name__)
    else:
        log.info("request_rejected", path=request.url.path, error=exc.detail, status_code=exc.status_code)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())
