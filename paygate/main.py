import uuid
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from paygate.config import get_settings
from paygate.database import init_db
from paygate.errors import PaymentError
from paygate.logs import configure_logging
from paygate.routes import admin_router, router

settings = get_settings()
configure_logging(settings)
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    logger.info("service_started", app=settings.APP_NAME, version=settings.APP_VERSION)
    yield


app = FastAPI(title=settings.APP_NAME, version=settings.APP_VERSION, lifespan=lifespan)

app.include_router(router)
app.include_router(admin_router)


@app.middleware("http")
async def bind_request_context(request: Request, call_next):
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        request_id=request.headers.get("X-Request-ID") or uuid.uuid4().hex,
        path=request.url.path,
        method=request.method,
    )
    return await call_next(request)


@app.exception_handler(PaymentError)
async def payment_error_handler(request: Request, exc: PaymentError):
    # Internal detail is logged, only the user-safe message goes out
    logger.warning("payment_error", code=exc.code, status_code=exc.status_code, detail=exc.detail)
    body = {"error": exc.code, "message": exc.user_message}
    if settings.DEBUG:
        body["debug"] = {"detail": exc.detail}
    return JSONResponse(status_code=exc.status_code, content=body)


@app.get("/health")
def health():
    return {"status": "ok", "service": settings.APP_NAME, "version": settings.APP_VERSION}
