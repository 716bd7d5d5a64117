import time
import uuid

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from app.core.config import get_settings
from app.core.exceptions import (
    AppError,
    app_exception_handler,
    generic_exception_handler,
    validation_exception_handler,
)
from app.core.logging import bind_request_id, clear_request_context, configure_logging, get_logger
from app.db.init import close_db, init_db
from app.routers import admin, cards, points, rewards
from app.storage.base import get_store

settings = get_settings()
configure_logging(debug=settings.debug)
log = get_logger(__name__)

app = FastAPI(
    title="SchoolPoints Ledger API",
    version="1.0.0",
    description="Points balances, recharge card redemption and peer transfers.",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_context_middleware(request, call_next):
    clear_request_context()
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    request.state.request_id = request_id
    bind_request_id(request_id)
    started = time.perf_counter()
    response = await call_next(request)
    fields = {
        "method": request.method,
        "path": request.url.path,
        "status_code": response.status_code,
        "duration_ms": round((time.perf_counter() - started) * 1000, 2),
    }
    if response.status_code >= 500:
        log.warning("request_failed", **fields)
    else:
        log.info("request", **fields)
    response.headers["X-Request-ID"] = request_id
    return response


app.add_exception_handler(AppError, app_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)

app.include_router(points.router, prefix="/v1/points", tags=["points"])
app.include_router(cards.router, prefix="/v1/cards", tags=["cards"])
app.include_router(rewards.router, prefix="/v1/rewards", tags=["rewards"])
app.include_router(admin.router, prefix="/v1/admin", tags=["admin"])


@app.on_event("startup")
async def startup():
    if settings.sentry_dsn:
        import sentry_sdk
        sentry_sdk.init(dsn=settings.sentry_dsn, environment=settings.env, traces_sample_rate=0.1)
        log.info("startup", msg="Sentry enabled")
    if settings.ledger_backend == "mongo":
        await init_db()
    log.info("startup", msg="Ledger store ready", backend=settings.ledger_backend)


@app.on_event("shutdown")
async def shutdown():
    close_db()


@app.get("/health")
async def health():
    """Liveness: the process is up."""
    return {"status": "ok"}


@app.get("/ready")
async def ready():
    """Readiness: the ledger store answers. 503 STORE_UNAVAILABLE otherwise."""
    await get_store().ping()
    return {"status": "ready", "backend": settings.ledger_backend}
