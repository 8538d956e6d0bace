import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .cache import ProfileCache
from .config import configure_logging, get_settings
from .database import dispose_engine, init_engine
from .errors import MarketplaceError
from .messaging import EventPublisher, RecordingPublisher
from .payments import StripeGateway
from .routers import (
    address_router,
    favorite_router,
    message_router,
    order_router,
    product_router,
    report_router,
    review_router,
    stripe_router,
    user_router,
    webhook_router,
)

logger = logging.getLogger(__name__)

settings = get_settings()

app = FastAPI(title="Threadly Marketplace", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(product_router.router)
app.include_router(order_router.router)
app.include_router(webhook_router.router)
app.include_router(address_router.router)
app.include_router(review_router.router)
app.include_router(favorite_router.router)
app.include_router(user_router.router)
app.include_router(stripe_router.router)
app.include_router(message_router.router)
app.include_router(report_router.router)


def _error(status_code: int, message: str, code: str, details=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": message, "code": code, "details": jsonable_encoder(details)},
    )


@app.exception_handler(MarketplaceError)
async def marketplace_error_handler(request: Request, exc: MarketplaceError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return _error(exc.status_code, exc.message, exc.code, exc.details)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return _error(400, "Invalid request", "validation_error", exc.errors())


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    code = "not_found" if exc.status_code == 404 else "http_error"
    return _error(exc.status_code, str(exc.detail), code)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return _error(500, "Internal server error", "internal_error")


@app.on_event("startup")
def _startup() -> None:
    configure_logging(settings.log_level)
    init_engine(settings.database_url, echo=settings.db_echo)

    if settings.rabbitmq_url:
        app.state.publisher = EventPublisher(settings.rabbitmq_url, settings.events_exchange)
    else:
        logger.warning("RABBITMQ_URL not set; events are kept in memory only")
        app.state.publisher = RecordingPublisher()

    app.state.profile_cache = (
        ProfileCache.from_url(settings.redis_url, ttl_seconds=settings.profile_cache_ttl)
        if settings.redis_url
        else None
    )
    app.state.gateway = StripeGateway(
        settings.stripe_secret_key,
        webhook_secret=settings.stripe_webhook_secret,
        currency=settings.stripe_currency,
        fee_percent=settings.platform_fee_percent,
    )
    logger.info("Threadly marketplace started")


@app.on_event("shutdown")
def _shutdown() -> None:
    cache = getattr(app.state, "profile_cache", None)
    if cache is not None:
        cache.close()
    dispose_engine()


@app.get("/")
def root():
    return {"status": "Threadly Marketplace is running!"}


@app.get("/health")
def health_check():
    return {"success": True, "data": {"status": "ok"}}
