import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from quickcare.config import settings
from quickcare.db import PostgresOrderStore, get_pool, init_schema
from quickcare.errors import (
    AlreadyAssignedError,
    ForbiddenError,
    InvalidTransitionError,
    NotClaimableError,
    NotFoundError,
    OrderLifecycleError,
    PreconditionNotMetError,
    StoreUnavailableError,
)
from quickcare.metrics import get_metrics_bytes, get_metrics_content_type
from quickcare.notifier import InMemoryNotifier, RedisNotifier
from quickcare.redis_client import close_redis, get_redis
from quickcare.routes import deliveries, medicines, orders, profiles
from quickcare.service import OrderLifecycleService
from quickcare.store import InMemoryOrderStore

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger(__name__)

ERROR_STATUS_CODES: dict[type[OrderLifecycleError], int] = {
    ForbiddenError: 403,
    NotFoundError: 404,
    InvalidTransitionError: 409,
    AlreadyAssignedError: 409,
    NotClaimableError: 409,
    PreconditionNotMetError: 422,
    StoreUnavailableError: 503,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.store_backend == "postgres":
        pool = await get_pool()
        await init_schema(pool)
        store = PostgresOrderStore(pool)
    else:
        store = InMemoryOrderStore()
    if settings.notifier_backend == "redis":
        notifier = RedisNotifier(await get_redis())
    else:
        notifier = InMemoryNotifier()
    app.state.service = OrderLifecycleService(store, notifier, settings)
    logger.info("QuickCare ready (store=%s, notifier=%s)", settings.store_backend, settings.notifier_backend)
    yield
    await store.close()
    await notifier.close()
    await close_redis()


app = FastAPI(title="QuickCare Orders", lifespan=lifespan)
app.include_router(profiles.router)
app.include_router(medicines.router)
app.include_router(orders.router)
app.include_router(deliveries.router)


@app.exception_handler(OrderLifecycleError)
async def lifecycle_error_handler(request: Request, exc: OrderLifecycleError) -> JSONResponse:
    status_code = ERROR_STATUS_CODES.get(type(exc), 400)
    if status_code == 503:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
    content = {"status": "error", "error": exc.code, "detail": str(exc)}
    if isinstance(exc, InvalidTransitionError):
        content["current_status"] = exc.current_status
        content["action"] = exc.action
    return JSONResponse(status_code=status_code, content=content)


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}


@app.get("/metrics")
async def metrics() -> Response:
    """Prometheus scrape endpoint: order transitions, claims, notification failures."""
    return Response(
        content=get_metrics_bytes(),
        media_type=get_metrics_content_type(),
    )
