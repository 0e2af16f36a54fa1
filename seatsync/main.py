import asyncio
import importlib
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Optional

import sentry_sdk
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from redis.exceptions import RedisError
from sentry_sdk.integrations.asgi import SentryAsgiMiddleware
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from seatsync.config import Settings, settings as default_settings
from seatsync.container import Services, build_services
from seatsync.db.session import create_schema
from seatsync.errors import SeatSyncError
from seatsync.logging_setup import TRACE_ID_CTX, setup_logging
from seatsync.metrics import update_hold_gauges
from seatsync.realtime.broadcaster import RedisBroadcaster
from seatsync.services.hold_cache import SCHEDULE_KEY

logger = logging.getLogger(__name__)

# List of module names to include as routers
MODULES = [
    "seats",
    "bookings",
    "payments",
    "realtime",
]


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None, redis_factory=None) -> FastAPI:
    """Build the API. Pass ``services`` to reuse already-wired components (tests do)."""
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.services is None
        if owned:
            app.state.services = build_services(settings, redis_factory=redis_factory)
        svc = app.state.services
        if settings.AUTO_CREATE_SCHEMA:
            await create_schema(svc.engine)

        stop = asyncio.Event()
        tasks = []
        if isinstance(svc.broadcaster, RedisBroadcaster):
            tasks.append(asyncio.create_task(svc.broadcaster.relay()))
        if settings.SWEEPER_MODE == "inprocess":
            tasks.append(asyncio.create_task(svc.sweeper.run_forever(stop)))
        elif settings.SWEEPER_MODE == "celery":
            # sweeping happens in the beat worker; keep our watched scopes visible to it
            tasks.append(asyncio.create_task(svc.sweeper.run_forever(stop, sweep=False)))
        logger.info("started (sweeper=%s, broadcast=%s)", settings.SWEEPER_MODE, settings.BROADCAST_BACKEND)
        try:
            yield
        finally:
            stop.set()
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            if owned:
                await svc.close()
                app.state.services = None

    app = FastAPI(title=settings.APP_NAME, lifespan=lifespan)
    app.state.services = services

    # initialize logging and Sentry
    setup_logging(debug=settings.DEBUG)
    if settings.SENTRY_DSN:
        sentry_sdk.init(dsn=settings.SENTRY_DSN)
        app.add_middleware(SentryAsgiMiddleware)

    @app.middleware("http")
    async def add_trace_id(request: Request, call_next):
        trace_id = request.headers.get("x-trace-id") or str(uuid.uuid4())
        TRACE_ID_CTX.set(trace_id)
        response = await call_next(request)
        response.headers["X-Trace-Id"] = trace_id
        return response

    @app.exception_handler(SeatSyncError)
    async def seat_error_handler(request: Request, exc: SeatSyncError):
        if exc.http_status >= 500:
            logger.error("request failed: %s", exc.message, exc_info=exc)
        return JSONResponse(status_code=exc.http_status, content={"detail": exc.to_dict()})

    for mod in MODULES:
        pkg = importlib.import_module(f"seatsync.modules.{mod}.router")
        if hasattr(pkg, "router"):
            app.include_router(pkg.router, prefix=f"/{mod}")

    @app.get("/")
    async def root():
        return {"app": settings.APP_NAME, "status": "ok"}

    @app.get("/metrics")
    async def metrics(request: Request):
        # update dynamic gauges before scraping
        await update_hold_gauges(request.app.state.services.redis, SCHEDULE_KEY)
        content = generate_latest()
        return Response(content=content, media_type=CONTENT_TYPE_LATEST)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/ready")
    async def ready(request: Request):
        svc = request.app.state.services
        try:
            await svc.redis.ping()
        except RedisError:
            return Response(status_code=503, content="redis unavailable")
        try:
            async with svc.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except SQLAlchemyError:
            return Response(status_code=503, content="database unavailable")
        return {"status": "ready"}

    return app


app = create_app()
