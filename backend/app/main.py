"""
Postpartum Hypertension Emergency Response API
Protocol workflow engine for severe postpartum hypertension: BP confirmation,
medication algorithms, protocol deadlines and escalation.
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .core.config import settings
from .core.exceptions import NotFoundError, PreconditionError, StoreError
from .core.logging_config import setup_logging
from .models.base import Base, engine
from .api import admin, notifications, patients, sessions
from .seed_demo import seed_demo_data
from .services.store import WorkflowStore  # noqa: F401 - registers every mapper
from .services.timer_watcher import TimerExpiryWatcher
from .services.workflow import get_registry

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(settings.LOG_LEVEL)

    # Create all database tables
    # NOTE: In production, use Alembic migrations instead of create_all()
    Base.metadata.create_all(bind=engine)

    # Seed demo patients (idempotent)
    seed_demo_data()

    watcher = None
    if settings.TIMER_WATCHER_ENABLED:
        registry = get_registry()
        watcher = TimerExpiryWatcher(
            registry.store,
            on_expired=registry.on_timer_expired,
            clock=registry.clock,
        )
        watcher.start()
    logger.info("%s %s started", settings.APP_NAME, settings.VERSION)
    try:
        yield
    finally:
        if watcher is not None:
            await watcher.stop()


app = FastAPI(
    title="Postpartum Hypertension Emergency Response API",
    description=(
        "Protocol workflow engine for postpartum hypertensive emergencies: "
        "BP confirmation, medication algorithms, protocol timers and escalation."
    ),
    version=settings.VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # TODO: Restrict to the unit's client origins in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content=exc.to_dict())


@app.exception_handler(PreconditionError)
async def precondition_handler(request: Request, exc: PreconditionError):
    return JSONResponse(status_code=409, content=exc.to_dict())


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    logger.warning("Store error on %s %s: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=503, content=exc.to_dict())


app.include_router(patients.router, prefix="/api/v1")
app.include_router(sessions.router, prefix="/api/v1")
app.include_router(sessions.protocols_router, prefix="/api/v1")
app.include_router(notifications.router, prefix="/api/v1")
app.include_router(admin.router, prefix="/api/v1")


@app.get("/health")
def health_check():
    return {"status": "healthy", "service": settings.APP_NAME, "version": settings.VERSION}
