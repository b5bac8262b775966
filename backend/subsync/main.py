"""FastAPI application: billing and admin routers plus the background workers"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from subsync.api import admin, billing
from subsync.core.config import settings
from subsync.core.exceptions import BillingError
from subsync.core.logging import setup_logging
from subsync.db.session import init_db
from subsync.services.container import build_services

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the schema, wire services, and run the scheduler and queue poller"""
    try:
        init_db()
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

    # Tests install their own container before startup
    services = getattr(app.state, "services", None)
    if services is None:
        services = build_services(settings)
        app.state.services = services

    if settings.SCHEDULER_ENABLED:
        services.scheduler.start()
        services.task_queue.start_processing(settings.TASK_QUEUE_POLL_INTERVAL)
        logger.info(f"Background workers started ({len(services.scheduler.jobs)} scheduled jobs)")
    else:
        logger.info("Scheduler disabled (SCHEDULER_ENABLED=false)")

    yield

    logger.info("Stopping background workers...")
    await services.task_queue.stop_processing()
    await services.scheduler.shutdown()


def cors_origins() -> list:
    origins = [settings.FRONTEND_URL]
    if settings.ENVIRONMENT == "development":
        origins += ["http://localhost:3000", "http://127.0.0.1:3000"]
    return origins


app = FastAPI(
    title="Subsync Billing",
    description="Subscription billing across Stripe, Mercado Pago and Kiwify",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(billing.router)
app.include_router(admin.router)


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError):
    """Billing errors that escape a route keep their own status code"""
    logger.warning(f"{request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception on {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


@app.get("/metrics")
def metrics_endpoint():
    """Prometheus scrape endpoint"""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/health")
def health_check():
    return {"status": "healthy"}
