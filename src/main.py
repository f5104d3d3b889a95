"""
SANAD ER SLA Service - Main Application
=========================================

SLA timing and priority escalation for Emergency Room requests.

Modules:
- SLA Monitoring: Deadlines, countdowns, breaches and escalations for
  consultation, lab, imaging and procedure requests

Clean Architecture Layers:
- Interfaces: FastAPI controllers
- Application: Services and DTOs
- Domain: Entities, value objects, escalation trigger
- Infrastructure: Database, policy file, event bus, Slack, scheduler
"""

import asyncio
from contextlib import asynccontextmanager, suppress
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError

# Configuration and Core
from config import settings
from core import ApplicationException

# Infrastructure
from infrastructure.database import (
    init_database, close_database, create_tables, get_session_context
)

# SLA Module
from sla.infrastructure import (
    SLAPolicyManager,
    SLAEventBus,
    SlackAlertNotifier,
    SLAScheduler,
    SQLAlchemyTimedRequestRepository,
    SQLAlchemyEventRepository,
)
from sla.application import SLAEvaluationService, publish_all
from sla.interfaces import sla_router

# Shared
from shared.api.middleware import (
    CorrelationIDMiddleware,
    MetricsMiddleware,
    LoggingMiddleware,
    application_exception_handler,
    global_exception_handler
)
from shared.infrastructure.logging import setup_logging, get_logger

logger = get_logger(__name__)


async def run_sla_tick(policy_manager: SLAPolicyManager, event_bus: SLAEventBus) -> None:
    """One background SLA tick; events are published after commit."""
    async with get_session_context() as session:
        evaluation_service = SLAEvaluationService(
            SQLAlchemyTimedRequestRepository(session),
            SQLAlchemyEventRepository(session),
            policy_manager
        )
        result = await evaluation_service.evaluate_open_requests()

    publish_all(event_bus, result.events)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Application lifespan manager.

    STARTUP:
    1. Setup structured logging
    2. Initialize database and create tables
    3. Load SLA policy table and start watching it
    4. Start event bus and Slack notifier
    5. Start SLA scheduler

    SHUTDOWN:
    1. Stop SLA scheduler
    2. Stop notifier and policy watcher
    3. Close database connections
    """
    # === STARTUP ===
    setup_logging(settings.log_level, settings.environment)
    logger.info("Starting ER SLA Service", extra={
        "version": settings.app_version,
        "environment": settings.environment
    })

    logger.info("Initializing database")
    init_database()

    # Create tables (for development - use Alembic in production)
    logger.info("Creating database tables")
    try:
        await create_tables()
    except (OSError, SQLAlchemyError) as e:
        logger.warning(
            "Database not available - running in degraded mode",
            extra={"error": str(e)}
        )

    # A malformed policy file stops startup here
    logger.info("Loading SLA policy table")
    policy_manager = SLAPolicyManager()
    policy_manager.load(settings.sla_policy_path)
    policy_manager.start_watching()

    event_bus = SLAEventBus(settings.event_queue_size)
    slack_notifier = SlackAlertNotifier()
    notifier_task = asyncio.create_task(
        slack_notifier.consume(event_bus.subscribe("slack"))
    )

    sla_scheduler = None
    if settings.sla_evaluation_interval > 0:
        async def sla_evaluation_job():
            """Background SLA evaluation job."""
            await run_sla_tick(policy_manager, event_bus)

        sla_scheduler = SLAScheduler(interval_seconds=settings.sla_evaluation_interval)
        await sla_scheduler.start(sla_evaluation_job)
    else:
        logger.info("SLA scheduler disabled")

    app.state.policy_manager = policy_manager
    app.state.event_bus = event_bus
    app.state.sla_scheduler = sla_scheduler

    logger.info("ER SLA Service started successfully")

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Shutting down ER SLA Service")

    if sla_scheduler:
        await sla_scheduler.stop()

    notifier_task.cancel()
    with suppress(asyncio.CancelledError):
        await notifier_task
    await slack_notifier.close()

    policy_manager.stop_watching()

    await close_database()

    logger.info("ER SLA Service shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="SANAD ER SLA API",
    description="""
    ## Emergency Room SLA Timing & Escalation

    Tracks how long consultation, lab, imaging and procedure requests have
    left before their response or completion is due, and escalates when
    they run over.

    ---

    ### SLA Monitoring Module

    **Endpoints:**
    - `POST /sla/requests` - Create a timed request (deadline fixed at creation)
    - `GET /sla/requests/{id}` - Request with live countdown
    - `POST /sla/requests/{id}/acknowledge|own|complete|cancel` - Lifecycle
    - `GET /sla/policies` - Current SLA policy table
    - `GET /sla/dashboard` - Flow-manager summary
    - `GET /sla/events` - Breach and escalation history
    - `POST /sla/evaluate` - Run one SLA tick now

    **Countdown colours:** `safe` / `warning` (below the policy's warning
    threshold) / `danger` (below 20%) / `expired`

    ---

    ### SLA Time Limits (Minutes)

    | Request Type | Critical | Urgent | Stable |
    |--------------|----------|--------|--------|
    | Consultation | 10 / 30  | 20 / 60  | 45 / 120 |
    | Lab          | 15 / 45  | 30 / 90  | 60 / 180 |
    | Imaging      | 20 / 60  | 40 / 120 | 90 / 240 |
    | Procedure    | 15 / 45  | 30 / 90  | 60 / 180 |

    *Format: Response SLA / Completion SLA*
    """,
    version=settings.app_version,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# === CORS Middleware ===
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# === Custom Middleware (from shared) ===
app.add_middleware(CorrelationIDMiddleware)
app.add_middleware(MetricsMiddleware)
app.add_middleware(LoggingMiddleware)
app.add_exception_handler(ApplicationException, application_exception_handler)
app.add_exception_handler(Exception, global_exception_handler)

# === Include Module Routers ===
app.include_router(sla_router)


# === Health Check Endpoint ===

@app.get("/health", tags=["Health"], responses={
    200: {
        "description": "Service is healthy",
        "content": {
            "application/json": {
                "example": {
                    "status": "healthy",
                    "version": "1.0.0",
                    "environment": "development",
                    "checks": {
                        "sla_policies": "loaded (12 policies)",
                        "sla_scheduler": "running",
                        "event_bus": "1 subscribers"
                    }
                }
            }
        }
    }
})
async def health_check(request: Request):
    """
    Health check endpoint for load balancers and orchestrators.

    Returns service health status including:
    - SLA policy table status
    - Scheduler state
    - Event bus subscribers
    """
    policy_manager = getattr(request.app.state, "policy_manager", None)
    sla_scheduler = getattr(request.app.state, "sla_scheduler", None)
    event_bus = getattr(request.app.state, "event_bus", None)

    checks = {
        "sla_policies": (
            f"loaded ({len(policy_manager.get_policies())} policies)"
            if policy_manager else "not_loaded"
        ),
        "sla_scheduler": "running" if sla_scheduler and sla_scheduler.is_running else "stopped",
        "event_bus": f"{len(event_bus.subscribers)} subscribers" if event_bus else "not_started"
    }

    return {
        "status": "healthy" if policy_manager else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "checks": checks
    }


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint with API information."""
    return {
        "service": "ER SLA Service",
        "version": settings.app_version,
        "architecture": "Clean Architecture / Modular Monolith",
        "docs": "/docs",
        "health": "/health",
        "modules": {
            "sla": {
                "prefix": "/sla",
                "endpoints": [
                    "POST /sla/requests - Create timed request",
                    "GET /sla/requests/{id} - Get request SLA status",
                    "POST /sla/requests/{id}/acknowledge - Acknowledge request",
                    "POST /sla/requests/{id}/own - Take ownership",
                    "POST /sla/requests/{id}/complete - Complete request",
                    "POST /sla/requests/{id}/cancel - Cancel request",
                    "GET /sla/policies - Get SLA policy table",
                    "GET /sla/dashboard - Get dashboard",
                    "GET /sla/events - Get SLA alert history",
                    "POST /sla/evaluate - Run SLA tick"
                ]
            }
        }
    }


# === Development Entry Point ===

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.environment == "development",
        log_level="info"
    )
