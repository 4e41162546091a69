"""
Central KPI & Client Health Platform
Main FastAPI application
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from app.config import get_settings
from app.utils.logger import log
from app import __version__

# Import routers
from app.api import health, clients, dashboard

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    # Startup
    log.info(f"Starting {settings.app_name} v{__version__}")
    log.info(f"Environment: {settings.environment}")

    # Initialize database
    try:
        from app.models.base import init_db
        init_db()
        log.info("Database initialized")
    except Exception as e:
        log.error(f"Database initialization error: {str(e)}")

    # Start the warmup + health monitor timers
    from app.scheduler import start_scheduler, stop_scheduler
    if settings.enable_scheduler:
        try:
            start_scheduler()
        except Exception as e:
            log.error(f"Scheduler startup error: {str(e)}")

    yield

    # Shutdown
    stop_scheduler()
    log.info("Shutting down application")


# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    version=__version__,
    description="""
    Fleet monitor for per-client ClickUp integrations

    - Continuous health probing with failure streaks and auto-recovery
    - Throttled failure alerts via email relay, WhatsApp relay or webhook
    - Operational KPIs: WIP, throughput, lead/cycle time, SLA compliance
    - Pipeline (list/folder/space) and people views with trend comparison
    - KPI export as JSON or CSV
    """,
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["health"])
app.include_router(clients.router)
app.include_router(dashboard.router)


@app.get("/")
async def root():
    """Root endpoint with API information"""
    return {
        "app": settings.app_name,
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
        "status": "/status",
        "endpoints": {
            "list_clients": "GET /clients",
            "register_client": "POST /clients",
            "update_client": "PUT /clients/{id}",
            "alert_settings": "PUT /clients/{id}/settings",
            "client_health": "GET /clients/{id}/health",
            "health_check": "POST /clients/{id}/health-check",
            "recover": "POST /clients/{id}/recover",
            "connect": "POST /clients/{id}/connect",
            "alert_test": "POST /clients/{id}/alerts/test",
            "webhook_test": "POST /clients/{id}/webhook/test",
            "kpi_export": "GET /clients/{id}/kpi/export?format=json|csv",
            "kpi_send": "POST /clients/{id}/kpi/send",
            "dashboard": "GET /dashboard?token=|slug=",
            "pipelines": "GET /dashboard/pipelines?token=|slug=",
        }
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "app.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
    )
