"""
Health check and status endpoints
"""
from fastapi import APIRouter

from app.config import get_settings
from app.utils.helpers import utcnow
from app import __version__

settings = get_settings()

router = APIRouter()


@router.get("/health")
async def health_check():
    """Health check endpoint, with the monitor configuration in effect"""
    return {
        "status": "ok",
        "now": utcnow().isoformat(),
        "version": __version__,
        "monitor": {
            "healthIntervalSeconds": settings.health_monitor_interval_seconds,
            "warmupIntervalSeconds": settings.warmup_interval_seconds,
            "failureThreshold": settings.alert_failure_threshold,
            "cooldownMinutes": settings.alert_cooldown_minutes,
            "schedulerEnabled": settings.enable_scheduler,
        },
    }


@router.get("/status")
async def get_status():
    """Get system status"""
    from app.scheduler import get_scheduled_jobs
    from app.services.alert_service import get_alert_service

    return {
        "app_name": settings.app_name,
        "version": __version__,
        "environment": settings.environment,
        "alert_relays": {
            "email": bool(settings.alert_email_webhook_url),
            "whatsapp": bool(settings.alert_whatsapp_webhook_url),
        },
        "alerts": get_alert_service().get_stats(),
        "jobs": get_scheduled_jobs(),
        "timestamp": utcnow().isoformat(),
    }
