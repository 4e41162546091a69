"""
Scheduler for background client monitoring

Uses APScheduler to run two independent timers:
- Dashboard warmup:  every warmup_interval_seconds (default 10 min, min 1 min)
- Health monitor:    every health_monitor_interval_seconds (default 1 min, min 15 s)

Each job has max_instances=1 so a slow tick never overlaps itself, while
the two jobs never wait on each other.
"""
import asyncio
import time

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import desc, or_

from app.config import get_settings
from app.models.base import SessionLocal
from app.models.client import Client, ClientStatus
from app.services import health_service, kpi_service
from app.services.client_store import ClientStore
from app.utils.logger import log

settings = get_settings()
scheduler = AsyncIOScheduler()

WARMUP_JOB_ID = "client_warmup"
HEALTH_MONITOR_JOB_ID = "client_health_monitor"


async def run_background_warmup() -> int:
    """Pre-warm dashboards for the most recently updated connected clients."""
    start = time.time()
    db = SessionLocal()
    try:
        store = ClientStore(db)
        clients = store.list_by_predicate(
            Client.status == ClientStatus.CONNECTED.value,
            limit=settings.warmup_batch_size,
            order_by=desc(Client.updated_at),
        )
        warmed = await kpi_service.warm_dashboards(store, clients)
        log.info(f"Warmup finished: {warmed}/{len(clients)} dashboards in {time.time() - start:.1f}s")
        return warmed
    except Exception as e:
        log.error(f"Warmup tick failed: {str(e)}")
        return 0
    finally:
        db.close()


async def run_health_monitor() -> int:
    """
    Probe connected or failing clients, one after another.

    A client whose probe raises is logged and skipped; the rest of the
    batch still runs.
    """
    start = time.time()
    probed = 0
    db = SessionLocal()
    try:
        store = ClientStore(db)
        clients = store.list_by_predicate(
            or_(Client.status == ClientStatus.CONNECTED.value, Client.consecutive_failures > 0),
            limit=settings.health_monitor_batch_size,
            order_by=desc(Client.updated_at),
        )
        # Rows can be deleted mid-tick; keep plain ids/names for the loop
        batch = [(client.id, client.name) for client in clients]
        for client_id, client_name in batch:
            client = store.find_by_id(client_id)
            if client is None:
                log.info(f"Health monitor skipping client {client_id} ({client_name}): removed")
                continue
            try:
                await health_service.run_health_check(store, client, allow_auto_recover=True)
                probed += 1
            except Exception as e:
                db.rollback()
                log.error(f"Health monitor error for client {client_id} ({client_name}): {str(e)}")

        log.info(f"Health monitor finished: {probed}/{len(clients)} clients in {time.time() - start:.1f}s")
        return probed
    except Exception as e:
        log.error(f"Health monitor tick failed: {str(e)}")
        return probed
    finally:
        db.close()


def setup_scheduler():
    """Register both monitoring jobs."""
    scheduler.add_job(
        run_background_warmup,
        trigger=IntervalTrigger(seconds=settings.warmup_interval_seconds),
        id=WARMUP_JOB_ID,
        name='Connected client dashboard warmup',
        replace_existing=True,
        max_instances=1,
        coalesce=True
    )

    scheduler.add_job(
        run_health_monitor,
        trigger=IntervalTrigger(seconds=settings.health_monitor_interval_seconds),
        id=HEALTH_MONITOR_JOB_ID,
        name='Client health monitor',
        replace_existing=True,
        max_instances=1,
        coalesce=True
    )


def start_scheduler():
    """Start the scheduler"""
    setup_scheduler()
    scheduler.start()
    log.info(
        f"Scheduler started (health every {settings.health_monitor_interval_seconds}s, "
        f"warmup every {settings.warmup_interval_seconds}s)"
    )


def stop_scheduler():
    """Stop the scheduler"""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        log.info("Scheduler stopped")


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduled jobs

    Returns:
        List of job info dicts
    """
    jobs = []

    for job in scheduler.get_jobs():
        next_run = getattr(job, "next_run_time", None)

        jobs.append({
            'id': job.id,
            'name': job.name,
            'next_run': next_run.isoformat() if next_run else None,
            'trigger': str(job.trigger)
        })

    return jobs


# CLI for manual ticks

if __name__ == "__main__":
    import sys

    commands = {
        "warmup": run_background_warmup,
        "health": run_health_monitor,
    }

    if len(sys.argv) < 2 or sys.argv[1] not in commands:
        print("Usage: python -m app.scheduler <warmup|health>")
        sys.exit(1)

    result = asyncio.run(commands[sys.argv[1]]())
    print(f"{sys.argv[1]} tick processed {result} clients")
