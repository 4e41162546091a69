"""
Client dashboard endpoints

Access is by ClickUp token (query or Authorization header) or by the
registered dashboard slug. A successful fetch counts as a healthy probe;
a failed one as a failed probe.
"""
import time
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from sqlalchemy.orm import Session

from app.models.base import get_db
from app.models.client import Client, ClientStatus
from app.services import health_service, kpi_service
from app.services.client_store import ClientStore
from app.services.health_service import extract_error_message
from app.utils.helpers import normalize_token, slugify
from app.utils.logger import log

router = APIRouter(prefix="/dashboard", tags=["dashboard"])


def _resolve_client(
    store: ClientStore,
    token: Optional[str],
    slug: Optional[str],
    authorization: Optional[str],
) -> Client:
    access_token = normalize_token(authorization) or normalize_token(token)
    if access_token:
        client = store.find_by_token(access_token)
    elif slug and slugify(slug):
        client = store.find_by_slug(slugify(slug))
    else:
        raise HTTPException(status_code=401, detail="Missing access key (token or slug)")

    if client is None:
        raise HTTPException(status_code=404, detail="Client dashboard not found")
    return client


async def _record_dashboard_failure(store: ClientStore, client: Client, error: Exception) -> None:
    reason = extract_error_message(error, "dashboard_failed")
    try:
        failed = health_service.mark_health_failure(store, client.id, reason)
        await health_service.emit_failure_alert_if_needed(store, failed, reason)
    except Exception as e:
        log.error(f"Could not record dashboard failure for client {client.id}: {e}")


@router.get("")
async def get_dashboard(
    token: Optional[str] = Query(None),
    slug: Optional[str] = Query(None),
    teamId: Optional[str] = Query(None),
    force: bool = Query(False, description="Bypass the warmup cache"),
    authorization: Optional[str] = Header(None),
    db: Session = Depends(get_db),
):
    """KPI dashboard for one client"""
    store = ClientStore(db)
    client = _resolve_client(store, token, slug, authorization)

    started = time.monotonic()
    try:
        payload, cached = await kpi_service.get_dashboard_payload(
            store, client, force=force, team_id=(teamId or "").strip() or None
        )
    except Exception as e:
        log.warning(f"Dashboard failed for client {client.name}: {e}")
        await _record_dashboard_failure(store, client, e)
        raise HTTPException(status_code=502, detail={"error": "Failed to generate dashboard", "details": str(e)})

    if not cached:
        store.update_fields(client.id, {"clickup_team_id": payload["client"]["teamId"]})
        client = health_service.mark_health_success(store, client.id, (time.monotonic() - started) * 1000)

    response = dict(payload)
    response["client"] = dict(payload["client"], status=client.status or ClientStatus.NOT_CONNECTED.value)
    response["cached"] = cached
    return response


@router.get("/pipelines")
async def get_pipelines(
    token: Optional[str] = Query(None),
    slug: Optional[str] = Query(None),
    periodDays: int = Query(7, ge=1, le=90),
    includeCatalog: bool = Query(True),
    authorization: Optional[str] = Header(None),
    db: Session = Depends(get_db),
):
    """Process (list/folder/space) and people blocks with trend comparison"""
    store = ClientStore(db)
    client = _resolve_client(store, token, slug, authorization)
    try:
        return await kpi_service.build_pipeline_payload(
            store, client, period_days=periodDays, include_catalog=includeCatalog
        )
    except Exception as e:
        log.warning(f"Pipeline view failed for client {client.name}: {e}")
        await _record_dashboard_failure(store, client, e)
        raise HTTPException(status_code=502, detail={"error": "Failed to build pipelines", "details": str(e)})
