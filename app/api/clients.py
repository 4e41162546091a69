"""
Client registration, health and alert endpoints
"""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import Response
from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.connectors.clickup import ClickUpAPIError
from app.models.base import get_db
from app.models.client import Client
from app.services import health_service, kpi_service
from app.services.alert_service import (
    AlertChannel,
    normalize_alert_channel,
    normalize_alert_target,
    validate_alert_target,
)
from app.services.client_store import ClientNotFoundError, ClientStore
from app.utils.cache import clear_for_client
from app.utils.helpers import isoformat, normalize_token, parse_boolean, slugify
from app.utils.logger import log

router = APIRouter(prefix="/clients", tags=["clients"])


class ClientCreate(BaseModel):
    name: str
    clickupToken: str
    dashboardSlug: Optional[str] = None


class ClientUpdate(BaseModel):
    name: Optional[str] = None
    clickupToken: Optional[str] = None
    clickupTeamId: Optional[str] = None
    dashboardSlug: Optional[str] = None


class ClientSettingsUpdate(BaseModel):
    alertEnabled: Optional[Any] = None
    alertChannel: Optional[str] = None
    alertTarget: Optional[str] = None
    webhookUrl: Optional[str] = None
    autoRecover: Optional[Any] = None


class AlertTestRequest(BaseModel):
    channel: Optional[str] = None
    target: Optional[str] = None
    message: Optional[str] = None
    webhookUrl: Optional[str] = None


class WebhookTestRequest(BaseModel):
    webhookUrl: Optional[str] = None


class KpiSendRequest(BaseModel):
    channel: Optional[str] = None
    target: Optional[str] = None
    format: str = "json"
    webhookUrl: Optional[str] = None


def serialize_client(client: Client) -> Dict[str, Any]:
    token = client.clickup_token or ""
    return {
        "id": client.id,
        "name": client.name,
        "dashboardSlug": client.dashboard_slug,
        "clickupTeamId": client.clickup_team_id,
        "tokenPreview": f"...{token[-4:]}" if token else None,
        "status": client.status,
        "health": health_service.compute_health_snapshot(client),
        "settings": serialize_settings(client),
        "lastAlertAt": isoformat(client.last_alert_at),
        "createdAt": isoformat(client.created_at),
        "updatedAt": isoformat(client.updated_at),
    }


def serialize_settings(client: Client) -> Dict[str, Any]:
    return {
        "alertEnabled": bool(client.alert_enabled),
        "alertChannel": client.alert_channel,
        "alertTarget": client.alert_target,
        "webhookUrl": client.webhook_url,
        "autoRecover": parse_boolean(client.auto_recover, True),
    }


def _load(store: ClientStore, client_id: str) -> Client:
    try:
        return store.get(client_id)
    except ClientNotFoundError:
        raise HTTPException(status_code=404, detail="Client not found")


def _upstream_error(e: Exception, fallback: str) -> HTTPException:
    if isinstance(e, ClickUpAPIError):
        status = e.status_code if e.status_code and 400 <= e.status_code < 600 else 502
        return HTTPException(status_code=status, detail={"error": fallback, "details": e.message})
    return HTTPException(status_code=502, detail={"error": fallback, "details": str(e)})


@router.get("")
async def list_clients(db: Session = Depends(get_db)):
    return [serialize_client(client) for client in ClientStore(db).list_all()]


@router.post("", status_code=201)
async def create_client(body: ClientCreate, db: Session = Depends(get_db)):
    """Register a client integration (status starts as Not Connected)"""
    name = body.name.strip()
    if not name or not body.clickupToken:
        raise HTTPException(status_code=400, detail="name and clickupToken are required")

    token = normalize_token(body.clickupToken)
    if not token:
        raise HTTPException(status_code=400, detail="Invalid clickupToken format")

    slug = slugify(body.dashboardSlug or name)
    if not slug:
        raise HTTPException(status_code=400, detail="Could not derive a valid dashboardSlug from name")

    try:
        client = ClientStore(db).create(name=name, clickup_token=token, dashboard_slug=slug)
    except IntegrityError:
        raise HTTPException(status_code=409, detail="Client already exists")
    return serialize_client(client)


@router.get("/{client_id}")
async def get_client(client_id: str, db: Session = Depends(get_db)):
    return serialize_client(_load(ClientStore(db), client_id))


@router.put("/{client_id}")
async def update_client(client_id: str, body: ClientUpdate, db: Session = Depends(get_db)):
    store = ClientStore(db)
    _load(store, client_id)

    fields: Dict[str, Any] = {}
    if body.name is not None:
        fields["name"] = body.name.strip()
    if body.clickupToken:
        token = normalize_token(body.clickupToken)
        if not token:
            raise HTTPException(status_code=400, detail="Invalid clickupToken format")
        fields["clickup_token"] = token
    if body.clickupTeamId is not None:
        fields["clickup_team_id"] = body.clickupTeamId.strip() or None
    if body.dashboardSlug:
        fields["dashboard_slug"] = slugify(body.dashboardSlug)

    try:
        client = store.update_fields(client_id, fields)
    except IntegrityError:
        raise HTTPException(status_code=409, detail="Token or dashboard slug already in use")
    clear_for_client(client_id)
    return serialize_client(client)


@router.delete("/{client_id}", status_code=204)
async def delete_client(client_id: str, db: Session = Depends(get_db)):
    try:
        ClientStore(db).delete(client_id)
    except ClientNotFoundError:
        raise HTTPException(status_code=404, detail="Client not found")
    clear_for_client(client_id)
    return Response(status_code=204)


@router.put("/{client_id}/settings")
async def update_client_settings(client_id: str, body: ClientSettingsUpdate, db: Session = Depends(get_db)):
    """
    Update alert routing and auto-recovery.

    The target is validated only when alerts are being enabled.
    """
    store = ClientStore(db)
    _load(store, client_id)

    channel = normalize_alert_channel(body.alertChannel)
    if body.alertChannel and channel is None:
        raise HTTPException(status_code=400, detail="Invalid alertChannel. Use email, whatsapp or webhook.")

    webhook_url = (body.webhookUrl or "").strip()
    target = normalize_alert_target(channel, body.alertTarget, webhook_url)
    enabled = parse_boolean(body.alertEnabled, False)
    if enabled:
        reason = validate_alert_target(channel, target)
        if reason:
            raise HTTPException(status_code=400, detail=reason)
    if channel == AlertChannel.WEBHOOK:
        target = target or webhook_url

    client = store.update_fields(client_id, {
        "alert_enabled": enabled,
        "alert_channel": channel.value if channel else None,
        "alert_target": target or None,
        "webhook_url": webhook_url or None,
        "auto_recover": parse_boolean(body.autoRecover, True),
    })
    log.info(f"Alert settings updated for client {client.name}")
    return serialize_client(client)


@router.get("/{client_id}/health")
async def get_client_health(client_id: str, db: Session = Depends(get_db)):
    client = _load(ClientStore(db), client_id)
    return {
        "client": {"id": client.id, "name": client.name, "status": client.status},
        "health": health_service.compute_health_snapshot(client),
        "settings": serialize_settings(client),
    }


@router.post("/{client_id}/health-check")
async def run_client_health_check(client_id: str, db: Session = Depends(get_db)):
    """Manual probe; never triggers auto-recovery"""
    store = ClientStore(db)
    client = _load(store, client_id)
    result = await health_service.run_health_check(store, client, allow_auto_recover=False)
    response = result.to_dict()
    response["client"] = serialize_client(result.client or store.get(client_id))
    return response


@router.post("/{client_id}/recover")
async def recover_client(client_id: str, db: Session = Depends(get_db)):
    store = ClientStore(db)
    client = _load(store, client_id)
    result = await health_service.run_recovery(store, client)
    response = result.to_dict()
    response["message"] = "Recovery completed" if result.ok else "Recovery failed"
    response["client"] = serialize_client(result.client or store.get(client_id))
    if not result.ok:
        raise HTTPException(status_code=502, detail=response)
    return response


@router.post("/{client_id}/connect")
async def connect_client(client_id: str, db: Session = Depends(get_db)):
    store = ClientStore(db)
    client = _load(store, client_id)
    result = await health_service.run_connect(store, client)
    response = result.to_dict()
    response["message"] = "Handshake completed" if result.ok else "ClickUp handshake failed"
    response["client"] = serialize_client(result.client or store.get(client_id))
    if not result.ok:
        raise HTTPException(status_code=502, detail=response)
    return response


@router.post("/{client_id}/alerts/test")
async def send_test_alert(client_id: str, body: Optional[AlertTestRequest] = None, db: Session = Depends(get_db)):
    body = body or AlertTestRequest()
    store = ClientStore(db)
    client = _load(store, client_id)
    result = await health_service.send_test_alert(
        store, client,
        channel=body.channel,
        target=body.target,
        message=body.message,
        webhook_url=body.webhookUrl,
    )
    if not result.ok:
        raise HTTPException(status_code=400, detail=result.to_dict())
    return {"message": "Alert sent", **result.to_dict()}


@router.post("/{client_id}/webhook/test")
async def send_webhook_test(client_id: str, body: Optional[WebhookTestRequest] = None, db: Session = Depends(get_db)):
    body = body or WebhookTestRequest()
    store = ClientStore(db)
    client = _load(store, client_id)
    result = await health_service.send_webhook_test(store, client, webhook_url=body.webhookUrl)
    if not result.ok:
        raise HTTPException(status_code=400, detail=result.to_dict())
    return {"message": "Webhook test sent", "webhookUrl": result.target, **result.to_dict()}


@router.get("/{client_id}/kpi/export")
async def export_kpi(
    client_id: str,
    format: str = Query("json", description="json or csv"),
    db: Session = Depends(get_db),
):
    store = ClientStore(db)
    client = _load(store, client_id)
    try:
        payload = await kpi_service.build_kpi_payload(store, client)
    except Exception as e:
        log.error(f"KPI export failed for client {client.name}: {str(e)}")
        raise _upstream_error(e, "Failed to export KPI")

    if format.lower() == "csv":
        filename = f"kpi_{payload['client']['dashboardSlug'] or payload['client']['id']}.csv"
        return Response(
            content=kpi_service.to_csv([kpi_service.kpi_csv_row(payload)]),
            media_type="text/csv; charset=utf-8",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )
    return payload


@router.post("/{client_id}/kpi/send")
async def send_kpi(client_id: str, body: Optional[KpiSendRequest] = None, db: Session = Depends(get_db)):
    body = body or KpiSendRequest()
    store = ClientStore(db)
    client = _load(store, client_id)
    try:
        result = await kpi_service.send_kpi(
            store, client,
            channel=body.channel,
            target=body.target,
            fmt=body.format,
            webhook_url=body.webhookUrl,
        )
    except Exception as e:
        log.error(f"KPI send failed for client {client.name}: {str(e)}")
        raise _upstream_error(e, "Failed to send KPI")

    if not result.ok:
        raise HTTPException(status_code=400, detail=result.to_dict())
    return {"message": "KPI sent", **result.to_dict()}
