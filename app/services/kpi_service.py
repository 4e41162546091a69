"""
KPI Service

Fetch -> aggregate -> shape. Builds the per-client KPI payload used by
exports and alerts, the full dashboard payload (cached by warmup), and
the pipeline/people views.
"""
import asyncio
import csv
import io
from typing import Any, Dict, Iterable, List, Optional, Tuple

from app.config import get_settings
from app.connectors.clickup import ClickUpConnector
from app.models.client import Client
from app.services.alert_service import (
    AlertSendResult,
    AlertService,
    AlertTargetError,
    Outcome,
    get_alert_service,
    resolve_channel_and_target,
)
from app.services.client_store import ClientStore
from app.services.kpi_aggregator import build_metrics
from app.services.pipeline_service import (
    build_assignee_blocks,
    build_pipeline_blocks,
    build_pipeline_catalog,
    merge_pipeline_catalog,
    to_task_row,
)
from app.utils.cache import MISS, get_cached, kpi_cache_key, set_cached
from app.utils.helpers import utcnow
from app.utils.logger import log

settings = get_settings()

KPI_FIELDS = (
    "totalTasks",
    "wip",
    "completed",
    "overdueOpen",
    "throughputWeek",
    "leadTimeAvgHours",
    "cycleTimeAvgHours",
    "slaCompliancePct",
)
CSV_COLUMNS = ("client", "teamId", "generatedAt") + KPI_FIELDS


def get_connector(client: Client) -> ClickUpConnector:
    return ClickUpConnector(client.clickup_token)


async def resolve_client_team(store: ClientStore, client: Client, connector: ClickUpConnector) -> str:
    """Stored team id, or the first visible team (persisted for next time)."""
    if client.clickup_team_id:
        return client.clickup_team_id
    _, team_id = await connector.resolve_team_id(None)
    store.update_fields(client.id, {"clickup_team_id": team_id})
    log.info(f"Resolved ClickUp team {team_id} for client {client.name}")
    return team_id


async def fetch_client_tasks(store: ClientStore, client: Client) -> Tuple[str, List[Dict[str, Any]]]:
    connector = get_connector(client)
    team_id = await resolve_client_team(store, client, connector)
    tasks = await connector.fetch_team_tasks(team_id)
    return team_id, tasks


async def build_kpi_payload(store: ClientStore, client: Client) -> Dict[str, Any]:
    """
    KPI snapshot for one client.

    Any fetch failure propagates; there is no partial payload.
    """
    team_id, tasks = await fetch_client_tasks(store, client)
    metrics = build_metrics(tasks)
    return {
        "generatedAt": utcnow().isoformat(),
        "client": {
            "id": client.id,
            "name": client.name,
            "dashboardSlug": client.dashboard_slug,
            "teamId": team_id,
        },
        "kpis": {
            "totalTasks": metrics["totals"]["totalTasks"],
            "wip": metrics["totals"]["wip"],
            "completed": metrics["totals"]["completed"],
            "overdueOpen": metrics["totals"]["overdueOpen"],
            "throughputWeek": metrics["totals"]["throughputWeek"],
            "leadTimeAvgHours": metrics["metrics"]["leadTimeAvgHours"],
            "cycleTimeAvgHours": metrics["metrics"]["cycleTimeAvgHours"],
            "slaCompliancePct": metrics["metrics"]["slaCompliancePct"],
        },
        "highlights": metrics["highlights"],
        "charts": metrics["charts"],
    }


# CSV

def kpi_csv_row(payload: Dict[str, Any]) -> Dict[str, Any]:
    row = {
        "client": payload["client"]["name"],
        "teamId": payload["client"]["teamId"],
        "generatedAt": payload["generatedAt"],
    }
    for name in KPI_FIELDS:
        row[name] = payload["kpis"].get(name)
    return row


def to_csv(rows: List[Dict[str, Any]]) -> str:
    """Header line plus one line per row; None is written as an empty cell."""
    if not rows:
        return ""
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=list(rows[0].keys()), extrasaction="ignore")
    writer.writeheader()
    writer.writerows(rows)
    # Lines end in CRLF, so bare CR and LF inside a cell are always quoted
    return buffer.getvalue().rstrip("\r\n")


def parse_csv(text: str) -> List[Dict[str, str]]:
    return list(csv.DictReader(io.StringIO(text)))


def build_kpi_summary(client: Client, payload: Dict[str, Any]) -> str:
    kpis = payload["kpis"]

    def show(value):
        return "--" if value is None else value

    return " | ".join([
        f"KPI {client.name}",
        f"WIP: {kpis['wip']}",
        f"Throughput7d: {kpis['throughputWeek']}",
        f"LeadTime(h): {show(kpis['leadTimeAvgHours'])}",
        f"CycleTime(h): {show(kpis['cycleTimeAvgHours'])}",
        f"SLA(%): {show(kpis['slaCompliancePct'])}",
    ])


async def send_kpi(
    store: ClientStore,
    client: Client,
    channel: Optional[str] = None,
    target: Optional[str] = None,
    fmt: str = "json",
    webhook_url: Optional[str] = None,
    alert_service: Optional[AlertService] = None,
) -> AlertSendResult:
    """
    Dispatch a KPI snapshot through the client's (or the given) channel.

    Validation problems return NOT_ATTEMPTED before any fetch happens.
    Fetch errors propagate.
    """
    fallback_webhook = webhook_url or client.webhook_url
    requested = channel or client.alert_channel or ("webhook" if fallback_webhook else None)
    try:
        resolved, normalized = resolve_channel_and_target(requested, target or client.alert_target, fallback_webhook)
    except AlertTargetError as e:
        return AlertSendResult(outcome=Outcome.NOT_ATTEMPTED, channel=requested, target=target, reason=str(e))

    payload = await build_kpi_payload(store, client)
    body: Any = payload
    if str(fmt or "json").lower() == "csv":
        body = {"csv": to_csv([kpi_csv_row(payload)])}

    service = alert_service or get_alert_service()
    result = await service.dispatch(
        resolved,
        normalized,
        f"KPI export - {client.name}",
        build_kpi_summary(client, payload),
        body,
    )
    return AlertSendResult(
        outcome=Outcome.SUCCEEDED if result.delivered else Outcome.FAILED,
        channel=resolved.value,
        target=normalized,
        reason=result.reason,
        dispatch=result,
    )


# Dashboards

async def build_dashboard_payload(
    store: ClientStore,
    client: Client,
    team_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Full aggregation for the dashboard view (not cached)."""
    connector = get_connector(client)
    team_id = team_id or await resolve_client_team(store, client, connector)
    tasks = await connector.fetch_team_tasks(team_id)
    metrics = build_metrics(tasks)
    return {
        "generatedAt": utcnow().isoformat(),
        "client": {
            "id": client.id,
            "name": client.name,
            "teamId": team_id,
            "dashboardSlug": client.dashboard_slug,
        },
        **metrics,
    }


async def get_dashboard_payload(
    store: ClientStore,
    client: Client,
    force: bool = False,
    team_id: Optional[str] = None,
) -> Tuple[Dict[str, Any], bool]:
    """
    Cached dashboard payload.

    Returns:
        (payload, served_from_cache)
    """
    key = kpi_cache_key(client.id)
    if not force and not team_id:
        cached = get_cached(key)
        if cached is not MISS:
            return cached, True

    payload = await build_dashboard_payload(store, client, team_id=team_id)
    set_cached(key, payload, seconds=settings.dashboard_cache_seconds)
    return payload, False


async def warm_client_dashboard(store: ClientStore, client: Client) -> Dict[str, Any]:
    payload, _ = await get_dashboard_payload(store, client, force=True)
    return payload


async def warm_dashboards(store: ClientStore, clients: Iterable[Client]) -> int:
    """
    Pre-warm several dashboards with bounded fan-out.

    Returns the number warmed; individual failures are logged and skipped.
    """
    semaphore = asyncio.Semaphore(max(1, settings.warmup_concurrency))

    async def warm(client: Client, client_name: str) -> bool:
        async with semaphore:
            try:
                await warm_client_dashboard(store, client)
                return True
            except Exception as e:
                log.warning(f"Warmup failed for client {client_name}: {e}")
                return False

    # Names are read up front; a row deleted mid-batch expires its instance
    batch = [(client, client.name) for client in clients]
    results = await asyncio.gather(*(warm(client, name) for client, name in batch))
    return sum(1 for ok in results if ok)


async def build_pipeline_payload(
    store: ClientStore,
    client: Client,
    period_days: int = 7,
    include_catalog: bool = True,
) -> Dict[str, Any]:
    """Process and assignee blocks, merged with the list catalog when available."""
    connector = get_connector(client)
    team_id = await resolve_client_team(store, client, connector)
    tasks = await connector.fetch_team_tasks(team_id)

    now = utcnow()
    rows = [to_task_row(task, now) for task in tasks]
    blocks = build_pipeline_blocks(rows, period_days, now=now)

    catalog: List[Dict[str, str]] = []
    if include_catalog:
        try:
            catalog = build_pipeline_catalog(await connector.fetch_navigation(team_id))
        except Exception as e:
            log.warning(f"Navigation catalog unavailable for client {client.name}: {e}")

    return {
        "generatedAt": now.isoformat(),
        "client": {"id": client.id, "name": client.name, "teamId": team_id},
        "periodDays": period_days,
        "pipelines": merge_pipeline_catalog(blocks, catalog, period_days, now=now),
        "assignees": build_assignee_blocks(rows, period_days, now=now),
    }
