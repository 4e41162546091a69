"""
Health & Recovery Service

Probe state machine for client integrations:
  - success: status Connected, streak reset, success counter +1
  - failure: status Offline, streak +1, failure counter +1, error kept
  - alert once the streak reaches the threshold, at most once per cooldown
  - optional auto-recovery (re-handshake + re-probe) on threshold failures

Counters are changed with SQL increments through ClientStore, never
read-modify-written here.
"""
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from app.config import get_settings
from app.connectors.clickup import ClickUpAPIError
from app.models.client import Client, ClientStatus
from app.services import kpi_service
from app.services.alert_service import (
    AlertSendResult,
    AlertService,
    AlertTargetError,
    DispatchResult,
    Outcome,
    get_alert_service,
    resolve_channel_and_target,
)
from app.services.client_store import ClientStore
from app.utils.helpers import ensure_utc, isoformat, naive_utc, round_metric, utcnow
from app.utils.logger import log

settings = get_settings()

HEALTH_CHECK_FAILED = "health_check_failed"
AUTO_RECOVER_FAILED = "auto_recover_failed"


@dataclass
class HealthCheckResult:
    outcome: Outcome
    client: Optional[Client] = None
    latency_ms: Optional[int] = None
    error: Optional[str] = None
    recovered: bool = False
    recovery_attempted: bool = False
    alerts: List[DispatchResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.outcome == Outcome.SUCCEEDED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "ok": self.ok,
            "recovered": self.recovered,
            "recoveryAttempted": self.recovery_attempted,
            "latencyMs": self.latency_ms,
            "error": self.error,
            "alerts": [alert.to_dict() for alert in self.alerts],
        }


@dataclass
class RecoveryResult:
    outcome: Outcome
    client: Optional[Client] = None
    team_id: Optional[str] = None
    teams: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome == Outcome.SUCCEEDED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "ok": self.ok,
            "teamId": self.team_id,
            "teams": [{"id": t.get("id"), "name": t.get("name")} for t in self.teams],
            "error": self.error,
        }


def extract_error_message(error: BaseException, fallback: str) -> str:
    """Upstream ``err``/``error`` field first, then the exception text."""
    if isinstance(error, ClickUpAPIError) and isinstance(error.details, dict):
        upstream = error.details.get("err") or error.details.get("error")
        if upstream:
            return str(upstream)
    return str(error) or fallback


# Snapshot

def compute_health_snapshot(client: Client) -> Dict[str, Any]:
    success = client.success_count or 0
    failure = client.failure_count or 0
    checks = success + failure
    return {
        "lastCheckAt": isoformat(client.last_check_at),
        "lastSuccessAt": isoformat(client.last_success_at),
        "lastFailureAt": isoformat(client.last_failure_at),
        "lastLatencyMs": client.last_latency_ms,
        "consecutiveFailures": client.consecutive_failures or 0,
        "successCount": success,
        "failureCount": failure,
        "successRate": round_metric(success / checks * 100) if checks else None,
        "lastError": client.last_error,
    }


# Counter transitions

def mark_health_success(
    store: ClientStore,
    client_id: str,
    latency_ms: float,
    now: Optional[datetime] = None,
) -> Client:
    now = naive_utc(now or utcnow())
    return store.update_fields(
        client_id,
        fields={
            "status": ClientStatus.CONNECTED.value,
            "last_check_at": now,
            "last_success_at": now,
            "last_latency_ms": max(0, int(round(latency_ms or 0))),
            "consecutive_failures": 0,
            "last_error": None,
        },
        increments={"success_count": 1},
    )


def mark_health_failure(
    store: ClientStore,
    client_id: str,
    error_message: Optional[str],
    now: Optional[datetime] = None,
) -> Client:
    now = naive_utc(now or utcnow())
    message = str(error_message or HEALTH_CHECK_FAILED)[:settings.last_error_max_length]
    return store.update_fields(
        client_id,
        fields={
            "status": ClientStatus.OFFLINE.value,
            "last_check_at": now,
            "last_failure_at": now,
            "last_error": message,
        },
        increments={"failure_count": 1, "consecutive_failures": 1},
    )


# Alert gating

def should_emit_alert(
    client: Client,
    now: Optional[datetime] = None,
    threshold: Optional[int] = None,
    cooldown: Optional[timedelta] = None,
) -> bool:
    if not client.alert_enabled or not client.alert_channel or not client.alert_target:
        return False

    threshold = threshold if threshold is not None else settings.alert_failure_threshold
    if (client.consecutive_failures or 0) < threshold:
        return False

    last_alert = ensure_utc(client.last_alert_at)
    if last_alert is None:
        return True

    cooldown = cooldown if cooldown is not None else timedelta(minutes=settings.alert_cooldown_minutes)
    return ensure_utc(now or utcnow()) - last_alert >= cooldown


async def emit_failure_alert_if_needed(
    store: ClientStore,
    client: Client,
    reason: str,
    alert_service: Optional[AlertService] = None,
    now: Optional[datetime] = None,
) -> Optional[DispatchResult]:
    """
    Send the failure alert when gating allows it.

    Returns None when not eligible. ``last_alert_at`` is stamped only on
    delivery so a failed send is retried on the next eligible tick.
    """
    now = now or utcnow()
    if not should_emit_alert(client, now):
        return None

    payload = {
        "type": "client_health_failure",
        "clientId": client.id,
        "clientName": client.name,
        "reason": reason,
        "consecutiveFailures": client.consecutive_failures,
        "lastFailureAt": isoformat(client.last_failure_at),
        "lastError": client.last_error,
        "dashboardSlug": client.dashboard_slug,
    }
    message = f"[ALERTA] {client.name} com {client.consecutive_failures} falhas consecutivas. Motivo: {reason}"

    service = alert_service or get_alert_service()
    result = await service.dispatch(
        client.alert_channel,
        client.alert_target,
        f"Alerta ClickUp - {client.name}",
        message,
        payload,
    )
    if result.delivered:
        store.update_fields(client.id, {"last_alert_at": naive_utc(now)})
        log.info(f"Failure alert sent for client {client.name} via {result.channel}")
    else:
        log.warning(f"Failure alert for client {client.name} not delivered: {result.reason}")
    return result


async def _record_failure(
    store: ClientStore,
    client_id: str,
    reason: str,
    alert_service: Optional[AlertService],
    alerts: List[DispatchResult],
) -> Client:
    updated = mark_health_failure(store, client_id, reason)
    try:
        alert = await emit_failure_alert_if_needed(store, updated, reason, alert_service)
    except Exception as e:
        log.error(f"Failure alert for client {client_id} raised: {e}")
        alert = None
    if alert is not None:
        alerts.append(alert)
    return store.get(client_id)


# Handshake / probe / recovery

async def connect_client(store: ClientStore, client: Client) -> Tuple[Client, List[Dict[str, Any]], str]:
    """
    Workspace handshake; re-resolves a stale team id.

    Returns:
        (updated client, visible teams, resolved team id)
    """
    connector = kpi_service.get_connector(client)
    teams, team_id = await connector.resolve_team_id(client.clickup_team_id)
    updated = store.update_fields(client.id, {
        "status": ClientStatus.CONNECTED.value,
        "clickup_team_id": team_id,
        "last_error": None,
    })
    return updated, teams, team_id


async def probe(store: ClientStore, client: Client) -> None:
    """One handshake + task fetch; raises on any failure."""
    await kpi_service.build_kpi_payload(store, client)


async def run_health_check(
    store: ClientStore,
    client: Client,
    allow_auto_recover: bool = True,
    alert_service: Optional[AlertService] = None,
) -> HealthCheckResult:
    """
    Probe one client and apply the resulting state transition.

    Never raises for probe/transport problems; those are recorded on the
    client and reported in the result.
    """
    client_id, client_name = client.id, client.name
    started = time.monotonic()
    try:
        await probe(store, client)
    except Exception as e:
        error_message = extract_error_message(e, HEALTH_CHECK_FAILED)
        log.warning(f"Health check failed for client {client_name}: {error_message}")

        result = HealthCheckResult(outcome=Outcome.FAILED, error=error_message)
        updated = await _record_failure(store, client_id, error_message, alert_service, result.alerts)

        if (
            allow_auto_recover
            and updated.auto_recover
            and (updated.consecutive_failures or 0) >= settings.alert_failure_threshold
        ):
            result.recovery_attempted = True
            try:
                updated, _, _ = await connect_client(store, updated)
                await kpi_service.warm_client_dashboard(store, updated)
            except Exception as recover_error:
                recover_reason = extract_error_message(recover_error, AUTO_RECOVER_FAILED)
                log.warning(f"Auto-recovery failed for client {client_name}: {recover_reason}")
                updated = await _record_failure(store, client_id, recover_reason, alert_service, result.alerts)
            else:
                latency = (time.monotonic() - started) * 1000
                result.client = mark_health_success(store, client_id, latency)
                result.outcome = Outcome.SUCCEEDED
                result.recovered = True
                result.latency_ms = int(latency)
                log.info(f"Client {client_name} auto-recovered")
                return result

        result.client = updated
        return result

    latency = (time.monotonic() - started) * 1000
    updated = mark_health_success(store, client_id, latency)
    return HealthCheckResult(outcome=Outcome.SUCCEEDED, client=updated, latency_ms=int(latency))


async def run_recovery(
    store: ClientStore,
    client: Client,
    alert_service: Optional[AlertService] = None,
) -> RecoveryResult:
    """Operator-triggered reconnect + re-probe. Failures are recorded like probe failures."""
    client_id, client_name = client.id, client.name
    started = time.monotonic()
    try:
        updated, teams, team_id = await connect_client(store, client)
        await kpi_service.warm_client_dashboard(store, updated)
    except Exception as e:
        reason = extract_error_message(e, AUTO_RECOVER_FAILED)
        log.warning(f"Recovery failed for client {client_name}: {reason}")
        updated = await _record_failure(store, client_id, reason, alert_service, [])
        return RecoveryResult(outcome=Outcome.FAILED, client=updated, error=reason)

    updated = mark_health_success(store, client_id, (time.monotonic() - started) * 1000)
    log.info(f"Client {client_name} recovered on team {team_id}")
    return RecoveryResult(outcome=Outcome.SUCCEEDED, client=updated, team_id=team_id, teams=teams)


async def run_connect(
    store: ClientStore,
    client: Client,
    alert_service: Optional[AlertService] = None,
) -> RecoveryResult:
    """Operator-triggered handshake without re-probing the task list."""
    client_id = client.id
    try:
        updated, teams, team_id = await connect_client(store, client)
    except Exception as e:
        reason = extract_error_message(e, "ClickUp handshake failed")
        updated = await _record_failure(store, client_id, reason, alert_service, [])
        return RecoveryResult(outcome=Outcome.FAILED, client=updated, error=reason)

    updated = mark_health_success(store, client_id, 0)
    return RecoveryResult(outcome=Outcome.SUCCEEDED, client=updated, team_id=team_id, teams=teams)


# Manual alert tests

async def send_test_alert(
    store: ClientStore,
    client: Client,
    channel: Optional[str] = None,
    target: Optional[str] = None,
    message: Optional[str] = None,
    webhook_url: Optional[str] = None,
    alert_service: Optional[AlertService] = None,
) -> AlertSendResult:
    requested = channel or client.alert_channel
    try:
        resolved, normalized = resolve_channel_and_target(
            requested, target or client.alert_target, webhook_url or client.webhook_url
        )
    except AlertTargetError as e:
        return AlertSendResult(outcome=Outcome.NOT_ATTEMPTED, channel=requested, target=target, reason=str(e))

    now = utcnow()
    service = alert_service or get_alert_service()
    result = await service.dispatch(
        resolved,
        normalized,
        f"Teste de alerta - {client.name}",
        message or f"[TESTE] Alerta manual enviado para {client.name}",
        {"type": "manual_test", "clientId": client.id, "clientName": client.name, "at": now.isoformat()},
    )
    if result.delivered:
        store.update_fields(client.id, {"last_alert_at": naive_utc(now)})

    return AlertSendResult(
        outcome=Outcome.SUCCEEDED if result.delivered else Outcome.FAILED,
        channel=resolved.value,
        target=normalized,
        reason=result.reason,
        dispatch=result,
    )


async def send_webhook_test(
    store: ClientStore,
    client: Client,
    webhook_url: Optional[str] = None,
    alert_service: Optional[AlertService] = None,
) -> AlertSendResult:
    """Post a test payload to the webhook; remembers the URL if the client had none."""
    resolved = str(webhook_url or client.webhook_url or "").strip()
    try:
        _, resolved = resolve_channel_and_target("webhook", resolved)
    except AlertTargetError as e:
        reason = "Webhook URL is required" if not resolved else str(e)
        return AlertSendResult(outcome=Outcome.NOT_ATTEMPTED, channel="webhook", target=resolved or None, reason=reason)

    service = alert_service or get_alert_service()
    result = await service.dispatch(
        "webhook",
        resolved,
        "Webhook test",
        "Webhook test",
        {
            "type": "webhook_test",
            "clientId": client.id,
            "clientName": client.name,
            "emittedAt": utcnow().isoformat(),
        },
    )
    if result.delivered and not client.webhook_url:
        store.update_fields(client.id, {"webhook_url": resolved})

    return AlertSendResult(
        outcome=Outcome.SUCCEEDED if result.delivered else Outcome.FAILED,
        channel="webhook",
        target=resolved,
        reason=result.reason,
        dispatch=result,
    )
