"""
Health state machine tests: counters, alert gating, auto-recovery and
the background monitor's per-client isolation.

ClickUp and the alert relays are never contacted; the task fetch, connector
and alert service are replaced with mocks.
"""
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy.orm import sessionmaker

from app import scheduler
from app.connectors.clickup import ClickUpAPIError
from app.models.client import ClientStatus
from app.services import health_service, kpi_service
from app.services.alert_service import DispatchResult, Outcome
from app.services.client_store import ClientStore
from app.services.health_service import (
    HealthCheckResult,
    compute_health_snapshot,
    emit_failure_alert_if_needed,
    extract_error_message,
    mark_health_failure,
    mark_health_success,
    run_health_check,
    run_recovery,
    send_test_alert,
    send_webhook_test,
    should_emit_alert,
)
from app.utils.helpers import naive_utc

from conftest import NOW, run


def _alerts(delivered=True, reason=None):
    service = MagicMock()
    service.dispatch = AsyncMock(return_value=DispatchResult(
        delivered=delivered, channel="email", reason=reason, attempts=1,
    ))
    return service


def _with_alerts(store, client, **fields):
    values = {"alert_enabled": True, "alert_channel": "email", "alert_target": "ops@acme.io"}
    values.update(fields)
    return store.update_fields(client.id, values)


def _connector(teams=None, team_id="team-1", error=None):
    connector = MagicMock()
    if error is not None:
        connector.resolve_team_id = AsyncMock(side_effect=error)
    else:
        connector.resolve_team_id = AsyncMock(return_value=(teams or [{"id": team_id, "name": "Acme"}], team_id))
    return connector


# ────────────────────────────────────────────
# COUNTERS
# ────────────────────────────────────────────


class TestCounters:

    def test_new_client_snapshot(self, client_record):
        snapshot = compute_health_snapshot(client_record)
        assert client_record.status == ClientStatus.NOT_CONNECTED.value
        assert snapshot["successRate"] is None
        assert snapshot["consecutiveFailures"] == 0
        assert snapshot["lastCheckAt"] is None

    def test_failure_then_success(self, store, client_record):
        mark_health_failure(store, client_record.id, "boom", now=NOW)
        failed = mark_health_failure(store, client_record.id, "boom again", now=NOW)
        assert failed.status == ClientStatus.OFFLINE.value
        assert failed.consecutive_failures == 2
        assert failed.failure_count == 2
        assert failed.last_error == "boom again"

        ok = mark_health_success(store, client_record.id, 41.6, now=NOW + timedelta(minutes=1))
        assert ok.status == ClientStatus.CONNECTED.value
        assert ok.consecutive_failures == 0
        assert ok.success_count == 1
        assert ok.failure_count == 2
        assert ok.last_error is None
        assert ok.last_latency_ms == 42

    def test_error_message_is_truncated(self, store, client_record):
        updated = mark_health_failure(store, client_record.id, "x" * 5000)
        assert len(updated.last_error) == 1500

    def test_missing_error_message_gets_default(self, store, client_record):
        assert mark_health_failure(store, client_record.id, None).last_error == "health_check_failed"

    def test_snapshot_success_rate(self, store, client_record):
        for _ in range(3):
            mark_health_success(store, client_record.id, 10)
        updated = mark_health_failure(store, client_record.id, "down")
        snapshot = compute_health_snapshot(updated)
        assert snapshot["successRate"] == 75.0
        assert snapshot["lastError"] == "down"
        assert snapshot["lastFailureAt"].endswith("+00:00")

    def test_extract_error_prefers_upstream_field(self):
        error = ClickUpAPIError(401, "ClickUp API error: HTTP 401", details={"err": "Token invalid"})
        assert extract_error_message(error, "fallback") == "Token invalid"
        assert extract_error_message(RuntimeError(""), "fallback") == "fallback"


# ────────────────────────────────────────────
# ALERT GATING
# ────────────────────────────────────────────


class TestAlertGating:

    def test_below_threshold_never_alerts(self, store, client_record):
        client = _with_alerts(store, client_record, consecutive_failures=2)
        assert should_emit_alert(client, NOW) is False

    def test_disabled_or_incomplete_settings_never_alert(self, store, client_record):
        client = _with_alerts(store, client_record, consecutive_failures=5, alert_target=None)
        assert should_emit_alert(client, NOW) is False
        client = _with_alerts(store, client_record, alert_target="ops@acme.io", alert_enabled=False)
        assert should_emit_alert(client, NOW) is False

    def test_cooldown_window(self, store, client_record):
        client = _with_alerts(store, client_record, consecutive_failures=3)
        assert should_emit_alert(client, NOW) is True

        client = store.update_fields(client.id, {"last_alert_at": naive_utc(NOW)})
        assert should_emit_alert(client, NOW + timedelta(seconds=1)) is False
        assert should_emit_alert(client, NOW + timedelta(minutes=15)) is True

    def test_alert_stamps_only_on_delivery(self, store, client_record):
        client = _with_alerts(store, client_record, consecutive_failures=3)

        result = run(emit_failure_alert_if_needed(store, client, "down", _alerts(delivered=False, reason="http_500"), NOW))
        assert result.delivered is False
        assert store.get(client.id).last_alert_at is None

        result = run(emit_failure_alert_if_needed(store, client, "down", _alerts(), NOW))
        assert result.delivered is True
        assert store.get(client.id).last_alert_at == naive_utc(NOW)

    def test_ineligible_client_returns_none(self, store, client_record):
        service = _alerts()
        assert run(emit_failure_alert_if_needed(store, client_record, "down", service, NOW)) is None
        service.dispatch.assert_not_awaited()

    def test_alert_payload(self, store, client_record):
        client = _with_alerts(store, client_record, consecutive_failures=3, last_error="down")
        service = _alerts()
        run(emit_failure_alert_if_needed(store, client, "down", service, NOW))

        channel, target, subject, message, payload = service.dispatch.await_args.args
        assert (channel, target) == ("email", "ops@acme.io")
        assert "Acme Ops" in subject
        assert "3 falhas consecutivas" in message
        assert payload["type"] == "client_health_failure"
        assert payload["consecutiveFailures"] == 3
        assert payload["dashboardSlug"] == "acme-ops"


# ────────────────────────────────────────────
# HEALTH CHECK & RECOVERY
# ────────────────────────────────────────────


class TestHealthCheck:

    def test_success_marks_connected(self, store, client_record):
        with patch.object(kpi_service, "build_kpi_payload", AsyncMock(return_value={})):
            result = run(run_health_check(store, client_record))
        assert result.outcome == Outcome.SUCCEEDED
        assert result.client.status == ClientStatus.CONNECTED.value
        assert result.client.success_count == 1

    def test_three_failures_alert_once_then_auto_recover(self, store, client_record):
        client = _with_alerts(store, client_record)
        service = _alerts()
        connector = _connector()
        warm = AsyncMock(return_value={})

        with patch.object(kpi_service, "build_kpi_payload", AsyncMock(side_effect=ClickUpAPIError(503, "ClickUp down"))), \
                patch.object(kpi_service, "get_connector", return_value=connector), \
                patch.object(kpi_service, "warm_client_dashboard", warm):
            results = [
                run(run_health_check(store, store.get(client.id), alert_service=service))
                for _ in range(3)
            ]

        assert [r.outcome for r in results] == [Outcome.FAILED, Outcome.FAILED, Outcome.SUCCEEDED]
        assert [r.recovery_attempted for r in results] == [False, False, True]
        assert results[2].recovered is True
        assert service.dispatch.await_count == 1
        warm.assert_awaited_once()

        final = store.get(client.id)
        assert final.status == ClientStatus.CONNECTED.value
        assert final.consecutive_failures == 0
        assert final.failure_count == 3
        assert final.success_count == 1
        assert final.last_alert_at is not None

    def test_manual_check_does_not_recover(self, store, client_record):
        client = store.update_fields(client_record.id, {"consecutive_failures": 2})
        connector = _connector()

        with patch.object(kpi_service, "build_kpi_payload", AsyncMock(side_effect=RuntimeError("timeout"))), \
                patch.object(kpi_service, "get_connector", return_value=connector):
            result = run(run_health_check(store, client, allow_auto_recover=False))

        assert result.outcome == Outcome.FAILED
        assert result.recovery_attempted is False
        assert result.client.status == ClientStatus.OFFLINE.value
        assert result.client.consecutive_failures == 3
        connector.resolve_team_id.assert_not_awaited()

    def test_auto_recover_disabled_on_client(self, store, client_record):
        client = store.update_fields(client_record.id, {"consecutive_failures": 5, "auto_recover": False})
        with patch.object(kpi_service, "build_kpi_payload", AsyncMock(side_effect=RuntimeError("down"))):
            result = run(run_health_check(store, client))
        assert result.recovery_attempted is False

    def test_failed_recovery_is_recorded_as_another_failure(self, store, client_record):
        client = _with_alerts(store, client_record, consecutive_failures=2, failure_count=2)
        service = _alerts()
        connector = _connector(error=ClickUpAPIError(401, "HTTP 401", details={"err": "Token invalid"}))

        with patch.object(kpi_service, "build_kpi_payload", AsyncMock(side_effect=ClickUpAPIError(503, "ClickUp down"))), \
                patch.object(kpi_service, "get_connector", return_value=connector):
            result = run(run_health_check(store, client, alert_service=service))

        assert result.outcome == Outcome.FAILED
        assert result.recovery_attempted is True
        assert result.client.consecutive_failures == 4
        assert result.client.failure_count == 4
        assert result.client.last_error == "Token invalid"
        # second failure falls inside the cooldown opened by the first alert
        assert service.dispatch.await_count == 1
        assert len(result.alerts) == 1

    def test_result_serialization(self):
        data = HealthCheckResult(outcome=Outcome.FAILED, error="down").to_dict()
        assert data == {
            "outcome": "failed", "ok": False, "recovered": False, "recoveryAttempted": False,
            "latencyMs": None, "error": "down", "alerts": [],
        }


class TestRecovery:

    def test_recovery_re_resolves_stale_team(self, store, client_record):
        client = store.update_fields(client_record.id, {"clickup_team_id": "gone", "consecutive_failures": 4})
        connector = _connector(team_id="team-2")

        with patch.object(kpi_service, "get_connector", return_value=connector), \
                patch.object(kpi_service, "warm_client_dashboard", AsyncMock(return_value={})):
            result = run(run_recovery(store, client))

        assert result.outcome == Outcome.SUCCEEDED
        assert result.team_id == "team-2"
        assert result.client.clickup_team_id == "team-2"
        assert result.client.consecutive_failures == 0
        connector.resolve_team_id.assert_awaited_once_with("gone")

    def test_recovery_failure_is_recorded(self, store, client_record):
        connector = _connector(error=ClickUpAPIError(None, "Token has no ClickUp teams available"))
        with patch.object(kpi_service, "get_connector", return_value=connector):
            result = run(run_recovery(store, client_record))

        assert result.outcome == Outcome.FAILED
        assert result.error == "Token has no ClickUp teams available"
        assert result.client.status == ClientStatus.OFFLINE.value
        assert result.client.consecutive_failures == 1


# ────────────────────────────────────────────
# MANUAL ALERTS
# ────────────────────────────────────────────


class TestManualAlerts:

    def test_invalid_target_is_not_attempted(self, store, client_record):
        service = _alerts()
        result = run(send_test_alert(store, client_record, "whatsapp", "123", alert_service=service))
        assert result.outcome == Outcome.NOT_ATTEMPTED
        assert "WhatsApp" in result.reason
        service.dispatch.assert_not_awaited()

    def test_missing_channel_is_not_attempted(self, store, client_record):
        result = run(send_test_alert(store, client_record, alert_service=_alerts()))
        assert result.outcome == Outcome.NOT_ATTEMPTED
        assert result.reason == "Alert channel is required"

    def test_delivered_test_alert_stamps_last_alert(self, store, client_record):
        result = run(send_test_alert(store, client_record, "email", "ops@acme.io", alert_service=_alerts()))
        assert result.ok
        assert store.get(client_record.id).last_alert_at is not None

    def test_undelivered_test_alert_reports_reason(self, store, client_record):
        result = run(send_test_alert(
            store, client_record, "email", "ops@acme.io",
            alert_service=_alerts(delivered=False, reason="email_webhook_not_configured"),
        ))
        assert result.outcome == Outcome.FAILED
        assert result.reason == "email_webhook_not_configured"
        assert store.get(client_record.id).last_alert_at is None

    def test_webhook_test_remembers_url(self, store, client_record):
        result = run(send_webhook_test(store, client_record, "https://hooks.test/acme", alert_service=_alerts()))
        assert result.ok
        assert store.get(client_record.id).webhook_url == "https://hooks.test/acme"

    def test_webhook_test_keeps_existing_url(self, store, client_record):
        client = store.update_fields(client_record.id, {"webhook_url": "https://hooks.test/original"})
        run(send_webhook_test(store, client, "https://hooks.test/other", alert_service=_alerts()))
        assert store.get(client.id).webhook_url == "https://hooks.test/original"

    def test_webhook_test_without_url(self, store, client_record):
        result = run(send_webhook_test(store, client_record, alert_service=_alerts()))
        assert result.outcome == Outcome.NOT_ATTEMPTED
        assert result.reason == "Webhook URL is required"


# ────────────────────────────────────────────
# BACKGROUND MONITOR
# ────────────────────────────────────────────


@pytest.fixture
def scheduler_session(db):
    factory = sessionmaker(autocommit=False, autoflush=False, bind=db.get_bind())
    with patch.object(scheduler, "SessionLocal", factory):
        yield


def test_monitor_selects_connected_or_failing_clients(store, scheduler_session):
    connected = store.create(name="A", clickup_token="tok-a", dashboard_slug="a")
    store.update_fields(connected.id, {"status": ClientStatus.CONNECTED.value})
    failing = store.create(name="B", clickup_token="tok-b", dashboard_slug="b")
    store.update_fields(failing.id, {"status": ClientStatus.OFFLINE.value, "consecutive_failures": 2})
    store.create(name="C", clickup_token="tok-c", dashboard_slug="c")

    check = AsyncMock(return_value=HealthCheckResult(outcome=Outcome.SUCCEEDED))
    with patch.object(health_service, "run_health_check", check):
        probed = run(scheduler.run_health_monitor())

    assert probed == 2
    assert {call.args[1].name for call in check.await_args_list} == {"A", "B"}


def test_monitor_isolates_client_failures(store, scheduler_session):
    for name in ("A", "B"):
        client = store.create(name=name, clickup_token=f"tok-{name}", dashboard_slug=name.lower())
        store.update_fields(client.id, {"status": ClientStatus.CONNECTED.value})

    check = AsyncMock(side_effect=[RuntimeError("boom"), HealthCheckResult(outcome=Outcome.SUCCEEDED)])
    with patch.object(health_service, "run_health_check", check):
        probed = run(scheduler.run_health_monitor())

    assert check.await_count == 2
    assert probed == 1


def _connected_clients(store, names):
    ids = {}
    for name in names:
        client = store.create(name=name, clickup_token=f"tok-{name}", dashboard_slug=name.lower())
        store.update_fields(client.id, {"status": ClientStatus.CONNECTED.value})
        ids[name] = client.id
    return ids


def _delete_elsewhere(db, client_id):
    # Separate session, as when an operator deletes the client through the API
    other = sessionmaker(bind=db.get_bind())()
    try:
        ClientStore(other).delete(client_id)
    finally:
        other.close()


def test_monitor_skips_client_deleted_during_tick(db, store, scheduler_session):
    ids = _connected_clients(store, ["A", "B", "C"])
    checked, removed = [], []

    async def check_and_delete_another(_store, client):
        checked.append(client.name)
        if not removed:
            victim = sorted(set(ids) - {client.name})[0]
            _delete_elsewhere(db, ids[victim])
            removed.append(victim)

    with patch.object(health_service, "probe", AsyncMock(side_effect=check_and_delete_another)):
        finished = run(scheduler.run_health_monitor())

    assert finished == 2
    assert len(checked) == 2
    assert removed[0] not in checked
    store.db.expire_all()
    assert store.find_by_id(ids[removed[0]]) is None


def test_monitor_continues_when_checked_client_is_deleted(db, store, scheduler_session):
    ids = _connected_clients(store, ["A", "B", "C"])
    checked = []

    async def delete_self_then_fail(_store, client):
        checked.append(client.name)
        if len(checked) == 1:
            _delete_elsewhere(db, ids[client.name])
            raise RuntimeError("ClickUp unreachable")

    with patch.object(health_service, "probe", AsyncMock(side_effect=delete_self_then_fail)):
        finished = run(scheduler.run_health_monitor())

    assert len(checked) == 3
    assert finished == 2


def test_scheduler_registers_both_jobs():
    scheduler.setup_scheduler()
    jobs = {job.id: job for job in scheduler.scheduler.get_jobs()}
    assert set(jobs) == {scheduler.WARMUP_JOB_ID, scheduler.HEALTH_MONITOR_JOB_ID}
    assert jobs[scheduler.HEALTH_MONITOR_JOB_ID].max_instances == 1
    assert jobs[scheduler.WARMUP_JOB_ID].trigger.interval == timedelta(seconds=600)
