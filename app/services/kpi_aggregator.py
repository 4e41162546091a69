"""
KPI Aggregator

Pure transformation from a flat ClickUp task list into dashboard KPIs:
totals, lead/cycle time, SLA compliance, a zero-filled daily throughput
series, status/backlog histograms and capped highlight lists.

No I/O happens here. Malformed task fields are treated as missing data;
the only failure mode is a non-iterable input.
"""
from collections import OrderedDict
from collections.abc import Iterable
from datetime import date, datetime, timedelta, tzinfo
from typing import Any, Dict, List, Optional, Sequence
from zoneinfo import ZoneInfo

from app.config import get_settings
from app.services import task_fields as tf
from app.utils.helpers import average, round_metric, utcnow

settings = get_settings()

THROUGHPUT_DAYS = 7
STATUS_BREAKDOWN_LIMIT = 12
WIP_BY_LIST_LIMIT = 10
HIGHLIGHT_LIMIT = 8


def day_label(day: date) -> str:
    """``DD/MM`` chart label."""
    return f"{day.day:02d}/{day.month:02d}"


def build_day_buckets(today: date, days: int = THROUGHPUT_DAYS) -> List[Dict[str, Any]]:
    """Exactly ``days`` zero-filled buckets, oldest first, ending on ``today``."""
    return [
        {"date": (today - timedelta(days=offset)).isoformat(),
         "label": day_label(today - timedelta(days=offset)),
         "count": 0}
        for offset in range(days - 1, -1, -1)
    ]


def _top_counts(counts: "OrderedDict[str, int]", limit: int) -> List[Dict[str, Any]]:
    # sorted() is stable, so ties keep first-seen order
    ranked = sorted(counts.items(), key=lambda item: item[1], reverse=True)
    return [{"name": name, "value": value} for name, value in ranked[:limit]]


def _task_preview(task: Dict[str, Any], due: Optional[datetime], closed_at: Optional[datetime]) -> Dict[str, Any]:
    return {
        "id": task.get("id"),
        "name": task.get("name") or "Untitled",
        "status": tf.status_label(task),
        "listName": tf.list_name(task),
        "dueDate": due.isoformat() if due else None,
        "closedAt": closed_at.isoformat() if closed_at else None,
        "url": task.get("url"),
    }


def _resolve_timezone(tz: Optional[tzinfo]) -> tzinfo:
    if tz is not None:
        return tz
    return ZoneInfo(settings.dashboard_timezone)


def build_metrics(
    tasks: Iterable,
    now: Optional[datetime] = None,
    not_started_keywords: Optional[Sequence[str]] = None,
    tz: Optional[tzinfo] = None,
    days: int = THROUGHPUT_DAYS,
) -> Dict[str, Any]:
    """
    Aggregate a task list into KPIs.

    Args:
        tasks: raw ClickUp task dicts
        now: reference instant (defaults to current UTC time)
        not_started_keywords: status keywords meaning backlog (defaults to settings)
        tz: timezone for day boundaries (defaults to settings.dashboard_timezone)
        days: throughput window length

    Returns:
        Dict with totals, metrics, charts and highlights blocks

    Raises:
        TypeError: if ``tasks`` is not iterable
    """
    if tasks is None or isinstance(tasks, (str, bytes)) or not isinstance(tasks, Iterable):
        raise TypeError("tasks must be an iterable of task records")

    now = now or utcnow()
    if now.tzinfo is None:
        now = now.replace(tzinfo=_resolve_timezone(tz))
    zone = _resolve_timezone(tz)
    keywords = [k.lower() for k in (not_started_keywords if not_started_keywords is not None
                                    else settings.not_started_keyword_list)]

    total = 0
    completed = 0
    wip = 0
    status_counts: "OrderedDict[str, int]" = OrderedDict()
    wip_by_list: "OrderedDict[str, int]" = OrderedDict()
    lead_time_hours: List[float] = []
    cycle_time_hours: List[float] = []
    sla_eligible = 0
    sla_on_time = 0
    close_days: List[date] = []
    overdue: List[tuple] = []
    deliveries: List[tuple] = []

    for raw in tasks:
        task = raw if isinstance(raw, dict) else {}
        total += 1

        label = tf.status_label(task)
        status_counts[label] = status_counts.get(label, 0) + 1

        created_at = tf.parse_clickup_date(task.get("date_created"))
        started_at = tf.first_date(task, tf.START_DATE_CANDIDATES)
        closed_at = tf.parse_clickup_date(task.get("date_closed"))
        due = tf.parse_clickup_date(task.get("due_date"))

        if tf.is_task_closed(task):
            completed += 1
            deliveries.append((closed_at, _task_preview(task, due, closed_at)))
            if closed_at is None:
                continue
            close_days.append(closed_at.astimezone(zone).date())
            if created_at and closed_at >= created_at:
                lead_time_hours.append(tf.hours_between(created_at, closed_at))
            if started_at and closed_at >= started_at:
                cycle_time_hours.append(tf.hours_between(started_at, closed_at))
            if due:
                sla_eligible += 1
                if closed_at <= due:
                    sla_on_time += 1
        else:
            if due and due < now:
                overdue.append((due, _task_preview(task, due, closed_at)))
            if not tf.is_not_started(task, keywords):
                wip += 1
                name = tf.list_name(task)
                wip_by_list[name] = wip_by_list.get(name, 0) + 1

    today = now.astimezone(zone).date()
    buckets = build_day_buckets(today, days)
    bucket_by_date = {bucket["date"]: bucket for bucket in buckets}
    for closed_day in close_days:
        bucket = bucket_by_date.get(closed_day.isoformat())
        if bucket:
            bucket["count"] += 1
    throughput_week = sum(bucket["count"] for bucket in buckets)

    sla_pct = (sla_on_time / sla_eligible) * 100 if sla_eligible else None

    # Missing dates sort last in both highlight lists
    overdue.sort(key=lambda item: (item[0] is None, item[0].timestamp() if item[0] else 0))
    deliveries.sort(key=lambda item: (item[0] is None, -item[0].timestamp() if item[0] else 0))

    return {
        "totals": {
            "totalTasks": total,
            "wip": wip,
            "backlog": total - completed - wip,
            "completed": completed,
            "overdueOpen": len(overdue),
            "throughputWeek": throughput_week,
        },
        "metrics": {
            "leadTimeAvgHours": round_metric(average(lead_time_hours)),
            "cycleTimeAvgHours": round_metric(average(cycle_time_hours)),
            "slaCompliancePct": round_metric(sla_pct),
        },
        "charts": {
            "throughputDaily": buckets,
            "statusBreakdown": _top_counts(status_counts, STATUS_BREAKDOWN_LIMIT),
            "wipByList": _top_counts(wip_by_list, WIP_BY_LIST_LIMIT),
        },
        "highlights": {
            "overdueTasks": [preview for _, preview in overdue[:HIGHLIGHT_LIMIT]],
            "recentDeliveries": [preview for _, preview in deliveries[:HIGHLIGHT_LIMIT]],
        },
    }
