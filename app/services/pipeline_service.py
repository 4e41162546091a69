"""
Pipeline & People Grouper

Groups tasks into process blocks (list, else folder, else space) and
assignee blocks. Each block carries counts, completion %, a day trend
comparing the current window with the one immediately before it, and
a stage histogram.

Pure functions; the navigation catalog is fetched elsewhere.
"""
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, tzinfo
from typing import Any, Dict, Iterable, List, Optional, Sequence
from zoneinfo import ZoneInfo

from app.config import get_settings
from app.services import task_fields as tf
from app.services.kpi_aggregator import day_label
from app.utils.helpers import normalize_label, round_metric, slugify, utcnow

settings = get_settings()

PIPELINE_MIN_DAYS, PIPELINE_MAX_DAYS = 3, 14
ASSIGNEE_MIN_DAYS, ASSIGNEE_MAX_DAYS = 7, 14

NO_STATUS_LABEL = "Sem status"
PIPELINE_UNASSIGNED_LABEL = "Nao atribuido"
UNASSIGNED_LABEL = "Sem responsavel"
ASSIGNEE_HIERARCHY = "Metricas por responsavel"
HIGH_PRIORITY_KEYWORDS = ("p0", "p1", "urg", "high", "alta")


@dataclass
class TaskRow:
    """Flattened view of one raw task, as consumed by the groupers."""
    id: Optional[str]
    name: str
    url: Optional[str]
    status: str
    status_type: str
    priority: Optional[str]
    list_id: Optional[str]
    list_name: Optional[str]
    folder_id: Optional[str]
    folder_name: Optional[str]
    space_id: Optional[str]
    space_name: Optional[str]
    assignees: List[str] = field(default_factory=list)
    is_closed: bool = False
    is_overdue: bool = False
    created_at: Optional[datetime] = None
    start_at: Optional[datetime] = None
    due_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    status_changed_at: Optional[datetime] = None
    event_at: Optional[datetime] = None
    status_age_hours: float = 0.0

    def to_item(self, assignee: str) -> Dict[str, Any]:
        """Task entry listed inside a block."""
        updated = self.updated_at or self.event_at
        return {
            "id": self.id,
            "name": self.name,
            "url": self.url,
            "status": self.status,
            "statusType": self.status_type or "custom",
            "priority": self.priority or "Sem prioridade",
            "assignee": assignee,
            "isClosed": self.is_closed,
            "isOverdue": self.is_overdue,
            "updatedAt": updated.isoformat() if updated else None,
            "dueAt": self.due_at.isoformat() if self.due_at else None,
            "statusAgeHours": self.status_age_hours,
        }


def _ref(task: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = task.get(key)
    return value if isinstance(value, dict) else {}


def _text(value: Any) -> Optional[str]:
    text = str(value).strip() if value is not None else ""
    return text or None


def to_task_row(task: Any, now: Optional[datetime] = None) -> TaskRow:
    """Normalize a raw ClickUp task; malformed fields become absent."""
    task = task if isinstance(task, dict) else {}
    now = now or utcnow()
    if now.tzinfo is None:
        now = now.replace(tzinfo=ZoneInfo(settings.dashboard_timezone))

    closed = tf.is_task_closed(task)
    due = tf.parse_clickup_date(task.get("due_date"))
    updated = tf.parse_clickup_date(task.get("date_updated"))
    status_changed = tf.parse_clickup_date(task.get("date_status_changed"))

    age_anchor = status_changed or updated
    status_age = max(0.0, tf.hours_between(age_anchor, now)) if age_anchor else 0.0

    return TaskRow(
        id=_text(task.get("id")),
        name=normalize_label(task.get("name"), "Sem titulo"),
        url=task.get("url") or None,
        status=normalize_label(_ref(task, "status").get("status"), NO_STATUS_LABEL),
        status_type=tf.status_type(task),
        priority=tf.priority_label(task),
        list_id=_text(_ref(task, "list").get("id")),
        list_name=_text(_ref(task, "list").get("name")),
        folder_id=_text(_ref(task, "folder").get("id")),
        folder_name=_text(_ref(task, "folder").get("name")),
        space_id=_text(_ref(task, "space").get("id")),
        space_name=_text(_ref(task, "space").get("name")),
        assignees=tf.assignee_names(task),
        is_closed=closed,
        is_overdue=bool(not closed and due and due < now),
        created_at=tf.parse_clickup_date(task.get("date_created")),
        start_at=tf.parse_clickup_date(task.get("start_date")),
        due_at=due,
        closed_at=tf.parse_clickup_date(task.get("date_closed")),
        updated_at=updated,
        status_changed_at=status_changed,
        event_at=tf.first_date(task, tf.EVENT_DATE_CANDIDATES),
        status_age_hours=round_metric(status_age) or 0.0,
    )


def clamp_window(period_days: int, minimum: int, maximum: int) -> int:
    try:
        period_days = int(period_days)
    except (TypeError, ValueError):
        period_days = minimum
    return max(minimum, min(period_days, maximum))


def resolve_pipeline_identity(row: TaskRow) -> Dict[str, str]:
    """Finest available grouping: list, else folder, else space."""
    if row.list_id or row.list_name:
        return {
            "id": f"list:{row.list_id or row.list_name}",
            "label": row.list_name or "Lista sem nome",
            "hierarchy": f"{row.space_name or 'Sem espaco'} / {row.folder_name or 'Sem pasta'}",
        }
    if row.folder_id or row.folder_name:
        return {
            "id": f"folder:{row.folder_id or row.folder_name}",
            "label": row.folder_name or "Pasta sem nome",
            "hierarchy": row.space_name or "Sem espaco",
        }
    return {
        "id": f"space:{row.space_id or row.space_name or 'sem-espaco'}",
        "label": row.space_name or "Espaco sem nome",
        "hierarchy": "Nivel espaco",
    }


def is_high_priority(priority: Optional[str]) -> bool:
    normalized = (priority or "").lower()
    return any(keyword in normalized for keyword in HIGH_PRIORITY_KEYWORDS)


def build_trend(events_by_day: Dict[date, int], span_days: int, today: date) -> List[Dict[str, Any]]:
    """
    Current window vs the window immediately before it, one point per day.

    When the current window has events but the previous one is entirely
    zero, the previous series is backfilled from the current one shifted
    by a day (first point mirrors itself).
    """
    raw = []
    for index in range(span_days):
        offset = span_days - index - 1
        current_day = today - timedelta(days=offset)
        previous_day = today - timedelta(days=offset + span_days)
        raw.append({
            "label": day_label(current_day),
            "current": events_by_day.get(current_day, 0),
            "previous": events_by_day.get(previous_day, 0),
        })

    has_current = any(point["current"] > 0 for point in raw)
    has_previous = any(point["previous"] > 0 for point in raw)
    if has_current and not has_previous:
        for index, point in enumerate(raw):
            point["previous"] = raw[0]["current"] if index == 0 else raw[index - 1]["current"]
    return raw


def _completion_pct(closed: int, total: int) -> float:
    return round_metric((closed / total) * 100, 1) if total else 0.0


def _stage_list(stage_map: Dict[str, Dict[str, Any]]) -> List[Dict[str, Any]]:
    return sorted(stage_map.values(), key=lambda s: (-s["value"], s["status"]))


def _prepare(tasks: Iterable, now: Optional[datetime], tz: Optional[tzinfo]):
    if tasks is None or isinstance(tasks, (str, bytes)):
        raise TypeError("tasks must be an iterable of task records")
    zone = tz or ZoneInfo(settings.dashboard_timezone)
    now = now or utcnow()
    if now.tzinfo is None:
        now = now.replace(tzinfo=zone)
    rows = [task if isinstance(task, TaskRow) else to_task_row(task, now) for task in tasks]
    return rows, now.astimezone(zone).date(), zone


def _new_accumulator(**extra: Any) -> Dict[str, Any]:
    acc = {
        "total": 0, "open": 0, "closed": 0, "overdue": 0,
        "stages": OrderedDict(), "events": {}, "tasks": [],
    }
    acc.update(extra)
    return acc


def _count_row(acc: Dict[str, Any], row: TaskRow, assignee: str, zone: tzinfo) -> None:
    acc["total"] += 1
    if row.is_closed:
        acc["closed"] += 1
    else:
        acc["open"] += 1
    if row.is_overdue:
        acc["overdue"] += 1

    stage = acc["stages"].setdefault(row.status, {"status": row.status, "value": 0, "overdue": 0})
    stage["value"] += 1
    if row.is_overdue:
        stage["overdue"] += 1

    acc["tasks"].append(row.to_item(assignee))
    if row.event_at:
        day = row.event_at.astimezone(zone).date()
        acc["events"][day] = acc["events"].get(day, 0) + 1


def build_pipeline_blocks(
    tasks: Iterable,
    period_days: int = 7,
    now: Optional[datetime] = None,
    tz: Optional[tzinfo] = None,
) -> List[Dict[str, Any]]:
    """
    Process blocks sorted by overdue, open, then total (all descending).

    Args:
        tasks: raw task dicts or TaskRow instances
        period_days: reporting period; the trend window is clamped to [3, 14]
        now: reference instant
        tz: timezone for day boundaries
    """
    rows, today, zone = _prepare(tasks, now, tz)
    span_days = clamp_window(period_days, PIPELINE_MIN_DAYS, PIPELINE_MAX_DAYS)
    groups: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()

    for row in rows:
        identity = resolve_pipeline_identity(row)
        acc = groups.get(identity["id"])
        if acc is None:
            acc = groups[identity["id"]] = _new_accumulator(identity=identity, assignees=OrderedDict())

        assignee = ", ".join(row.assignees) or PIPELINE_UNASSIGNED_LABEL
        _count_row(acc, row, assignee, zone)

        load = acc["assignees"].setdefault(assignee, {"assignee": assignee, "value": 0, "overdue": 0})
        if not row.is_closed:
            load["value"] += 1
        if row.is_overdue:
            load["overdue"] += 1

    blocks = []
    for acc in groups.values():
        assignees = [a for a in acc["assignees"].values() if a["value"] > 0 or a["overdue"] > 0]
        assignees.sort(key=lambda a: (-a["overdue"], -a["value"], a["assignee"]))
        blocks.append({
            "id": acc["identity"]["id"],
            "label": acc["identity"]["label"],
            "hierarchy": acc["identity"]["hierarchy"],
            "total": acc["total"],
            "open": acc["open"],
            "closed": acc["closed"],
            "overdue": acc["overdue"],
            "completionPct": _completion_pct(acc["closed"], acc["total"]),
            "trend": build_trend(acc["events"], span_days, today),
            "stages": _stage_list(acc["stages"]),
            "assignees": assignees,
            "tasks": acc["tasks"],
        })

    blocks.sort(key=lambda b: (-b["overdue"], -b["open"], -b["total"]))
    return blocks


def build_assignee_blocks(
    tasks: Iterable,
    period_days: int = 7,
    now: Optional[datetime] = None,
    tz: Optional[tzinfo] = None,
) -> List[Dict[str, Any]]:
    """One block per assignee; a task with N assignees counts in N blocks."""
    rows, today, zone = _prepare(tasks, now, tz)
    span_days = clamp_window(period_days, ASSIGNEE_MIN_DAYS, ASSIGNEE_MAX_DAYS)
    groups: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()

    for row in rows:
        for assignee in row.assignees or [UNASSIGNED_LABEL]:
            acc = groups.get(assignee)
            if acc is None:
                acc = groups[assignee] = _new_accumulator(high_priority=0, age_sum=0.0, age_samples=0)
            _count_row(acc, row, assignee, zone)
            if is_high_priority(row.priority):
                acc["high_priority"] += 1
            if row.status_age_hours > 0:
                acc["age_sum"] += row.status_age_hours
                acc["age_samples"] += 1

    blocks = []
    for assignee, acc in groups.items():
        avg_age = acc["age_sum"] / acc["age_samples"] if acc["age_samples"] else 0.0
        blocks.append({
            "id": f"assignee:{slugify(assignee) or 'sem-nome'}",
            "hierarchy": ASSIGNEE_HIERARCHY,
            "assignee": assignee,
            "total": acc["total"],
            "open": acc["open"],
            "closed": acc["closed"],
            "overdue": acc["overdue"],
            "highPriority": acc["high_priority"],
            "avgStatusAgeHours": round_metric(avg_age),
            "completionPct": _completion_pct(acc["closed"], acc["total"]),
            "trend": build_trend(acc["events"], span_days, today),
            "statusBreakdown": _stage_list(acc["stages"]),
            "tasks": acc["tasks"],
        })

    blocks.sort(key=lambda b: (-b["overdue"], -b["open"], -b["total"], b["assignee"]))
    return blocks


# Reference catalog

def build_pipeline_catalog(nodes: Sequence[Dict[str, Any]]) -> List[Dict[str, str]]:
    """Flatten a space/folder/list navigation tree into list catalog entries."""
    catalog: "OrderedDict[str, Dict[str, str]]" = OrderedDict()

    def visit(node: Dict[str, Any], space: str, folder: Optional[str]) -> None:
        label = normalize_label(node.get("label"), "Sem nome")
        scope_type = node.get("scope_type")
        scope_id = node.get("scope_id")

        if scope_type == "space":
            space, folder = label, None
        elif scope_type == "folder":
            folder = label
        elif scope_type == "list" and scope_id:
            entry_id = f"list:{scope_id}"
            if entry_id not in catalog:
                catalog[entry_id] = {
                    "id": entry_id,
                    "label": label,
                    "hierarchy": f"{space} / {folder}" if folder else space,
                }

        for child in node.get("children") or []:
            visit(child, space, folder)

    for node in nodes or []:
        visit(node, "Sem espaco", None)
    return list(catalog.values())


def build_empty_pipeline_block(
    entry: Dict[str, str],
    period_days: int = 7,
    now: Optional[datetime] = None,
    tz: Optional[tzinfo] = None,
) -> Dict[str, Any]:
    _, today, _ = _prepare([], now, tz)
    span_days = clamp_window(period_days, PIPELINE_MIN_DAYS, PIPELINE_MAX_DAYS)
    return {
        "id": entry["id"],
        "label": entry["label"],
        "hierarchy": entry["hierarchy"],
        "total": 0,
        "open": 0,
        "closed": 0,
        "overdue": 0,
        "completionPct": 0.0,
        "trend": build_trend({}, span_days, today),
        "stages": [],
        "assignees": [],
        "tasks": [],
    }


def merge_pipeline_catalog(
    blocks: List[Dict[str, Any]],
    catalog: List[Dict[str, str]],
    period_days: int = 7,
    now: Optional[datetime] = None,
    tz: Optional[tzinfo] = None,
) -> List[Dict[str, Any]]:
    """
    Catalog entries first (relabelled, or empty when no tasks), then any
    block the catalog does not know about, in their original order.
    """
    if not catalog:
        return blocks

    by_id = {block["id"]: block for block in blocks}
    merged = []
    seen = set()
    for entry in catalog:
        existing = by_id.get(entry["id"])
        if existing:
            merged.append(dict(existing, label=entry["label"], hierarchy=entry["hierarchy"]))
        else:
            merged.append(build_empty_pipeline_block(entry, period_days, now, tz))
        seen.add(entry["id"])

    merged.extend(block for block in blocks if block["id"] not in seen)
    return merged
