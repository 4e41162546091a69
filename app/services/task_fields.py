"""
Field access for raw ClickUp task records.

Task payloads come straight from the API and are read-only here. Every
accessor tolerates missing or malformed values: an unparseable date is
simply absent.

Date fallbacks are expressed as ordered candidate tuples. The first
candidate that yields a parseable date wins.
"""
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from dateutil import parser as date_parser

from app.utils.helpers import normalize_label

NO_LIST_LABEL = "Sem lista"
UNKNOWN_STATUS_LABEL = "Unknown"

DateCandidate = Tuple[str, Callable[[Dict[str, Any]], Any]]

# Work start for cycle time: explicit start date, else creation.
START_DATE_CANDIDATES: Tuple[DateCandidate, ...] = (
    ("start_date", lambda task: task.get("start_date")),
    ("date_created", lambda task: task.get("date_created")),
)

# Activity timestamp used to place a task on a trend day.
EVENT_DATE_CANDIDATES: Tuple[DateCandidate, ...] = (
    ("date_status_changed", lambda task: task.get("date_status_changed")),
    ("date_updated", lambda task: task.get("date_updated")),
    ("reference", lambda task: task.get("date_closed") or task.get("date_done") or task.get("due_date")),
    ("date_created", lambda task: task.get("date_created")),
)


def parse_clickup_date(value: Any) -> Optional[datetime]:
    """
    Parse a ClickUp timestamp into an aware UTC datetime.

    ClickUp sends epoch milliseconds (usually as strings). ISO-8601 strings
    and datetimes are accepted too. Zero, negative and garbage values give None.
    """
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)

    try:
        millis = float(value)
    except (TypeError, ValueError):
        millis = None

    if millis is not None:
        if millis != millis or millis <= 0:  # NaN or non-positive
            return None
        try:
            return datetime.fromtimestamp(millis / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None

    if isinstance(value, str):
        try:
            parsed = date_parser.isoparse(value)
        except (ValueError, OverflowError):
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)

    return None


def first_date(task: Dict[str, Any], candidates: Sequence[DateCandidate]) -> Optional[datetime]:
    """Evaluate candidates in order, returning the first parseable date."""
    for _, extract in candidates:
        try:
            raw = extract(task)
        except (AttributeError, TypeError):
            continue
        parsed = parse_clickup_date(raw)
        if parsed is not None:
            return parsed
    return None


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def status_label(task: Dict[str, Any]) -> str:
    return normalize_label(_as_dict(task.get("status")).get("status"), UNKNOWN_STATUS_LABEL)


def status_type(task: Dict[str, Any]) -> str:
    return str(_as_dict(task.get("status")).get("type") or "").strip().lower()


def is_task_closed(task: Dict[str, Any]) -> bool:
    """Closed iff the status type is ``closed`` or a close timestamp exists."""
    return status_type(task) == "closed" or parse_clickup_date(task.get("date_closed")) is not None


def is_not_started(task: Dict[str, Any], keywords: Iterable[str]) -> bool:
    """Open task whose status still reads like a backlog/to-do stage."""
    name = str(_as_dict(task.get("status")).get("status") or "").strip().lower()
    if not name:
        return False
    return any(keyword in name for keyword in keywords)


def list_name(task: Dict[str, Any]) -> str:
    return normalize_label(_as_dict(task.get("list")).get("name"), NO_LIST_LABEL)


def priority_label(task: Dict[str, Any]) -> Optional[str]:
    priority = task.get("priority")
    if isinstance(priority, dict):
        return priority.get("priority") or None
    return str(priority) if priority else None


def assignee_names(task: Dict[str, Any]) -> List[str]:
    """Distinct assignee display names, in payload order."""
    names: List[str] = []
    for assignee in task.get("assignees") or []:
        if isinstance(assignee, dict):
            name = assignee.get("username") or assignee.get("email") or assignee.get("initials")
        else:
            name = assignee
        name = str(name or "").strip()
        if name and name not in names:
            names.append(name)
    return names


def hours_between(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / 3600.0
