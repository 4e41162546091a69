"""
Helper utilities
"""
import re
import unicodedata
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Iterable, Optional


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def round_metric(value: Optional[float], places: int = 2) -> Optional[float]:
    """Round half-up to ``places`` decimals; None stays None (no data)."""
    if value is None:
        return None
    try:
        quantum = Decimal(1).scaleb(-places)
        return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))
    except (ArithmeticError, ValueError, TypeError):
        return None


def average(values: Iterable[float]) -> Optional[float]:
    """Arithmetic mean, None for an empty sample."""
    values = list(values)
    if not values:
        return None
    return sum(values) / len(values)


def parse_boolean(value: Any, fallback: bool) -> bool:
    """Lenient bool parsing for form/JSON inputs ("yes", "0", "on"...)."""
    if value is None:
        return fallback
    if isinstance(value, bool):
        return value
    normalized = str(value).strip().lower()
    if normalized in ("1", "true", "yes", "on"):
        return True
    if normalized in ("0", "false", "no", "off"):
        return False
    return fallback


def normalize_token(raw_value: Any) -> Optional[str]:
    """Strip an optional ``Bearer`` prefix; empty tokens become None."""
    if not raw_value or not isinstance(raw_value, str):
        return None
    token = re.sub(r"^Bearer\s+", "", raw_value, flags=re.IGNORECASE).strip()
    return token or None


def slugify(value: Any) -> str:
    """Lowercase, ascii, dash-separated slug used for dashboard URLs."""
    text = unicodedata.normalize("NFKD", str(value or "")).encode("ascii", "ignore").decode("ascii")
    text = re.sub(r"[^a-z0-9\s-]", "", text.lower().strip())
    text = re.sub(r"\s+", "-", text)
    return re.sub(r"-+", "-", text)


def normalize_label(value: Any, fallback: str) -> str:
    text = str(value or "").strip()
    return text or fallback


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from the database."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def isoformat(value: Optional[datetime]) -> Optional[str]:
    value = ensure_utc(value)
    return value.isoformat() if value else None


def naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """UTC wall time without tzinfo, the form stored in DateTime columns."""
    value = ensure_utc(value)
    return value.replace(tzinfo=None) if value else None
