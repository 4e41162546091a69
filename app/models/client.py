"""
Client integration model

One row per tenant integration against the ClickUp task API. The health
counters are only ever changed through ClientStore.update_fields so that
increments are applied in SQL, never read-modify-written in Python.
"""
import enum
import uuid
from datetime import datetime

from sqlalchemy import Column, Integer, String, DateTime, Boolean, Text

from app.models.base import Base


class ClientStatus(str, enum.Enum):
    """Derived integration status"""
    CONNECTED = "Connected"
    OFFLINE = "Offline"
    NOT_CONNECTED = "Not Connected"


def _new_id() -> str:
    return str(uuid.uuid4())


class Client(Base):
    """
    A registered client integration

    Status lifecycle: NOT_CONNECTED on registration, CONNECTED after any
    successful probe/handshake, OFFLINE after any failed probe.
    """
    __tablename__ = "clients"

    id = Column(String(36), primary_key=True, default=_new_id)
    name = Column(String, nullable=False)

    # Integration credential + resolved workspace (ClickUp "team")
    clickup_token = Column(String, unique=True, nullable=False)
    clickup_team_id = Column(String, nullable=True)
    dashboard_slug = Column(String, unique=True, index=True, nullable=False)
    status = Column(String, default=ClientStatus.NOT_CONNECTED.value, index=True, nullable=False)

    # Health counters
    success_count = Column(Integer, default=0, nullable=False)
    failure_count = Column(Integer, default=0, nullable=False)
    consecutive_failures = Column(Integer, default=0, nullable=False, index=True)
    last_latency_ms = Column(Integer, nullable=True)
    last_check_at = Column(DateTime, nullable=True)
    last_success_at = Column(DateTime, nullable=True)
    last_failure_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)

    # Alert settings
    alert_enabled = Column(Boolean, default=False, nullable=False)
    alert_channel = Column(String, nullable=True)  # email, whatsapp, webhook
    alert_target = Column(String, nullable=True)
    webhook_url = Column(String, nullable=True)
    auto_recover = Column(Boolean, default=True, nullable=False)
    last_alert_at = Column(DateTime, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, index=True)

    def __repr__(self) -> str:
        return f"<Client {self.name} ({self.status})>"
