"""
Shared fixtures: an in-memory SQLite store and task/time builders.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest
from sqlalchemy.orm import sessionmaker

from app.models.base import Base, build_engine
from app.models import client as _client_model  # noqa: F401  (register table)
from app.services.client_store import ClientStore
from app.utils.cache import clear_cache

SAO_PAULO = ZoneInfo("America/Sao_Paulo")
# 12:00 local on Wednesday 2024-05-15
NOW = datetime(2024, 5, 15, 15, 0, tzinfo=timezone.utc)


def run(coro):
    """Run an async coroutine in a sync test."""
    return asyncio.run(coro)


def ms(value: datetime) -> str:
    """ClickUp-style epoch milliseconds string."""
    return str(int(value.timestamp() * 1000))


def hours_ago(hours: float, now: datetime = NOW) -> str:
    return ms(now - timedelta(hours=hours))


def make_task(task_id, status="in progress", status_type="custom", **fields):
    task = {
        "id": str(task_id),
        "name": f"Task {task_id}",
        "status": {"status": status, "type": status_type},
        "url": f"https://app.clickup.com/t/{task_id}",
    }
    task.update(fields)
    return task


@pytest.fixture
def db():
    engine = build_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    Session = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = Session()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def store(db):
    return ClientStore(db)


@pytest.fixture
def client_record(store):
    return store.create(
        name="Acme Ops",
        clickup_token="pk_test_token_0001",
        dashboard_slug="acme-ops",
        clickup_team_id="team-1",
    )


@pytest.fixture(autouse=True)
def _clear_dashboard_cache():
    clear_cache()
    yield
    clear_cache()
