"""
ClickUp connector tests: pagination stop rules, team handshake, retry
behaviour and the navigation tree. ``_request`` is mocked per test.
"""
from unittest.mock import AsyncMock, patch

import pytest

from app.connectors.clickup import ClickUpAPIError, ClickUpConnector
from app.utils import retry

from conftest import run


def _connector(responses, **kwargs):
    kwargs.setdefault("page_size_hint", 2)
    kwargs.setdefault("max_pages", 5)
    kwargs.setdefault("max_attempts", 2)
    connector = ClickUpConnector("pk_test", **kwargs)
    connector._request = AsyncMock(side_effect=responses)
    return connector


def _page(n, **extra):
    data = {"tasks": [{"id": f"t{i}"} for i in range(n)]}
    data.update(extra)
    return data


@pytest.fixture(autouse=True)
def no_sleep():
    with patch.object(retry.asyncio, "sleep", new=AsyncMock()):
        yield


# ----------------------------------------------------------------------
# Pagination
# ----------------------------------------------------------------------

def test_short_page_ends_pagination():
    connector = _connector([_page(2), _page(1)])
    tasks = run(connector.fetch_team_tasks("team-1"))
    assert len(tasks) == 3
    assert connector._request.await_count == 2


def test_last_page_flag_wins_over_full_page():
    connector = _connector([_page(2, last_page=True)])
    assert len(run(connector.fetch_team_tasks("team-1"))) == 2
    assert connector._request.await_count == 1


def test_last_page_false_keeps_going():
    connector = _connector([_page(2, last_page=False), _page(0)])
    assert len(run(connector.fetch_team_tasks("team-1"))) == 2
    assert connector._request.await_count == 2


def test_page_count_stops_pagination():
    connector = _connector([_page(2, pages=2), _page(2, pages=2)])
    assert len(run(connector.fetch_team_tasks("team-1"))) == 4
    assert connector._request.await_count == 2


def test_page_cap_bounds_looping_api():
    connector = _connector([_page(2) for _ in range(10)], max_pages=3)
    tasks = run(connector.fetch_team_tasks("team-1"))
    assert len(tasks) == 6
    assert connector._request.await_count == 3


def test_page_params():
    connector = _connector([_page(0)])
    run(connector.fetch_team_tasks("team-9"))
    path, params = connector._request.await_args.args
    assert path == "/team/team-9/task"
    assert params == {"page": 0, "include_closed": "true", "subtasks": "true"}


def test_failure_mid_pagination_returns_nothing():
    connector = _connector([_page(2), ClickUpAPIError(400, "bad request")])
    with pytest.raises(ClickUpAPIError):
        run(connector.fetch_team_tasks("team-1"))


# ----------------------------------------------------------------------
# Handshake
# ----------------------------------------------------------------------

TEAMS = {"teams": [{"id": "1", "name": "First"}, {"id": "2", "name": "Second"}]}


def test_preferred_team_is_kept_when_visible():
    teams, team_id = run(_connector([TEAMS]).resolve_team_id("2"))
    assert team_id == "2"
    assert len(teams) == 2


def test_stale_team_falls_back_to_first():
    _, team_id = run(_connector([TEAMS]).resolve_team_id("gone"))
    assert team_id == "1"


def test_no_teams_is_an_error():
    with pytest.raises(ClickUpAPIError, match="no ClickUp teams"):
        run(_connector([{"teams": []}]).resolve_team_id())


# ----------------------------------------------------------------------
# Retry
# ----------------------------------------------------------------------

def test_server_error_is_retried():
    connector = _connector([ClickUpAPIError(503, "unavailable"), TEAMS])
    assert len(run(connector.list_teams())) == 2
    assert connector._request.await_count == 2


def test_auth_error_is_not_retried():
    connector = _connector([ClickUpAPIError(401, "Token invalid"), TEAMS])
    with pytest.raises(ClickUpAPIError) as excinfo:
        run(connector.list_teams())
    assert excinfo.value.status_code == 401
    assert connector._request.await_count == 1


def test_retries_are_bounded():
    connector = _connector([TimeoutError("timed out")] * 5, max_attempts=2)
    with pytest.raises(TimeoutError):
        run(connector.list_teams())
    assert connector._request.await_count == 2


# ----------------------------------------------------------------------
# Navigation
# ----------------------------------------------------------------------

def test_navigation_tree():
    connector = _connector([
        {"spaces": [{"id": 10, "name": "Ops"}]},
        {"folders": [{"id": 20, "name": "Delivery", "lists": [{"id": 30, "name": "Sprint", "task_count": 4}]}]},
        {"lists": [{"id": 31, "name": "Inbox"}]},
    ])
    tree = run(connector.fetch_navigation("team-1"))

    [space] = tree
    assert space["id"] == "space:10"
    assert space["label"] == "Ops"
    folder, loose = space["children"]
    assert folder["id"] == "folder:20"
    assert folder["children"][0] == {
        "id": "list:30", "scope_type": "list", "scope_id": "30",
        "label": "Sprint", "task_count": 4, "children": [],
    }
    assert loose["id"] == "list:31"
