"""
ClickUp task API connector.

API structure used here:
  - GET /team                      workspaces ("teams") visible to the token
  - GET /team/{team_id}/task       paginated task listing (open + closed)
  - GET /team/{team_id}/space      spaces, for the navigation tree
  - GET /space/{space_id}/folder   folders with their lists
  - GET /space/{space_id}/list     folderless lists

Every request carries an explicit total timeout. Non-2xx responses raise
ClickUpAPIError; transport errors propagate unchanged. Nothing here returns
partial data on failure.
"""
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from app.config import get_settings
from app.utils.logger import log
from app.utils.retry import RetryContext

settings = get_settings()


class ClickUpAPIError(Exception):
    """Non-2xx response (or unusable payload) from the ClickUp API."""

    def __init__(self, status_code: Optional[int], message: str, details: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.details = details


class ClickUpConnector:
    """Connector for one ClickUp credential."""

    def __init__(
        self,
        token: str,
        base_url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        page_size_hint: Optional[int] = None,
        max_pages: Optional[int] = None,
        max_attempts: Optional[int] = None,
    ):
        self.token = token
        self.base_url = (base_url or settings.clickup_base_url).rstrip("/")
        self.timeout_seconds = timeout_seconds or settings.clickup_timeout_seconds
        self.page_size_hint = page_size_hint or settings.clickup_page_size_hint
        self.max_pages = max_pages or settings.clickup_max_pages
        self.max_attempts = max_attempts or settings.clickup_retry_max_attempts
        self.headers = {
            "Authorization": token,
            "Accept": "application/json",
        }

    async def _request(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Single GET attempt."""
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        async with aiohttp.ClientSession(timeout=timeout, headers=self.headers) as session:
            async with session.get(f"{self.base_url}{path}", params=params) as response:
                if response.status >= 400:
                    try:
                        body = await response.json(content_type=None)
                    except (aiohttp.ContentTypeError, ValueError):
                        body = await response.text()
                    message = None
                    if isinstance(body, dict):
                        message = body.get("err") or body.get("error")
                    raise ClickUpAPIError(
                        response.status,
                        message or f"ClickUp API error: HTTP {response.status}",
                        details=body,
                    )
                data = await response.json(content_type=None)
                if not isinstance(data, dict):
                    raise ClickUpAPIError(response.status, "Unexpected ClickUp response shape", details=data)
                return data

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """GET with retry on transient failures (timeouts, 429, 5xx)."""
        async with RetryContext(
            max_attempts=self.max_attempts,
            base_delay=1.0,
            max_delay=10.0,
            operation_name=f"ClickUp GET {path}",
        ) as ctx:
            return await ctx.execute(self._request, path, params)

    # Workspaces

    async def list_teams(self) -> List[Dict[str, Any]]:
        data = await self._get("/team")
        return data.get("teams") or []

    async def resolve_team_id(self, preferred_team_id: Optional[str] = None) -> Tuple[List[Dict[str, Any]], str]:
        """
        Workspace handshake.

        Returns the visible teams and the team id to use: the preferred one
        when the token still sees it, otherwise the first team.
        """
        teams = await self.list_teams()
        if not teams:
            raise ClickUpAPIError(None, "Token has no ClickUp teams available")

        resolved = None
        if preferred_team_id:
            resolved = next((t for t in teams if str(t.get("id")) == str(preferred_team_id)), None)
            if resolved is None:
                log.warning(f"Stored ClickUp team {preferred_team_id} is no longer visible, using first team")
        team = resolved or teams[0]
        return teams, str(team.get("id"))

    # Tasks

    async def list_tasks(self, team_id: str, page: int) -> Dict[str, Any]:
        """One page of tasks: ``{tasks: [...], last_page?: bool, pages?: int}``."""
        return await self._get(
            f"/team/{team_id}/task",
            params={"page": page, "include_closed": "true", "subtasks": "true"},
        )

    async def fetch_team_tasks(self, team_id: str) -> List[Dict[str, Any]]:
        """
        Fetch every task of a workspace.

        Stops on the explicit ``last_page`` flag, when ``pages`` is reached,
        or on a short/empty page; never reads more than ``max_pages`` pages.
        """
        all_tasks: List[Dict[str, Any]] = []
        for page in range(self.max_pages):
            data = await self.list_tasks(team_id, page)
            tasks = data.get("tasks") or []
            all_tasks.extend(tasks)

            last_page = data.get("last_page")
            page_count = data.get("pages")
            if isinstance(last_page, bool) and last_page:
                break
            if isinstance(page_count, int) and not isinstance(page_count, bool) and page >= page_count - 1:
                break
            if len(tasks) < self.page_size_hint:
                break
        else:
            log.warning(f"ClickUp team {team_id} hit the {self.max_pages}-page cap, stopping pagination")

        log.debug(f"Fetched {len(all_tasks)} tasks for ClickUp team {team_id}")
        return all_tasks

    # Navigation (space -> folder -> list)

    async def fetch_navigation(self, team_id: str) -> List[Dict[str, Any]]:
        """Hierarchy tree used as the pipeline reference catalog."""
        spaces = (await self._get(f"/team/{team_id}/space", params={"archived": "false"})).get("spaces") or []
        tree: List[Dict[str, Any]] = []

        for space in spaces:
            space_id = str(space.get("id"))
            folders = (await self._get(f"/space/{space_id}/folder", params={"archived": "false"})).get("folders") or []
            loose_lists = (await self._get(f"/space/{space_id}/list", params={"archived": "false"})).get("lists") or []

            children = []
            for folder in folders:
                children.append(_nav_node("folder", folder, [
                    _nav_node("list", lst, []) for lst in folder.get("lists") or []
                ]))
            children.extend(_nav_node("list", lst, []) for lst in loose_lists)
            tree.append(_nav_node("space", space, children))

        return tree


def _nav_node(scope_type: str, item: Dict[str, Any], children: List[Dict[str, Any]]) -> Dict[str, Any]:
    scope_id = str(item.get("id")) if item.get("id") is not None else None
    return {
        "id": f"{scope_type}:{scope_id}",
        "scope_type": scope_type,
        "scope_id": scope_id,
        "label": item.get("name") or "",
        "task_count": item.get("task_count"),
        "children": children,
    }
