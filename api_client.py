"""
HTTP client for the store service.

Every call sends the agent's bearer key and version. Any failure to get a
well-formed answer from the store is raised as ApiError; callers decide
whether that is fatal for the cycle.
"""

from __future__ import annotations

import logging
from typing import Any, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from config import AGENT_VERSION, AgentConfig
from schemas import (
    AgentRemoteConfig,
    DiscoveredProject,
    DiscoverPayload,
    DiscoverResult,
    LastSync,
    LastSyncResponse,
    ProjectDefinition,
    SyncPayload,
    SyncResult,
)

logger = logging.getLogger("cap-agent.api")

DEFAULT_TIMEOUT = 60.0

ModelT = TypeVar("ModelT", bound=BaseModel)


class ApiError(Exception):
    """The store rejected a request or could not be reached."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ApiClient:
    """Synchronous client for the agent endpoints of the store."""

    def __init__(
        self,
        server_url: str,
        api_key: str,
        timeout: float = DEFAULT_TIMEOUT,
        http: httpx.Client | None = None,
    ):
        self.server_url = server_url.rstrip("/")
        self._headers = {
            "Authorization": f"Bearer {api_key}",
            "X-Agent-Version": AGENT_VERSION,
        }
        self._http = http or httpx.Client(base_url=self.server_url, timeout=timeout)

    @classmethod
    def from_config(cls, config: AgentConfig) -> ApiClient:
        return cls(config.server_url, config.api_key)

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> ApiClient:
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _request(self, method: str, path: str, json: Any = None) -> Any:
        try:
            response = self._http.request(method, path, headers=self._headers, json=json)
        except httpx.HTTPError as e:
            raise ApiError(f"{method} {path} failed: {e}") from e

        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = None
            detail = body.get("detail", response.text) if isinstance(body, dict) else response.text
            raise ApiError(
                f"{method} {path} returned {response.status_code}: {detail}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as e:
            raise ApiError(
                f"{method} {path} returned a non-JSON body",
                status_code=response.status_code,
            ) from e

    def _validate(self, model: type[ModelT], data: Any, path: str) -> ModelT:
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise ApiError(f"Unexpected response from {path}: {e}") from e

    # -- endpoints --

    def fetch_projects(self) -> list[ProjectDefinition]:
        path = "/api/agent/projects"
        data = self._request("GET", path)
        if not isinstance(data, list):
            raise ApiError(f"Unexpected response from {path}: expected a list")
        return [self._validate(ProjectDefinition, p, path) for p in data]

    def fetch_last_sync(self) -> LastSync | None:
        path = "/api/agent/last-sync"
        return self._validate(LastSyncResponse, self._request("GET", path), path).last_sync

    def fetch_agent_config(self) -> AgentRemoteConfig:
        path = "/api/agent/config"
        return self._validate(AgentRemoteConfig, self._request("GET", path), path)

    def post_discover(self, projects: list[DiscoveredProject]) -> DiscoverResult:
        path = "/api/agent/discover"
        payload = DiscoverPayload(projects=projects)
        return self._validate(
            DiscoverResult, self._request("POST", path, json=payload.to_wire()), path
        )

    def post_sync(self, payload: SyncPayload) -> SyncResult:
        path = "/api/agent/sync"
        logger.info("Sending %d sessions and %d commits",
                    len(payload.sessions), len(payload.commits))
        return self._validate(
            SyncResult, self._request("POST", path, json=payload.to_wire()), path
        )
