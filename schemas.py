"""
Wire models shared by the agent and the store service.

JSON on the wire uses camelCase keys; Python code uses snake_case attribute
names. Both spellings are accepted on input.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

SyncType = Literal["incremental", "backfill", "reparse"]


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        """JSON-ready dict with camelCase keys."""
        return self.model_dump(by_alias=True, mode="json")


# ---------------------------------------------------------------------------
# Evidence
# ---------------------------------------------------------------------------
class UserPrompt(WireModel):
    time: str
    text: str


class DailyBreakdown(WireModel):
    date: str
    first_timestamp: str
    last_timestamp: str
    active_minutes: int = Field(ge=0)
    wall_clock_minutes: int = Field(ge=0)
    message_count: int = 0
    tool_use_count: int = 0
    user_prompt_count: int = 0
    user_prompts: list[UserPrompt] = Field(default_factory=list)


class SyncSession(WireModel):
    session_id: str = Field(min_length=1)
    project_path: str
    started_at: str
    ended_at: str | None = None
    duration_seconds: int | None = None
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_cache_read_tokens: int = 0
    total_cache_create_tokens: int = 0
    message_count: int = 0
    tool_use_count: int = 0
    model: str | None = None
    raw_jsonl_path: str | None = None
    is_backfill: bool = False
    tool_breakdown: dict[str, int] = Field(default_factory=dict)
    files_referenced: list[str] = Field(default_factory=list)
    user_prompt_count: int = 0
    first_user_prompt: str | None = None
    daily_breakdown: list[DailyBreakdown] = Field(default_factory=list)


class SyncCommit(WireModel):
    commit_hash: str = Field(min_length=1)
    repo_path: str
    branch: str | None = None
    author_name: str | None = None
    author_email: str | None = None
    committed_at: str
    message: str | None = None
    files_changed: int = 0
    insertions: int = 0
    deletions: int = 0
    is_backfill: bool = False


class SyncPayload(WireModel):
    sync_type: SyncType = "incremental"
    sessions: list[SyncSession] = Field(default_factory=list)
    commits: list[SyncCommit] = Field(default_factory=list)
    from_date: str | None = None
    to_date: str | None = None


class SyncResult(WireModel):
    sync_log_id: str
    sessions_created: int = 0
    sessions_updated: int = 0
    sessions_skipped: int = 0
    commits_created: int = 0
    commits_skipped: int = 0


class LastSync(WireModel):
    id: str
    sync_type: str
    completed_at: str | None
    sessions_count: int
    commits_count: int


class LastSyncResponse(WireModel):
    last_sync: LastSync | None = None


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------
class DiscoveredProject(WireModel):
    name: str
    local_path: str
    claude_path: str | None = None
    repo_path: str | None = None
    repo_url: str | None = None
    has_git: bool = False
    has_claude: bool = False


class DiscoverPayload(WireModel):
    projects: list[DiscoveredProject] = Field(default_factory=list)


class DiscoverResult(WireModel):
    created: int = 0
    updated: int = 0
    total: int = 0
    projects: list[str] = Field(default_factory=list)


class ProjectRepo(WireModel):
    repo_path: str
    repo_url: str | None = None


class ProjectClaudePath(WireModel):
    claude_path: str
    local_path: str | None = None


class ProjectDefinition(WireModel):
    id: str
    name: str
    phase: str
    status: str
    monitored: bool
    repos: list[ProjectRepo] = Field(default_factory=list)
    claude_paths: list[ProjectClaudePath] = Field(default_factory=list)


class AgentRemoteConfig(WireModel):
    config_version: int
    min_supported_version: str
    latest_version: str


class ProjectActivity(WireModel):
    project_path: str
    sessions: int = 0
    active_minutes: int = 0
    wall_clock_minutes: int = 0
    message_count: int = 0
    estimated: bool = False


class DailyActivity(WireModel):
    date: str
    active_minutes: int = 0
    wall_clock_minutes: int = 0
    commits: int = 0
    projects: list[ProjectActivity] = Field(default_factory=list)
