"""
Sync orchestrator: one end-to-end collection cycle.

    discover -> fetch projects -> scan -> parse -> commits -> transmit -> checkpoint

Collection is single-threaded and one file or repository at a time. The
checkpoint only moves after the store accepted the batch, so a failed cycle
is simply retried by the next one; the store's idempotent reconciliation
absorbs the overlap.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone

from api_client import ApiClient, ApiError
from config import AgentConfig, save_config
from discovery import discover_projects
from git_log import extract_commits
from schemas import SyncCommit, SyncPayload, SyncResult, SyncSession
from tool_adapters import create_adapter_registry
from transcript_parser import parse_transcript
from transcript_scanner import scan_transcripts

logger = logging.getLogger("cap-agent.sync")


class SyncError(Exception):
    """The cycle cannot complete; the checkpoint was left unchanged."""


@dataclass
class SyncOptions:
    from_date: str | None = None
    to_date: str | None = None
    dry_run: bool = False
    skip_discover: bool = False
    reparse: bool = False

    @property
    def sync_type(self) -> str:
        if self.reparse:
            return "reparse"
        if self.from_date:
            return "backfill"
        return "incremental"


@dataclass
class SyncReport:
    """What one cycle collected and what happened to it."""
    sync_type: str
    status: str = "pending"  # nothing | dry-run | synced
    since: datetime | None = None
    discovered: int = 0
    files_scanned: int = 0
    files_unmatched: list[str] = field(default_factory=list)
    files_empty: list[str] = field(default_factory=list)
    files_failed: list[str] = field(default_factory=list)
    repos_scanned: int = 0
    payload: SyncPayload | None = None
    result: SyncResult | None = None

    @property
    def sessions_skipped(self) -> int:
        return len(self.files_unmatched) + len(self.files_empty) + len(self.files_failed)


def _parse_date(value: str) -> datetime:
    """Parse a YYYY-MM-DD or ISO date, as UTC when no offset is given."""
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _lower_bound(config: AgentConfig, options: SyncOptions) -> datetime | None:
    """reparse -> everything; else explicit from date; else the checkpoint."""
    if options.reparse:
        return None
    if options.from_date:
        return _parse_date(options.from_date)
    return config.last_sync_datetime()


def _run_discovery(
    config: AgentConfig, client: ApiClient, options: SyncOptions, report: SyncReport
) -> None:
    """Discover and register projects. Failures here never stop the cycle."""
    try:
        projects = discover_projects(
            config.claude_data_dirs, config.projects_dir, config.exclude_paths
        )
        report.discovered = len(projects)
        if projects and not options.dry_run:
            result = client.post_discover(projects)
            logger.info("Registered projects: %d created, %d updated",
                        result.created, result.updated)
    except (ApiError, OSError) as e:
        logger.warning("Project discovery failed, continuing: %s", e)


def _collect_sessions(
    config: AgentConfig,
    known_claude_paths: set[str],
    since: datetime | None,
    is_backfill: bool,
    report: SyncReport,
) -> list[SyncSession]:
    adapters = create_adapter_registry()
    files = scan_transcripts(config.claude_data_dirs, since, config.exclude_paths)
    report.files_scanned = len(files)

    sessions = []
    for transcript in files:
        if transcript.project_dir not in known_claude_paths:
            report.files_unmatched.append(str(transcript.path))
            continue
        try:
            parsed = parse_transcript(
                transcript.path, config.timezone, config.idle_gap_minutes, adapters
            )
        except OSError as e:
            logger.warning("Cannot read %s: %s", transcript.path, e)
            report.files_failed.append(str(transcript.path))
            continue
        if parsed is None or parsed["started_at"] is None:
            report.files_empty.append(str(transcript.path))
            continue
        if parsed["skipped_lines"]:
            logger.debug("%s: skipped %d malformed lines",
                         transcript.path.name, parsed["skipped_lines"])
        sessions.append(SyncSession.model_validate({**parsed, "is_backfill": is_backfill}))
    return sessions


def _collect_commits(
    config: AgentConfig,
    repo_paths: list[str],
    since: datetime | None,
    options: SyncOptions,
    report: SyncReport,
) -> list[SyncCommit]:
    commit_since = options.from_date or (since.isoformat() if since else None)
    commits = []
    for repo_path in repo_paths:
        report.repos_scanned += 1
        for commit in extract_commits(
            repo_path,
            since=commit_since,
            until=options.to_date,
            author_email=config.developer_email or None,
            timeout=config.git_timeout_seconds,
            max_output_bytes=config.git_max_output_bytes,
        ):
            commits.append(SyncCommit(
                commit_hash=commit.commit_hash,
                repo_path=commit.repo_path,
                branch=commit.branch,
                author_name=commit.author_name,
                author_email=commit.author_email,
                committed_at=commit.committed_at,
                message=commit.message,
                files_changed=commit.files_changed,
                insertions=commit.insertions,
                deletions=commit.deletions,
                is_backfill=bool(options.from_date),
            ))
    return commits


def run_sync(
    config: AgentConfig,
    client: ApiClient,
    options: SyncOptions | None = None,
    now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    persist: Callable[[AgentConfig], object] = save_config,
) -> SyncReport:
    """Run one collection cycle.

    Raises:
        SyncError: Project definitions could not be fetched, or the store
            did not accept the batch. The checkpoint is unchanged.
    """
    options = options or SyncOptions()
    cycle_start = now()
    report = SyncReport(sync_type=options.sync_type)

    if not options.skip_discover:
        _run_discovery(config, client, options, report)

    try:
        projects = client.fetch_projects()
    except ApiError as e:
        raise SyncError(f"Cannot fetch project definitions: {e}") from e

    monitored = [p for p in projects if p.monitored]
    known_claude_paths = {cp.claude_path for p in monitored for cp in p.claude_paths}
    repo_paths = list(dict.fromkeys(r.repo_path for p in monitored for r in p.repos))
    logger.info("%d monitored projects, %d transcript dirs, %d repos",
                len(monitored), len(known_claude_paths), len(repo_paths))

    since = _lower_bound(config, options)
    report.since = since
    is_backfill = bool(options.from_date)

    sessions = _collect_sessions(config, known_claude_paths, since, is_backfill, report)
    commits = []
    if not options.reparse:
        commits = _collect_commits(config, repo_paths, since, options, report)

    if not sessions and not commits:
        report.status = "nothing"
        return report

    report.payload = SyncPayload(
        sync_type=options.sync_type,
        sessions=sessions,
        commits=commits,
        from_date=options.from_date,
        to_date=options.to_date,
    )
    if options.dry_run:
        report.status = "dry-run"
        return report

    try:
        report.result = client.post_sync(report.payload)
    except ApiError as e:
        raise SyncError(f"Store rejected the sync batch: {e}") from e

    config.last_sync = cycle_start.isoformat()
    persist(config)
    report.status = "synced"
    return report
