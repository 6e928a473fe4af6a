"""
Store-side reconciliation of agent batches.

Sessions are upserted by (developer, session id): new ones are inserted in
full, known ones only have their growable fields refreshed. Commits are
insert-only; a commit the developer already has is skipped. Every batch is
recorded in the sync log, whatever its outcome.

Each record is committed on its own, so a failure part way through a batch
keeps the records already reconciled. Resubmitting the batch is safe.
"""

from __future__ import annotations

import logging
import re
import sqlite3
from zoneinfo import ZoneInfo

import store_db
from active_time import (
    DEFAULT_TIMEZONE,
    FALLBACK_ACTIVE_RATIO,
    fallback_active_minutes,
    local_date,
    parse_timestamp,
)
from schemas import (
    DailyActivity,
    DiscoveredProject,
    DiscoverResult,
    ProjectActivity,
    SyncPayload,
    SyncResult,
)

logger = logging.getLogger("cap-agent.store")

# Directory names too generic to be a project on their own
GENERIC_PROJECT_NAMES = frozenset({
    "projects", "repos", "code", "src", "work", "dev", "workspace", "workspaces",
})
HOME_DIR_RE = re.compile(r"^/(home|Users)/[^/]+/?$")


# ---------------------------------------------------------------------------
# Sync batches
# ---------------------------------------------------------------------------
def apply_sync_batch(
    conn: sqlite3.Connection,
    developer_id: str,
    agent_key_id: str | None,
    payload: SyncPayload,
) -> SyncResult:
    """Reconcile one batch of sessions and commits.

    Raises:
        store_db.ImmutabilityViolation: A write reached settled evidence.
        sqlite3.Error: Any other storage failure (the sync log is marked failed).
    """
    log_id = store_db.create_sync_log(
        conn, developer_id, agent_key_id, payload.sync_type,
        payload.from_date, payload.to_date,
    )
    result = SyncResult(sync_log_id=log_id)

    try:
        for session in payload.sessions:
            data = session.model_dump()
            existing = store_db.find_session(conn, developer_id, session.session_id)
            if existing is not None:
                store_db.update_session_growable(conn, existing["id"], data)
                result.sessions_updated += 1
                continue
            try:
                store_db.insert_session(conn, developer_id, data, log_id)
                result.sessions_created += 1
            except sqlite3.IntegrityError as e:
                # Inserted concurrently by another batch
                if not store_db.is_unique_violation(e):
                    raise
                result.sessions_skipped += 1

        for commit in payload.commits:
            if store_db.insert_commit(conn, developer_id, commit.model_dump(), log_id):
                result.commits_created += 1
            else:
                result.commits_skipped += 1

    except Exception as e:
        logger.error("Sync %s failed: %s", log_id, e)
        store_db.fail_sync_log(conn, log_id, str(e))
        raise

    store_db.complete_sync_log(
        conn, log_id,
        result.sessions_created + result.sessions_updated,
        result.commits_created,
    )
    logger.info(
        "Sync %s (%s): sessions %d created, %d updated, %d skipped; "
        "commits %d created, %d skipped",
        log_id, payload.sync_type,
        result.sessions_created, result.sessions_updated, result.sessions_skipped,
        result.commits_created, result.commits_skipped,
    )
    return result


# ---------------------------------------------------------------------------
# Discovery registration
# ---------------------------------------------------------------------------
def is_registrable(project: DiscoveredProject) -> bool:
    """Reject generic container directories and bare home directories."""
    if project.name.lower() in GENERIC_PROJECT_NAMES:
        return False
    if HOME_DIR_RE.match(project.local_path):
        return False
    return True


def register_discovered_projects(
    conn: sqlite3.Connection,
    developer_id: str,
    projects: list[DiscoveredProject],
) -> DiscoverResult:
    """Match discovered candidates to existing projects or create new ones.

    An existing project is matched by repo path, then transcript directory,
    then remote URL; links it lacks are added. Unmatched candidates become
    auto-discovered projects.
    """
    result = DiscoverResult()

    for candidate in projects:
        if not is_registrable(candidate):
            continue
        result.total += 1

        project_id = store_db.find_project_by_link(
            conn,
            repo_path=candidate.repo_path,
            claude_path=candidate.claude_path,
            repo_url=candidate.repo_url,
        )
        created = project_id is None
        if created:
            project_id = store_db.create_project(
                conn, candidate.name, created_by_id=developer_id, auto_discovered=True,
            )

        linked = False
        if candidate.repo_path:
            linked |= store_db.add_project_repo(
                conn, project_id, candidate.repo_path, candidate.repo_url
            )
        if candidate.claude_path:
            linked |= store_db.add_project_claude_path(
                conn, project_id, candidate.claude_path, candidate.local_path
            )

        if created:
            result.created += 1
            result.projects.append(candidate.name)
        elif linked:
            result.updated += 1
            result.projects.append(candidate.name)

    return result


# ---------------------------------------------------------------------------
# Daily activity
# ---------------------------------------------------------------------------
def daily_activity(
    conn: sqlite3.Connection,
    developer_id: str,
    day: str,
    tz_name: str = DEFAULT_TIMEZONE,
    fallback_ratio: float = FALLBACK_ACTIVE_RATIO,
) -> DailyActivity:
    """Per-project time on one local day, from stored daily breakdowns.

    Sessions stored without a breakdown are credited a share of their
    duration on their start date, and flagged as estimated.
    """
    tz = ZoneInfo(tz_name)
    by_project: dict[str, ProjectActivity] = {}

    for row in store_db.iter_developer_sessions(conn, developer_id):
        breakdown = store_db.parse_row_json(row["daily_breakdown_json"], "[]")
        entry = next((d for d in breakdown if d.get("date") == day), None)

        if entry is not None:
            active = entry.get("active_minutes", 0)
            wall = entry.get("wall_clock_minutes", 0)
            messages = entry.get("message_count", 0)
            estimated = False
        elif not breakdown:
            started = parse_timestamp(row["started_at"])
            if started is None or local_date(started, tz) != day:
                continue
            wall = round((row["duration_seconds"] or 0) / 60)
            active = fallback_active_minutes(wall, fallback_ratio)
            messages = row["message_count"]
            estimated = True
        else:
            continue

        activity = by_project.setdefault(
            row["project_path"], ProjectActivity(project_path=row["project_path"])
        )
        activity.sessions += 1
        activity.active_minutes += active
        activity.wall_clock_minutes += wall
        activity.message_count += messages
        activity.estimated = activity.estimated or estimated

    commits = 0
    for committed_at in store_db.iter_commit_times(conn, developer_id):
        ts = parse_timestamp(committed_at)
        if ts is not None and local_date(ts, tz) == day:
            commits += 1

    projects = sorted(by_project.values(), key=lambda p: -p.active_minutes)
    return DailyActivity(
        date=day,
        active_minutes=sum(p.active_minutes for p in projects),
        wall_clock_minutes=sum(p.wall_clock_minutes for p in projects),
        commits=commits,
        projects=projects,
    )
