"""
SQLite store for reconciled activity evidence.

Holds developers and their agent keys, project definitions (with their
repository and transcript-directory links), raw session and commit records,
and the sync-log audit trail.

Raw evidence is write-once. Sessions may only grow through
update_session_growable(), which writes the columns in
GROWABLE_SESSION_FIELDS and nothing else; triggers reject any other update,
every update or delete of a commit, and deletion of a session.

DB location: data/store.db (WAL mode), or CAP_STORE_DB.
"""

from __future__ import annotations

import hashlib
import json
import os
import secrets
import sqlite3
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

DB_PATH = Path(os.environ.get("CAP_STORE_DB", Path(__file__).parent / "data" / "store.db"))

# Columns a re-ingested session may overwrite. Everything else is settled
# at first insert.
GROWABLE_SESSION_FIELDS = (
    "ended_at",
    "duration_seconds",
    "total_input_tokens",
    "total_output_tokens",
    "total_cache_read_tokens",
    "total_cache_create_tokens",
    "message_count",
    "tool_use_count",
    "model",
    "tool_breakdown_json",
    "files_referenced_json",
    "user_prompt_count",
    "first_user_prompt",
    "daily_breakdown_json",
)

SETTLED_SESSION_FIELDS = (
    "id",
    "developer_id",
    "session_id",
    "project_path",
    "started_at",
    "raw_jsonl_path",
    "is_backfill",
    "sync_log_id",
    "synced_at",
)

IMMUTABILITY_MARKER = "Immutability violation"

_SETTLED_COLUMNS = ", ".join(SETTLED_SESSION_FIELDS)


class ImmutabilityViolation(Exception):
    """A write tried to change settled evidence."""


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------
_SCHEMA = f"""
CREATE TABLE IF NOT EXISTS developers (
    id           TEXT PRIMARY KEY,
    email        TEXT NOT NULL UNIQUE,
    display_name TEXT,
    created_at   TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS agent_keys (
    id             TEXT PRIMARY KEY,
    developer_id   TEXT NOT NULL REFERENCES developers(id),
    key_hash       TEXT NOT NULL UNIQUE,
    active         INTEGER NOT NULL DEFAULT 1,
    created_at     TEXT NOT NULL,
    last_used_at   TEXT,
    client_version TEXT
);

CREATE TABLE IF NOT EXISTS projects (
    id              TEXT PRIMARY KEY,
    name            TEXT NOT NULL,
    phase           TEXT NOT NULL DEFAULT 'preliminary',
    status          TEXT NOT NULL DEFAULT 'active',
    monitored       INTEGER NOT NULL DEFAULT 1,
    auto_discovered INTEGER NOT NULL DEFAULT 0,
    created_by_id   TEXT REFERENCES developers(id),
    created_at      TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS project_repos (
    id         INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id TEXT NOT NULL REFERENCES projects(id),
    repo_path  TEXT NOT NULL,
    repo_url   TEXT,
    UNIQUE (project_id, repo_path)
);

CREATE TABLE IF NOT EXISTS project_claude_paths (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id  TEXT NOT NULL REFERENCES projects(id),
    claude_path TEXT NOT NULL,
    local_path  TEXT,
    UNIQUE (project_id, claude_path)
);

CREATE TABLE IF NOT EXISTS agent_sync_log (
    id             TEXT PRIMARY KEY,
    developer_id   TEXT NOT NULL REFERENCES developers(id),
    agent_key_id   TEXT REFERENCES agent_keys(id),
    sync_type      TEXT NOT NULL,
    started_at     TEXT NOT NULL,
    completed_at   TEXT,
    status         TEXT NOT NULL DEFAULT 'running',
    sessions_count INTEGER NOT NULL DEFAULT 0,
    commits_count  INTEGER NOT NULL DEFAULT 0,
    from_date      TEXT,
    to_date        TEXT,
    error_message  TEXT
);

CREATE TABLE IF NOT EXISTS raw_sessions (
    id                        TEXT PRIMARY KEY,
    developer_id              TEXT NOT NULL REFERENCES developers(id),
    session_id                TEXT NOT NULL,
    project_path              TEXT NOT NULL,
    started_at                TEXT NOT NULL,
    ended_at                  TEXT,
    duration_seconds          INTEGER,
    total_input_tokens        INTEGER NOT NULL DEFAULT 0,
    total_output_tokens       INTEGER NOT NULL DEFAULT 0,
    total_cache_read_tokens   INTEGER NOT NULL DEFAULT 0,
    total_cache_create_tokens INTEGER NOT NULL DEFAULT 0,
    message_count             INTEGER NOT NULL DEFAULT 0,
    tool_use_count            INTEGER NOT NULL DEFAULT 0,
    model                     TEXT,
    raw_jsonl_path            TEXT,
    is_backfill               INTEGER NOT NULL DEFAULT 0,
    sync_log_id               TEXT REFERENCES agent_sync_log(id),
    synced_at                 TEXT NOT NULL,
    tool_breakdown_json       TEXT,
    files_referenced_json     TEXT,
    user_prompt_count         INTEGER NOT NULL DEFAULT 0,
    first_user_prompt         TEXT,
    daily_breakdown_json      TEXT,
    UNIQUE (developer_id, session_id)
);

CREATE TABLE IF NOT EXISTS raw_commits (
    id            TEXT PRIMARY KEY,
    developer_id  TEXT NOT NULL REFERENCES developers(id),
    commit_hash   TEXT NOT NULL,
    repo_path     TEXT NOT NULL,
    branch        TEXT,
    author_name   TEXT,
    author_email  TEXT,
    committed_at  TEXT NOT NULL,
    message       TEXT,
    files_changed INTEGER NOT NULL DEFAULT 0,
    insertions    INTEGER NOT NULL DEFAULT 0,
    deletions     INTEGER NOT NULL DEFAULT 0,
    is_backfill   INTEGER NOT NULL DEFAULT 0,
    sync_log_id   TEXT REFERENCES agent_sync_log(id),
    synced_at     TEXT NOT NULL,
    UNIQUE (developer_id, commit_hash)
);

CREATE INDEX IF NOT EXISTS idx_raw_sessions_project ON raw_sessions (developer_id, project_path);
CREATE INDEX IF NOT EXISTS idx_raw_commits_repo ON raw_commits (developer_id, repo_path);
CREATE INDEX IF NOT EXISTS idx_sync_log_developer ON agent_sync_log (developer_id, status, completed_at);

CREATE TRIGGER IF NOT EXISTS raw_sessions_settled_update
BEFORE UPDATE OF {_SETTLED_COLUMNS} ON raw_sessions
BEGIN
    SELECT RAISE(ABORT, '{IMMUTABILITY_MARKER}: settled raw_sessions fields are write-once');
END;

CREATE TRIGGER IF NOT EXISTS raw_sessions_no_delete
BEFORE DELETE ON raw_sessions
BEGIN
    SELECT RAISE(ABORT, '{IMMUTABILITY_MARKER}: raw_sessions rows cannot be deleted');
END;

CREATE TRIGGER IF NOT EXISTS raw_commits_no_update
BEFORE UPDATE ON raw_commits
BEGIN
    SELECT RAISE(ABORT, '{IMMUTABILITY_MARKER}: raw_commits rows are write-once');
END;

CREATE TRIGGER IF NOT EXISTS raw_commits_no_delete
BEFORE DELETE ON raw_commits
BEGIN
    SELECT RAISE(ABORT, '{IMMUTABILITY_MARKER}: raw_commits rows cannot be deleted');
END;

CREATE TRIGGER IF NOT EXISTS agent_sync_log_finished
BEFORE UPDATE ON agent_sync_log
WHEN OLD.status != 'running'
BEGIN
    SELECT RAISE(ABORT, '{IMMUTABILITY_MARKER}: finished sync log entries are write-once');
END;

CREATE TRIGGER IF NOT EXISTS agent_sync_log_no_delete
BEFORE DELETE ON agent_sync_log
BEGIN
    SELECT RAISE(ABORT, '{IMMUTABILITY_MARKER}: sync log entries cannot be deleted');
END;
"""


def get_connection() -> sqlite3.Connection:
    """Get a SQLite connection with WAL mode and row factory."""
    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(DB_PATH), timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA synchronous=NORMAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def init_db() -> sqlite3.Connection:
    """Create schema and return connection."""
    conn = get_connection()
    conn.executescript(_SCHEMA)
    conn.commit()
    return conn


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_id() -> str:
    return uuid.uuid4().hex


def is_unique_violation(error: sqlite3.IntegrityError) -> bool:
    return "UNIQUE constraint failed" in str(error)


def _raise_if_immutable(error: sqlite3.IntegrityError) -> None:
    if IMMUTABILITY_MARKER in str(error):
        raise ImmutabilityViolation(str(error)) from error


def parse_row_json(raw: str | None, default: str = "{}") -> Any:
    """Safely parse a JSON string from a DB column."""
    try:
        return json.loads(raw or default)
    except (json.JSONDecodeError, TypeError):
        return json.loads(default)


# ---------------------------------------------------------------------------
# Developers and agent keys
# ---------------------------------------------------------------------------
def hash_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


def get_or_create_developer(
    conn: sqlite3.Connection, email: str, display_name: str | None = None
) -> str:
    """Return the developer id for *email*, creating the developer if needed."""
    row = conn.execute(
        "SELECT id FROM developers WHERE email = ?", (email.lower(),)
    ).fetchone()
    if row:
        return row["id"]
    developer_id = _new_id()
    conn.execute(
        "INSERT INTO developers (id, email, display_name, created_at) VALUES (?, ?, ?, ?)",
        (developer_id, email.lower(), display_name, _now()),
    )
    conn.commit()
    return developer_id


def create_agent_key(conn: sqlite3.Connection, developer_id: str) -> tuple[str, str]:
    """Issue a new agent key. Returns (key_id, plaintext_key); only the hash is stored."""
    api_key = "cap_" + secrets.token_urlsafe(32)
    key_id = _new_id()
    conn.execute(
        """INSERT INTO agent_keys (id, developer_id, key_hash, created_at)
           VALUES (?, ?, ?, ?)""",
        (key_id, developer_id, hash_api_key(api_key), _now()),
    )
    conn.commit()
    return key_id, api_key


def authenticate_key(conn: sqlite3.Connection, api_key: str) -> sqlite3.Row | None:
    """Look up an active agent key. Returns a row with id and developer_id."""
    return conn.execute(
        "SELECT id, developer_id FROM agent_keys WHERE key_hash = ? AND active = 1",
        (hash_api_key(api_key),),
    ).fetchone()


def touch_agent_key(
    conn: sqlite3.Connection, key_id: str, client_version: str | None
) -> None:
    """Record when a key was last used and by which agent version."""
    conn.execute(
        """UPDATE agent_keys SET last_used_at = ?,
                  client_version = COALESCE(?, client_version)
           WHERE id = ?""",
        (_now(), client_version, key_id),
    )
    conn.commit()


# ---------------------------------------------------------------------------
# Sync log
# ---------------------------------------------------------------------------
def create_sync_log(
    conn: sqlite3.Connection,
    developer_id: str,
    agent_key_id: str | None,
    sync_type: str,
    from_date: str | None = None,
    to_date: str | None = None,
) -> str:
    """Open a sync-log entry in 'running' state and commit it."""
    log_id = _new_id()
    conn.execute(
        """INSERT INTO agent_sync_log
               (id, developer_id, agent_key_id, sync_type, started_at, from_date, to_date)
           VALUES (?, ?, ?, ?, ?, ?, ?)""",
        (log_id, developer_id, agent_key_id, sync_type, _now(), from_date, to_date),
    )
    conn.commit()
    return log_id


def complete_sync_log(
    conn: sqlite3.Connection, log_id: str, sessions_count: int, commits_count: int
) -> None:
    conn.execute(
        """UPDATE agent_sync_log
           SET status = 'completed', completed_at = ?, sessions_count = ?, commits_count = ?
           WHERE id = ?""",
        (_now(), sessions_count, commits_count, log_id),
    )
    conn.commit()


def fail_sync_log(conn: sqlite3.Connection, log_id: str, error_message: str) -> None:
    conn.execute(
        """UPDATE agent_sync_log
           SET status = 'failed', completed_at = ?, error_message = ?
           WHERE id = ?""",
        (_now(), error_message[:2000], log_id),
    )
    conn.commit()


def get_sync_log(conn: sqlite3.Connection, log_id: str) -> dict[str, Any] | None:
    row = conn.execute("SELECT * FROM agent_sync_log WHERE id = ?", (log_id,)).fetchone()
    return dict(row) if row else None


def get_last_completed_sync(
    conn: sqlite3.Connection, developer_id: str
) -> dict[str, Any] | None:
    """Most recent completed sync of a developer."""
    row = conn.execute(
        """SELECT id, sync_type, completed_at, sessions_count, commits_count
           FROM agent_sync_log
           WHERE developer_id = ? AND status = 'completed'
           ORDER BY completed_at DESC
           LIMIT 1""",
        (developer_id,),
    ).fetchone()
    return dict(row) if row else None


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------
def _session_columns(session: dict[str, Any]) -> dict[str, Any]:
    """Map a session dict (snake_case wire fields) to growable column values."""
    return {
        "ended_at": session.get("ended_at"),
        "duration_seconds": session.get("duration_seconds"),
        "total_input_tokens": session.get("total_input_tokens", 0),
        "total_output_tokens": session.get("total_output_tokens", 0),
        "total_cache_read_tokens": session.get("total_cache_read_tokens", 0),
        "total_cache_create_tokens": session.get("total_cache_create_tokens", 0),
        "message_count": session.get("message_count", 0),
        "tool_use_count": session.get("tool_use_count", 0),
        "model": session.get("model"),
        "tool_breakdown_json": json.dumps(session.get("tool_breakdown") or {}),
        "files_referenced_json": json.dumps(session.get("files_referenced") or []),
        "user_prompt_count": session.get("user_prompt_count", 0),
        "first_user_prompt": session.get("first_user_prompt"),
        "daily_breakdown_json": json.dumps(session.get("daily_breakdown") or []),
    }


def find_session(
    conn: sqlite3.Connection, developer_id: str, session_id: str
) -> sqlite3.Row | None:
    return conn.execute(
        "SELECT id FROM raw_sessions WHERE developer_id = ? AND session_id = ?",
        (developer_id, session_id),
    ).fetchone()


def insert_session(
    conn: sqlite3.Connection,
    developer_id: str,
    session: dict[str, Any],
    sync_log_id: str | None,
) -> str:
    """Insert a new session with all fields. Raises sqlite3.IntegrityError on duplicates."""
    row_id = _new_id()
    columns = {
        "id": row_id,
        "developer_id": developer_id,
        "session_id": session["session_id"],
        "project_path": session["project_path"],
        "started_at": session["started_at"],
        "raw_jsonl_path": session.get("raw_jsonl_path"),
        "is_backfill": int(bool(session.get("is_backfill"))),
        "sync_log_id": sync_log_id,
        "synced_at": _now(),
        **_session_columns(session),
    }
    names = ", ".join(columns)
    placeholders = ", ".join("?" for _ in columns)
    try:
        conn.execute(
            f"INSERT INTO raw_sessions ({names}) VALUES ({placeholders})",
            tuple(columns.values()),
        )
    except sqlite3.IntegrityError:
        conn.rollback()
        raise
    conn.commit()
    return row_id


def update_session_growable(
    conn: sqlite3.Connection, row_id: str, session: dict[str, Any]
) -> None:
    """Overwrite only the growable columns of an existing session."""
    values = _session_columns(session)
    assignments = ", ".join(f"{name} = ?" for name in GROWABLE_SESSION_FIELDS)
    try:
        conn.execute(
            f"UPDATE raw_sessions SET {assignments} WHERE id = ?",
            (*(values[name] for name in GROWABLE_SESSION_FIELDS), row_id),
        )
    except sqlite3.IntegrityError as e:
        conn.rollback()
        _raise_if_immutable(e)
        raise
    conn.commit()


def get_session(
    conn: sqlite3.Connection, developer_id: str, session_id: str
) -> dict[str, Any] | None:
    """Load a stored session with its JSON columns decoded."""
    row = conn.execute(
        "SELECT * FROM raw_sessions WHERE developer_id = ? AND session_id = ?",
        (developer_id, session_id),
    ).fetchone()
    if not row:
        return None
    data = dict(row)
    data["tool_breakdown"] = parse_row_json(data.pop("tool_breakdown_json"))
    data["files_referenced"] = parse_row_json(data.pop("files_referenced_json"), "[]")
    data["daily_breakdown"] = parse_row_json(data.pop("daily_breakdown_json"), "[]")
    data["is_backfill"] = bool(data["is_backfill"])
    return data


def iter_developer_sessions(conn: sqlite3.Connection, developer_id: str):
    """All stored sessions of a developer, as rows."""
    return conn.execute(
        """SELECT session_id, project_path, started_at, duration_seconds,
                  message_count, daily_breakdown_json
           FROM raw_sessions WHERE developer_id = ?""",
        (developer_id,),
    )


# ---------------------------------------------------------------------------
# Commits
# ---------------------------------------------------------------------------
def insert_commit(
    conn: sqlite3.Connection,
    developer_id: str,
    commit: dict[str, Any],
    sync_log_id: str | None,
) -> bool:
    """Insert a commit. Returns False if the developer already has it."""
    try:
        conn.execute(
            """INSERT INTO raw_commits (
                id, developer_id, commit_hash, repo_path, branch, author_name,
                author_email, committed_at, message, files_changed, insertions,
                deletions, is_backfill, sync_log_id, synced_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                _new_id(),
                developer_id,
                commit["commit_hash"],
                commit["repo_path"],
                commit.get("branch"),
                commit.get("author_name"),
                commit.get("author_email"),
                commit["committed_at"],
                commit.get("message"),
                commit.get("files_changed", 0),
                commit.get("insertions", 0),
                commit.get("deletions", 0),
                int(bool(commit.get("is_backfill"))),
                sync_log_id,
                _now(),
            ),
        )
    except sqlite3.IntegrityError as e:
        conn.rollback()
        if is_unique_violation(e):
            return False
        raise
    conn.commit()
    return True


def iter_commit_times(conn: sqlite3.Connection, developer_id: str):
    """committed_at of every stored commit of a developer."""
    for row in conn.execute(
        "SELECT committed_at FROM raw_commits WHERE developer_id = ?", (developer_id,)
    ):
        yield row["committed_at"]


def count_rows(conn: sqlite3.Connection, table: str) -> int:
    """Row count of one of the evidence tables."""
    if table not in ("raw_sessions", "raw_commits", "agent_sync_log"):
        raise ValueError(f"Unknown table: {table}")
    return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------
def create_project(
    conn: sqlite3.Connection,
    name: str,
    created_by_id: str | None = None,
    auto_discovered: bool = False,
    monitored: bool = True,
    status: str = "active",
) -> str:
    project_id = _new_id()
    conn.execute(
        """INSERT INTO projects (id, name, status, monitored, auto_discovered,
                                 created_by_id, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?)""",
        (project_id, name, status, int(monitored), int(auto_discovered),
         created_by_id, _now()),
    )
    conn.commit()
    return project_id


def add_project_repo(
    conn: sqlite3.Connection, project_id: str, repo_path: str, repo_url: str | None
) -> bool:
    """Link a repository to a project. Returns False if already linked."""
    cur = conn.execute(
        """INSERT OR IGNORE INTO project_repos (project_id, repo_path, repo_url)
           VALUES (?, ?, ?)""",
        (project_id, repo_path, repo_url),
    )
    conn.commit()
    return cur.rowcount > 0


def add_project_claude_path(
    conn: sqlite3.Connection, project_id: str, claude_path: str, local_path: str | None
) -> bool:
    """Link a transcript directory to a project. Returns False if already linked."""
    cur = conn.execute(
        """INSERT OR IGNORE INTO project_claude_paths (project_id, claude_path, local_path)
           VALUES (?, ?, ?)""",
        (project_id, claude_path, local_path),
    )
    conn.commit()
    return cur.rowcount > 0


def find_project_by_link(
    conn: sqlite3.Connection,
    repo_path: str | None = None,
    claude_path: str | None = None,
    repo_url: str | None = None,
) -> str | None:
    """Project id matched by repo path, then transcript dir, then remote URL."""
    lookups = (
        ("SELECT project_id FROM project_repos WHERE repo_path = ?", repo_path),
        ("SELECT project_id FROM project_claude_paths WHERE claude_path = ?", claude_path),
        ("SELECT project_id FROM project_repos WHERE repo_url = ?", repo_url),
    )
    for query, value in lookups:
        if not value:
            continue
        row = conn.execute(query + " LIMIT 1", (value,)).fetchone()
        if row:
            return row["project_id"]
    return None


def list_projects(conn: sqlite3.Connection) -> list[dict[str, Any]]:
    """All non-abandoned projects with their repo and transcript-dir links."""
    projects = [
        dict(row)
        for row in conn.execute(
            """SELECT id, name, phase, status, monitored FROM projects
               WHERE status != 'abandoned' ORDER BY name"""
        )
    ]
    for project in projects:
        project["monitored"] = bool(project["monitored"])
        project["repos"] = [
            dict(row)
            for row in conn.execute(
                "SELECT repo_path, repo_url FROM project_repos WHERE project_id = ? ORDER BY id",
                (project["id"],),
            )
        ]
        project["claude_paths"] = [
            dict(row)
            for row in conn.execute(
                """SELECT claude_path, local_path FROM project_claude_paths
                   WHERE project_id = ? ORDER BY id""",
                (project["id"],),
            )
        ]
    return projects
