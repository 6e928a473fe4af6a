"""
FastAPI store service for the activity collection agent.

Agents authenticate with a bearer key and push batches of sessions and
commits, which are reconciled into the SQLite store. Agents also pull the
project definitions that tell them which transcript directories and
repositories to collect from.

Deployment: uvicorn app:app --host 127.0.0.1 --port 8210
"""

from __future__ import annotations

import logging
import os
import sqlite3
from contextlib import asynccontextmanager
from datetime import date

from fastapi import FastAPI, Header, HTTPException, Query

import store_db
from active_time import DEFAULT_TIMEZONE
from config import AGENT_VERSION
from reconcile import apply_sync_batch, daily_activity, register_discovered_projects
from schemas import (
    AgentRemoteConfig,
    DailyActivity,
    DiscoverPayload,
    DiscoverResult,
    LastSync,
    LastSyncResponse,
    ProjectDefinition,
    SyncPayload,
    SyncResult,
)

logger = logging.getLogger("cap-agent.store")

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------
STORE_TIMEZONE = os.environ.get("CAP_TIMEZONE", DEFAULT_TIMEZONE)
CONFIG_VERSION = 1
MIN_SUPPORTED_VERSION = "0.2.0"


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------
def _authenticate(
    conn: sqlite3.Connection, authorization: str | None, client_version: str | None
) -> tuple[str, str]:
    """Resolve a bearer key to (developer_id, agent_key_id) or raise 401."""
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing bearer token")
    row = store_db.authenticate_key(conn, authorization[len("Bearer "):].strip())
    if row is None:
        raise HTTPException(status_code=401, detail="Invalid API key")
    store_db.touch_agent_key(conn, row["id"], client_version)
    return row["developer_id"], row["id"]


# ---------------------------------------------------------------------------
# App lifecycle
# ---------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize DB on startup."""
    store_db.init_db().close()
    yield


app = FastAPI(
    title="Activity Store",
    lifespan=lifespan,
)


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------
@app.get("/healthz")
def healthz():
    return {"status": "ok"}


@app.get("/api/agent/config", response_model=AgentRemoteConfig)
def api_agent_config(
    authorization: str | None = Header(default=None),
    x_agent_version: str | None = Header(default=None),
):
    """Versions the agent compares itself against."""
    conn = store_db.get_connection()
    try:
        _authenticate(conn, authorization, x_agent_version)
    finally:
        conn.close()
    return AgentRemoteConfig(
        config_version=CONFIG_VERSION,
        min_supported_version=MIN_SUPPORTED_VERSION,
        latest_version=AGENT_VERSION,
    )


@app.get("/api/agent/projects", response_model=list[ProjectDefinition])
def api_projects(
    authorization: str | None = Header(default=None),
    x_agent_version: str | None = Header(default=None),
):
    """Project definitions with their repositories and transcript directories."""
    conn = store_db.get_connection()
    try:
        _authenticate(conn, authorization, x_agent_version)
        return [ProjectDefinition.model_validate(p) for p in store_db.list_projects(conn)]
    finally:
        conn.close()


@app.post("/api/agent/discover", response_model=DiscoverResult)
def api_discover(
    payload: DiscoverPayload,
    authorization: str | None = Header(default=None),
    x_agent_version: str | None = Header(default=None),
):
    """Register discovered projects, linking them to existing ones where possible."""
    conn = store_db.get_connection()
    try:
        developer_id, _key_id = _authenticate(conn, authorization, x_agent_version)
        return register_discovered_projects(conn, developer_id, payload.projects)
    finally:
        conn.close()


@app.post("/api/agent/sync", response_model=SyncResult)
def api_sync(
    payload: SyncPayload,
    authorization: str | None = Header(default=None),
    x_agent_version: str | None = Header(default=None),
):
    """Reconcile a batch of sessions and commits."""
    conn = store_db.get_connection()
    try:
        developer_id, key_id = _authenticate(conn, authorization, x_agent_version)
        try:
            return apply_sync_batch(conn, developer_id, key_id, payload)
        except (sqlite3.Error, store_db.ImmutabilityViolation) as e:
            logger.exception("Sync batch failed for developer %s", developer_id)
            raise HTTPException(status_code=500, detail=f"Sync failed: {e}") from e
    finally:
        conn.close()


@app.get("/api/agent/last-sync", response_model=LastSyncResponse)
def api_last_sync(
    authorization: str | None = Header(default=None),
    x_agent_version: str | None = Header(default=None),
):
    """Most recent completed sync of the calling developer."""
    conn = store_db.get_connection()
    try:
        developer_id, _key_id = _authenticate(conn, authorization, x_agent_version)
        last = store_db.get_last_completed_sync(conn, developer_id)
    finally:
        conn.close()
    return LastSyncResponse(last_sync=LastSync.model_validate(last) if last else None)


@app.get("/api/agent/activity", response_model=DailyActivity)
def api_activity(
    day: str = Query(alias="date"),
    authorization: str | None = Header(default=None),
    x_agent_version: str | None = Header(default=None),
):
    """Per-project active time of the calling developer on one local day."""
    try:
        date.fromisoformat(day)
    except ValueError:
        raise HTTPException(status_code=422, detail="date must be YYYY-MM-DD")

    conn = store_db.get_connection()
    try:
        developer_id, _key_id = _authenticate(conn, authorization, x_agent_version)
        return daily_activity(conn, developer_id, day, STORE_TIMEZONE)
    finally:
        conn.close()
