"""Shared fixtures for cap-agent tests."""

import json
from dataclasses import dataclass
from pathlib import Path

import pytest

import store_db

SESSION_UUID = "3f2b8c1e-9a4d-4e6f-8b2a-1c5d7e9f0a12"
PROJECT_DIR = "-home-dev-api"


# ---------------------------------------------------------------------------
# Record builders
# ---------------------------------------------------------------------------
def user_record(ts, content):
    return {"type": "user", "timestamp": ts, "message": {"role": "user", "content": content}}


def assistant_record(ts, content=None, usage=None, model="claude-sonnet-4-20250514"):
    msg = {"role": "assistant", "model": model, "content": content or []}
    if usage is not None:
        msg["usage"] = usage
    return {"type": "assistant", "timestamp": ts, "message": msg}


def tool_use(name, tool_input, block_id="tu_001"):
    return {"type": "tool_use", "id": block_id, "name": name, "input": tool_input}


def write_jsonl(path: Path, records) -> Path:
    """Write records (dicts or raw strings) one per line."""
    path.parent.mkdir(parents=True, exist_ok=True)
    lines = [r if isinstance(r, str) else json.dumps(r) for r in records]
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


SAMPLE_SESSION_RECORDS = [
    {"type": "summary", "summary": "Add health endpoint", "leafUuid": "x"},
    user_record("2025-06-02T14:00:00Z", "Add a health endpoint to the API"),
    assistant_record(
        "2025-06-02T14:00:05Z",
        content=[
            {"type": "text", "text": "I'll look at the app first."},
            tool_use("Read", {"file_path": "/home/dev/api/app.py"}, "tu_001"),
        ],
        usage={
            "input_tokens": 1200,
            "output_tokens": 300,
            "cache_read_input_tokens": 400,
            "cache_creation_input_tokens": 100,
        },
    ),
    user_record("2025-06-02T14:00:06Z", [
        {"type": "tool_result", "tool_use_id": "tu_001", "content": "from fastapi import FastAPI"},
    ]),
    assistant_record(
        "2025-06-02T14:03:00Z",
        content=[
            tool_use("Edit", {"file_path": "/home/dev/api/app.py", "old_string": "a",
                              "new_string": "b"}, "tu_002"),
            tool_use("Bash", {"command": "pytest /home/dev/api/tests/test_app.py -q"}, "tu_003"),
        ],
        usage={"input_tokens": 800, "output_tokens": 200},
    ),
    {"type": "system", "subtype": "turn_duration", "durationMs": 180000,
     "timestamp": "2025-06-02T14:03:01Z"},
    user_record("2025-06-02T14:10:00Z", "Now add a test for it"),
    assistant_record("2025-06-02T14:12:00Z", content=[{"type": "text", "text": "Done."}],
                     usage={"input_tokens": 500, "output_tokens": 50}),
]


@pytest.fixture()
def transcript_root(tmp_path):
    """An empty transcript root directory."""
    root = tmp_path / "claude" / "projects"
    root.mkdir(parents=True)
    return root


@pytest.fixture()
def sample_jsonl(transcript_root):
    """A realistic session transcript inside a project directory."""
    return write_jsonl(
        transcript_root / PROJECT_DIR / f"{SESSION_UUID}.jsonl", SAMPLE_SESSION_RECORDS
    )


@pytest.fixture()
def empty_jsonl(tmp_path):
    """An empty JSONL file."""
    jsonl_file = tmp_path / "empty.jsonl"
    jsonl_file.write_text("")
    return jsonl_file


@pytest.fixture()
def malformed_jsonl(tmp_path):
    """JSONL file with some malformed lines."""
    return write_jsonl(tmp_path / "malformed.jsonl", [
        user_record("2025-06-01T10:00:00Z", "hello"),
        "NOT VALID JSON {{{",
        "[1, 2, 3]",
        "",
        assistant_record("2025-06-01T10:00:05Z", usage={"input_tokens": 10}),
    ])


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------
@pytest.fixture()
def tmp_db(tmp_path, monkeypatch):
    """Provide an isolated SQLite store in tmp_path.

    Monkeypatches store_db.DB_PATH so all store_db functions
    use the temporary database instead of the real one.
    """
    db_dir = tmp_path / "data"
    db_dir.mkdir(exist_ok=True)
    monkeypatch.setattr(store_db, "DB_PATH", db_dir / "store.db")
    conn = store_db.init_db()
    yield conn
    conn.close()


@pytest.fixture()
def developer_id(tmp_db):
    return store_db.get_or_create_developer(tmp_db, "dev@example.com", "Dev")


SAMPLE_SESSION = {
    "session_id": SESSION_UUID,
    "project_path": PROJECT_DIR,
    "started_at": "2025-06-02T14:00:00Z",
    "ended_at": "2025-06-02T14:12:00Z",
    "duration_seconds": 720,
    "total_input_tokens": 2500,
    "total_output_tokens": 550,
    "total_cache_read_tokens": 400,
    "total_cache_create_tokens": 100,
    "message_count": 6,
    "tool_use_count": 3,
    "model": "claude-sonnet-4-20250514",
    "raw_jsonl_path": f"/home/dev/.claude/projects/{PROJECT_DIR}/{SESSION_UUID}.jsonl",
    "is_backfill": False,
    "tool_breakdown": {"Read": 1, "Edit": 1, "Bash": 1},
    "files_referenced": ["/home/dev/api/app.py"],
    "user_prompt_count": 2,
    "first_user_prompt": "Add a health endpoint to the API",
    "daily_breakdown": [{
        "date": "2025-06-02",
        "first_timestamp": "2025-06-02T14:00:00Z",
        "last_timestamp": "2025-06-02T14:12:00Z",
        "active_minutes": 5,
        "wall_clock_minutes": 12,
        "message_count": 6,
        "tool_use_count": 3,
        "user_prompt_count": 2,
        "user_prompts": [
            {"time": "2025-06-02T14:00:00Z", "text": "Add a health endpoint to the API"},
            {"time": "2025-06-02T14:10:00Z", "text": "Now add a test for it"},
        ],
    }],
}

SAMPLE_COMMIT = {
    "commit_hash": "a" * 40,
    "repo_path": "/home/dev/api",
    "branch": "main",
    "author_name": "Dev",
    "author_email": "dev@example.com",
    "committed_at": "2025-06-02T10:30:00-04:00",
    "message": "Add health endpoint",
    "files_changed": 2,
    "insertions": 20,
    "deletions": 3,
    "is_backfill": False,
}


@pytest.fixture()
def sample_session():
    """Return a deep copy of a session as the agent sends it."""
    return json.loads(json.dumps(SAMPLE_SESSION))


@pytest.fixture()
def sample_commit():
    return dict(SAMPLE_COMMIT)


# ---------------------------------------------------------------------------
# FastAPI test client
# ---------------------------------------------------------------------------
@dataclass
class StoreHarness:
    client: object
    api_key: str
    developer_id: str

    @property
    def headers(self):
        return {"Authorization": f"Bearer {self.api_key}"}


@pytest.fixture()
def store(tmp_path, monkeypatch):
    """FastAPI TestClient over an isolated store with one developer and key."""
    from fastapi.testclient import TestClient

    db_dir = tmp_path / "data"
    db_dir.mkdir(exist_ok=True)
    monkeypatch.setattr(store_db, "DB_PATH", db_dir / "store.db")

    conn = store_db.init_db()
    dev_id = store_db.get_or_create_developer(conn, "dev@example.com", "Dev")
    _key_id, api_key = store_db.create_agent_key(conn, dev_id)
    conn.close()

    import app as app_module

    with TestClient(app_module.app, raise_server_exceptions=False) as tc:
        yield StoreHarness(client=tc, api_key=api_key, developer_id=dev_id)


@pytest.fixture()
def client(store):
    """TestClient that sends the developer's key on every request."""
    store.client.headers.update(store.headers)
    return store.client


@pytest.fixture()
def api_client(store):
    """ApiClient wired to the in-process store."""
    from api_client import ApiClient

    return ApiClient("http://testserver", store.api_key, http=store.client)
