"""Tests for store_db.py — SQLite evidence store and its write-once rules."""

import sqlite3

import pytest

import store_db


def _insert_sample(conn, developer_id, session):
    log_id = store_db.create_sync_log(conn, developer_id, None, "incremental")
    return store_db.insert_session(conn, developer_id, session, log_id)


class TestSchema:
    """Tests for init_db and connection setup."""

    def test_init_creates_tables(self, tmp_db):
        tables = {
            row["name"]
            for row in tmp_db.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
        }
        assert {"developers", "agent_keys", "projects", "project_repos",
                "project_claude_paths", "agent_sync_log", "raw_sessions",
                "raw_commits"} <= tables

    def test_init_is_idempotent(self, tmp_db):
        store_db.init_db().close()

    def test_wal_mode(self, tmp_db):
        assert tmp_db.execute("PRAGMA journal_mode").fetchone()[0] == "wal"

    def test_db_path_monkeypatched(self, tmp_db, tmp_path):
        assert str(store_db.DB_PATH).startswith(str(tmp_path))


class TestDevelopersAndKeys:
    """Tests for developers and agent keys."""

    def test_developer_email_is_case_insensitive(self, tmp_db):
        a = store_db.get_or_create_developer(tmp_db, "Dev@Example.com")
        b = store_db.get_or_create_developer(tmp_db, "dev@example.com")
        assert a == b

    def test_key_round_trip(self, tmp_db, developer_id):
        key_id, api_key = store_db.create_agent_key(tmp_db, developer_id)
        assert api_key.startswith("cap_")
        row = store_db.authenticate_key(tmp_db, api_key)
        assert row["id"] == key_id
        assert row["developer_id"] == developer_id

    def test_only_hash_is_stored(self, tmp_db, developer_id):
        _key_id, api_key = store_db.create_agent_key(tmp_db, developer_id)
        stored = tmp_db.execute("SELECT key_hash FROM agent_keys").fetchone()["key_hash"]
        assert stored == store_db.hash_api_key(api_key)
        assert api_key not in stored

    def test_unknown_and_inactive_keys(self, tmp_db, developer_id):
        key_id, api_key = store_db.create_agent_key(tmp_db, developer_id)
        assert store_db.authenticate_key(tmp_db, "cap_nope") is None
        tmp_db.execute("UPDATE agent_keys SET active = 0 WHERE id = ?", (key_id,))
        tmp_db.commit()
        assert store_db.authenticate_key(tmp_db, api_key) is None

    def test_touch_records_version(self, tmp_db, developer_id):
        key_id, _ = store_db.create_agent_key(tmp_db, developer_id)
        store_db.touch_agent_key(tmp_db, key_id, "0.3.0")
        store_db.touch_agent_key(tmp_db, key_id, None)
        row = tmp_db.execute(
            "SELECT last_used_at, client_version FROM agent_keys WHERE id = ?", (key_id,)
        ).fetchone()
        assert row["last_used_at"] is not None
        assert row["client_version"] == "0.3.0"


class TestSyncLog:
    """Tests for the sync-log audit trail."""

    def test_lifecycle(self, tmp_db, developer_id):
        log_id = store_db.create_sync_log(tmp_db, developer_id, None, "backfill",
                                          "2025-01-01", None)
        assert store_db.get_sync_log(tmp_db, log_id)["status"] == "running"
        store_db.complete_sync_log(tmp_db, log_id, 3, 2)
        log = store_db.get_sync_log(tmp_db, log_id)
        assert log["status"] == "completed"
        assert log["completed_at"] is not None
        assert (log["sessions_count"], log["commits_count"]) == (3, 2)
        assert log["from_date"] == "2025-01-01"

    def test_failed(self, tmp_db, developer_id):
        log_id = store_db.create_sync_log(tmp_db, developer_id, None, "incremental")
        store_db.fail_sync_log(tmp_db, log_id, "boom")
        log = store_db.get_sync_log(tmp_db, log_id)
        assert log["status"] == "failed"
        assert log["error_message"] == "boom"

    def test_finished_entry_is_write_once(self, tmp_db, developer_id):
        log_id = store_db.create_sync_log(tmp_db, developer_id, None, "incremental")
        store_db.complete_sync_log(tmp_db, log_id, 1, 1)
        with pytest.raises(sqlite3.IntegrityError, match=store_db.IMMUTABILITY_MARKER):
            store_db.fail_sync_log(tmp_db, log_id, "too late")
        tmp_db.rollback()

    def test_no_delete(self, tmp_db, developer_id):
        store_db.create_sync_log(tmp_db, developer_id, None, "incremental")
        with pytest.raises(sqlite3.IntegrityError, match=store_db.IMMUTABILITY_MARKER):
            tmp_db.execute("DELETE FROM agent_sync_log")
        tmp_db.rollback()

    def test_last_completed(self, tmp_db, developer_id):
        assert store_db.get_last_completed_sync(tmp_db, developer_id) is None
        done = store_db.create_sync_log(tmp_db, developer_id, None, "incremental")
        store_db.complete_sync_log(tmp_db, done, 2, 0)
        failed = store_db.create_sync_log(tmp_db, developer_id, None, "incremental")
        store_db.fail_sync_log(tmp_db, failed, "x")
        store_db.create_sync_log(tmp_db, developer_id, None, "incremental")

        last = store_db.get_last_completed_sync(tmp_db, developer_id)
        assert last["id"] == done
        assert last["sessions_count"] == 2


class TestSessions:
    """Tests for session insert, growable update and immutability."""

    def test_insert_and_get(self, tmp_db, developer_id, sample_session):
        _insert_sample(tmp_db, developer_id, sample_session)
        stored = store_db.get_session(tmp_db, developer_id, sample_session["session_id"])
        assert stored["project_path"] == sample_session["project_path"]
        assert stored["tool_breakdown"] == {"Read": 1, "Edit": 1, "Bash": 1}
        assert stored["files_referenced"] == ["/home/dev/api/app.py"]
        assert stored["daily_breakdown"][0]["active_minutes"] == 5
        assert stored["is_backfill"] is False
        assert stored["sync_log_id"] is not None

    def test_duplicate_insert_raises(self, tmp_db, developer_id, sample_session):
        _insert_sample(tmp_db, developer_id, sample_session)
        with pytest.raises(sqlite3.IntegrityError):
            store_db.insert_session(tmp_db, developer_id, sample_session, None)
        assert store_db.count_rows(tmp_db, "raw_sessions") == 1

    def test_same_session_id_for_two_developers(self, tmp_db, developer_id, sample_session):
        other = store_db.get_or_create_developer(tmp_db, "other@example.com")
        _insert_sample(tmp_db, developer_id, sample_session)
        _insert_sample(tmp_db, other, sample_session)
        assert store_db.count_rows(tmp_db, "raw_sessions") == 2

    def test_growable_update(self, tmp_db, developer_id, sample_session):
        row_id = _insert_sample(tmp_db, developer_id, sample_session)
        before = store_db.get_session(tmp_db, developer_id, sample_session["session_id"])

        grown = dict(sample_session, message_count=9, ended_at="2025-06-02T14:30:00Z",
                     started_at="2030-01-01T00:00:00Z", project_path="-elsewhere")
        store_db.update_session_growable(tmp_db, row_id, grown)

        after = store_db.get_session(tmp_db, developer_id, sample_session["session_id"])
        assert after["message_count"] == 9
        assert after["ended_at"] == "2025-06-02T14:30:00Z"
        for name in store_db.SETTLED_SESSION_FIELDS:
            assert after[name] == before[name]

    def test_settled_field_update_rejected(self, tmp_db, developer_id, sample_session):
        row_id = _insert_sample(tmp_db, developer_id, sample_session)
        with pytest.raises(sqlite3.IntegrityError, match=store_db.IMMUTABILITY_MARKER):
            tmp_db.execute("UPDATE raw_sessions SET started_at = 'x' WHERE id = ?", (row_id,))
        tmp_db.rollback()
        stored = store_db.get_session(tmp_db, developer_id, sample_session["session_id"])
        assert stored["started_at"] == sample_session["started_at"]

    def test_session_delete_rejected(self, tmp_db, developer_id, sample_session):
        _insert_sample(tmp_db, developer_id, sample_session)
        with pytest.raises(sqlite3.IntegrityError, match=store_db.IMMUTABILITY_MARKER):
            tmp_db.execute("DELETE FROM raw_sessions")
        tmp_db.rollback()
        assert store_db.count_rows(tmp_db, "raw_sessions") == 1

    def test_growable_fields_are_disjoint_from_settled(self):
        assert not set(store_db.GROWABLE_SESSION_FIELDS) & set(store_db.SETTLED_SESSION_FIELDS)


class TestCommits:
    """Tests for insert-only commits."""

    def test_insert_and_duplicate(self, tmp_db, developer_id, sample_commit):
        assert store_db.insert_commit(tmp_db, developer_id, sample_commit, None) is True
        assert store_db.insert_commit(tmp_db, developer_id, sample_commit, None) is False
        assert store_db.count_rows(tmp_db, "raw_commits") == 1

    def test_update_rejected(self, tmp_db, developer_id, sample_commit):
        store_db.insert_commit(tmp_db, developer_id, sample_commit, None)
        with pytest.raises(sqlite3.IntegrityError, match=store_db.IMMUTABILITY_MARKER):
            tmp_db.execute("UPDATE raw_commits SET message = 'rewritten'")
        tmp_db.rollback()

    def test_delete_rejected(self, tmp_db, developer_id, sample_commit):
        store_db.insert_commit(tmp_db, developer_id, sample_commit, None)
        with pytest.raises(sqlite3.IntegrityError, match=store_db.IMMUTABILITY_MARKER):
            tmp_db.execute("DELETE FROM raw_commits")
        tmp_db.rollback()
        assert store_db.count_rows(tmp_db, "raw_commits") == 1

    def test_commit_times(self, tmp_db, developer_id, sample_commit):
        store_db.insert_commit(tmp_db, developer_id, sample_commit, None)
        assert list(store_db.iter_commit_times(tmp_db, developer_id)) == [
            sample_commit["committed_at"]
        ]

    def test_count_rows_rejects_unknown_table(self, tmp_db):
        with pytest.raises(ValueError):
            store_db.count_rows(tmp_db, "developers; DROP TABLE x")


class TestProjects:
    """Tests for project definitions and their links."""

    def test_links_and_lookup(self, tmp_db, developer_id):
        pid = store_db.create_project(tmp_db, "api", developer_id, auto_discovered=True)
        assert store_db.add_project_repo(tmp_db, pid, "/home/dev/api", "git@x:dev/api.git")
        assert not store_db.add_project_repo(tmp_db, pid, "/home/dev/api", None)
        assert store_db.add_project_claude_path(tmp_db, pid, "-home-dev-api", "/home/dev/api")

        assert store_db.find_project_by_link(tmp_db, repo_path="/home/dev/api") == pid
        assert store_db.find_project_by_link(tmp_db, claude_path="-home-dev-api") == pid
        assert store_db.find_project_by_link(tmp_db, repo_url="git@x:dev/api.git") == pid
        assert store_db.find_project_by_link(tmp_db, repo_path="/elsewhere") is None
        assert store_db.find_project_by_link(tmp_db) is None

    def test_list_excludes_abandoned(self, tmp_db):
        store_db.create_project(tmp_db, "old", status="abandoned")
        pid = store_db.create_project(tmp_db, "live", monitored=False)
        store_db.add_project_claude_path(tmp_db, pid, "-home-dev-live", None)

        [project] = store_db.list_projects(tmp_db)
        assert project["name"] == "live"
        assert project["monitored"] is False
        assert project["repos"] == []
        assert project["claude_paths"] == [{"claude_path": "-home-dev-live", "local_path": None}]
