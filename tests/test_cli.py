"""Tests for cli.py — argument parsing and commands."""

import pytest

import cli
import config
import store_db
from api_client import ApiClient
from cli import compare_versions, main, parse_args


@pytest.fixture()
def config_file(tmp_path, monkeypatch):
    for name in (*config.ENV_OVERRIDES, "CAP_CONFIG_PATH"):
        monkeypatch.delenv(name, raising=False)
    path = tmp_path / "home" / "config.yaml"
    monkeypatch.setattr(config, "CONFIG_PATH", path)
    return path


@pytest.fixture()
def store_client(api_client, monkeypatch):
    """Route every ApiClient.from_config() to the in-process store."""
    monkeypatch.setattr(api_client, "close", lambda: None)
    monkeypatch.setattr(ApiClient, "from_config", classmethod(lambda cls, cfg: api_client))
    return api_client


class TestCompareVersions:
    """Tests for compare_versions."""

    @pytest.mark.parametrize("a,b,expected", [
        ("0.3.0", "0.3.0", 0),
        ("0.2.9", "0.3.0", -1),
        ("1.0", "0.9.9", 1),
        ("0.3", "0.3.0", 0),
        ("0.10.0", "0.9.0", 1),
        ("0.3.0-dev", "0.3.0", 0),
    ])
    def test_compare(self, a, b, expected):
        assert compare_versions(a, b) == expected


class TestParseArgs:
    """Tests for parse_args."""

    def test_sync_flags(self):
        args = parse_args(["sync", "--from", "2025-06-01", "--dry-run", "--reparse", "-v"])
        assert args.command == "sync"
        assert args.from_date == "2025-06-01"
        assert args.dry_run and args.reparse and args.verbose
        assert not args.skip_discover

    def test_init_repeatable_options(self):
        args = parse_args(["init", "--server-url", "https://s", "--api-key", "k",
                           "--email", "d@x", "--claude-dir", "/a", "--claude-dir", "/b",
                           "--exclude", "tmp"])
        assert args.claude_dirs == ["/a", "/b"]
        assert args.exclude == ["tmp"]

    def test_command_required(self):
        with pytest.raises(SystemExit):
            parse_args([])


class TestCommands:
    """Tests for main() dispatch."""

    def test_init_writes_config(self, config_file, capsys):
        rc = main(["init", "--server-url", "https://store.example.com", "--api-key", "cap_k",
                   "--email", "dev@example.com", "--timezone", "Europe/Berlin"])
        assert rc == 0
        cfg = config.load_config(config_file)
        assert cfg.timezone == "Europe/Berlin"
        assert cfg.developer_email == "dev@example.com"
        assert "Config written" in capsys.readouterr().out

    def test_init_rejects_bad_timezone(self, config_file, capsys):
        rc = main(["init", "--server-url", "https://s", "--api-key", "k",
                   "--email", "d@x", "--timezone", "Nowhere/Special"])
        assert rc == 1
        assert not config_file.exists()
        assert "Unknown timezone" in capsys.readouterr().err

    def test_missing_config(self, config_file, capsys):
        assert main(["status"]) == 1
        assert "cap init" in capsys.readouterr().err

    def test_issue_key(self, tmp_db, capsys):
        assert main(["issue-key", "--email", "new@example.com", "--name", "New"]) == 0
        api_key = capsys.readouterr().out.strip().splitlines()[-1]
        row = store_db.authenticate_key(tmp_db, api_key)
        assert row is not None

    def test_status(self, config_file, store_client, capsys):
        main(["init", "--server-url", "http://testserver", "--api-key", "unused",
              "--email", "dev@example.com"])
        assert main(["status"]) == 0
        out = capsys.readouterr().out
        assert "Last server sync: never" in out
        assert config.load_config(config_file).last_config_version == 1

    def test_status_unsupported_agent(self, config_file, store_client, monkeypatch, capsys):
        main(["init", "--server-url", "http://testserver", "--api-key", "unused",
              "--email", "dev@example.com"])
        monkeypatch.setattr(cli, "AGENT_VERSION", "0.1.0")
        assert main(["status"]) == 1
        assert "no longer supported" in capsys.readouterr().err

    def test_sync_nothing(self, config_file, store_client, transcript_root, capsys):
        main(["init", "--server-url", "http://testserver", "--api-key", "unused",
              "--email", "dev@example.com", "--claude-dir", str(transcript_root),
              "--projects-dir", str(transcript_root / "none")])
        assert main(["sync"]) == 0
        assert "Nothing to sync." in capsys.readouterr().out

    def test_status_does_not_persist_env_key(self, config_file, store_client, monkeypatch):
        main(["init", "--server-url", "http://testserver", "--api-key", "cap_file",
              "--email", "dev@example.com"])
        monkeypatch.setenv("CAP_API_KEY", "cap_env_secret")
        assert main(["status"]) == 0
        text = config_file.read_text()
        assert "cap_env_secret" not in text
        assert "cap_file" in text
