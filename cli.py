#!/usr/bin/env python3
"""
Command-line entry point for the activity collection agent.

Usage:
    cap init --server-url URL --api-key KEY --email EMAIL [--timezone TZ]
    cap discover [--dry-run] [--verbose]
    cap sync [--from DATE] [--to DATE] [--dry-run] [--verbose]
             [--skip-discover] [--reparse]
    cap status
    cap issue-key --email EMAIL [--name NAME]     (store host)
"""

from __future__ import annotations

import argparse
import logging
import sys

import store_db
from api_client import ApiClient, ApiError
from config import (
    AGENT_VERSION,
    AgentConfig,
    ConfigError,
    config_path,
    load_config,
    save_config,
    validate_config,
)
from discovery import discover_projects
from sync import SyncError, SyncOptions, SyncReport, run_sync


def _version_tuple(version: str) -> tuple[int, ...]:
    """'1.2.3' -> (1, 2, 3); non-numeric parts count as 0."""
    parts = []
    for piece in version.split("-", 1)[0].split("."):
        parts.append(int(piece) if piece.isdigit() else 0)
    return tuple(parts)


def compare_versions(a: str, b: str) -> int:
    """-1, 0 or 1 as version *a* is older than, equal to, or newer than *b*."""
    ta, tb = _version_tuple(a), _version_tuple(b)
    width = max(len(ta), len(tb))
    ta += (0,) * (width - len(ta))
    tb += (0,) * (width - len(tb))
    return (ta > tb) - (ta < tb)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="cap",
        description="Collect coding-assistant sessions and git commits for time accounting.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {AGENT_VERSION}")
    sub = parser.add_subparsers(dest="command", required=True)

    init = sub.add_parser("init", help="Write the agent config file")
    init.add_argument("--server-url", required=True, help="Store service URL")
    init.add_argument("--api-key", required=True, help="Agent key issued by the store")
    init.add_argument("--email", required=True, help="Your git author email")
    init.add_argument("--timezone", help="IANA timezone for day attribution")
    init.add_argument("--claude-dir", action="append", dest="claude_dirs",
                      help="Transcript root (repeatable)")
    init.add_argument("--projects-dir", help="Directory scanned for git repositories")
    init.add_argument("--exclude", action="append", default=[],
                      help="Skip transcript dirs containing this text (repeatable)")

    discover = sub.add_parser("discover", help="Discover and register projects")
    discover.add_argument("--dry-run", action="store_true", help="List only, do not register")
    discover.add_argument("--verbose", "-v", action="store_true")

    sync = sub.add_parser("sync", help="Collect and send activity")
    sync.add_argument("--from", dest="from_date", help="Backfill from this date (YYYY-MM-DD)")
    sync.add_argument("--to", dest="to_date", help="Upper bound for commits (YYYY-MM-DD)")
    sync.add_argument("--dry-run", action="store_true", help="Collect but do not send")
    sync.add_argument("--verbose", "-v", action="store_true")
    sync.add_argument("--skip-discover", action="store_true", help="Skip project discovery")
    sync.add_argument("--reparse", action="store_true",
                      help="Reparse every transcript, ignoring the checkpoint (no commits)")

    sub.add_parser("status", help="Show config and server state")

    issue = sub.add_parser("issue-key", help="Create an agent key in the local store")
    issue.add_argument("--email", required=True, help="Developer email")
    issue.add_argument("--name", help="Developer display name")

    return parser.parse_args(argv)


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------
def cmd_init(args: argparse.Namespace) -> int:
    data = {
        "server_url": args.server_url,
        "api_key": args.api_key,
        "developer_email": args.email,
        "exclude_paths": args.exclude,
    }
    if args.timezone:
        data["timezone"] = args.timezone
    if args.claude_dirs:
        data["claude_data_dirs"] = args.claude_dirs
    if args.projects_dir:
        data["projects_dir"] = args.projects_dir

    try:
        config = AgentConfig.from_dict(data)
        validate_config(config)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    path = save_config(config)
    print(f"Config written to: {path}")
    return 0


def cmd_discover(args: argparse.Namespace, config: AgentConfig) -> int:
    projects = discover_projects(
        config.claude_data_dirs, config.projects_dir, config.exclude_paths
    )
    print(f"Found {len(projects)} projects")
    for p in projects:
        flags = ("git " if p.has_git else "    ") + ("claude" if p.has_claude else "")
        print(f"  {p.name:<30} {flags:<11} {p.local_path}")
        if args.verbose and p.repo_url:
            print(f"    remote: {p.repo_url}")

    if args.dry_run or not projects:
        return 0

    with ApiClient.from_config(config) as client:
        try:
            result = client.post_discover(projects)
        except ApiError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
    print(f"Registered: {result.created} created, {result.updated} updated "
          f"({result.total} candidates)")
    return 0


def _print_report(report: SyncReport, verbose: bool) -> None:
    since = report.since.isoformat() if report.since else "beginning"
    print(f"Sync type: {report.sync_type} (since {since})")
    if report.discovered:
        print(f"Discovered {report.discovered} projects")
    print(f"Scanned {report.files_scanned} transcripts, {report.repos_scanned} repos")
    if report.sessions_skipped:
        print(f"  skipped {report.sessions_skipped} transcripts "
              f"({len(report.files_unmatched)} unmatched, {len(report.files_empty)} empty, "
              f"{len(report.files_failed)} unreadable)")
        if verbose:
            for path in report.files_unmatched:
                print(f"    unmatched: {path}")
            for path in report.files_empty:
                print(f"    empty:     {path}")
            for path in report.files_failed:
                print(f"    failed:    {path}")

    if report.status == "nothing":
        print("Nothing to sync.")
        return

    payload = report.payload
    print(f"Collected {len(payload.sessions)} sessions, {len(payload.commits)} commits")
    if report.status == "dry-run":
        print("Dry run: nothing sent.")
        return

    r = report.result
    print(f"Sessions: {r.sessions_created} created, {r.sessions_updated} updated, "
          f"{r.sessions_skipped} skipped")
    print(f"Commits:  {r.commits_created} created, {r.commits_skipped} skipped")


def cmd_sync(args: argparse.Namespace, config: AgentConfig) -> int:
    options = SyncOptions(
        from_date=args.from_date,
        to_date=args.to_date,
        dry_run=args.dry_run,
        skip_discover=args.skip_discover,
        reparse=args.reparse,
    )
    with ApiClient.from_config(config) as client:
        try:
            report = run_sync(config, client, options)
        except SyncError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
    _print_report(report, args.verbose)
    return 0


def cmd_status(args: argparse.Namespace, config: AgentConfig) -> int:
    print(f"Agent version:   {AGENT_VERSION}")
    print(f"Config file:     {config_path()}")
    print(f"Server:          {config.server_url}")
    print(f"Developer email: {config.developer_email or '(not set)'}")
    print(f"Timezone:        {config.timezone}")
    print(f"Transcripts:     {', '.join(config.claude_data_dirs)}")
    print(f"Local checkpoint: {config.last_sync or 'never'}")

    with ApiClient.from_config(config) as client:
        try:
            last = client.fetch_last_sync()
            remote = client.fetch_agent_config()
        except ApiError as e:
            print(f"Server unreachable: {e}", file=sys.stderr)
            return 1

    if last:
        print(f"Last server sync: {last.completed_at} ({last.sync_type}, "
              f"{last.sessions_count} sessions, {last.commits_count} commits)")
    else:
        print("Last server sync: never")

    if compare_versions(AGENT_VERSION, remote.min_supported_version) < 0:
        print(f"Agent {AGENT_VERSION} is no longer supported "
              f"(minimum {remote.min_supported_version}). Please upgrade.", file=sys.stderr)
        return 1
    if compare_versions(AGENT_VERSION, remote.latest_version) < 0:
        print(f"Update available: {remote.latest_version}")

    if config.last_config_version != remote.config_version:
        config.last_config_version = remote.config_version
        save_config(config)
    return 0


def cmd_issue_key(args: argparse.Namespace) -> int:
    conn = store_db.init_db()
    try:
        developer_id = store_db.get_or_create_developer(conn, args.email, args.name)
        _key_id, api_key = store_db.create_agent_key(conn, developer_id)
    finally:
        conn.close()
    print(f"Agent key for {args.email} (shown once):")
    print(api_key)
    return 0


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    _setup_logging(getattr(args, "verbose", False))

    if args.command == "init":
        return cmd_init(args)
    if args.command == "issue-key":
        return cmd_issue_key(args)

    try:
        config = load_config()
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.command == "discover":
        return cmd_discover(args, config)
    if args.command == "sync":
        return cmd_sync(args, config)
    return cmd_status(args, config)


if __name__ == "__main__":
    sys.exit(main())
