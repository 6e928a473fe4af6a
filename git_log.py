"""
Commit history extraction via ``git log``.

One repository that is missing, not a repository, slow, or produces an
unreasonable amount of output never aborts a sync: it yields an empty list
and, unless it simply is not a repository, a logged warning.
"""

from __future__ import annotations

import logging
import re
import subprocess
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger("cap-agent.git")

RECORD_START = "<<<COMMIT>>>"
SEPARATOR = "|||"
LOG_FORMAT = f"{RECORD_START}%H{SEPARATOR}%an{SEPARATOR}%ae{SEPARATOR}%aI{SEPARATOR}%s"

GIT_TIMEOUT_SECONDS = 30
GIT_QUICK_TIMEOUT_SECONDS = 5
MAX_OUTPUT_BYTES = 50 * 1024 * 1024
READ_CHUNK_BYTES = 64 * 1024

# git exits 128 for "not a git repository" and unreachable -C paths
NOT_A_REPOSITORY = 128

# insertions<TAB>deletions<TAB>path; binary files report "-" for both
NUMSTAT_RE = re.compile(r"^(\d+|-)\t(\d+|-)\t(.+)$")


class GitOutputTooLarge(Exception):
    """git produced more output than the configured ceiling."""


@dataclass
class GitCommit:
    """One commit as extracted from git log --numstat."""
    commit_hash: str
    repo_path: str
    branch: str | None
    author_name: str
    author_email: str
    committed_at: str
    message: str
    files_changed: int = 0
    insertions: int = 0
    deletions: int = 0


def _read_bounded(stream, limit: int | None) -> tuple[bytes, bool]:
    """Read a stream to EOF, stopping once more than ``limit`` bytes arrived.

    Returns the bytes read and whether the limit was exceeded.
    """
    chunks: list[bytes] = []
    total = 0
    while True:
        chunk = stream.read(READ_CHUNK_BYTES)
        if not chunk:
            return b"".join(chunks), False
        chunks.append(chunk)
        total += len(chunk)
        if limit is not None and total > limit:
            return b"".join(chunks), True


def _run_git(
    args: list[str], timeout: float, max_output_bytes: int | None = None
) -> subprocess.CompletedProcess:
    """Run git and capture output as bytes.

    stdout is read incrementally so the output ceiling bounds memory: git is
    killed as soon as it writes past ``max_output_bytes``. A timer kills it
    once ``timeout`` elapses, even while it is silent.

    Raises:
        GitOutputTooLarge: stdout exceeded ``max_output_bytes``.
        subprocess.TimeoutExpired: git ran longer than ``timeout``.
        OSError: git could not be started.
    """
    cmd = ["git", *args]
    # stderr goes to a file so a chatty git cannot block on a full pipe
    with tempfile.TemporaryFile() as stderr_file:
        proc = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=stderr_file)
        expired = threading.Event()

        def _expire() -> None:
            expired.set()
            proc.kill()

        timer = threading.Timer(timeout, _expire)
        timer.start()
        try:
            stdout, too_large = _read_bounded(proc.stdout, max_output_bytes)
            if too_large:
                proc.kill()
            proc.wait()
        finally:
            timer.cancel()
            proc.stdout.close()

        if too_large:
            raise GitOutputTooLarge(
                f"more than {max_output_bytes} bytes of output"
            )
        if expired.is_set():
            raise subprocess.TimeoutExpired(cmd, timeout)

        stderr_file.seek(0)
        stderr = stderr_file.read()
    return subprocess.CompletedProcess(cmd, proc.returncode, stdout, stderr)


def current_branch(repo_path: str) -> str | None:
    """Checked-out branch name, best effort."""
    try:
        result = _run_git(
            ["-C", repo_path, "rev-parse", "--abbrev-ref", "HEAD"],
            timeout=GIT_QUICK_TIMEOUT_SECONDS,
        )
    except (OSError, subprocess.TimeoutExpired):
        return None
    if result.returncode != 0:
        return None
    return result.stdout.decode("utf-8", errors="replace").strip() or None


def remote_url(repo_path: str) -> str | None:
    """URL of the ``origin`` remote, or None when there is none."""
    try:
        result = _run_git(
            ["-C", repo_path, "remote", "get-url", "origin"],
            timeout=GIT_QUICK_TIMEOUT_SECONDS,
        )
    except (OSError, subprocess.TimeoutExpired):
        return None
    if result.returncode != 0:
        return None
    return result.stdout.decode("utf-8", errors="replace").strip() or None


def parse_git_log_output(
    output: str, repo_path: str, branch: str | None = None
) -> list[GitCommit]:
    """Parse marker-delimited ``git log --numstat`` output.

    The first four separator fields of a header are structural; anything
    after them is the subject, which may itself contain the separator.
    """
    commits: list[GitCommit] = []

    for record in output.split(RECORD_START):
        if not record.strip():
            continue
        lines = record.split("\n")
        parts = lines[0].split(SEPARATOR)
        if len(parts) < 5:
            continue

        commit = GitCommit(
            commit_hash=parts[0].strip(),
            repo_path=repo_path,
            branch=branch,
            author_name=parts[1],
            author_email=parts[2],
            committed_at=parts[3],
            message=SEPARATOR.join(parts[4:]),
        )

        for line in lines[1:]:
            match = NUMSTAT_RE.match(line.strip("\r"))
            if not match:
                continue
            added, deleted, _path = match.groups()
            commit.files_changed += 1
            if added != "-":
                commit.insertions += int(added)
            if deleted != "-":
                commit.deletions += int(deleted)

        commits.append(commit)

    return commits


def extract_commits(
    repo_path: str | Path,
    since: str | None = None,
    until: str | None = None,
    author_email: str | None = None,
    timeout: float = GIT_TIMEOUT_SECONDS,
    max_output_bytes: int = MAX_OUTPUT_BYTES,
) -> list[GitCommit]:
    """Commits of one repository, newest first.

    Args:
        repo_path: Repository working directory
        since: Lower bound passed to ``--since`` (any git date format)
        until: Upper bound passed to ``--until``
        author_email: Only commits by this author (case-insensitive)
        timeout: Seconds before git is killed
        max_output_bytes: Output ceiling; larger output is discarded

    Returns:
        List of GitCommit, empty on any failure.
    """
    repo_path = str(repo_path)
    args = ["-C", repo_path, "log", f"--format={LOG_FORMAT}", "--numstat"]
    if since:
        args.append(f"--since={since}")
    if until:
        args.append(f"--until={until}")
    if author_email:
        args.extend([f"--author={author_email}", "--regexp-ignore-case"])

    try:
        result = _run_git(args, timeout=timeout, max_output_bytes=max_output_bytes)
    except subprocess.TimeoutExpired:
        logger.warning("git log timed out after %ss in %s", timeout, repo_path)
        return []
    except GitOutputTooLarge as e:
        logger.warning("git log output too large in %s: %s", repo_path, e)
        return []
    except OSError as e:
        logger.warning("Cannot run git in %s: %s", repo_path, e)
        return []

    if result.returncode == NOT_A_REPOSITORY:
        return []
    if result.returncode != 0:
        stderr = result.stderr.decode("utf-8", errors="replace").strip()
        logger.warning("git log failed in %s (exit %d): %s",
                       repo_path, result.returncode, stderr)
        return []

    output = result.stdout.decode("utf-8", errors="replace")
    return parse_git_log_output(output, repo_path, current_branch(repo_path))
