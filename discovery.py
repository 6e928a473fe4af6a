"""
Project/environment discovery.

Proposes project registrations from two places: directories under each
transcript root (decoded back to the working directory they were recorded
in) and git repositories under a conventional projects directory. Discovery
only proposes; the store decides what to register.
"""

from __future__ import annotations

import logging
from pathlib import Path

from git_log import remote_url
from path_codec import decode_path, encode_path, resolve_encoded_path
from schemas import DiscoveredProject
from transcript_scanner import is_excluded

logger = logging.getLogger("cap-agent.discovery")

DEFAULT_PROJECTS_DIR = "~/projects"


def _from_transcript_root(
    root: Path, exclude_paths: list[str] | None
) -> list[DiscoveredProject]:
    """Candidates whose transcript directory decodes to an existing directory."""
    found = []
    for entry in sorted(root.iterdir()):
        if not entry.is_dir() or is_excluded(entry.name, exclude_paths):
            continue

        local = Path(decode_path(entry.name))
        if not local.is_absolute() or not local.is_dir():
            local = resolve_encoded_path(entry.name)
        if local is None:
            logger.debug("Skipping %s: no matching directory", entry.name)
            continue

        has_git = (local / ".git").exists()
        found.append(DiscoveredProject(
            name=local.name,
            local_path=str(local),
            claude_path=entry.name,
            repo_path=str(local) if has_git else None,
            repo_url=remote_url(str(local)) if has_git else None,
            has_git=has_git,
            has_claude=True,
        ))
    return found


def _from_projects_dir(
    projects_dir: Path,
    roots: list[Path],
    known: set[str],
    exclude_paths: list[str] | None,
) -> list[DiscoveredProject]:
    """Git repositories not already found through a transcript root."""
    found = []
    for entry in sorted(projects_dir.iterdir()):
        if not entry.is_dir() or not (entry / ".git").exists():
            continue
        local_path = str(entry)
        if local_path in known:
            continue
        claude_path = encode_path(local_path)
        if is_excluded(claude_path, exclude_paths):
            continue

        found.append(DiscoveredProject(
            name=entry.name,
            local_path=local_path,
            claude_path=claude_path,
            repo_path=local_path,
            repo_url=remote_url(local_path),
            has_git=True,
            has_claude=any((root / claude_path).is_dir() for root in roots),
        ))
    return found


def discover_projects(
    claude_dirs: list[Path | str],
    projects_dir: Path | str | None = DEFAULT_PROJECTS_DIR,
    exclude_paths: list[str] | None = None,
) -> list[DiscoveredProject]:
    """Discover candidate projects, de-duplicated by local path and sorted by name.

    Args:
        claude_dirs: Transcript roots
        projects_dir: Secondary directory scanned for git repositories (None to skip)
        exclude_paths: Substrings of encoded directory names to ignore

    Returns:
        List of DiscoveredProject. Paths that do not exist are never proposed.
    """
    roots = [Path(d).expanduser() for d in claude_dirs]
    by_path: dict[str, DiscoveredProject] = {}

    for root in roots:
        if not root.is_dir():
            continue
        for project in _from_transcript_root(root, exclude_paths):
            by_path.setdefault(project.local_path, project)

    if projects_dir is not None:
        secondary = Path(projects_dir).expanduser()
        if secondary.is_dir():
            for project in _from_projects_dir(secondary, roots, set(by_path), exclude_paths):
                by_path.setdefault(project.local_path, project)

    projects = sorted(by_path.values(), key=lambda p: p.name)
    logger.info("Discovered %d projects", len(projects))
    return projects
