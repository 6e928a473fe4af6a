"""
Enumerate transcript files under one or more transcript roots.

Layout:
    <root>/<encoded-project>/<session-id>.jsonl
    <root>/<encoded-project>/<session-id>/subagents/agent-*.jsonl
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger("cap-agent.scanner")


@dataclass(frozen=True)
class TranscriptFile:
    """A transcript found on disk."""
    path: Path
    project_dir: str
    modified_at: datetime
    size_bytes: int


def is_excluded(encoded_name: str, exclude_paths: list[str] | None) -> bool:
    """Exclusion patterns are plain substrings of the encoded directory name."""
    return any(pattern and pattern in encoded_name for pattern in exclude_paths or [])


def _project_files(project_dir: Path) -> list[Path]:
    """Session transcripts plus their subagent transcripts."""
    files = sorted(project_dir.glob("*.jsonl"))
    files.extend(sorted(project_dir.glob("*/subagents/agent-*.jsonl")))
    return files


def scan_transcripts(
    roots: list[Path | str],
    since: datetime | None = None,
    exclude_paths: list[str] | None = None,
) -> list[TranscriptFile]:
    """Find non-empty transcripts modified at or after *since*.

    Missing roots are skipped. A file reachable from two roots is listed once.
    """
    found: list[TranscriptFile] = []
    seen: set[Path] = set()

    for root in roots:
        root = Path(root).expanduser()
        if not root.is_dir():
            logger.debug("Transcript root %s does not exist, skipping", root)
            continue

        for project_dir in sorted(p for p in root.iterdir() if p.is_dir()):
            if is_excluded(project_dir.name, exclude_paths):
                continue

            for path in _project_files(project_dir):
                try:
                    resolved = path.resolve()
                    stat = path.stat()
                except OSError as e:
                    logger.warning("Cannot stat %s: %s", path, e)
                    continue
                if resolved in seen or stat.st_size == 0:
                    continue

                modified = datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)
                if since is not None and modified < since:
                    continue

                seen.add(resolved)
                found.append(TranscriptFile(
                    path=path,
                    project_dir=project_dir.name,
                    modified_at=modified,
                    size_bytes=stat.st_size,
                ))

    return found
