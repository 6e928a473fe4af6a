"""Encode and decode project path <-> transcript directory name."""

from __future__ import annotations

from pathlib import Path


def encode_path(path: str) -> str:
    """Encode a filesystem path to a transcript directory name.

    /home/dev/work/api -> -home-dev-work-api
    """
    if not path:
        return ""
    return path.replace("\\", "/").rstrip("/").replace("/", "-")


def decode_path(encoded: str) -> str:
    """Decode a transcript directory name back to a filesystem path.

    -home-dev-work-api -> /home/dev/work/api

    Names that do not start with a hyphen were never absolute paths and are
    returned unchanged. Hyphens inside the original path are not recoverable.
    """
    if not encoded or not encoded.startswith("-"):
        return encoded
    return encoded.replace("-", "/")


def resolve_encoded_path(encoded: str) -> Path | None:
    """Find the existing directory an encoded name was produced from.

    Plain decoding turns every hyphen into a separator, so /srv/my-app comes
    back as /srv/my/app. This walks the filesystem instead, trying the longest
    hyphenated name first at each level. Returns None when nothing matches.
    """
    if not encoded or not encoded.startswith("-"):
        return None
    segments = encoded[1:].split("-")

    def walk(base: Path, start: int) -> Path | None:
        if start == len(segments):
            return base
        for end in range(len(segments), start, -1):
            name = "-".join(segments[start:end])
            if not name:
                continue
            candidate = base / name
            if candidate.is_dir():
                found = walk(candidate, end)
                if found is not None:
                    return found
        return None

    return walk(Path("/"), 0)


def project_name(encoded: str) -> str:
    """Last path segment of an encoded directory name, used as a display name."""
    path = decode_path(encoded)
    return path.rstrip("/").rsplit("/", 1)[-1] if path else ""
