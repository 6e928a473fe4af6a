"""
Streaming transcript parser.

Reads one JSONL session transcript line by line and produces a session
summary plus a per-day breakdown bucketed in the configured timezone.
Malformed lines and malformed fields are skipped, never fatal; only an
unreadable file raises.

Only ``user`` and ``assistant`` records contribute. A file with none of them
(empty, or only system/progress/summary records) yields None.
"""

from __future__ import annotations

import json
import re
from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo

from active_time import (
    DEFAULT_TIMEZONE,
    IDLE_GAP_MINUTES,
    active_minutes,
    local_date,
    parse_timestamp,
    wall_clock_minutes,
)
from tool_adapters import ToolAdapter, create_adapter_registry, get_adapter

SESSION_ID_RE = re.compile(
    r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}", re.IGNORECASE
)

MESSAGE_TYPES = ("user", "assistant")

PROMPT_EXCERPT_CHARS = 200
MAX_PROMPT_CHARS = 500

# User-role text injected by the assistant client, not typed by a human.
BOILERPLATE_PREFIXES = (
    "This session is being continued",
    "[Request interrupted by user",
)


def iter_jsonl(path: Path) -> Iterable[tuple[int, dict[str, Any] | None]]:
    """
    Iterate over JSONL file line-by-line, yielding (lineno, parsed_object).

    Yields (lineno, None) for malformed lines and for lines that decode to
    something other than a JSON object. Undecodable bytes are replaced.
    """
    with path.open("r", encoding="utf-8", errors="replace") as f:
        for lineno, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                obj = json.loads(line)
            except json.JSONDecodeError:
                yield lineno, None
                continue
            yield lineno, obj if isinstance(obj, dict) else None


def derive_session_id(path: Path) -> str:
    """First UUID-shaped substring of the file name, else the raw path."""
    match = SESSION_ID_RE.search(path.name)
    return match.group(0) if match else str(path)


def derive_project_dir(path: Path) -> str:
    """Encoded project directory a transcript belongs to.

    <root>/<project>/<session>.jsonl -> <project>
    <root>/<project>/<session>/subagents/agent-x.jsonl -> <project>
    """
    parent = path.parent
    if parent.name == "subagents" and len(path.parents) >= 4:
        parent = path.parents[2]
    return parent.name or "unknown"


def human_prompt_text(content: Any) -> str | None:
    """Return the human-typed prompt of a user record, or None.

    System-injected markup (leading ``<``), known boilerplate and implausibly
    long pastes are rejected. The result is truncated to the excerpt length.
    """
    if isinstance(content, str):
        candidates = [content]
    elif isinstance(content, list):
        candidates = [
            block.get("text")
            for block in content
            if isinstance(block, dict) and block.get("type") == "text"
        ]
    else:
        return None

    for text in candidates:
        if not isinstance(text, str):
            continue
        text = text.strip()
        if not text or text.startswith("<") or len(text) > MAX_PROMPT_CHARS:
            continue
        if text.startswith(BOILERPLATE_PREFIXES):
            continue
        return text[:PROMPT_EXCERPT_CHARS]
    return None


def _as_int(value: Any) -> int:
    """Token counts that are not plain integers count as zero."""
    if isinstance(value, bool) or not isinstance(value, int):
        return 0
    return value


# ---------------------------------------------------------------------------
# Accumulators
# ---------------------------------------------------------------------------
@dataclass
class _DayBucket:
    """Per-local-day counters."""

    timestamps: list[datetime] = field(default_factory=list)
    first: tuple[datetime, str] | None = None
    last: tuple[datetime, str] | None = None
    message_count: int = 0
    tool_use_count: int = 0
    user_prompts: list[dict[str, str]] = field(default_factory=list)

    def add_event(self, ts: datetime, raw: str) -> None:
        self.timestamps.append(ts)
        if self.first is None or ts < self.first[0]:
            self.first = (ts, raw)
        if self.last is None or ts > self.last[0]:
            self.last = (ts, raw)


@dataclass
class _SessionState:
    """Mutable accumulator holding everything collected during the pass."""

    tz: ZoneInfo
    adapters: dict[str, ToolAdapter]

    message_count: int = 0
    tool_use_count: int = 0
    user_prompt_count: int = 0
    skipped_lines: int = 0
    model: str | None = None
    first_user_prompt: str | None = None
    start: tuple[datetime, str] | None = None
    end: tuple[datetime, str] | None = None

    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_cache_read_tokens: int = 0
    total_cache_create_tokens: int = 0

    tool_breakdown: Counter = field(default_factory=Counter)
    # dict keeps insertion order and de-duplicates
    files_referenced: dict[str, None] = field(default_factory=dict)
    days: dict[str, _DayBucket] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Record processing
# ---------------------------------------------------------------------------
def _process_message(obj: dict, state: _SessionState) -> None:
    """Process a single JSONL record, updating state in place."""
    obj_type = obj.get("type")
    if obj_type not in MESSAGE_TYPES:
        return

    state.message_count += 1

    raw_ts = obj.get("timestamp")
    ts = parse_timestamp(raw_ts)
    bucket = None
    if ts is not None:
        if state.start is None or ts < state.start[0]:
            state.start = (ts, raw_ts)
        if state.end is None or ts > state.end[0]:
            state.end = (ts, raw_ts)
        day = local_date(ts, state.tz)
        bucket = state.days.setdefault(day, _DayBucket())
        bucket.add_event(ts, raw_ts)
        bucket.message_count += 1

    msg = obj.get("message")
    if not isinstance(msg, dict):
        msg = {}

    if obj_type == "user":
        _process_user_message(msg.get("content"), raw_ts, bucket, state)
    else:
        _process_assistant_message(msg, raw_ts, bucket, state)


def _process_user_message(
    content: Any, raw_ts: str | None, bucket: _DayBucket | None, state: _SessionState
) -> None:
    """Count real human prompts and keep the first one."""
    text = human_prompt_text(content)
    if text is None:
        return

    state.user_prompt_count += 1
    if state.first_user_prompt is None:
        state.first_user_prompt = text
    if bucket is not None:
        bucket.user_prompts.append({"time": raw_ts, "text": text})


def _process_assistant_message(
    msg: dict, raw_ts: str | None, bucket: _DayBucket | None, state: _SessionState
) -> None:
    """Model, token usage and tool_use blocks."""
    model = msg.get("model")
    if state.model is None and isinstance(model, str) and model:
        state.model = model

    usage = msg.get("usage")
    if isinstance(usage, dict):
        state.total_input_tokens += _as_int(usage.get("input_tokens"))
        state.total_output_tokens += _as_int(usage.get("output_tokens"))
        state.total_cache_read_tokens += _as_int(usage.get("cache_read_input_tokens"))
        state.total_cache_create_tokens += _as_int(usage.get("cache_creation_input_tokens"))

    content = msg.get("content")
    if not isinstance(content, list):
        return

    for block in content:
        if not isinstance(block, dict) or block.get("type") != "tool_use":
            continue
        name = block.get("name") if isinstance(block.get("name"), str) else None
        state.tool_use_count += 1
        state.tool_breakdown[name or "unknown"] += 1
        if bucket is not None:
            bucket.tool_use_count += 1

        invocation = get_adapter(name or "", state.adapters).extract(block, raw_ts)
        for path in invocation.referenced_paths:
            state.files_referenced.setdefault(path, None)


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------
def _build_daily_breakdown(
    state: _SessionState, idle_gap_minutes: int
) -> list[dict[str, Any]]:
    """Ordered per-day entries with gap-aware active time."""
    breakdown = []
    for day in sorted(state.days):
        bucket = state.days[day]
        breakdown.append({
            "date": day,
            "first_timestamp": bucket.first[1],
            "last_timestamp": bucket.last[1],
            "active_minutes": active_minutes(bucket.timestamps, idle_gap_minutes),
            "wall_clock_minutes": wall_clock_minutes(bucket.first[0], bucket.last[0]),
            "message_count": bucket.message_count,
            "tool_use_count": bucket.tool_use_count,
            "user_prompt_count": len(bucket.user_prompts),
            "user_prompts": bucket.user_prompts,
        })
    return breakdown


def parse_transcript(
    path: Path | str,
    tz_name: str = DEFAULT_TIMEZONE,
    idle_gap_minutes: int = IDLE_GAP_MINUTES,
    adapters: dict[str, ToolAdapter] | None = None,
) -> dict[str, Any] | None:
    """Parse one transcript into session metrics.

    Args:
        path: Transcript JSONL file
        tz_name: IANA timezone used to map UTC events to calendar days
        idle_gap_minutes: Gaps at or above this many minutes are idle time
        adapters: Tool adapter registry (created on demand)

    Returns:
        Session dict, or None when the file holds no user/assistant record.

    Raises:
        OSError: The file cannot be opened.
    """
    path = Path(path)
    state = _SessionState(
        tz=ZoneInfo(tz_name),
        adapters=adapters if adapters is not None else create_adapter_registry(),
    )

    for _lineno, obj in iter_jsonl(path):
        if obj is None:
            state.skipped_lines += 1
            continue
        _process_message(obj, state)

    if state.message_count == 0:
        return None

    duration = None
    if state.start is not None and state.end is not None:
        duration = round((state.end[0] - state.start[0]).total_seconds())

    return {
        "session_id": derive_session_id(path),
        "project_path": derive_project_dir(path),
        "started_at": state.start[1] if state.start else None,
        "ended_at": state.end[1] if state.end else None,
        "duration_seconds": duration,
        "total_input_tokens": state.total_input_tokens,
        "total_output_tokens": state.total_output_tokens,
        "total_cache_read_tokens": state.total_cache_read_tokens,
        "total_cache_create_tokens": state.total_cache_create_tokens,
        "message_count": state.message_count,
        "tool_use_count": state.tool_use_count,
        "model": state.model,
        "raw_jsonl_path": str(path),
        "tool_breakdown": dict(state.tool_breakdown),
        "files_referenced": list(state.files_referenced),
        "user_prompt_count": state.user_prompt_count,
        "first_user_prompt": state.first_user_prompt,
        "daily_breakdown": _build_daily_breakdown(state, idle_gap_minutes),
        "skipped_lines": state.skipped_lines,
    }
