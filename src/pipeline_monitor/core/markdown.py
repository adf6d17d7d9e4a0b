"""Markdown grammar of the flat-file state directory.

The backlog is a checkbox list::

    - [ ] [FEAT] Title — optional description | blockedBy: Other, Another
    - [>] [FIX] Claimed task
    - [x] [TEST] Done task

``completed.md`` and ``failed-tasks.md`` are append-only pipe tables,
``blockers.md`` keeps active blockers as bullets under ``## Active`` and
``current-task-N.md`` holds ``**Key:** value`` lines.
"""

import re

from pipeline_monitor.db.models import (
    Backlog,
    BacklogItem,
    CompletedTask,
    CurrentTask,
    Event,
    FailedTask,
)

DESCRIPTION_SEPARATOR = " — "

_STATUS_MARKERS = {
    "- [ ] ": "pending",
    "- [>] ": "claimed",
    "- [x] ": "done",
}

_BLOCKED_BY_RE = re.compile(r"\s*\|\s*blockedBy:\s*(.+)$", re.IGNORECASE)
_TAG_RE = re.compile(r"^\[([^\]]+)\]\s*")
_TIMESTAMP_RE = re.compile(r"\[(\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2})\]")
_WORKER_PREFIX_RE = re.compile(r"^(?:Worker|Fixer)\s+(\d+):")


# ── Backlog ──────────────────────────────────────────────────────────────────


def parse_blocked_by(text: str) -> list[str]:
    match = _BLOCKED_BY_RE.search(text)
    if not match:
        return []
    return [s.strip() for s in match.group(1).split(",") if s.strip()]


def split_item_text(text: str) -> tuple[str, str, str | None]:
    """Split item text into (tag, title, description), dropping metadata."""
    without_meta = _BLOCKED_BY_RE.sub("", text)
    tag_match = _TAG_RE.match(without_meta)
    tag = tag_match.group(1) if tag_match else ""
    rest = without_meta[tag_match.end():] if tag_match else without_meta
    title, sep, description = rest.partition(DESCRIPTION_SEPARATOR)
    return tag, title.strip(), (description.strip() or None) if sep else None


def resolve_blocked(items: list[BacklogItem]) -> None:
    """Mark items whose dependencies are not all done.

    Dependencies are referenced by title, so the lookup is built from
    every pending, claimed and done item in the list.
    """
    title_to_status = {item.title: item.status for item in items}
    for item in items:
        item.blocked = bool(item.blocked_by) and any(
            title_to_status.get(dep) != "done" for dep in item.blocked_by
        )


def build_backlog(items: list[BacklogItem]) -> Backlog:
    resolve_blocked(items)
    backlog = Backlog(items=items)
    for item in items:
        if item.status == "pending":
            backlog.pending_count += 1
        elif item.status == "claimed":
            backlog.claimed_count += 1
        elif item.status == "done":
            backlog.done_count += 1
    return backlog


def parse_backlog(raw: str) -> Backlog:
    items = []
    for line in raw.split("\n"):
        status = None
        for marker, marker_status in _STATUS_MARKERS.items():
            if line.startswith(marker):
                status = marker_status
                text = line[len(marker):]
                break
        if status is None:
            continue
        tag, title, description = split_item_text(text)
        items.append(
            BacklogItem(
                text=text,
                tag=tag,
                title=title,
                description=description,
                status=status,
                blocked_by=parse_blocked_by(text),
            )
        )
    return build_backlog(items)


def format_item_text(
    tag: str,
    title: str,
    description: str = "",
    blocked_by: list[str] | None = None,
) -> str:
    text = f"[{tag}] {title}"
    if description:
        text += f"{DESCRIPTION_SEPARATOR}{description}"
    if blocked_by:
        text += f" | blockedBy: {', '.join(blocked_by)}"
    return text


def _is_open_item(line: str) -> bool:
    return line.startswith("- [ ] ") or line.startswith("- [>] ")


def insert_task_line(raw: str, task_line: str, position: str = "top") -> str:
    """Insert a checkbox line at the top or bottom of the open queue.

    With no open items the line goes after the header block, i.e. after
    the first blank line following line 0.
    """
    lines = raw.split("\n")
    open_indexes = [i for i, line in enumerate(lines) if _is_open_item(line)]

    if open_indexes:
        index = open_indexes[0] if position == "top" else open_indexes[-1] + 1
    else:
        header_end = next(
            (i for i, line in enumerate(lines) if i > 0 and line.strip() == ""),
            None,
        )
        index = header_end + 1 if header_end is not None else len(lines)

    lines.insert(index, task_line)
    return "\n".join(lines)


# ── Tables ───────────────────────────────────────────────────────────────────


def table_rows(raw: str, header_marker: str = "Date") -> list[list[str]]:
    """Return the cells of every data row of a pipe table."""
    rows = []
    for line in raw.split("\n"):
        if not line.startswith("|") or header_marker in line or "---" in line:
            continue
        rows.append([cell.strip() for cell in line.split("|")])
    return rows


def _cell(parts: list[str], index: int) -> str:
    return parts[index] if index < len(parts) else ""


def parse_completed(raw: str) -> list[CompletedTask]:
    completed = []
    for parts in table_rows(raw):
        # | Date | Task | Branch | Duration | Notes | splits into 7 parts;
        # the legacy table has no Duration column.
        has_duration = len(parts) >= 7
        completed.append(
            CompletedTask(
                date=_cell(parts, 1),
                task=_cell(parts, 2),
                branch=_cell(parts, 3),
                duration=_cell(parts, 4) if has_duration else "",
                notes=_cell(parts, 5) if has_duration else _cell(parts, 4),
            )
        )
    return completed


def parse_failed(raw: str) -> list[FailedTask]:
    return [
        FailedTask(
            date=_cell(parts, 1),
            task=_cell(parts, 2),
            branch=_cell(parts, 3),
            error=_cell(parts, 4),
            attempts=_cell(parts, 5),
            status=_cell(parts, 6),
        )
        for parts in table_rows(raw)
    ]


# ── Durations ────────────────────────────────────────────────────────────────


_DURATION_PATTERNS = [
    (re.compile(r"^(\d+)h\s+(\d+)m$"), lambda m: int(m[1]) * 60 + int(m[2])),
    (re.compile(r"^(\d+)h$"), lambda m: int(m[1]) * 60),
    (re.compile(r"^(\d+)m$"), lambda m: int(m[1])),
]


def parse_duration_minutes(value: str) -> int | None:
    value = value.strip()
    for pattern, to_minutes in _DURATION_PATTERNS:
        match = pattern.match(value)
        if match:
            return to_minutes(match)
    return None


def format_duration(minutes: float) -> str:
    total = int(minutes + 0.5)
    if total < 60:
        return f"{total}m"
    hours, rem = divmod(total, 60)
    return f"{hours}h" if rem == 0 else f"{hours}h {rem}m"


def average_duration(durations: list[str]) -> str | None:
    minutes = [m for m in (parse_duration_minutes(d) for d in durations) if m is not None]
    if not minutes:
        return None
    return format_duration(sum(minutes) / len(minutes))


# ── Blockers ─────────────────────────────────────────────────────────────────


def parse_active_blockers(raw: str) -> list[str]:
    """Bullet lines of the ``## Active`` section, or [] when none."""
    match = re.search(r"## Active\s*\n([\s\S]*?)(?:\n## |\n*$)", raw, re.IGNORECASE)
    section = match.group(1).strip() if match else ""
    if not section or section.lower() == "none" or "No active blockers" in section:
        return []
    return [line for line in section.split("\n") if line.startswith("- ")]


# ── Current task ─────────────────────────────────────────────────────────────


def _field(raw: str, pattern: str) -> str | None:
    match = re.search(pattern, raw, re.MULTILINE)
    return match.group(1).strip() if match else None


def parse_current_task(raw: str) -> CurrentTask:
    return CurrentTask(
        status=_field(raw, r"\*\*Status:\*\* (\w+)") or "unknown",
        title=_field(raw, r"^## (.+)"),
        branch=_field(raw, r"\*\*Branch:\*\* (.+)"),
        started=_field(raw, r"\*\*Started:\*\* (.+)"),
        worker=_field(raw, r"\*\*Worker:\*\* (.+)"),
        last_info=_field(raw, r"\*\*(?:Last.*|Note):\*\* (.+)"),
    )


def render_current_task(task: CurrentTask) -> str:
    lines = ["# Current Task"]
    if task.title:
        lines.append(f"## {task.title}")
    lines.append(f"**Status:** {task.status}")
    if task.branch:
        lines.append(f"**Branch:** {task.branch}")
    if task.started:
        lines.append(f"**Started:** {task.started}")
    if task.worker:
        lines.append(f"**Worker:** {task.worker}")
    if task.last_info:
        lines.append(f"**Note:** {task.last_info}")
    return "\n".join(lines) + "\n"


# ── Logs and events ──────────────────────────────────────────────────────────


def extract_timestamp(log_line: str | None) -> str | None:
    """Timestamp of a ``[YYYY-MM-DD HH:MM:SS]`` prefixed log line."""
    if not log_line:
        return None
    match = _TIMESTAMP_RE.search(log_line)
    return match.group(1) if match else None


def parse_events(raw: str, limit: int = 100) -> list[Event]:
    """Parse ``epoch|event|detail`` lines, keeping the last ``limit``."""
    events = []
    for line in raw.strip().split("\n"):
        if not line.strip():
            continue
        parts = line.split("|")
        if len(parts) < 3:
            continue
        try:
            epoch = int(parts[0])
        except ValueError:
            continue
        detail = "|".join(parts[2:])
        worker_match = _WORKER_PREFIX_RE.match(detail)
        events.append(
            Event(
                epoch=epoch,
                event=parts[1],
                detail=detail,
                worker_id=int(worker_match.group(1)) if worker_match else None,
            )
        )
    return events[-limit:]


def parse_sync_health(raw: str) -> dict:
    last_run = _field(raw, r"_Last run: (.+)_")
    endpoints = [
        {
            "endpoint": _cell(parts, 1),
            "lastRun": _cell(parts, 2),
            "status": _cell(parts, 3),
            "records": _cell(parts, 4),
            "notes": _cell(parts, 5),
        }
        for parts in table_rows(raw, header_marker="Endpoint")
    ]
    return {"lastRun": last_run, "endpoints": endpoints}
