"""Mission progress: numbered success criteria scored by position.

``mission.md`` is operator-authored prose, so criteria are not classified
by their wording. Each criterion is evaluated by the rule registered for
its ordinal in ``CRITERION_RULES``. Rewording criterion N in the mission
document does not change how it is evaluated, and reordering the list
silently swaps rules. Keep the document and this table in step.
"""

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from pipeline_monitor.db.models import CriterionStatus, MissionResult

_SECTION_RE = re.compile(r"^## Success Criteria\s*$", re.IGNORECASE | re.MULTILINE)
_NUMBERED_RE = re.compile(r"^\s*\d+\.\s+(.+)")
_WATCHDOG_ISSUE_RE = re.compile(r"zombie|deadlock", re.IGNORECASE)


@dataclass
class MissionContext:
    """Measurements the criterion rules are evaluated against."""

    handler_count: int = 0
    self_correction_rate: int = 0
    resolved_failures: int = 0
    watchdog_issues: int = 0
    completed_count: int = 0
    agent_count: int = 0


Rule = Callable[[MissionContext], tuple[CriterionStatus, str]]


def _threshold(value: int, met: int, partial: int) -> CriterionStatus:
    if value >= met:
        return CriterionStatus.MET
    if value >= partial:
        return CriterionStatus.PARTIAL
    return CriterionStatus.NOT_MET


def _handler_coverage(ctx: MissionContext) -> tuple[CriterionStatus, str]:
    return _threshold(ctx.handler_count, 5, 1), f"{ctx.handler_count} handlers implemented"


def _self_correction(ctx: MissionContext) -> tuple[CriterionStatus, str]:
    if ctx.resolved_failures == 0:
        return CriterionStatus.PARTIAL, "No failures resolved yet"
    status = _threshold(ctx.self_correction_rate, 95, 50)
    return status, f"{ctx.self_correction_rate}% self-correction rate"


def _watchdog_health(ctx: MissionContext) -> tuple[CriterionStatus, str]:
    if ctx.watchdog_issues == 0:
        return CriterionStatus.MET, "No zombie or deadlock reports in watchdog log"
    status = CriterionStatus.PARTIAL if ctx.watchdog_issues <= 3 else CriterionStatus.NOT_MET
    return status, f"{ctx.watchdog_issues} zombie/deadlock reports in watchdog log"


def _full_api(ctx: MissionContext) -> tuple[CriterionStatus, str]:
    return _threshold(ctx.handler_count, 8, 5), f"{ctx.handler_count} of 8 handlers"


def _throughput(ctx: MissionContext) -> tuple[CriterionStatus, str]:
    return _threshold(ctx.completed_count, 10, 3), f"{ctx.completed_count} tasks completed"


def _agent_plugins(ctx: MissionContext) -> tuple[CriterionStatus, str]:
    return _threshold(ctx.agent_count, 2, 1), f"{ctx.agent_count} agent plugins installed"


def _no_rule(ctx: MissionContext) -> tuple[CriterionStatus, str]:
    return CriterionStatus.NOT_MET, "No automatic check for this criterion"


CRITERION_RULES: dict[int, Rule] = {
    1: _handler_coverage,
    2: _self_correction,
    3: _watchdog_health,
    4: _full_api,
    5: _throughput,
    6: _agent_plugins,
}


def parse_success_criteria(raw: str) -> list[str]:
    """Numbered items of the ``## Success Criteria`` section, in order."""
    match = _SECTION_RE.search(raw)
    if not match:
        return []
    start = match.end()
    next_section = raw.find("\n## ", start)
    section = raw[start:] if next_section == -1 else raw[start:next_section]
    criteria = []
    for line in section.split("\n"):
        numbered = _NUMBERED_RE.match(line)
        if numbered:
            criteria.append(numbered.group(1).strip())
    return criteria


def evaluate_mission(raw: str, ctx: MissionContext) -> list[MissionResult]:
    results = []
    for ordinal, criterion in enumerate(parse_success_criteria(raw), start=1):
        rule = CRITERION_RULES.get(ordinal, _no_rule)
        status, evidence = rule(ctx)
        results.append(MissionResult(ordinal, criterion, status, evidence))
    return results


def count_files(directory: Path, suffixes: tuple[str, ...]) -> int:
    """Count source files in a directory, ignoring tests and package markers."""
    try:
        entries = list(Path(directory).iterdir())
    except OSError:
        return 0
    return sum(
        1
        for p in entries
        if p.is_file()
        and p.suffix in suffixes
        and ".test." not in p.name
        and not p.name.startswith(("test_", "_", "index."))
    )


def count_watchdog_issues(log_path: Path) -> int:
    try:
        raw = Path(log_path).read_text(encoding="utf-8", errors="replace")
    except OSError:
        return 0
    return sum(1 for line in raw.splitlines() if _WATCHDOG_ISSUE_RE.search(line))
