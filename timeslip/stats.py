from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Iterable

from timeslip.models import CalendarEvent, resolve_zone


UNASSIGNED_LABEL = "Unassigned"


@dataclass
class StatsGroup:
    key: str
    label: str
    total_seconds: int = 0
    entry_count: int = 0
    meta: dict[str, str] = field(default_factory=dict)

    def add(self, seconds: int, meta: dict[str, str]) -> None:
        self.total_seconds += seconds
        self.entry_count += 1
        self.meta.update(meta)


@dataclass
class WorklogStats:
    total_seconds: int = 0
    total_entries: int = 0
    by_project: list[StatsGroup] = field(default_factory=list)
    by_author: list[StatsGroup] = field(default_factory=list)
    by_day: list[StatsGroup] = field(default_factory=list)
    by_issue: list[StatsGroup] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return asdict(self)


def _positive_seconds(value: int | None) -> int:
    if not value or value < 0:
        return 0
    return int(value)


def _project_key_from_issue(issue_key: str) -> str:
    if "-" not in (issue_key or ""):
        return ""
    return issue_key.split("-", 1)[0]


def _upsert(groups: dict[str, StatsGroup], key: str, label: str, seconds: int, meta: dict[str, str]) -> None:
    group = groups.get(key)
    if group is None:
        group = groups[key] = StatsGroup(key=key, label=label)
    group.add(seconds, meta)


def _by_volume(groups: dict[str, StatsGroup]) -> list[StatsGroup]:
    return sorted(groups.values(), key=lambda item: (item.total_seconds, item.entry_count), reverse=True)


def aggregate_worklog_stats(events: Iterable[CalendarEvent], timezone: str = "UTC") -> WorklogStats:
    zone = resolve_zone(timezone)
    stats = WorklogStats()
    projects: dict[str, StatsGroup] = {}
    authors: dict[str, StatsGroup] = {}
    days: dict[str, StatsGroup] = {}
    issues: dict[str, StatsGroup] = {}

    for event in events:
        resource = event.resource
        seconds = _positive_seconds(resource.time_spent_seconds)
        stats.total_seconds += seconds
        stats.total_entries += 1

        project_name = resource.project_name.strip()
        project_key = project_name or _project_key_from_issue(resource.issue_key) or UNASSIGNED_LABEL
        project_label = project_name or project_key
        _upsert(projects, project_key, project_label, seconds, {"project_name": project_label})

        author_label = resource.author_name or "Unknown"
        author_key = resource.author_account_id or author_label
        _upsert(authors, author_key, author_label, seconds, {"account_id": resource.author_account_id})

        day_key = event.start.astimezone(zone).date().isoformat()
        _upsert(days, day_key, day_key, seconds, {})

        issue_key = resource.issue_key.strip() or event.id
        _upsert(
            issues,
            issue_key,
            issue_key,
            seconds,
            {"summary": resource.issue_summary, "project_name": project_label},
        )

    stats.by_project = _by_volume(projects)
    stats.by_author = _by_volume(authors)
    stats.by_issue = _by_volume(issues)
    stats.by_day = sorted(days.values(), key=lambda item: item.key, reverse=True)
    return stats
