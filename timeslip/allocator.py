"""Derive work-log drafts from commit activity.

Commits are bucketed by local day, each day's referenced issues share the
configured working window equally, and the resulting slots are packed back to
back from the start of the working day.
"""

from __future__ import annotations

import logging
from datetime import datetime, time, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Iterable, Mapping
from zoneinfo import ZoneInfo

from timeslip.models import (
    Commit,
    IssueInfo,
    PreferencesConfig,
    WorklogDraft,
    parse_iso_datetime,
    resolve_zone,
    serialize_datetime,
)


logger = logging.getLogger("timeslip.allocator")


def commits_from_payload(raw_commits: Iterable[Any]) -> list[Commit]:
    normalized: list[Commit] = []
    for item in raw_commits or []:
        if isinstance(item, Commit):
            normalized.append(item)
            continue
        if not isinstance(item, dict):
            continue
        created_at = item.get("created_at", item.get("createdAt"))
        raw_keys = item.get("issue_keys", item.get("issueKeys")) or []
        if not isinstance(raw_keys, (list, tuple)):
            continue
        normalized.append(
            Commit(
                created_at=str(created_at) if created_at is not None else None,
                issue_keys=[str(key) for key in raw_keys if key is not None],
            )
        )
    return normalized


def build_issue_catalogue(raw_issues: Iterable[Any]) -> dict[str, IssueInfo]:
    catalogue: dict[str, IssueInfo] = {}
    for item in raw_issues or []:
        if isinstance(item, IssueInfo):
            issue = item
        elif isinstance(item, dict):
            key = str(item.get("key", "")).strip()
            if not key:
                continue
            issue = IssueInfo(
                key=key,
                summary=str(item.get("summary", "") or ""),
                project_name=str(item.get("project_name", item.get("projectName", "")) or ""),
            )
        else:
            continue
        catalogue[issue.key.upper()] = issue
    return catalogue


def normalize_commit_instant(created_at: str | None) -> datetime | None:
    """Resolve a commit timestamp to UTC; strings without an offset are taken as UTC."""
    if not created_at or not isinstance(created_at, str):
        return None
    try:
        parsed = parse_iso_datetime(created_at)
    except ValueError:
        parsed = None
    if parsed is None:
        try:
            parsed = parsedate_to_datetime(created_at)
        except (TypeError, ValueError, IndexError):
            return None
        if parsed is None:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
    try:
        return parsed.astimezone(timezone.utc)
    except OverflowError:
        return None


def _group_commits_by_day(commits: Iterable[Commit], zone: ZoneInfo) -> dict[str, list[Commit]]:
    by_day: dict[str, list[Commit]] = {}
    for commit in commits:
        instant = normalize_commit_instant(commit.created_at)
        if instant is None:
            logger.debug("Skipping commit with unparseable timestamp %r", commit.created_at)
            continue
        try:
            day_key = instant.astimezone(zone).date().isoformat()
        except OverflowError:
            logger.debug("Skipping commit outside the representable range %r", commit.created_at)
            continue
        by_day.setdefault(day_key, []).append(commit)
    return by_day


def _count_issue_references(day_commits: list[Commit]) -> dict[str, int]:
    counts: dict[str, int] = {}
    for commit in day_commits:
        for raw_key in commit.issue_keys or []:
            if not isinstance(raw_key, str):
                continue
            key = raw_key.strip().upper()
            if not key:
                continue
            counts[key] = counts.get(key, 0) + 1
    return counts


def select_issues(
    counts: Mapping[str, int],
    workday_total_minutes: int,
    minimum_duration_minutes: int,
) -> list[str]:
    """Pick the issues that get a slot, in packing order.

    All issues are kept when an equal share meets the minimum duration.
    Otherwise only as many as fit at the minimum are kept, busiest first;
    ``sorted`` is stable, so equal counts keep their grouping order.
    """
    issues = list(counts)
    if not issues:
        return []
    if workday_total_minutes // len(issues) >= minimum_duration_minutes:
        return issues
    max_fit = workday_total_minutes // minimum_duration_minutes
    if max_fit <= 0:
        return []
    prioritized = sorted(issues, key=lambda key: counts[key], reverse=True)
    return prioritized[:max_fit]


def _split_minutes(workday_total_minutes: int, issue_count: int) -> list[int]:
    share, remainder = divmod(workday_total_minutes, issue_count)
    durations = [share] * issue_count
    durations[-1] += remainder
    return durations


def allocate(
    commits: Iterable[Commit],
    issues: Mapping[str, IssueInfo],
    preferences: PreferencesConfig,
    author_name: str,
    author_account_id: str,
) -> list[WorklogDraft]:
    zone = resolve_zone(preferences.timezone)
    workday_start = preferences.workday_start_minutes
    workday_total = preferences.workday_total_minutes
    minimum = max(1, int(preferences.minimum_duration_minutes))

    drafts: list[WorklogDraft] = []
    for day_key, day_commits in _group_commits_by_day(commits, zone).items():
        counts = {
            key: count for key, count in _count_issue_references(day_commits).items() if key in issues
        }
        if not counts:
            logger.debug("No catalogued issues referenced on %s", day_key)
            continue

        selected = select_issues(counts, workday_total, minimum)
        if not selected:
            logger.debug("Working window on %s cannot fit a %d minute entry", day_key, minimum)
            continue
        if len(selected) < len(counts):
            logger.debug("Kept %d of %d issues on %s", len(selected), len(counts), day_key)

        day = datetime.fromisoformat(day_key).date()
        cursor = workday_start
        for issue_key, minutes in zip(selected, _split_minutes(workday_total, len(selected))):
            issue = issues[issue_key]
            started = datetime.combine(day, time(cursor // 60, cursor % 60), tzinfo=zone)
            drafts.append(
                WorklogDraft(
                    issue_key=issue.key,
                    summary=issue.summary,
                    project_name=issue.project_name,
                    author_name=author_name,
                    author_account_id=author_account_id,
                    started=serialize_datetime(started) or "",
                    time_spent_seconds=minutes * 60,
                )
            )
            cursor += minutes
    return drafts
