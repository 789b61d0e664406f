from __future__ import annotations

import copy
import re
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


DEFAULT_WORKING_DAY_START = "09:00"
DEFAULT_WORKING_DAY_END = "18:00"
DEFAULT_MINIMUM_DURATION_MINUTES = 60
DEFAULT_TIMEZONE = "UTC"

CLOCK_PATTERN = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")


class WorklogValidationError(ValueError):
    """Raised when a work-log value is structurally invalid."""

    def __init__(self, message: str, field_name: str = "") -> None:
        super().__init__(message)
        self.field_name = field_name


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def _parse_iso_text(value: str) -> datetime:
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    return _ensure_tz(datetime.fromisoformat(text))


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    return _parse_iso_text(value)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def resolve_zone(name: str | None) -> ZoneInfo:
    try:
        return ZoneInfo(str(name or DEFAULT_TIMEZONE).strip() or DEFAULT_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo(DEFAULT_TIMEZONE)


def parse_clock_minutes(value: str) -> int:
    """Minutes since midnight for an ``HH:MM`` string."""
    hours, minutes = value.strip().split(":", 1)
    return int(hours) * 60 + int(minutes)


def _clean_clock(value: Any, default: str) -> str:
    text = str(value if value is not None else "").strip()
    if not CLOCK_PATTERN.match(text):
        return default
    hours, minutes = text.split(":", 1)
    return f"{int(hours):02d}:{minutes}"


def _clean_timezone(value: Any) -> str:
    text = str(value or "").strip() or DEFAULT_TIMEZONE
    try:
        ZoneInfo(text)
    except (ZoneInfoNotFoundError, ValueError):
        return DEFAULT_TIMEZONE
    return text


@dataclass
class PreferencesConfig:
    working_day_start_time: str = DEFAULT_WORKING_DAY_START
    working_day_end_time: str = DEFAULT_WORKING_DAY_END
    minimum_duration_minutes: int = DEFAULT_MINIMUM_DURATION_MINUTES
    timezone: str = DEFAULT_TIMEZONE

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "PreferencesConfig":
        data = data or {}
        try:
            minimum = int(data.get("minimum_duration_minutes", DEFAULT_MINIMUM_DURATION_MINUTES))
        except (TypeError, ValueError):
            minimum = DEFAULT_MINIMUM_DURATION_MINUTES
        return cls(
            working_day_start_time=_clean_clock(data.get("working_day_start_time"), DEFAULT_WORKING_DAY_START),
            working_day_end_time=_clean_clock(data.get("working_day_end_time"), DEFAULT_WORKING_DAY_END),
            minimum_duration_minutes=max(1, minimum),
            timezone=_clean_timezone(data.get("timezone")),
        )

    @property
    def workday_start_minutes(self) -> int:
        return parse_clock_minutes(self.working_day_start_time)

    @property
    def workday_total_minutes(self) -> int:
        return parse_clock_minutes(self.working_day_end_time) - self.workday_start_minutes


@dataclass
class StorageConfig:
    db_path: str = "data/worklogs.db"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "StorageConfig":
        data = data or {}
        return cls(db_path=str(data.get("db_path", "data/worklogs.db")).strip() or "data/worklogs.db")


@dataclass
class SyncConfig:
    create_concurrency: int = 4

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        try:
            concurrency = int(data.get("create_concurrency", 4))
        except (TypeError, ValueError):
            concurrency = 4
        return cls(create_concurrency=max(1, concurrency))


@dataclass
class AppConfig:
    preferences: PreferencesConfig = field(default_factory=PreferencesConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            preferences=PreferencesConfig.from_dict(data.get("preferences")),
            storage=StorageConfig.from_dict(data.get("storage")),
            sync=SyncConfig.from_dict(data.get("sync")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


def _require_text(value: Any, field_name: str, label: str) -> None:
    if not isinstance(value, str) or not value.strip():
        raise WorklogValidationError(f"{label} is required", field_name)


@dataclass(frozen=True)
class WorklogEntry:
    issue_key: str
    started: str
    time_spent_seconds: int
    summary: str = ""
    project_name: str = ""
    author_account_id: str = ""
    id: str = ""

    def __post_init__(self) -> None:
        _require_text(self.issue_key, "issue_key", "Issue key")
        _require_text(self.started, "started", "Started date")
        if not isinstance(self.summary, str):
            raise WorklogValidationError("Summary must be a string", "summary")
        if "T" not in self.started:
            raise WorklogValidationError("Started date must be an ISO 8601 datetime string", "started")
        try:
            parse_iso_datetime(self.started)
        except ValueError as exc:
            raise WorklogValidationError(
                "Started date must be an ISO 8601 datetime string", "started"
            ) from exc
        seconds = self.time_spent_seconds
        if isinstance(seconds, bool) or not isinstance(seconds, int):
            raise WorklogValidationError("Time spent seconds must be an integer", "time_spent_seconds")
        if seconds <= 0:
            raise WorklogValidationError("Time spent seconds must be positive", "time_spent_seconds")

    @property
    def started_at(self) -> datetime:
        return _parse_iso_text(self.started)

    def with_id(self, entry_id: str) -> "WorklogEntry":
        return WorklogEntry(**{**asdict(self), "id": entry_id})

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WorklogEntry":
        return cls(
            id=str(data.get("id", "") or ""),
            issue_key=str(data.get("issue_key", "") or "").strip(),
            summary=str(data.get("summary", "") or ""),
            project_name=str(data.get("project_name", "") or ""),
            author_account_id=str(data.get("author_account_id", "") or ""),
            started=str(data.get("started", "") or ""),
            time_spent_seconds=data.get("time_spent_seconds", 0),
        )


@dataclass
class WorklogResource:
    issue_key: str
    issue_summary: str = ""
    project_name: str = ""
    author_name: str = ""
    author_account_id: str = ""
    time_spent_seconds: int = 0
    started: str = ""


@dataclass
class CalendarEvent:
    id: str
    title: str
    start: datetime
    end: datetime
    resource: WorklogResource

    @staticmethod
    def build_title(issue_key: str, summary: str) -> str:
        return f"{issue_key}: {summary}" if summary else issue_key

    @classmethod
    def from_entry(cls, entry: WorklogEntry, author_name: str = "") -> "CalendarEvent":
        start = entry.started_at
        return cls(
            id=entry.id or entry.issue_key,
            title=cls.build_title(entry.issue_key, entry.summary),
            start=start,
            end=start + timedelta(seconds=entry.time_spent_seconds),
            resource=WorklogResource(
                issue_key=entry.issue_key,
                issue_summary=entry.summary,
                project_name=entry.project_name,
                author_name=author_name,
                author_account_id=entry.author_account_id,
                time_spent_seconds=entry.time_spent_seconds,
                started=entry.started,
            ),
        )

    def to_entry(self) -> WorklogEntry:
        return WorklogEntry(
            issue_key=self.resource.issue_key,
            summary=self.resource.issue_summary,
            project_name=self.resource.project_name,
            author_account_id=self.resource.author_account_id,
            started=self.resource.started or serialize_datetime(self.start) or "",
            time_spent_seconds=self.resource.time_spent_seconds,
        )

    def clone(self) -> "CalendarEvent":
        return copy.deepcopy(self)

    def with_bounds(self, start: datetime, end: datetime) -> "CalendarEvent":
        copied = self.clone()
        copied.start = start
        copied.end = end
        copied.resource.started = serialize_datetime(start) or ""
        copied.resource.time_spent_seconds = int((end - start).total_seconds())
        return copied

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["start"] = serialize_datetime(self.start)
        payload["end"] = serialize_datetime(self.end)
        return payload


@dataclass
class Commit:
    created_at: str | None
    issue_keys: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class IssueInfo:
    key: str
    summary: str = ""
    project_name: str = ""


@dataclass
class WorklogDraft:
    issue_key: str
    summary: str
    project_name: str
    author_name: str
    author_account_id: str
    started: str
    time_spent_seconds: int

    @property
    def start(self) -> datetime:
        return _parse_iso_text(self.started)

    @property
    def end(self) -> datetime:
        return self.start + timedelta(seconds=self.time_spent_seconds)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class DateWindow:
    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        object.__setattr__(self, "start", _ensure_tz(self.start))
        object.__setattr__(self, "end", _ensure_tz(self.end))
        if self.end < self.start:
            raise WorklogValidationError("Window end must not be earlier than its start", "end")

    @classmethod
    def parse(cls, start: str | datetime, end: str | datetime) -> "DateWindow":
        try:
            parsed_start = parse_iso_datetime(start)
            parsed_end = parse_iso_datetime(end)
        except ValueError as exc:
            raise WorklogValidationError(f"Invalid window datetime: {exc}") from exc
        if parsed_start is None or parsed_end is None:
            raise WorklogValidationError("Window start and end are required")
        return cls(parsed_start, parsed_end)

    @classmethod
    def for_days(cls, first_day: date, last_day: date, timezone_name: str = DEFAULT_TIMEZONE) -> "DateWindow":
        zone = resolve_zone(timezone_name)
        return cls(
            datetime.combine(first_day, time.min, tzinfo=zone),
            datetime.combine(last_day, time.max, tzinfo=zone),
        )

    def contains(self, value: datetime) -> bool:
        return self.start <= _ensure_tz(value) <= self.end

    def to_dict(self) -> dict[str, Any]:
        return {"start": serialize_datetime(self.start), "end": serialize_datetime(self.end)}


@dataclass
class SyncError:
    message: str
    entry_id: str = ""
    entry: dict[str, Any] | None = None


@dataclass
class PhaseResult:
    success: int = 0
    failed: int = 0
    errors: list[SyncError] = field(default_factory=list)

    def record_failure(self, error: SyncError) -> None:
        self.failed += 1
        self.errors.append(error)


@dataclass
class SyncResult:
    deleted: PhaseResult = field(default_factory=PhaseResult)
    created: PhaseResult = field(default_factory=PhaseResult)
    run_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def total_success(self) -> int:
        return self.deleted.success + self.created.success

    @property
    def total_failed(self) -> int:
        return self.deleted.failed + self.created.failed

    @property
    def status(self) -> str:
        if self.total_failed == 0:
            return "success"
        if self.total_success == 0:
            return "failed"
        return "partial"

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "deleted": asdict(self.deleted),
            "created": asdict(self.created),
            "total_success": self.total_success,
            "total_failed": self.total_failed,
            "run_at": serialize_datetime(self.run_at),
        }
