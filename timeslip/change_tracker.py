from __future__ import annotations

import logging
import random
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Iterable

from timeslip.models import (
    CalendarEvent,
    DateWindow,
    WorklogDraft,
    WorklogEntry,
    WorklogResource,
    WorklogValidationError,
)


logger = logging.getLogger("timeslip.changes")

LOCAL_ID_PREFIX = "local-"
PERSISTED_ID_SEPARATOR = "-"


class ChangeType(str, Enum):
    CREATE = "create"
    MOVE = "move"
    RESIZE = "resize"
    DELETE = "delete"


@dataclass
class ChangeRecord:
    event_id: str
    original_event: CalendarEvent | None
    modified_event: CalendarEvent
    change_type: ChangeType
    timestamp: datetime


@dataclass(frozen=True)
class StoreCheckpoint:
    events: list[CalendarEvent]
    changes: dict[str, ChangeRecord]


@dataclass(frozen=True)
class ChangesSummary:
    has_changes: bool
    total_changes: int


@dataclass
class WorklogDiff:
    new: list[CalendarEvent] = field(default_factory=list)
    modified: list[CalendarEvent] = field(default_factory=list)
    deleted: list[CalendarEvent] = field(default_factory=list)

    @property
    def change_count(self) -> int:
        return len(self.new) + len(self.modified) + len(self.deleted)

    @property
    def has_changes(self) -> bool:
        return self.change_count > 0

    def to_dict(self) -> dict[str, object]:
        return {
            "new": [event.to_dict() for event in self.new],
            "modified": [event.to_dict() for event in self.modified],
            "deleted": [event.to_dict() for event in self.deleted],
            "has_changes": self.has_changes,
            "change_count": self.change_count,
        }


def generate_local_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=7))  # nosec B311
    return f"{LOCAL_ID_PREFIX}{int(time.time() * 1000)}-{suffix}"


def is_persisted_id(event: CalendarEvent) -> bool:
    """Tell server-issued ids apart from placeholders by shape.

    Placeholders are either client ids (``local-...``) or the bare issue key
    used for entries that came back without an id.
    """
    event_id = event.id or ""
    if not event_id or event_id.startswith(LOCAL_ID_PREFIX):
        return False
    if PERSISTED_ID_SEPARATOR not in event_id:
        return False
    return event_id.upper() != (event.resource.issue_key or "").upper()


def _copy_events(events: Iterable[CalendarEvent]) -> list[CalendarEvent]:
    return [event.clone() for event in events]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _millis(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def _is_modified(current: CalendarEvent, original: CalendarEvent) -> bool:
    return (
        current.resource.issue_key != original.resource.issue_key
        or current.resource.started != original.resource.started
        or current.resource.time_spent_seconds != original.resource.time_spent_seconds
        or _millis(current.start) != _millis(original.start)
        or _millis(current.end) != _millis(original.end)
    )


class ChangeTrackingStore:
    """Working copy of calendar events tracked against the last server snapshot.

    One store serves one editing session. Edits only touch the working copy
    and the change map; the snapshot is replaced on ``load`` and
    ``mark_committed``.
    """

    def __init__(
        self,
        events: Iterable[CalendarEvent] | None = None,
        *,
        id_factory: Callable[[], str] = generate_local_id,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._id_factory = id_factory
        self._clock = clock
        self._original_events: list[CalendarEvent] = []
        self._working_copy: list[CalendarEvent] = []
        self._changes: dict[str, ChangeRecord] = {}
        self.load(events or [])

    @property
    def original_events(self) -> list[CalendarEvent]:
        return list(self._original_events)

    @property
    def working_copy(self) -> list[CalendarEvent]:
        return list(self._working_copy)

    @property
    def changes(self) -> dict[str, ChangeRecord]:
        return dict(self._changes)

    def load(self, events: Iterable[CalendarEvent]) -> None:
        self._original_events = _copy_events(events)
        self._working_copy = _copy_events(self._original_events)
        self._changes = {}

    def load_entries(self, entries: Iterable[WorklogEntry], author_name: str = "") -> None:
        self.load(CalendarEvent.from_entry(entry, author_name) for entry in entries)

    def get_event(self, event_id: str) -> CalendarEvent | None:
        return next((event for event in self._working_copy if event.id == event_id), None)

    def _find_original(self, event_id: str) -> CalendarEvent | None:
        return next((event for event in self._original_events if event.id == event_id), None)

    def _upsert_change(
        self,
        event_id: str,
        change_type: ChangeType,
        modified_event: CalendarEvent,
        original_event: CalendarEvent | None,
    ) -> ChangeRecord:
        existing = self._changes.get(event_id)
        if existing is not None:
            original_event = existing.original_event
        record = ChangeRecord(
            event_id=event_id,
            original_event=original_event,
            modified_event=modified_event,
            change_type=change_type,
            timestamp=self._clock(),
        )
        self._changes[event_id] = record
        return record

    def _reschedule(
        self,
        event_id: str,
        start: datetime,
        end: datetime,
        change_type: ChangeType,
    ) -> CalendarEvent | None:
        if end <= start:
            logger.debug("Ignoring %s of %s with empty bounds", change_type.value, event_id)
            return None
        for index, event in enumerate(self._working_copy):
            if event.id == event_id:
                break
        else:
            logger.debug("Ignoring %s of unknown event %s", change_type.value, event_id)
            return None

        updated = event.with_bounds(start, end)
        self._working_copy[index] = updated

        existing = self._changes.get(event_id)
        if existing is not None and existing.change_type is ChangeType.CREATE:
            change_type = ChangeType.CREATE
        original = self._find_original(event_id) or event
        self._upsert_change(event_id, change_type, updated, original.clone())
        return updated

    def resize(self, event_id: str, start: datetime, end: datetime) -> CalendarEvent | None:
        return self._reschedule(event_id, start, end, ChangeType.RESIZE)

    def move(self, event_id: str, start: datetime, end: datetime) -> CalendarEvent | None:
        return self._reschedule(event_id, start, end, ChangeType.MOVE)

    def create_from_interaction(
        self,
        start: datetime,
        end: datetime,
        author_account_id: str,
        author_name: str,
        project_name: str | None = None,
        issue: tuple[str, str] | None = None,
    ) -> CalendarEvent:
        """Add a new event drawn by the user or proposed by the allocator.

        ``issue`` is an ``(issue_key, summary)`` pair; events drawn without
        one start out untitled. Empty or inverted bounds raise
        ``WorklogValidationError``.
        """
        if end <= start:
            raise WorklogValidationError("End must be later than start", "end")
        issue_key, summary = issue if issue else ("", "")
        event = CalendarEvent(
            id=self._id_factory(),
            title=CalendarEvent.build_title(issue_key, summary) if issue_key else "New worklog",
            start=start,
            end=end,
            resource=WorklogResource(
                issue_key=issue_key,
                issue_summary=summary,
                project_name=project_name or "",
                author_name=author_name,
                author_account_id=author_account_id,
            ),
        ).with_bounds(start, end)
        self._working_copy.append(event)
        self._upsert_change(event.id, ChangeType.CREATE, event, None)
        return event

    def apply_drafts(self, drafts: Iterable[WorklogDraft]) -> list[CalendarEvent]:
        return [
            self.create_from_interaction(
                draft.start,
                draft.end,
                draft.author_account_id,
                draft.author_name,
                project_name=draft.project_name,
                issue=(draft.issue_key, draft.summary),
            )
            for draft in drafts
        ]

    def _delete_record(self, event: CalendarEvent, existing: ChangeRecord | None) -> ChangeRecord | None:
        if existing is not None and existing.change_type is ChangeType.CREATE:
            return None
        if existing is not None and existing.original_event is not None:
            original = existing.original_event
        else:
            original = self._find_original(event.id) or event
        return ChangeRecord(
            event_id=event.id,
            original_event=original.clone(),
            modified_event=original.clone(),
            change_type=ChangeType.DELETE,
            timestamp=self._clock(),
        )

    def delete(self, event_id: str) -> bool:
        event = self.get_event(event_id)
        if event is None:
            return False
        self._working_copy = [item for item in self._working_copy if item.id != event_id]
        record = self._delete_record(event, self._changes.get(event_id))
        if record is None:
            self._changes.pop(event_id, None)
        else:
            self._changes[event_id] = record
        return True

    def delete_all(self) -> None:
        next_changes = {
            event_id: record
            for event_id, record in self._changes.items()
            if record.change_type is ChangeType.DELETE
        }
        for event in self._working_copy:
            record = self._delete_record(event, self._changes.get(event.id))
            if record is not None:
                next_changes[event.id] = record
        self._working_copy = []
        self._changes = next_changes

    def summarize(self) -> ChangesSummary:
        return ChangesSummary(has_changes=bool(self._changes), total_changes=len(self._changes))

    @staticmethod
    def _filter(events: Iterable[CalendarEvent], window: DateWindow, author_account_id: str) -> list[CalendarEvent]:
        return [
            event
            for event in events
            if window.contains(event.start) and event.resource.author_account_id == author_account_id
        ]

    def events_in_window(self, window: DateWindow, author_account_id: str) -> list[CalendarEvent]:
        return _copy_events(self._filter(self._working_copy, window, author_account_id))

    def diff(self, window: DateWindow, author_account_id: str) -> WorklogDiff:
        local = self._filter(self._working_copy, window, author_account_id)
        loaded = {event.id: event for event in self._filter(self._original_events, window, author_account_id)}

        result = WorklogDiff()
        for event in local:
            original = loaded.get(event.id)
            if original is None:
                result.new.append(event.clone())
            elif _is_modified(event, original):
                result.modified.append(event.clone())

        local_ids = {event.id for event in local}
        for event_id, original in loaded.items():
            if event_id not in local_ids and is_persisted_id(original):
                result.deleted.append(original.clone())
        return result

    def cancel(self) -> None:
        self._working_copy = _copy_events(self._original_events)
        self._changes = {}

    def checkpoint(self) -> StoreCheckpoint:
        return StoreCheckpoint(events=_copy_events(self._working_copy), changes=dict(self._changes))

    def mark_committed(self, checkpoint: StoreCheckpoint | None = None) -> None:
        """Adopt a saved state as the new server snapshot.

        Without a checkpoint the current working copy is adopted. With one,
        the checkpointed events become the snapshot and every event edited
        after the checkpoint keeps a change record against that snapshot.
        """
        if checkpoint is None:
            self._original_events = _copy_events(self._working_copy)
            self._changes = {}
            return

        touched = [
            event_id
            for event_id, record in self._changes.items()
            if checkpoint.changes.get(event_id) is not record
        ]
        touched.extend(event_id for event_id in checkpoint.changes if event_id not in self._changes)

        self._original_events = _copy_events(checkpoint.events)
        pending: dict[str, ChangeRecord] = {}
        for event_id in touched:
            record = self._rebased_change(event_id)
            if record is not None:
                pending[event_id] = record
        self._changes = pending
        if pending:
            logger.debug("Kept %d changes made while committing", len(pending))

    def _rebased_change(self, event_id: str) -> ChangeRecord | None:
        committed = self._find_original(event_id)
        current = self.get_event(event_id)
        if current is None:
            if committed is None:
                return None
            return ChangeRecord(
                event_id=event_id,
                original_event=committed.clone(),
                modified_event=committed.clone(),
                change_type=ChangeType.DELETE,
                timestamp=self._clock(),
            )
        if committed is None:
            change_type = ChangeType.CREATE
        elif not _is_modified(current, committed):
            return None
        elif current.resource.time_spent_seconds != committed.resource.time_spent_seconds:
            change_type = ChangeType.RESIZE
        else:
            change_type = ChangeType.MOVE
        return ChangeRecord(
            event_id=event_id,
            original_event=committed.clone() if committed is not None else None,
            modified_event=current.clone(),
            change_type=change_type,
            timestamp=self._clock(),
        )
