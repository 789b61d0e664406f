from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict

from timeslip.change_tracker import ChangeTrackingStore
from timeslip.models import (
    CalendarEvent,
    DateWindow,
    PhaseResult,
    SyncError,
    SyncResult,
    WorklogEntry,
    serialize_datetime,
)
from timeslip.repository import SearchCriteria, WorklogRepository


logger = logging.getLogger("timeslip.sync")

BULK_DELETE_ID = "bulk-delete"


def _error_message(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


def _event_payload(event: CalendarEvent) -> dict[str, object]:
    payload = asdict(event.resource)
    payload["event_id"] = event.id
    return payload


def _entry_payload(entry: WorklogEntry, event: CalendarEvent) -> dict[str, object]:
    payload = entry.to_dict()
    payload["event_id"] = event.id
    return payload


class SyncCoordinator:
    """Saves one author's date window with a whole-range replace.

    Every persisted entry of the author inside the window is deleted, then
    the working copy for that window is recreated entry by entry. Running it
    again after a crash rebuilds the same state. Entries written to the same
    window by another session after ``load`` are lost. Edits made to the
    store while a commit is in flight stay pending for the next commit.
    """

    def __init__(
        self,
        repository: WorklogRepository,
        store: ChangeTrackingStore,
        *,
        create_concurrency: int = 4,
    ) -> None:
        self.repository = repository
        self.store = store
        self.create_concurrency = max(1, int(create_concurrency))

    @staticmethod
    def _criteria(window: DateWindow, author_account_id: str) -> SearchCriteria:
        return SearchCriteria(
            author_account_ids=[author_account_id],
            date_from=serialize_datetime(window.start),
            date_to=serialize_datetime(window.end),
        )

    async def load(
        self,
        window: DateWindow,
        author_account_id: str,
        author_name: str = "",
    ) -> list[CalendarEvent]:
        entries = await self.repository.search(self._criteria(window, author_account_id))
        self.store.load_entries(entries, author_name)
        logger.info("Loaded %d worklog entries for %s", len(entries), author_account_id)
        return self.store.working_copy

    async def _delete_window(self, window: DateWindow, author_account_id: str, result: PhaseResult) -> None:
        try:
            result.success = int(
                await self.repository.delete_by_criteria(self._criteria(window, author_account_id))
            )
        except Exception as exc:
            logger.warning("Bulk delete for %s failed: %s", author_account_id, exc)
            result.record_failure(SyncError(message=_error_message(exc), entry_id=BULK_DELETE_ID))

    async def _create_one(
        self,
        event: CalendarEvent,
        semaphore: asyncio.Semaphore,
    ) -> SyncError | None:
        try:
            entry = event.to_entry()
        except ValueError as exc:
            return SyncError(message=_error_message(exc), entry_id=event.id, entry=_event_payload(event))
        async with semaphore:
            try:
                await self.repository.create(entry)
            except Exception as exc:
                return SyncError(
                    message=_error_message(exc),
                    entry_id=event.id,
                    entry=_entry_payload(entry, event),
                )
        return None

    async def _create_window(self, events: list[CalendarEvent], result: PhaseResult) -> None:
        semaphore = asyncio.Semaphore(self.create_concurrency)
        outcomes = await asyncio.gather(*(self._create_one(event, semaphore) for event in events))
        for error in outcomes:
            if error is None:
                result.success += 1
            else:
                logger.warning("Creating worklog %s failed: %s", error.entry_id, error.message)
                result.record_failure(error)

    async def commit(self, window: DateWindow, author_account_id: str) -> SyncResult:
        result = SyncResult()
        checkpoint = self.store.checkpoint()
        events = self.store.events_in_window(window, author_account_id)

        await self._delete_window(window, author_account_id, result.deleted)
        await self._create_window(events, result.created)

        self.store.mark_committed(checkpoint)
        logger.info(
            "Synced %s for %s: deleted=%d created=%d failed=%d",
            window.to_dict(),
            author_account_id,
            result.deleted.success,
            result.created.success,
            result.total_failed,
        )
        return result
