import asyncio
import unittest
from datetime import datetime, timedelta, timezone

from timeslip.change_tracker import ChangeTrackingStore
from timeslip.models import DateWindow, WorklogEntry
from timeslip.repository import InMemoryWorklogRepository, SearchCriteria
from timeslip.sync_coordinator import BULK_DELETE_ID, SyncCoordinator


WINDOW = DateWindow.parse("2024-03-04T00:00:00Z", "2024-03-04T23:59:59Z")


def _entry(entry_id: str, issue_key: str, hour: int, author: str = "acc-1") -> WorklogEntry:
    return WorklogEntry(
        id=entry_id,
        issue_key=issue_key,
        summary=f"Work on {issue_key}",
        project_name="Alpha",
        author_account_id=author,
        started=datetime(2024, 3, 4, hour, 0, tzinfo=timezone.utc).isoformat(),
        time_spent_seconds=3600,
    )


class RecordingRepository(InMemoryWorklogRepository):
    def __init__(self, entries=None, failing_keys=(), fail_bulk_delete=False) -> None:
        super().__init__(entries)
        self.calls: list[str] = []
        self.failing_keys = set(failing_keys)
        self.fail_bulk_delete = fail_bulk_delete
        self.delete_started = asyncio.Event()
        self.release_delete: asyncio.Event | None = None

    async def search(self, criteria: SearchCriteria):
        self.calls.append("search")
        return await super().search(criteria)

    async def delete_by_criteria(self, criteria: SearchCriteria) -> int:
        self.calls.append("delete_by_criteria")
        self.delete_started.set()
        if self.release_delete is not None:
            await self.release_delete.wait()
        if self.fail_bulk_delete:
            raise RuntimeError("backend unavailable")
        return await super().delete_by_criteria(criteria)

    async def create(self, entry: WorklogEntry) -> WorklogEntry:
        self.calls.append(f"create:{entry.issue_key}")
        if entry.issue_key in self.failing_keys:
            raise RuntimeError(f"cannot log {entry.issue_key}")
        return await super().create(entry)


class SyncCoordinatorTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.repository = RecordingRepository(
            [
                _entry("10001-a", "ABC-1", 9),
                _entry("10002-b", "ABC-2", 11),
                _entry("20001-c", "XYZ-1", 10, author="acc-2"),
            ]
        )
        self.store = ChangeTrackingStore()
        self.coordinator = SyncCoordinator(self.repository, self.store)

    async def test_load_fills_store_for_author(self) -> None:
        events = await self.coordinator.load(WINDOW, "acc-1", "Dana")

        self.assertEqual([event.id for event in events], ["10002-b", "10001-a"])
        self.assertEqual(events[0].resource.author_name, "Dana")
        self.assertEqual(self.store.changes, {})

    async def test_commit_deletes_before_creating(self) -> None:
        await self.coordinator.load(WINDOW, "acc-1", "Dana")
        event = self.store.get_event("10001-a")
        assert event is not None
        self.store.move("10001-a", event.start + timedelta(hours=5), event.end + timedelta(hours=5))
        self.repository.calls.clear()

        result = await self.coordinator.commit(WINDOW, "acc-1")

        self.assertEqual(self.repository.calls[0], "delete_by_criteria")
        self.assertEqual(sorted(self.repository.calls[1:]), ["create:ABC-1", "create:ABC-2"])
        self.assertEqual(result.status, "success")
        self.assertEqual(result.deleted.success, 2)
        self.assertEqual(result.created.success, 2)
        stored = {entry.issue_key: entry for entry in self.repository.all()}
        self.assertEqual(stored["ABC-1"].started, "2024-03-04T14:00:00+00:00")
        self.assertEqual(stored["XYZ-1"].id, "20001-c")
        self.assertEqual(self.store.changes, {})

    async def test_edits_during_commit_stay_pending(self) -> None:
        await self.coordinator.load(WINDOW, "acc-1", "Dana")
        self.repository.release_delete = asyncio.Event()

        task = asyncio.create_task(self.coordinator.commit(WINDOW, "acc-1"))
        await self.repository.delete_started.wait()
        event = self.store.get_event("10001-a")
        assert event is not None
        self.store.move("10001-a", event.start + timedelta(hours=3), event.end + timedelta(hours=3))
        self.repository.release_delete.set()
        result = await task

        self.assertEqual(result.status, "success")
        stored = {entry.issue_key: entry for entry in self.repository.all()}
        self.assertEqual(stored["ABC-1"].started, "2024-03-04T09:00:00+00:00")
        self.assertTrue(self.store.summarize().has_changes)
        record = self.store.changes["10001-a"]
        self.assertEqual(record.change_type.value, "move")
        self.assertEqual(record.original_event.start, datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc))
        self.assertEqual(record.modified_event.start, datetime(2024, 3, 4, 12, 0, tzinfo=timezone.utc))

        self.repository.release_delete = None
        await self.coordinator.commit(WINDOW, "acc-1")

        stored = {entry.issue_key: entry for entry in self.repository.all()}
        self.assertEqual(stored["ABC-1"].started, "2024-03-04T12:00:00+00:00")
        self.assertFalse(self.store.summarize().has_changes)

    async def test_commit_after_delete_all_clears_window(self) -> None:
        await self.coordinator.load(WINDOW, "acc-1", "Dana")
        self.store.delete_all()

        result = await self.coordinator.commit(WINDOW, "acc-1")

        self.assertEqual(result.deleted.success, 2)
        self.assertEqual(result.created.success, 0)
        self.assertEqual([entry.issue_key for entry in self.repository.all()], ["XYZ-1"])

    async def test_partial_create_failure_is_reported(self) -> None:
        self.repository.failing_keys = {"ABC-2"}
        await self.coordinator.load(WINDOW, "acc-1", "Dana")

        result = await self.coordinator.commit(WINDOW, "acc-1")

        self.assertEqual(result.status, "partial")
        self.assertEqual(result.created.success, 1)
        self.assertEqual(result.created.failed, 1)
        error = result.created.errors[0]
        self.assertEqual(error.entry_id, "10002-b")
        self.assertIn("cannot log ABC-2", error.message)
        self.assertEqual(error.entry["issue_key"], "ABC-2")
        # The store reconciles anyway so the next load decides the truth.
        self.assertEqual(self.store.changes, {})

    async def test_bulk_delete_failure_still_creates(self) -> None:
        self.repository.fail_bulk_delete = True
        await self.coordinator.load(WINDOW, "acc-1", "Dana")
        start = datetime(2024, 3, 4, 16, 0, tzinfo=timezone.utc)
        self.store.create_from_interaction(
            start, start + timedelta(hours=1), "acc-1", "Dana", issue=("ABC-7", "New")
        )

        result = await self.coordinator.commit(WINDOW, "acc-1")

        self.assertEqual(result.deleted.failed, 1)
        self.assertEqual(result.deleted.errors[0].entry_id, BULK_DELETE_ID)
        self.assertEqual(result.created.success, 3)
        self.assertEqual(result.status, "partial")

    async def test_untitled_event_fails_validation_without_request(self) -> None:
        await self.coordinator.load(WINDOW, "acc-1", "Dana")
        start = datetime(2024, 3, 4, 16, 0, tzinfo=timezone.utc)
        draft = self.store.create_from_interaction(start, start + timedelta(hours=1), "acc-1", "Dana")
        self.repository.calls.clear()

        result = await self.coordinator.commit(WINDOW, "acc-1")

        self.assertEqual(result.created.failed, 1)
        self.assertEqual(result.created.errors[0].entry_id, draft.id)
        self.assertEqual(len([call for call in self.repository.calls if call.startswith("create:")]), 2)

    async def test_events_outside_window_are_left_alone(self) -> None:
        await self.coordinator.load(WINDOW, "acc-1", "Dana")
        later = datetime(2024, 3, 6, 9, 0, tzinfo=timezone.utc)
        self.store.create_from_interaction(
            later, later + timedelta(hours=1), "acc-1", "Dana", issue=("ABC-8", "Later")
        )

        result = await self.coordinator.commit(WINDOW, "acc-1")

        self.assertEqual(result.created.success, 2)
        self.assertNotIn("ABC-8", [entry.issue_key for entry in self.repository.all()])

    async def test_create_concurrency_is_bounded(self) -> None:
        coordinator = SyncCoordinator(self.repository, self.store, create_concurrency=0)
        self.assertEqual(coordinator.create_concurrency, 1)


if __name__ == "__main__":
    unittest.main()
