from __future__ import annotations

import asyncio
import sqlite3
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

from timeslip.models import WorklogEntry, parse_iso_datetime


@dataclass
class SearchCriteria:
    project_names: list[str] = field(default_factory=list)
    author_account_ids: list[str] = field(default_factory=list)
    date_from: str | None = None
    date_to: str | None = None

    def bounds(self) -> tuple[datetime | None, datetime | None]:
        return parse_iso_datetime(self.date_from), parse_iso_datetime(self.date_to)

    def matches(self, entry: WorklogEntry) -> bool:
        if self.project_names and entry.project_name not in self.project_names:
            return False
        if self.author_account_ids and entry.author_account_id not in self.author_account_ids:
            return False
        date_from, date_to = self.bounds()
        started = entry.started_at
        if date_from is not None and started < date_from:
            return False
        if date_to is not None and started > date_to:
            return False
        return True


class WorklogRepository(Protocol):
    async def search(self, criteria: SearchCriteria) -> list[WorklogEntry]: ...

    async def create(self, entry: WorklogEntry) -> WorklogEntry: ...

    async def delete(self, entry_id: str) -> None: ...

    async def delete_by_criteria(self, criteria: SearchCriteria) -> int: ...


def _new_entry_id() -> str:
    return str(uuid.uuid4())


def _sorted_newest_first(entries: list[WorklogEntry]) -> list[WorklogEntry]:
    return sorted(entries, key=lambda entry: entry.started_at, reverse=True)


class InMemoryWorklogRepository:
    def __init__(self, entries: list[WorklogEntry] | None = None) -> None:
        self._entries: dict[str, WorklogEntry] = {}
        for entry in entries or []:
            stored = entry if entry.id else entry.with_id(_new_entry_id())
            self._entries[stored.id] = stored

    def all(self) -> list[WorklogEntry]:
        return list(self._entries.values())

    async def search(self, criteria: SearchCriteria) -> list[WorklogEntry]:
        return _sorted_newest_first([entry for entry in self._entries.values() if criteria.matches(entry)])

    async def create(self, entry: WorklogEntry) -> WorklogEntry:
        stored = entry if entry.id else entry.with_id(_new_entry_id())
        self._entries[stored.id] = stored
        return stored

    async def delete(self, entry_id: str) -> None:
        self._entries.pop(entry_id, None)

    async def delete_by_criteria(self, criteria: SearchCriteria) -> int:
        matched = await self.search(criteria)
        for entry in matched:
            self._entries.pop(entry.id, None)
        return len(matched)


class SQLiteWorklogRepository:
    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS worklog_entries (
            id TEXT PRIMARY KEY,
            issue_key TEXT NOT NULL,
            summary TEXT NOT NULL,
            project_name TEXT NOT NULL,
            author_account_id TEXT NOT NULL,
            started TEXT NOT NULL,
            started_epoch REAL NOT NULL,
            time_spent_seconds INTEGER NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_worklog_entries_author_started
            ON worklog_entries(author_account_id, started_epoch);
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    @staticmethod
    def _where(criteria: SearchCriteria) -> tuple[str, list[Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        if criteria.project_names:
            clauses.append(f"project_name IN ({', '.join('?' for _ in criteria.project_names)})")
            params.extend(criteria.project_names)
        if criteria.author_account_ids:
            clauses.append(f"author_account_id IN ({', '.join('?' for _ in criteria.author_account_ids)})")
            params.extend(criteria.author_account_ids)
        date_from, date_to = criteria.bounds()
        if date_from is not None:
            clauses.append("started_epoch >= ?")
            params.append(date_from.timestamp())
        if date_to is not None:
            clauses.append("started_epoch <= ?")
            params.append(date_to.timestamp())
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> WorklogEntry:
        return WorklogEntry(
            id=str(row["id"]),
            issue_key=str(row["issue_key"]),
            summary=str(row["summary"] or ""),
            project_name=str(row["project_name"] or ""),
            author_account_id=str(row["author_account_id"] or ""),
            started=str(row["started"]),
            time_spent_seconds=int(row["time_spent_seconds"]),
        )

    def search_sync(self, criteria: SearchCriteria) -> list[WorklogEntry]:
        where, params = self._where(criteria)
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    f"""
                    SELECT id, issue_key, summary, project_name, author_account_id, started, time_spent_seconds
                    FROM worklog_entries
                    {where}
                    ORDER BY started_epoch DESC
                    """,  # nosec B608
                    params,
                ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def create_sync(self, entry: WorklogEntry) -> WorklogEntry:
        stored = entry if entry.id else entry.with_id(_new_entry_id())
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO worklog_entries(
                        id, issue_key, summary, project_name, author_account_id,
                        started, started_epoch, time_spent_seconds
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        stored.id,
                        stored.issue_key,
                        stored.summary,
                        stored.project_name,
                        stored.author_account_id,
                        stored.started,
                        stored.started_at.timestamp(),
                        stored.time_spent_seconds,
                    ),
                )
                conn.commit()
        return stored

    def delete_sync(self, entry_id: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute("DELETE FROM worklog_entries WHERE id = ?", (str(entry_id),))
                conn.commit()

    def delete_by_criteria_sync(self, criteria: SearchCriteria) -> int:
        where, params = self._where(criteria)
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(f"DELETE FROM worklog_entries {where}", params)  # nosec B608
                conn.commit()
                return int(cursor.rowcount)

    async def search(self, criteria: SearchCriteria) -> list[WorklogEntry]:
        return await asyncio.to_thread(self.search_sync, criteria)

    async def create(self, entry: WorklogEntry) -> WorklogEntry:
        return await asyncio.to_thread(self.create_sync, entry)

    async def delete(self, entry_id: str) -> None:
        await asyncio.to_thread(self.delete_sync, entry_id)

    async def delete_by_criteria(self, criteria: SearchCriteria) -> int:
        return await asyncio.to_thread(self.delete_by_criteria_sync, criteria)
