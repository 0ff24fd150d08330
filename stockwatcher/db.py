"""SQLite-backed check history."""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional

from openpyxl import Workbook

from .models import CheckResult


SQLITE_PREFIX = "sqlite://"
EXPORT_HEADERS = [
    "store",
    "checked_at",
    "status",
    "in_stock_count",
    "error_count",
    "notes",
]


def resolve_sqlite_path(database_url: str) -> Path:
    """Translate a DATABASE_URL into a filesystem path."""
    if not database_url:
        raise ValueError("DATABASE_URL must not be empty")

    if database_url.startswith(SQLITE_PREFIX):
        raw_path = database_url[len(SQLITE_PREFIX) :]
        # Allow sqlite:///path/to/file and sqlite://path/to/file styles.
        if raw_path.startswith("/"):
            raw_path = raw_path[1:]
        path = Path(raw_path)
    else:
        path = Path(database_url)

    if not path.is_absolute():
        path = Path.cwd() / path

    return path.expanduser().resolve()


@dataclass(frozen=True)
class CheckEntry:
    """One persisted check."""

    store: str
    checked_at: str
    status: str
    in_stock_count: int
    error_count: int
    notes: Optional[str]


@dataclass
class CheckHistory:
    """Thin wrapper around sqlite3 for storing check outcomes."""

    path: Path

    def connect(self) -> sqlite3.Connection:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        return sqlite3.connect(self.path)

    def initialize(self) -> None:
        with self.connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS checks (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    store TEXT NOT NULL,
                    checked_at TEXT NOT NULL,
                    status TEXT NOT NULL,
                    in_stock_count INTEGER NOT NULL DEFAULT 0,
                    error_count INTEGER NOT NULL DEFAULT 0,
                    notes TEXT
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_checks_store ON checks(store, id)"
            )
            conn.commit()

    def record(self, result: CheckResult) -> None:
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO checks (store, checked_at, status, in_stock_count, error_count, notes)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    result.store,
                    result.checked_at,
                    result.status.value,
                    result.in_stock_count,
                    result.error_count,
                    _format_note(result),
                ),
            )
            conn.commit()

    def recent_checks(
        self, store: str | None = None, limit: int = 10
    ) -> List[CheckEntry]:
        query = """
            SELECT store, checked_at, status, in_stock_count, error_count, notes
            FROM checks
        """
        params: tuple = ()
        if store is not None:
            query += " WHERE store = ?"
            params = (store,)
        query += " ORDER BY id DESC LIMIT ?"
        params += (limit,)

        with self.connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [CheckEntry(*row) for row in rows]

    def iter_checks(self) -> Iterable[CheckEntry]:
        with self.connect() as conn:
            cursor = conn.execute(
                """
                SELECT store, checked_at, status, in_stock_count, error_count, notes
                FROM checks ORDER BY id
                """
            )
            for row in cursor.fetchall():
                yield CheckEntry(*row)

    def export_history_to_xlsx(self, export_path: Path) -> None:
        """Write the full check history to an Excel workbook."""
        workbook = Workbook()
        worksheet = workbook.active
        worksheet.title = "checks"
        worksheet.append(EXPORT_HEADERS)
        for entry in self.iter_checks():
            worksheet.append(
                [
                    entry.store,
                    entry.checked_at,
                    entry.status,
                    entry.in_stock_count,
                    entry.error_count,
                    entry.notes or "",
                ]
            )
        export_path.parent.mkdir(parents=True, exist_ok=True)
        workbook.save(export_path)


def _format_note(result: CheckResult) -> str | None:
    """Render a concise note for the stored check."""
    if result.error:
        return result.error
    if result.outcome is None:
        return None
    if result.outcome.errors:
        tags = sorted({tag for record in result.outcome.errors for tag in record.errors})
        return "errors: " + "; ".join(tags)
    if result.outcome.in_stock:
        return "\n".join(record.url or "" for record in result.outcome.in_stock)
    return None
