"""
Manages the SQLite progress ledger: tracked manga, per-chapter state, the
operational log and persisted settings.
"""

import asyncio
import json
import logging
import sqlite3
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from mdown.exceptions import InvalidTransitionError, LedgerCorruptionError
from mdown.models.catalog import (
    Chapter,
    ChapterState,
    LedgerDiff,
    LedgerEntry,
    Manga,
)

log = logging.getLogger(__name__)

LEDGER_FILENAME = "mdown.sqlite"

DEFAULT_SETTINGS = {
    "folder": "name",
    "stat": "false",
    "backup": "true",
    "max_consecutive": "40",
}

_SCHEMA = """
CREATE TABLE IF NOT EXISTS manga (
    id TEXT PRIMARY KEY NOT NULL,
    title TEXT,
    folder TEXT,
    status TEXT,
    cover TEXT,
    language TEXT,
    available_languages TEXT,
    updated_at TIMESTAMP
);
CREATE TABLE IF NOT EXISTS chapters (
    id TEXT PRIMARY KEY NOT NULL,
    manga_id TEXT NOT NULL,
    number TEXT,
    volume TEXT,
    language TEXT,
    title TEXT,
    pages INTEGER,
    state TEXT NOT NULL,
    tier TEXT,
    archive_path TEXT,
    remote_updated_at TEXT,
    changed_at TIMESTAMP
);
CREATE INDEX IF NOT EXISTS idx_chapters_manga ON chapters(manga_id);
CREATE TABLE IF NOT EXISTS log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id TEXT NOT NULL,
    logged_at TIMESTAMP NOT NULL,
    level TEXT NOT NULL,
    manga_id TEXT,
    chapter_id TEXT,
    message TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_log_run ON log(run_id);
CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY NOT NULL,
    value TEXT NOT NULL
);
"""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _entry_from_row(row: sqlite3.Row) -> LedgerEntry:
    return LedgerEntry(
        manga_id=row["manga_id"],
        chapter_id=row["id"],
        state=ChapterState(row["state"]),
        changed_at=row["changed_at"] or "",
        number=row["number"] or "",
        tier=row["tier"] or "",
        archive_path=row["archive_path"] or "",
        remote_updated_at=row["remote_updated_at"] or "",
    )


class ProgressLedger:
    """
    A SQLite ledger with a single serialized writer.

    Every mutation runs in a worker thread while holding one asyncio lock, so
    writes never interleave. Reads open their own WAL connection and do not wait
    for the writer. A chapter state change and its log entry always commit in
    the same transaction.
    """

    def __init__(self, data_dir: Path, run_id: str | None = None, pool_size: int = 5):
        self.data_dir = data_dir
        self.db_path = data_dir / LEDGER_FILENAME
        self.run_id = run_id or uuid.uuid4().hex[:12]
        self._write_lock = asyncio.Lock()
        self._read_semaphore = asyncio.Semaphore(pool_size)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self._initialize_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Gets a new database connection with WAL and row access by name."""
        try:
            conn = sqlite3.connect(self.db_path, timeout=30, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
            return conn
        except sqlite3.DatabaseError as e:
            raise LedgerCorruptionError(
                f"Cannot open ledger at '{self.db_path}': {e}"
            ) from e

    def _initialize_db(self) -> None:
        """
        Creates the schema if missing and runs a quick integrity check.
        A ledger that fails the check is reported, never repaired.
        """
        conn = self._get_connection()
        try:
            with conn:
                conn.executescript(_SCHEMA)
            result = conn.execute("PRAGMA quick_check;").fetchone()[0]
        except sqlite3.DatabaseError as e:
            raise LedgerCorruptionError(
                f"Ledger at '{self.db_path}' is unreadable: {e}"
            ) from e
        finally:
            conn.close()
        if result != "ok":
            raise LedgerCorruptionError(
                f"Ledger at '{self.db_path}' failed its integrity check: {result}"
            )

    async def _write(self, func, *args):
        """Runs a synchronous mutation while holding the single-writer lock."""
        async with self._write_lock:
            return await asyncio.to_thread(func, *args)

    async def _read(self, func, *args):
        async with self._read_semaphore:
            return await asyncio.to_thread(func, *args)

    def _insert_log(
        self,
        conn: sqlite3.Connection,
        message: str,
        level: str = "INFO",
        manga_id: str | None = None,
        chapter_id: str | None = None,
    ) -> None:
        conn.execute(
            "INSERT INTO log (run_id, logged_at, level, manga_id, chapter_id, message)"
            " VALUES (?, ?, ?, ?, ?, ?)",
            (self.run_id, _now(), level, manga_id, chapter_id, message),
        )

    # Chapters

    def _transition_sync(
        self,
        chapter: Chapter,
        target: ChapterState,
        message: str,
        tier: str,
        archive_path: str,
        adopting: bool = False,
    ) -> LedgerEntry:
        conn = self._get_connection()
        try:
            with conn:
                row = conn.execute(
                    "SELECT * FROM chapters WHERE id = ?", (chapter.id,)
                ).fetchone()
                current = ChapterState(row["state"]) if row else ChapterState.PENDING
                # A matching archive on disk proves completion, even after a failure.
                adoptable = adopting and current in (
                    ChapterState.PENDING,
                    ChapterState.FAILED,
                )
                checked = row is not None or target is not ChapterState.PENDING
                if checked and not adoptable:
                    if not current.can_transition_to(target):
                        raise InvalidTransitionError(
                            f"Chapter {chapter.id} cannot move from "
                            f"{current.value} to {target.value}."
                        )
                changed_at = _now()
                conn.execute(
                    """
                    INSERT INTO chapters (id, manga_id, number, volume, language,
                        title, pages, state, tier, archive_path, remote_updated_at,
                        changed_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        state = excluded.state,
                        tier = COALESCE(NULLIF(excluded.tier, ''), chapters.tier),
                        archive_path = COALESCE(
                            NULLIF(excluded.archive_path, ''), chapters.archive_path),
                        remote_updated_at = excluded.remote_updated_at,
                        pages = excluded.pages,
                        changed_at = excluded.changed_at
                    """,
                    (
                        chapter.id,
                        chapter.manga_id,
                        chapter.number,
                        chapter.volume,
                        chapter.language,
                        chapter.title,
                        chapter.pages,
                        target.value,
                        tier,
                        archive_path,
                        chapter.updated_at,
                        changed_at,
                    ),
                )
                level = "ERROR" if target is ChapterState.FAILED else "INFO"
                self._insert_log(conn, message, level, chapter.manga_id, chapter.id)
                updated = conn.execute(
                    "SELECT * FROM chapters WHERE id = ?", (chapter.id,)
                ).fetchone()
            return _entry_from_row(updated)
        except sqlite3.Error as e:
            log.error(f"[red]Ledger write failed for chapter {chapter.id}: {e}[/red]")
            raise
        finally:
            conn.close()

    async def transition(
        self,
        chapter: Chapter,
        target: ChapterState,
        message: str = "",
        tier: str = "",
        archive_path: str = "",
    ) -> LedgerEntry:
        """
        Moves a chapter to `target` and appends a log entry in one transaction.

        Raises:
            InvalidTransitionError: If the move would regress the chapter state.
        """
        entry = await self._write(
            self._transition_sync,
            chapter,
            target,
            message or f"{chapter.label} -> {target.value}",
            tier,
            archive_path,
        )
        chapter.state = entry.state
        return entry

    async def adopt_archive(
        self, chapter: Chapter, tier: str, archive_path: str, message: str = ""
    ) -> LedgerEntry:
        """
        Records an archive found on disk whose metadata names this chapter.

        Unlike `transition`, this also moves a failed row to archived: a run
        that crashed between promoting the archive and committing it leaves
        such a row behind once it has been recovered.

        Raises:
            InvalidTransitionError: If the chapter is already archived.
        """
        entry = await self._write(
            self._transition_sync,
            chapter,
            ChapterState.ARCHIVED,
            message or f"{chapter.label} adopted from an existing archive",
            tier,
            archive_path,
            True,
        )
        chapter.state = entry.state
        return entry

    def _refresh_archived_sync(
        self, chapter: Chapter, message: str, tier: str, archive_path: str
    ) -> LedgerEntry:
        conn = self._get_connection()
        try:
            with conn:
                cursor = conn.execute(
                    """
                    UPDATE chapters SET tier = ?, archive_path = ?,
                        remote_updated_at = ?, pages = ?, changed_at = ?
                    WHERE id = ? AND state = 'archived'
                    """,
                    (
                        tier,
                        archive_path,
                        chapter.updated_at,
                        chapter.pages,
                        _now(),
                        chapter.id,
                    ),
                )
                if cursor.rowcount != 1:
                    raise InvalidTransitionError(
                        f"Chapter {chapter.id} has no archived row to refresh."
                    )
                self._insert_log(conn, message, "INFO", chapter.manga_id, chapter.id)
                row = conn.execute(
                    "SELECT * FROM chapters WHERE id = ?", (chapter.id,)
                ).fetchone()
            return _entry_from_row(row)
        finally:
            conn.close()

    async def refresh_archived(
        self, chapter: Chapter, tier: str, archive_path: str, message: str = ""
    ) -> LedgerEntry:
        """
        Records a replacement archive for a chapter that was already archived.
        The state stays archived; only the archive details and the log change.
        """
        return await self._write(
            self._refresh_archived_sync,
            chapter,
            message or f"{chapter.label} re-archived",
            tier,
            archive_path,
        )

    def _fail_interrupted_sync(self) -> int:
        conn = self._get_connection()
        try:
            with conn:
                rows = conn.execute(
                    "SELECT id, manga_id FROM chapters WHERE state IN (?, ?)",
                    (ChapterState.DOWNLOADING.value, ChapterState.ASSEMBLING.value),
                ).fetchall()
                for row in rows:
                    conn.execute(
                        "UPDATE chapters SET state = ?, changed_at = ? WHERE id = ?",
                        (ChapterState.FAILED.value, _now(), row["id"]),
                    )
                    self._insert_log(
                        conn,
                        "Interrupted by an earlier run",
                        "WARNING",
                        row["manga_id"],
                        row["id"],
                    )
            return len(rows)
        finally:
            conn.close()

    async def fail_interrupted(self) -> int:
        """
        Closes out chapters a crashed or killed run left mid-flight by moving
        them forward to failed, from where a new attempt may start.
        """
        count = await self._write(self._fail_interrupted_sync)
        if count:
            log.info(
                f"[yellow]Recovered {count} chapter(s) interrupted by an earlier run."
                "[/yellow]"
            )
        return count

    def _chapters_for_sync(self, manga_id: str) -> dict[str, LedgerEntry]:
        conn = self._get_connection()
        try:
            rows = conn.execute(
                "SELECT * FROM chapters WHERE manga_id = ?", (manga_id,)
            ).fetchall()
            return {row["id"]: _entry_from_row(row) for row in rows}
        finally:
            conn.close()

    async def chapters_for(self, manga_id: str) -> dict[str, LedgerEntry]:
        """Returns every ledger entry of a manga keyed by chapter id."""
        return await self._read(self._chapters_for_sync, manga_id)

    async def get_chapter(self, chapter_id: str) -> LedgerEntry | None:
        def _get() -> LedgerEntry | None:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT * FROM chapters WHERE id = ?", (chapter_id,)
                ).fetchone()
                return _entry_from_row(row) if row else None
            finally:
                conn.close()

        return await self._read(_get)

    # Manga

    def _put_manga_sync(self, manga: Manga, language: str, message: str) -> None:
        conn = self._get_connection()
        try:
            with conn:
                conn.execute(
                    """
                    INSERT INTO manga (id, title, folder, status, cover, language,
                        available_languages, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        title = excluded.title,
                        folder = excluded.folder,
                        status = excluded.status,
                        cover = excluded.cover,
                        language = excluded.language,
                        available_languages = excluded.available_languages,
                        updated_at = excluded.updated_at
                    """,
                    (
                        manga.id,
                        manga.title,
                        manga.folder,
                        manga.status,
                        manga.cover,
                        language,
                        json.dumps(manga.available_languages),
                        _now(),
                    ),
                )
                self._insert_log(conn, message, "INFO", manga.id)
        finally:
            conn.close()

    async def put_manga(self, manga: Manga, language: str, message: str = "") -> None:
        """Upserts the manga-level row together with a log entry."""
        await self._write(
            self._put_manga_sync, manga, language, message or f"Tracked '{manga.title}'"
        )

    def _list_manga_sync(self) -> list[dict[str, Any]]:
        conn = self._get_connection()
        try:
            rows = conn.execute(
                """
                SELECT m.*,
                    SUM(CASE WHEN c.state = 'archived' THEN 1 ELSE 0 END) AS archived,
                    SUM(CASE WHEN c.state = 'failed' THEN 1 ELSE 0 END) AS failed,
                    COUNT(c.id) AS total
                FROM manga m LEFT JOIN chapters c ON c.manga_id = m.id
                GROUP BY m.id
                ORDER BY m.title
                """
            ).fetchall()
            result = []
            for row in rows:
                item = dict(row)
                item["available_languages"] = json.loads(
                    item.get("available_languages") or "[]"
                )
                item["archived"] = item["archived"] or 0
                item["failed"] = item["failed"] or 0
                result.append(item)
            return result
        finally:
            conn.close()

    async def list_manga(self) -> list[dict[str, Any]]:
        """Lists tracked manga with per-state chapter counts."""
        return await self._read(self._list_manga_sync)

    async def get_manga(self, manga_id: str) -> dict[str, Any] | None:
        rows = await self.list_manga()
        return next((row for row in rows if row["id"] == manga_id), None)

    def _delete_manga_sync(self, manga_id: str) -> int:
        conn = self._get_connection()
        try:
            with conn:
                deleted = conn.execute(
                    "DELETE FROM chapters WHERE manga_id = ?", (manga_id,)
                ).rowcount
                conn.execute("DELETE FROM manga WHERE id = ?", (manga_id,))
                self._insert_log(
                    conn, f"Removed manga and {deleted} chapter rows", "INFO", manga_id
                )
            return deleted
        finally:
            conn.close()

    async def delete_manga(self, manga_id: str) -> int:
        return await self._write(self._delete_manga_sync, manga_id)

    # Diff

    def _diff_sync(self, manga_id: str, remote: list[Chapter]) -> LedgerDiff:
        entries = self._chapters_for_sync(manga_id)
        diff = LedgerDiff(manga_id=manga_id)
        for chapter in remote:
            entry = entries.get(chapter.id)
            if entry is None or entry.state is not ChapterState.ARCHIVED:
                diff.new.append(chapter)
            elif entry.archive_path and not Path(entry.archive_path).is_file():
                diff.missing.append(chapter)
            elif (
                chapter.updated_at
                and entry.remote_updated_at
                and chapter.updated_at > entry.remote_updated_at
            ):
                diff.outdated.append(chapter)
        return diff

    async def diff(self, manga_id: str, remote: list[Chapter]) -> LedgerDiff:
        """
        Compares a remote chapter index against the ledger.

        Returns chapters with no archived row (new), archived chapters the
        catalog has updated since (outdated), and archived chapters whose file
        disappeared (missing).
        """
        return await self._read(self._diff_sync, manga_id, remote)

    # Log

    async def log_event(
        self,
        message: str,
        level: str = "INFO",
        manga_id: str | None = None,
        chapter_id: str | None = None,
    ) -> None:
        """Appends an entry to the operational log."""

        def _append() -> None:
            conn = self._get_connection()
            try:
                with conn:
                    self._insert_log(conn, message, level, manga_id, chapter_id)
            finally:
                conn.close()

        await self._write(_append)

    def _read_log_sync(self, run_id: str | None, limit: int) -> list[dict[str, Any]]:
        conn = self._get_connection()
        try:
            if run_id:
                rows = conn.execute(
                    "SELECT * FROM log WHERE run_id = ? ORDER BY id LIMIT ?",
                    (run_id, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM (SELECT * FROM log ORDER BY id DESC LIMIT ?)"
                    " ORDER BY id",
                    (limit,),
                ).fetchall()
            return [dict(row) for row in rows]
        finally:
            conn.close()

    async def read_log(
        self, run_id: str | None = None, limit: int = 200
    ) -> list[dict[str, Any]]:
        return await self._read(self._read_log_sync, run_id, limit)

    async def list_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        """Lists recent runs with their first timestamp and entry counts."""

        def _runs() -> list[dict[str, Any]]:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    """
                    SELECT run_id, MIN(logged_at) AS started_at, COUNT(*) AS entries,
                        SUM(CASE WHEN level = 'ERROR' THEN 1 ELSE 0 END) AS errors
                    FROM log GROUP BY run_id ORDER BY MIN(id) DESC LIMIT ?
                    """,
                    (limit,),
                ).fetchall()
                return [dict(row) for row in rows]
            finally:
                conn.close()

        return await self._read(_runs)

    # Settings

    def _settings_sync(self) -> dict[str, str]:
        conn = self._get_connection()
        try:
            rows = conn.execute("SELECT key, value FROM settings").fetchall()
        finally:
            conn.close()
        settings = dict(DEFAULT_SETTINGS)
        settings.update({row["key"]: row["value"] for row in rows})
        return settings

    async def get_settings(self) -> dict[str, str]:
        """Returns persisted settings merged over their defaults."""
        return await self._read(self._settings_sync)

    def get_settings_blocking(self) -> dict[str, str]:
        """Synchronous variant for callers outside an event loop."""
        return self._settings_sync()

    async def set_setting(self, key: str, value: str) -> None:
        if key not in DEFAULT_SETTINGS:
            raise KeyError(f"Unknown setting '{key}'")

        def _set() -> None:
            conn = self._get_connection()
            try:
                with conn:
                    conn.execute(
                        "INSERT INTO settings (key, value) VALUES (?, ?)"
                        " ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                        (key, value),
                    )
                    self._insert_log(conn, f"Setting '{key}' set to '{value}'")
            finally:
                conn.close()

        await self._write(_set)

    async def clear_settings(self) -> None:
        def _clear() -> None:
            conn = self._get_connection()
            try:
                with conn:
                    conn.execute("DELETE FROM settings")
                    self._insert_log(conn, "Settings reset to defaults")
            finally:
                conn.close()

        await self._write(_clear)

    async def reset(self) -> None:
        """Removes every tracked manga, chapter and log entry. Settings survive."""

        def _reset() -> None:
            conn = self._get_connection()
            try:
                with conn:
                    conn.execute("DELETE FROM chapters")
                    conn.execute("DELETE FROM manga")
                    conn.execute("DELETE FROM log")
                    self._insert_log(conn, "Ledger reset")
            finally:
                conn.close()

        await self._write(_reset)
