"""
Manages the SQLite ledger that records fetched segments and extracted items so
interrupted jobs can resume without refetching.
"""

import asyncio
import logging
import sqlite3
from pathlib import Path
from typing import Any, NamedTuple, Optional

log = logging.getLogger(__name__)


class ExtractionRecord(NamedTuple):
    audio_path: Path
    duration: float
    source_uri: str
    settings: str


class SegmentLedger:
    """
    A thread-safe SQLite ledger of completed work, keyed by source item.

    A segment counts as already fetched only when its file on disk still has
    exactly the byte length recorded here.
    """

    def __init__(self, db_path: Path, pool_size: int = 4):
        self.db_path = db_path
        self._connection_semaphore = asyncio.Semaphore(pool_size)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Gets a new database connection with optimized PRAGMA settings."""
        try:
            conn = sqlite3.connect(self.db_path, timeout=30, check_same_thread=False)
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
            conn.execute("PRAGMA temp_store=MEMORY;")
            return conn
        except sqlite3.Error as e:
            log.error(f"Failed to connect to ledger database: {e}")
            raise

    def _initialize_db(self) -> None:
        """Creates the ledger tables if they don't exist."""
        with self._get_connection() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS fetched_segments (
                    item_key TEXT NOT NULL,
                    seq_index INTEGER NOT NULL,
                    uri TEXT NOT NULL,
                    byte_length INTEGER NOT NULL,
                    fetched_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    PRIMARY KEY (item_key, seq_index)
                );
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS extracted_items (
                    item_key TEXT PRIMARY KEY NOT NULL,
                    audio_path TEXT NOT NULL,
                    duration REAL NOT NULL,
                    source_uri TEXT NOT NULL DEFAULT '',
                    settings TEXT NOT NULL DEFAULT '',
                    extracted_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                );
                """
            )
            # Ledgers written before source/settings tracking lack these columns
            columns = {row[1] for row in conn.execute("PRAGMA table_info(extracted_items)")}
            for column in ("source_uri", "settings"):
                if column not in columns:
                    log.debug(f"Adding column '{column}' to extracted_items")
                    conn.execute(
                        f"ALTER TABLE extracted_items ADD COLUMN {column} "
                        "TEXT NOT NULL DEFAULT ''"
                    )
            conn.commit()

    async def _run_in_executor(self, func, *args):
        """Runs a synchronous database function within the connection semaphore."""
        async with self._connection_semaphore:
            return await asyncio.to_thread(func, *args)

    def _record_segment_sync(
        self, item_key: str, index: int, uri: str, byte_length: int
    ) -> None:
        with self._get_connection() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO fetched_segments "
                "(item_key, seq_index, uri, byte_length) VALUES (?, ?, ?, ?)",
                (item_key, index, uri, byte_length),
            )
            conn.commit()

    async def record_segment(
        self, item_key: str, index: int, uri: str, byte_length: int
    ) -> None:
        """Records that a segment file was completely written."""
        await self._run_in_executor(
            self._record_segment_sync, item_key, index, uri, byte_length
        )

    def _recorded_lengths_sync(self, item_key: str) -> dict[int, tuple[str, int]]:
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT seq_index, uri, byte_length FROM fetched_segments "
                "WHERE item_key = ?",
                (item_key,),
            )
            return {row[0]: (row[1], row[2]) for row in cursor.fetchall()}

    async def recorded_lengths(self, item_key: str) -> dict[int, tuple[str, int]]:
        """Returns {index: (uri, byte_length)} for every recorded segment of an item."""
        return await self._run_in_executor(self._recorded_lengths_sync, item_key)

    def _record_extraction_sync(
        self,
        item_key: str,
        audio_path: str,
        duration: float,
        source_uri: str,
        settings: str,
    ) -> None:
        with self._get_connection() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO extracted_items "
                "(item_key, audio_path, duration, source_uri, settings) "
                "VALUES (?, ?, ?, ?, ?)",
                (item_key, audio_path, duration, source_uri, settings),
            )
            conn.commit()

    async def record_extraction(
        self,
        item_key: str,
        audio_path: Path,
        duration: float,
        source_uri: str = "",
        settings: str = "",
    ) -> None:
        """
        Records the measured duration of an item's extracted audio, along with
        the playlist it came from and the encoder settings that produced it.
        """
        await self._run_in_executor(
            self._record_extraction_sync,
            item_key,
            str(audio_path),
            duration,
            source_uri,
            settings,
        )

    def _get_extraction_sync(self, item_key: str) -> Optional[ExtractionRecord]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT audio_path, duration, source_uri, settings "
                "FROM extracted_items WHERE item_key = ?",
                (item_key,),
            ).fetchone()
        if not row:
            return None
        return ExtractionRecord(Path(row[0]), float(row[1]), row[2], row[3])

    async def get_extraction(self, item_key: str) -> Optional[ExtractionRecord]:
        """Returns the extraction record if the item was extracted in an earlier run."""
        return await self._run_in_executor(self._get_extraction_sync, item_key)

    def _forget_item_sync(self, item_key: str) -> None:
        with self._get_connection() as conn:
            conn.execute("DELETE FROM fetched_segments WHERE item_key = ?", (item_key,))
            conn.execute("DELETE FROM extracted_items WHERE item_key = ?", (item_key,))
            conn.commit()

    async def forget_item(self, item_key: str) -> None:
        """Drops every record of an item so the next run starts it from scratch."""
        await self._run_in_executor(self._forget_item_sync, item_key)

    def _get_stats_sync(self) -> dict[str, Any]:
        with self._get_connection() as conn:
            cur = conn.cursor()
            cur.execute(
                "SELECT item_key, COUNT(*), COALESCE(SUM(byte_length), 0) "
                "FROM fetched_segments GROUP BY item_key ORDER BY item_key"
            )
            segments = {row[0]: (row[1], row[2]) for row in cur.fetchall()}
            cur.execute("SELECT item_key, duration FROM extracted_items")
            extracted = {row[0]: row[1] for row in cur.fetchall()}
        return {"segments": segments, "extracted": extracted}

    async def get_stats(self) -> dict[str, Any]:
        """Per-item segment counts, bytes and extracted durations."""
        return await self._run_in_executor(self._get_stats_sync)
