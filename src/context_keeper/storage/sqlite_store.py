"""SQLite storage backend.

Persists messages, chapters and archived memories with aiosqlite. Chapter
centroids are stored as float32 BLOBs and written at most once per chapter.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable

import aiosqlite
from loguru import logger

from ..embedding import EmbeddingService
from ..exceptions import StorageError
from ..models import Chapter, MemoryRecord, Message, Role


def _to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _from_iso(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class SQLiteStore:
    """aiosqlite implementation of ``ConversationStore``.

    Uses WAL mode for concurrent reads.
    """

    def __init__(self, db_path: str = "./data/context_keeper.db"):
        """Initialize SQLite store.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None
        logger.info(f"SQLiteStore initialized with db_path: {db_path}")

    async def initialize(self) -> None:
        """Create tables and indexes if they don't exist."""
        db_dir = Path(self.db_path).parent
        db_dir.mkdir(parents=True, exist_ok=True)

        self._db = await aiosqlite.connect(self.db_path)
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA foreign_keys=ON")

        await self._create_tables()
        await self._create_indexes()
        await self._db.commit()
        logger.info("SQLite database initialized successfully")

    async def close(self) -> None:
        """Close database connection."""
        if self._db:
            await self._db.close()
            self._db = None
            logger.info("SQLite database connection closed")

    def _conn(self) -> aiosqlite.Connection:
        if not self._db:
            raise StorageError(
                "Database not initialized. Call initialize() first.", path=self.db_path
            )
        return self._db

    async def _create_tables(self) -> None:
        db = self._conn()

        await db.execute("""
            CREATE TABLE IF NOT EXISTS chapters (
                chapter_id INTEGER PRIMARY KEY AUTOINCREMENT,
                title TEXT NOT NULL,
                summary TEXT NOT NULL,
                start_message_id INTEGER,
                end_message_id INTEGER,
                centroid BLOB,
                keywords TEXT,
                version INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL
            )
        """)

        await db.execute("""
            CREATE TABLE IF NOT EXISTS messages (
                message_id INTEGER PRIMARY KEY AUTOINCREMENT,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                created_at TEXT NOT NULL,
                chapter_id INTEGER,
                FOREIGN KEY (chapter_id) REFERENCES chapters(chapter_id)
                    ON DELETE SET NULL
            )
        """)

        await db.execute("""
            CREATE TABLE IF NOT EXISTS memories (
                memory_id INTEGER PRIMARY KEY AUTOINCREMENT,
                content TEXT NOT NULL,
                importance REAL DEFAULT 0.5,
                source_key TEXT UNIQUE,
                source_message_id INTEGER,
                privacy TEXT DEFAULT 'private',
                created_at TEXT NOT NULL,
                last_accessed_at TEXT NOT NULL
            )
        """)

    async def _create_indexes(self) -> None:
        db = self._conn()
        await db.execute("""
            CREATE INDEX IF NOT EXISTS idx_message_chapter
            ON messages(chapter_id, created_at)
        """)
        await db.execute("""
            CREATE INDEX IF NOT EXISTS idx_message_created
            ON messages(created_at)
        """)
        await db.execute("""
            CREATE INDEX IF NOT EXISTS idx_chapter_open
            ON chapters(end_message_id)
        """)
        # At most one open chapter, even across stores sharing the file
        await db.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_chapter_single_open
            ON chapters((end_message_id IS NULL)) WHERE end_message_id IS NULL
        """)

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_message(row) -> Message:
        return Message(
            id=row[0],
            role=Role(row[1]),
            content=row[2],
            created_at=_from_iso(row[3]),
            chapter_id=row[4],
        )

    async def create_message(
        self,
        role: Role | str,
        content: str,
        created_at: datetime | None = None,
        chapter_id: int | None = None,
    ) -> Message:
        db = self._conn()
        role = Role(role)
        created_at = created_at or datetime.now(timezone.utc)
        cursor = await db.execute(
            """
            INSERT INTO messages (role, content, created_at, chapter_id)
            VALUES (?, ?, ?, ?)
            """,
            (role.value, content, _to_iso(created_at), chapter_id),
        )
        await db.commit()
        message_id = cursor.lastrowid
        logger.debug(f"Message inserted: {message_id}")
        return Message(
            id=message_id,
            role=role,
            content=content,
            created_at=_from_iso(_to_iso(created_at)),
            chapter_id=chapter_id,
        )

    async def get_message(self, message_id: int) -> Message | None:
        db = self._conn()
        async with db.execute(
            """
            SELECT message_id, role, content, created_at, chapter_id
            FROM messages WHERE message_id = ?
            """,
            (message_id,),
        ) as cursor:
            row = await cursor.fetchone()
        return self._row_to_message(row) if row else None

    async def list_messages(
        self,
        chapter_id: int | None = None,
        roles: Iterable[Role | str] | None = None,
        after_id: int | None = None,
        before_id: int | None = None,
        after: datetime | None = None,
        before: datetime | None = None,
        newest_first: bool = False,
        limit: int | None = None,
    ) -> list[Message]:
        db = self._conn()
        clauses: list[str] = []
        params: list = []

        if chapter_id is not None:
            clauses.append("chapter_id = ?")
            params.append(chapter_id)
        if roles is not None:
            role_values = [Role(r).value for r in roles]
            if not role_values:
                return []
            clauses.append(f"role IN ({', '.join('?' for _ in role_values)})")
            params.extend(role_values)
        if after_id is not None:
            clauses.append("message_id > ?")
            params.append(after_id)
        if before_id is not None:
            clauses.append("message_id < ?")
            params.append(before_id)
        if after is not None:
            clauses.append("created_at > ?")
            params.append(_to_iso(after))
        if before is not None:
            clauses.append("created_at < ?")
            params.append(_to_iso(before))

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        order = "DESC" if newest_first else "ASC"
        sql = (
            "SELECT message_id, role, content, created_at, chapter_id FROM messages "
            f"{where} ORDER BY created_at {order}, message_id {order}"
        )
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        async with db.execute(sql, params) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_message(row) for row in rows]

    # ------------------------------------------------------------------
    # Chapters
    # ------------------------------------------------------------------

    _CHAPTER_COLUMNS = (
        "chapter_id, title, summary, start_message_id, end_message_id, "
        "centroid, keywords, version, created_at"
    )

    @staticmethod
    def _row_to_chapter(row) -> Chapter:
        return Chapter(
            id=row[0],
            title=row[1],
            summary=row[2],
            start_message_id=row[3],
            end_message_id=row[4],
            centroid=EmbeddingService.deserialize_embedding(row[5]) if row[5] else None,
            keywords=json.loads(row[6]) if row[6] else [],
            version=row[7],
            created_at=_from_iso(row[8]),
        )

    async def get_open_chapter(self) -> Chapter | None:
        db = self._conn()
        async with db.execute(
            f"""
            SELECT {self._CHAPTER_COLUMNS} FROM chapters
            WHERE end_message_id IS NULL
            ORDER BY created_at DESC, chapter_id DESC LIMIT 1
            """
        ) as cursor:
            row = await cursor.fetchone()
        return self._row_to_chapter(row) if row else None

    async def create_chapter(
        self,
        title: str,
        summary: str,
        start_message_id: int | None = None,
        keywords: list[str] | None = None,
    ) -> Chapter:
        db = self._conn()
        if await self.get_open_chapter() is not None:
            raise StorageError("Cannot open a chapter while another is open", path=self.db_path)

        created_at = _to_iso(datetime.now(timezone.utc))
        try:
            cursor = await db.execute(
                """
                INSERT INTO chapters (title, summary, start_message_id, keywords, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (title, summary, start_message_id, json.dumps(keywords or []), created_at),
            )
        except aiosqlite.IntegrityError as e:
            # ABORT only reverts this statement; pending writes stay intact
            raise StorageError(
                f"Cannot open a chapter while another is open: {e}", path=self.db_path
            ) from e
        await db.commit()
        logger.debug(f"Chapter created: {cursor.lastrowid}")
        return Chapter(
            id=cursor.lastrowid,
            title=title,
            summary=summary,
            start_message_id=start_message_id,
            keywords=list(keywords or []),
            created_at=_from_iso(created_at),
        )

    async def set_chapter_centroid(self, chapter_id: int, centroid: list[float]) -> bool:
        db = self._conn()
        cursor = await db.execute(
            "UPDATE chapters SET centroid = ? WHERE chapter_id = ? AND centroid IS NULL",
            (EmbeddingService.serialize_embedding(centroid), chapter_id),
        )
        await db.commit()
        return cursor.rowcount == 1

    async def close_chapter(
        self,
        chapter_id: int,
        expected_version: int,
        title: str,
        summary: str,
        keywords: list[str],
        end_message_id: int,
    ) -> bool:
        db = self._conn()
        cursor = await db.execute(
            """
            UPDATE chapters
            SET title = ?, summary = ?, keywords = ?, end_message_id = ?,
                version = version + 1
            WHERE chapter_id = ? AND version = ? AND end_message_id IS NULL
            """,
            (title, summary, json.dumps(keywords), end_message_id, chapter_id, expected_version),
        )
        await db.commit()
        return cursor.rowcount == 1

    async def list_closed_chapters(self, limit: int = 10) -> list[Chapter]:
        db = self._conn()
        async with db.execute(
            f"""
            SELECT {self._CHAPTER_COLUMNS} FROM chapters
            WHERE end_message_id IS NOT NULL
            ORDER BY created_at DESC, chapter_id DESC LIMIT ?
            """,
            (limit,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_chapter(row) for row in rows]

    # ------------------------------------------------------------------
    # Memories
    # ------------------------------------------------------------------

    _MEMORY_COLUMNS = (
        "memory_id, content, importance, source_key, source_message_id, "
        "privacy, created_at, last_accessed_at"
    )

    @staticmethod
    def _row_to_memory(row) -> MemoryRecord:
        return MemoryRecord(
            id=row[0],
            content=row[1],
            importance=row[2],
            source_key=row[3],
            source_message_id=row[4],
            privacy=row[5],
            created_at=_from_iso(row[6]),
            last_accessed_at=_from_iso(row[7]),
        )

    async def _get_memory_by_key(self, source_key: str) -> MemoryRecord | None:
        db = self._conn()
        async with db.execute(
            f"SELECT {self._MEMORY_COLUMNS} FROM memories WHERE source_key = ?",
            (source_key,),
        ) as cursor:
            row = await cursor.fetchone()
        return self._row_to_memory(row) if row else None

    async def create_memory(
        self,
        content: str,
        importance: float,
        source_key: str | None = None,
        source_message_id: int | None = None,
        privacy: str = "private",
    ) -> MemoryRecord:
        db = self._conn()
        now = _to_iso(datetime.now(timezone.utc))
        cursor = await db.execute(
            """
            INSERT INTO memories (
                content, importance, source_key, source_message_id,
                privacy, created_at, last_accessed_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(source_key) DO NOTHING
            """,
            (content, importance, source_key, source_message_id, privacy, now, now),
        )
        await db.commit()

        if source_key is not None:
            record = await self._get_memory_by_key(source_key)
            if record is not None:
                return record

        async with db.execute(
            f"SELECT {self._MEMORY_COLUMNS} FROM memories WHERE memory_id = ?",
            (cursor.lastrowid,),
        ) as row_cursor:
            row = await row_cursor.fetchone()
        return self._row_to_memory(row)

    async def list_memories(self, limit: int | None = None) -> list[MemoryRecord]:
        db = self._conn()
        sql = f"SELECT {self._MEMORY_COLUMNS} FROM memories ORDER BY memory_id DESC"
        params: tuple = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (limit,)
        async with db.execute(sql, params) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_memory(row) for row in rows]
