from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Awaitable, Callable, TypeVar

import aiosqlite

from .utils import _sqlite_memory_connection

logger = logging.getLogger("persona_recall")

T = TypeVar("T")


class MemorySchemaMixin:
    SCHEMA_VERSION = 1

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _allow_destructive_reset_on_mismatch() -> bool:
        raw = os.getenv("MEMORY_SQLITE_RESET_ON_SCHEMA_MISMATCH", "")
        return raw.strip().lower() in {"1", "true", "yes", "y", "on"}

    async def _has_user_tables(self, db: aiosqlite.Connection) -> bool:
        async with db.execute(
            """
            SELECT 1
            FROM sqlite_master
            WHERE type = 'table'
              AND name NOT LIKE 'sqlite_%'
            LIMIT 1
            """
        ) as cursor:
            row = await cursor.fetchone()
        return bool(row)

    async def init(self) -> None:
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            async with db.execute("PRAGMA user_version") as cursor:
                row = await cursor.fetchone()
            version = int(row[0]) if row else 0
            has_tables = await self._has_user_tables(db)

            if has_tables and version != self.SCHEMA_VERSION:
                if not self._allow_destructive_reset_on_mismatch():
                    raise RuntimeError(
                        "SQLite schema version mismatch detected. "
                        f"Found user_version={version}, supported={self.SCHEMA_VERSION}. "
                        "Set MEMORY_SQLITE_RESET_ON_SCHEMA_MISMATCH=1 to allow destructive reset."
                    )
                logger.warning(
                    "Resetting SQLite memory schema path=%s found_version=%s supported=%s",
                    self.db_path,
                    version,
                    self.SCHEMA_VERSION,
                )
                await self._reset_schema(db)
            else:
                await self._create_schema(db)

            await db.execute(f"PRAGMA user_version = {self.SCHEMA_VERSION}")
            await db.commit()

    async def _reset_schema(self, db: aiosqlite.Connection) -> None:
        for table in ("conversation_turns", "conversation_sessions", "memories", "persona_profiles"):
            await db.execute(f"DROP TABLE IF EXISTS {table}")
        await self._create_schema(db)

    async def _create_schema(self, db: aiosqlite.Connection) -> None:
        await db.executescript(
            """
            CREATE TABLE IF NOT EXISTS persona_profiles (
                persona_id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                relationship TEXT NOT NULL DEFAULT '',
                personality_traits TEXT NOT NULL DEFAULT '',
                common_phrases_json TEXT NOT NULL DEFAULT '[]',
                created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS memories (
                memory_id TEXT PRIMARY KEY,
                persona_id TEXT NOT NULL,
                content TEXT NOT NULL,
                memory_type TEXT NOT NULL DEFAULT 'fact',
                source TEXT NOT NULL DEFAULT 'text',
                source_url TEXT,
                importance REAL NOT NULL DEFAULT 0.5,
                embedding BLOB,
                embedding_dim INTEGER NOT NULL DEFAULT 0,
                metadata_json TEXT NOT NULL DEFAULT '{}',
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_memories_persona
                ON memories (persona_id, created_at);

            CREATE TABLE IF NOT EXISTS conversation_sessions (
                session_id TEXT PRIMARY KEY,
                persona_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                modality TEXT NOT NULL DEFAULT 'text',
                started_at TEXT NOT NULL,
                ended_at TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_sessions_pair_active
                ON conversation_sessions (persona_id, user_id, ended_at);

            CREATE TABLE IF NOT EXISTS conversation_turns (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                turn_id TEXT NOT NULL UNIQUE,
                session_id TEXT NOT NULL REFERENCES conversation_sessions(session_id) ON DELETE CASCADE,
                sender TEXT NOT NULL,
                content TEXT NOT NULL,
                emotion TEXT,
                metadata_json TEXT NOT NULL DEFAULT '{}',
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_turns_session
                ON conversation_turns (session_id, seq);
            """
        )

    async def _write_with_retry(self, op_name: str, op: Callable[[], Awaitable[T]], default: T) -> T:
        # One retry, then the write is logged and dropped.
        for attempt in (1, 2):
            try:
                return await op()
            except (aiosqlite.Error, OSError) as exc:
                if attempt == 1:
                    logger.warning("SQLite write failed op=%s; retrying once: %s", op_name, exc)
                    await asyncio.sleep(0.05)
                    continue
                logger.exception("SQLite write dropped after retry op=%s", op_name)
        return default
