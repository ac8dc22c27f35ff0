from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Protocol

import aiosqlite
import numpy as np

from ...models import Memory, ScoredMemory
from .utils import (
    _clamp,
    _dump_json,
    _format_ts,
    _load_json_object,
    _parse_ts,
    _sqlite_memory_connection,
    cosine_similarities,
    decode_embedding,
    encode_embedding,
)

logger = logging.getLogger("persona_recall")

_MEMORY_COLUMNS = (
    "memory_id, persona_id, content, memory_type, source, source_url, "
    "importance, embedding, metadata_json, created_at"
)


class _Embedder(Protocol):
    async def embed(self, text: str) -> list[float]: ...


def _row_to_memory(row: aiosqlite.Row, *, with_embedding: bool = True) -> Memory:
    embedding: list[float] = []
    if with_embedding:
        embedding = decode_embedding(row["embedding"]).tolist()
    return Memory(
        id=str(row["memory_id"]),
        persona_id=str(row["persona_id"]),
        content=str(row["content"]),
        type=str(row["memory_type"]),
        source=str(row["source"]),
        source_url=row["source_url"],
        importance=float(row["importance"]),
        embedding=embedding,
        metadata=_load_json_object(row["metadata_json"]),
        created_at=_parse_ts(row["created_at"]),
    )


class MemoryRecordsMixin:
    embedder: _Embedder | None
    similarity_threshold: float

    async def save_memories(self, memories: Iterable[Memory]) -> int:
        """Upsert memories by id and return how many rows were written.

        Records with empty content are skipped; importance is clamped again here
        so callers that mutate a Memory after construction cannot bypass it.
        """
        rows: list[tuple[Any, ...]] = []
        for memory in memories:
            if not memory.is_persistable:
                continue
            embedding = list(memory.embedding or [])
            rows.append(
                (
                    memory.id,
                    memory.persona_id,
                    memory.content,
                    memory.type,
                    memory.source,
                    memory.source_url,
                    _clamp(float(memory.importance), 0.0, 1.0),
                    encode_embedding(embedding) if embedding else None,
                    len(embedding),
                    _dump_json(memory.metadata),
                    _format_ts(memory.created_at),
                )
            )
        if not rows:
            return 0

        async def _write() -> int:
            async with _sqlite_memory_connection(self.db_path) as db:
                await db.executemany(
                    """
                    INSERT INTO memories (
                        memory_id, persona_id, content, memory_type, source, source_url,
                        importance, embedding, embedding_dim, metadata_json, created_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(memory_id) DO UPDATE SET
                        persona_id = excluded.persona_id,
                        content = excluded.content,
                        memory_type = excluded.memory_type,
                        source = excluded.source,
                        source_url = excluded.source_url,
                        importance = excluded.importance,
                        embedding = excluded.embedding,
                        embedding_dim = excluded.embedding_dim,
                        metadata_json = excluded.metadata_json,
                        created_at = excluded.created_at
                    """,
                    rows,
                )
                await db.commit()
            return len(rows)

        saved = await self._write_with_retry("save_memories", _write, 0)
        if saved:
            logger.debug("Saved memories count=%s persona=%s", saved, rows[0][1])
        return saved

    async def get_memory(self, memory_id: str) -> Memory | None:
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                f"SELECT {_MEMORY_COLUMNS} FROM memories WHERE memory_id = ?",
                (memory_id,),
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return None
        return _row_to_memory(row)

    async def count_memories(self, persona_id: str) -> int:
        async with _sqlite_memory_connection(self.db_path) as db:
            async with db.execute("SELECT COUNT(*) FROM memories WHERE persona_id = ?", (persona_id,)) as cursor:
                row = await cursor.fetchone()
        return int(row[0]) if row else 0

    async def list_memories(self, persona_id: str, limit: int = 100) -> List[Memory]:
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                f"""
                SELECT {_MEMORY_COLUMNS}
                FROM memories
                WHERE persona_id = ?
                ORDER BY created_at DESC, memory_id DESC
                LIMIT ?
                """,
                (persona_id, max(1, int(limit))),
            ) as cursor:
                rows = await cursor.fetchall()
        return [_row_to_memory(row, with_embedding=False) for row in rows]

    async def get_memory_summary(self, persona_id: str) -> Dict[str, object]:
        async with _sqlite_memory_connection(self.db_path) as db:
            async with db.execute(
                "SELECT memory_type, COUNT(*) FROM memories WHERE persona_id = ? GROUP BY memory_type",
                (persona_id,),
            ) as cursor:
                by_type = {str(row[0]): int(row[1]) for row in await cursor.fetchall()}
            async with db.execute(
                "SELECT source, COUNT(*) FROM memories WHERE persona_id = ? GROUP BY source",
                (persona_id,),
            ) as cursor:
                by_source = {str(row[0]): int(row[1]) for row in await cursor.fetchall()}
        recent = await self.list_memories(persona_id, limit=10)
        return {
            "total": sum(by_type.values()),
            "by_type": by_type,
            "by_source": by_source,
            "recent": recent,
        }

    async def search_memories(
        self,
        persona_id: str,
        query_text: str,
        k: int = 15,
        *,
        threshold: float | None = None,
    ) -> List[ScoredMemory]:
        if k <= 0 or not " ".join(str(query_text or "").split()):
            return []
        if self.embedder is None:
            logger.warning("Memory search skipped: no embedder configured persona=%s", persona_id)
            return []

        try:
            query_vector = await self.embedder.embed(query_text)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Memory search query embedding failed persona=%s: %s", persona_id, exc)
            return []
        if not query_vector:
            return []

        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                f"""
                SELECT {_MEMORY_COLUMNS}
                FROM memories
                WHERE persona_id = ? AND embedding_dim = ?
                """,
                (persona_id, len(query_vector)),
            ) as cursor:
                rows = await cursor.fetchall()
        if not rows:
            return []

        matrix = np.vstack([decode_embedding(row["embedding"]) for row in rows])
        sims = cosine_similarities(query_vector, matrix)
        cutoff = self.similarity_threshold if threshold is None else float(threshold)

        scored: list[ScoredMemory] = []
        for row, sim in zip(rows, sims.tolist()):
            if not sim >= cutoff:
                continue
            scored.append(ScoredMemory(memory=_row_to_memory(row), similarity=float(sim)))

        scored.sort(
            key=lambda item: (item.similarity, item.memory.importance, item.memory.created_at.timestamp()),
            reverse=True,
        )
        return scored[: int(k)]
