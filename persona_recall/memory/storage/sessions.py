from __future__ import annotations

from typing import List, Optional

import aiosqlite

from ...models import ConversationSession, ConversationTurn, new_id, utc_now
from .utils import _dump_json, _format_ts, _load_json_object, _parse_ts, _sqlite_memory_connection

_SESSION_COLUMNS = "session_id, persona_id, user_id, modality, started_at, ended_at"


def _row_to_session(row: aiosqlite.Row) -> ConversationSession:
    return ConversationSession(
        id=str(row["session_id"]),
        persona_id=str(row["persona_id"]),
        user_id=str(row["user_id"]),
        modality=str(row["modality"]),
        started_at=_parse_ts(row["started_at"]),
        ended_at=_parse_ts(row["ended_at"]) if row["ended_at"] else None,
    )


class MemorySessionsMixin:
    async def start_session(self, persona_id: str, user_id: str, modality: str = "text") -> ConversationSession:
        """Open a session, ending any still-active one for the same user/persona pair."""
        session = ConversationSession(
            id=new_id("sess"),
            persona_id=persona_id,
            user_id=user_id,
            modality=modality,
        )
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute(
                """
                UPDATE conversation_sessions
                SET ended_at = ?
                WHERE persona_id = ? AND user_id = ? AND ended_at IS NULL
                """,
                (_format_ts(session.started_at), persona_id, user_id),
            )
            await db.execute(
                f"""
                INSERT INTO conversation_sessions ({_SESSION_COLUMNS})
                VALUES (?, ?, ?, ?, ?, NULL)
                """,
                (session.id, persona_id, user_id, modality, _format_ts(session.started_at)),
            )
            await db.commit()
        return session

    async def end_session(self, session_id: str) -> None:
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute(
                "UPDATE conversation_sessions SET ended_at = ? WHERE session_id = ? AND ended_at IS NULL",
                (_format_ts(utc_now()), session_id),
            )
            await db.commit()

    async def get_session(self, session_id: str) -> Optional[ConversationSession]:
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                f"SELECT {_SESSION_COLUMNS} FROM conversation_sessions WHERE session_id = ?",
                (session_id,),
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return None
        return _row_to_session(row)

    async def get_active_session(self, persona_id: str, user_id: str) -> Optional[ConversationSession]:
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                f"""
                SELECT {_SESSION_COLUMNS}
                FROM conversation_sessions
                WHERE persona_id = ? AND user_id = ? AND ended_at IS NULL
                ORDER BY started_at DESC
                LIMIT 1
                """,
                (persona_id, user_id),
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return None
        return _row_to_session(row)

    async def append_turn(self, turn: ConversationTurn) -> bool:
        async def _write() -> bool:
            async with _sqlite_memory_connection(self.db_path) as db:
                await db.execute(
                    """
                    INSERT INTO conversation_turns (
                        turn_id, session_id, sender, content, emotion, metadata_json, created_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(turn_id) DO NOTHING
                    """,
                    (
                        turn.id,
                        turn.session_id,
                        turn.sender,
                        turn.content,
                        turn.emotion,
                        _dump_json(turn.metadata),
                        _format_ts(turn.timestamp),
                    ),
                )
                await db.commit()
            return True

        return await self._write_with_retry("append_turn", _write, False)

    async def get_recent_turns(self, session_id: str, limit: int = 10) -> List[ConversationTurn]:
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                """
                SELECT turn_id, session_id, sender, content, emotion, metadata_json, created_at
                FROM conversation_turns
                WHERE session_id = ?
                ORDER BY seq DESC
                LIMIT ?
                """,
                (session_id, max(1, int(limit))),
            ) as cursor:
                rows = await cursor.fetchall()

        turns = [
            ConversationTurn(
                id=str(row["turn_id"]),
                session_id=str(row["session_id"]),
                sender=str(row["sender"]),
                content=str(row["content"]),
                emotion=row["emotion"],
                metadata=_load_json_object(row["metadata_json"]),
                timestamp=_parse_ts(row["created_at"]),
            )
            for row in rows
        ]
        turns.reverse()
        return turns
