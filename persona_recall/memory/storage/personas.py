from __future__ import annotations

import json
from typing import List, Optional

import aiosqlite

from ...models import PersonaProfile
from .utils import _sqlite_memory_connection


def _load_phrases(raw: object) -> list[str]:
    try:
        parsed = json.loads(str(raw or "[]"))
    except ValueError:
        return []
    if not isinstance(parsed, list):
        return []
    return [str(item).strip() for item in parsed if str(item).strip()]


def _row_to_profile(row: aiosqlite.Row) -> PersonaProfile:
    return PersonaProfile(
        id=str(row["persona_id"]),
        name=str(row["name"]),
        relationship=str(row["relationship"] or ""),
        personality_traits=str(row["personality_traits"] or ""),
        common_phrases=_load_phrases(row["common_phrases_json"]),
    )


class MemoryPersonasMixin:
    async def upsert_persona_profile(self, profile: PersonaProfile) -> None:
        phrases = [p.strip() for p in profile.common_phrases if str(p).strip()]
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO persona_profiles (
                    persona_id, name, relationship, personality_traits, common_phrases_json,
                    created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, CURRENT_TIMESTAMP, CURRENT_TIMESTAMP)
                ON CONFLICT(persona_id) DO UPDATE SET
                    name = excluded.name,
                    relationship = excluded.relationship,
                    personality_traits = excluded.personality_traits,
                    common_phrases_json = excluded.common_phrases_json,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (
                    profile.id,
                    profile.name.strip(),
                    profile.relationship.strip(),
                    profile.personality_traits.strip(),
                    json.dumps(phrases, ensure_ascii=False),
                ),
            )
            await db.commit()

    async def get_persona_profile(self, persona_id: str) -> Optional[PersonaProfile]:
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                """
                SELECT persona_id, name, relationship, personality_traits, common_phrases_json
                FROM persona_profiles
                WHERE persona_id = ?
                """,
                (persona_id,),
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return None
        return _row_to_profile(row)

    async def list_persona_profiles(self) -> List[PersonaProfile]:
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                """
                SELECT persona_id, name, relationship, personality_traits, common_phrases_json
                FROM persona_profiles
                ORDER BY name COLLATE NOCASE
                """
            ) as cursor:
                rows = await cursor.fetchall()
        return [_row_to_profile(row) for row in rows]
