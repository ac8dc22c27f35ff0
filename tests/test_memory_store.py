from __future__ import annotations

import asyncio
import sqlite3
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from persona_recall.memory.storage.schema import MemorySchemaMixin  # noqa: E402
from persona_recall.memory.storage.utils import cosine_similarities, decode_embedding, encode_embedding  # noqa: E402
from persona_recall.memory.store import MemoryStore  # noqa: E402
from persona_recall.models import ConversationTurn, Memory, PersonaProfile  # noqa: E402


class _TableEmbedder:
    def __init__(self, table: dict[str, list[float]], *, fail: bool = False) -> None:
        self.table = table
        self.fail = fail

    async def embed(self, text: str) -> list[float]:
        if self.fail:
            raise RuntimeError("embedding backend offline")
        return self.table.get(text, [0.0, 0.0, 1.0])


def _store(tmp_path: Path, embedder: _TableEmbedder | None = None, **kwargs: float) -> MemoryStore:
    store = MemoryStore(tmp_path / "memory.db", embedder=embedder, **kwargs)
    asyncio.run(store.init())
    return store


def _seed_search_memories(store: MemoryStore) -> None:
    memories = [
        Memory(id="m1", persona_id="nana", content="Baked bread every Sunday", importance=0.5, embedding=[1, 0, 0]),
        Memory(id="m2", persona_id="nana", content="Loved baking pies", importance=0.7, embedding=[0.9, 0.1, 0]),
        Memory(id="m3", persona_id="nana", content="Kept a recipe book", importance=0.8, embedding=[0.8, 0.6, 0]),
        Memory(id="m4", persona_id="nana", content="Drove a blue car", importance=1.0, embedding=[0, 1, 0]),
        Memory(id="m5", persona_id="nana", content="Won a baking contest", importance=0.9, embedding=[1, 0, 0]),
        Memory(id="other", persona_id="grandpa", content="Baked too", importance=1.0, embedding=[1, 0, 0]),
        Memory(id="short", persona_id="nana", content="Old two-dim vector", importance=1.0, embedding=[1, 0]),
    ]
    assert asyncio.run(store.save_memories(memories)) == len(memories)


def test_schema_mismatch_raises_without_opt_in(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("MEMORY_SQLITE_RESET_ON_SCHEMA_MISMATCH", raising=False)
    db_path = tmp_path / "memory.db"

    asyncio.run(MemorySchemaMixin(db_path).init())
    with sqlite3.connect(db_path) as conn:
        conn.execute("PRAGMA user_version = 999")
        conn.commit()

    with pytest.raises(RuntimeError, match="schema version mismatch"):
        asyncio.run(MemorySchemaMixin(db_path).init())


def test_schema_mismatch_can_reset_with_explicit_opt_in(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    db_path = tmp_path / "memory.db"
    store = MemoryStore(db_path)
    asyncio.run(store.init())
    asyncio.run(store.save_memories([Memory(persona_id="nana", content="Will be dropped")]))

    with sqlite3.connect(db_path) as conn:
        conn.execute("PRAGMA user_version = 999")
        conn.commit()

    monkeypatch.setenv("MEMORY_SQLITE_RESET_ON_SCHEMA_MISMATCH", "1")
    asyncio.run(store.init())

    with sqlite3.connect(db_path) as conn:
        version = conn.execute("PRAGMA user_version").fetchone()[0]
    assert version == MemorySchemaMixin.SCHEMA_VERSION
    assert asyncio.run(store.count_memories("nana")) == 0


def test_init_is_idempotent(tmp_path: Path) -> None:
    store = _store(tmp_path)
    asyncio.run(store.save_memories([Memory(persona_id="nana", content="Survives re-init")]))

    asyncio.run(store.init())

    assert asyncio.run(store.count_memories("nana")) == 1


def test_save_memories_upserts_by_id_and_skips_empty_content(tmp_path: Path) -> None:
    store = _store(tmp_path)
    original = Memory(
        id="mem_fixed",
        persona_id="nana",
        content="Grew up in Galway",
        importance=0.8,
        embedding=[0.1, 0.2, 0.3],
        metadata={"topics": ["childhood"], "location": "Galway"},
    )

    assert asyncio.run(store.save_memories([original, Memory(persona_id="nana", content="   ")])) == 1
    original.content = "Grew up in Galway by the sea"
    assert asyncio.run(store.save_memories([original])) == 1

    assert asyncio.run(store.count_memories("nana")) == 1
    loaded = asyncio.run(store.get_memory("mem_fixed"))
    assert loaded is not None
    assert loaded.content == "Grew up in Galway by the sea"
    assert loaded.metadata == {"topics": ["childhood"], "location": "Galway"}
    assert loaded.embedding == pytest.approx([0.1, 0.2, 0.3])
    assert loaded.created_at == original.created_at


def test_save_memories_clamps_importance_mutated_after_construction(tmp_path: Path) -> None:
    store = _store(tmp_path)
    memory = Memory(id="loud", persona_id="nana", content="Very important", importance=0.9)
    memory.importance = 3.5

    asyncio.run(store.save_memories([memory]))

    loaded = asyncio.run(store.get_memory("loud"))
    assert loaded is not None
    assert loaded.importance == 1.0
    assert Memory(persona_id="nana", content="x", importance=-2).importance == 0.0


def test_search_applies_threshold_ordering_k_and_persona_scope(tmp_path: Path) -> None:
    store = _store(tmp_path, _TableEmbedder({"baking": [1.0, 0.0, 0.0]}), similarity_threshold=0.7)
    _seed_search_memories(store)

    results = asyncio.run(store.search_memories("nana", "baking", k=15))

    assert [item.memory.id for item in results] == ["m5", "m1", "m2", "m3"]
    assert results[0].similarity == pytest.approx(1.0)
    assert results[3].similarity == pytest.approx(0.8)
    assert all(item.memory.persona_id == "nana" for item in results)

    top_two = asyncio.run(store.search_memories("nana", "baking", k=2))
    assert [item.memory.id for item in top_two] == ["m5", "m1"]

    strict = asyncio.run(store.search_memories("nana", "baking", threshold=0.95))
    assert [item.memory.id for item in strict] == ["m5", "m1", "m2"]


def test_search_breaks_full_ties_by_newest_first(tmp_path: Path) -> None:
    store = _store(tmp_path, _TableEmbedder({"garden": [1.0, 0.0, 0.0]}), similarity_threshold=0.5)
    older = datetime(2023, 4, 1, tzinfo=timezone.utc)
    newer = datetime(2024, 9, 1, tzinfo=timezone.utc)
    asyncio.run(
        store.save_memories(
            [
                Memory(id="old", persona_id="nana", content="Planted roses", importance=0.6, embedding=[2, 0, 0], created_at=older),
                Memory(id="new", persona_id="nana", content="Planted tulips", importance=0.6, embedding=[1, 0, 0], created_at=newer),
            ]
        )
    )

    results = asyncio.run(store.search_memories("nana", "garden"))

    assert [item.memory.id for item in results] == ["new", "old"]
    assert results[0].similarity == results[1].similarity


def test_search_drops_non_finite_similarities(tmp_path: Path) -> None:
    store = _store(tmp_path, _TableEmbedder({"garden": [1.0, 0.0, 0.0]}))
    asyncio.run(
        store.save_memories(
            [
                Memory(id="broken", persona_id="nana", content="Corrupt vector", embedding=[float("inf"), 0, 0]),
                Memory(id="fine", persona_id="nana", content="Planted tulips", embedding=[1, 0, 0]),
            ]
        )
    )

    results = asyncio.run(store.search_memories("nana", "garden", threshold=0.0))

    assert [item.memory.id for item in results] == ["fine"]


def test_search_returns_empty_for_degenerate_inputs(tmp_path: Path) -> None:
    store = _store(tmp_path, _TableEmbedder({"baking": [1.0, 0.0, 0.0]}))
    _seed_search_memories(store)

    assert asyncio.run(store.search_memories("nana", "baking", k=0)) == []
    assert asyncio.run(store.search_memories("nana", "   ")) == []
    assert asyncio.run(store.search_memories("nobody", "baking")) == []

    store.embedder = _TableEmbedder({}, fail=True)
    assert asyncio.run(store.search_memories("nana", "baking")) == []

    store.embedder = None
    assert asyncio.run(store.search_memories("nana", "baking")) == []


def test_memory_summary_counts_by_type_and_source(tmp_path: Path) -> None:
    store = _store(tmp_path)
    asyncio.run(
        store.save_memories(
            [
                Memory(persona_id="nana", content="Nurse for thirty years", type="fact", source="audio"),
                Memory(persona_id="nana", content="Married to Joe", type="relationship", source="audio"),
                Memory(persona_id="nana", content="Loves apple pie", type="preference", source="text"),
                Memory(persona_id="grandpa", content="Fished on Sundays", type="fact", source="image"),
            ]
        )
    )

    summary = asyncio.run(store.get_memory_summary("nana"))

    assert summary["total"] == 3
    assert summary["by_type"] == {"fact": 1, "relationship": 1, "preference": 1}
    assert summary["by_source"] == {"audio": 2, "text": 1}
    recent = summary["recent"]
    assert isinstance(recent, list)
    assert len(recent) == 3
    assert all(not memory.embedding for memory in recent)


def test_persona_profile_round_trip(tmp_path: Path) -> None:
    store = _store(tmp_path)
    profile = PersonaProfile(
        id="nana",
        name="Nana",
        relationship="grandmother",
        personality_traits="warm, funny",
        common_phrases=["Oh, sweetheart", "  "],
    )

    asyncio.run(store.upsert_persona_profile(profile))
    profile.name = "Nana Rose"
    asyncio.run(store.upsert_persona_profile(profile))

    loaded = asyncio.run(store.get_persona_profile("nana"))
    assert loaded is not None
    assert loaded.name == "Nana Rose"
    assert loaded.common_phrases == ["Oh, sweetheart"]
    assert asyncio.run(store.get_persona_profile("missing")) is None
    assert [p.id for p in asyncio.run(store.list_persona_profiles())] == ["nana"]


def test_starting_session_ends_previous_active_session_for_pair(tmp_path: Path) -> None:
    store = _store(tmp_path)

    first = asyncio.run(store.start_session("nana", "alice", "voice"))
    other_user = asyncio.run(store.start_session("nana", "bob"))
    second = asyncio.run(store.start_session("nana", "alice"))

    reloaded_first = asyncio.run(store.get_session(first.id))
    assert reloaded_first is not None
    assert reloaded_first.ended_at is not None
    assert reloaded_first.modality == "voice"

    active = asyncio.run(store.get_active_session("nana", "alice"))
    assert active is not None
    assert active.id == second.id
    bob = asyncio.run(store.get_active_session("nana", "bob"))
    assert bob is not None
    assert bob.id == other_user.id

    asyncio.run(store.end_session(second.id))
    assert asyncio.run(store.get_active_session("nana", "alice")) is None


def test_turns_are_returned_in_insertion_order_and_deduplicated_by_id(tmp_path: Path) -> None:
    store = _store(tmp_path)
    session = asyncio.run(store.start_session("nana", "alice"))
    turns = [
        ConversationTurn(session_id=session.id, sender="user", content="Hi Nana"),
        ConversationTurn(session_id=session.id, sender="persona", content="Hello, love", emotion="warm"),
        ConversationTurn(
            session_id=session.id,
            sender="user",
            content="I miss you",
            metadata={"interrupted": True},
        ),
    ]
    for turn in turns:
        assert asyncio.run(store.append_turn(turn)) is True
    assert asyncio.run(store.append_turn(turns[0])) is True

    everything = asyncio.run(store.get_recent_turns(session.id, limit=10))
    assert [t.content for t in everything] == ["Hi Nana", "Hello, love", "I miss you"]
    assert everything[1].emotion == "warm"
    assert everything[2].metadata == {"interrupted": True}

    latest = asyncio.run(store.get_recent_turns(session.id, limit=2))
    assert [t.content for t in latest] == ["Hello, love", "I miss you"]


def test_embedding_codec_and_zero_norm_similarity() -> None:
    blob = encode_embedding([0.5, -1.0, 2.0])
    assert decode_embedding(blob).tolist() == [0.5, -1.0, 2.0]
    assert decode_embedding(None).size == 0

    matrix = decode_embedding(encode_embedding([1, 0, 0, 0, 0, 0])).reshape(2, 3)
    sims = cosine_similarities([1.0, 0.0, 0.0], matrix)
    assert sims.tolist() == [1.0, 0.0]
