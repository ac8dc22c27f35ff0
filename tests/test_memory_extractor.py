from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Any


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from persona_recall.memory.extractor import MemoryExtractor  # noqa: E402
from persona_recall.models import ContentUnit, PersonaProfile  # noqa: E402
from persona_recall.services.local_stt import STTResult  # noqa: E402


_FACETS = {
    "facts": ["Nana was a nurse for thirty years", "  "],
    "topics": ["work", "family"],
    "people": ["Grandpa Joe"],
    "locations": ["Dublin", "Cork"],
    "emotions": ["proud", "nostalgic"],
    "preferences": ["Loves apple pie"],
    "relationships": ["Married to Grandpa Joe"],
}


class _FakeLLM:
    backend_name = "fake"
    model = "fake-model"

    def __init__(self, payload: Any = None, *, error: Exception | None = None) -> None:
        self.payload = payload if payload is not None else dict(_FACETS)
        self.error = error
        self.json_calls: list[list[dict[str, str]]] = []
        self.images: list[tuple[bytes, str]] = []

    async def json_chat(self, messages, schema_hint, temperature=0.1, max_output_tokens=900):  # type: ignore[no-untyped-def]
        self.json_calls.append(messages)
        if self.error is not None:
            raise self.error
        return self.payload

    async def describe_image(self, image_bytes: bytes, mime_type: str, prompt: str) -> str:
        self.images.append((image_bytes, mime_type))
        return "An older woman smiling in a garden full of roses."


class _FakeEmbedder:
    def __init__(self, fail_on: str = "") -> None:
        self.fail_on = fail_on
        self.calls: list[str] = []

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        if self.fail_on and self.fail_on in text:
            raise RuntimeError("embedding service unavailable")
        return [float(len(text)), 1.0, 0.5]


class _FakeSTT:
    def __init__(self, text: str, status: str = "ok") -> None:
        self.result = STTResult(text=text, confidence=0.9, duration_ms=0, rms=0, model_name="tiny", status=status)
        self.calls: list[tuple[bytes, str | None]] = []

    async def transcribe_media(self, media_bytes: bytes, mime_type: str | None = None) -> STTResult:
        self.calls.append((media_bytes, mime_type))
        return self.result


def _extractor(llm: _FakeLLM, embedder: _FakeEmbedder | None = None, **kwargs: Any) -> MemoryExtractor:
    return MemoryExtractor(
        enabled=True,
        llm=llm,
        embedder=embedder or _FakeEmbedder(),
        candidate_limit=kwargs.pop("candidate_limit", 40),
        **kwargs,
    )


def test_extract_maps_facets_to_typed_memories_with_priors_and_metadata() -> None:
    llm = _FakeLLM()
    unit = ContentUnit(text="Nana told stories about nursing in Dublin.", source="audio", source_url="file://clip.mp3")

    memories = asyncio.run(_extractor(llm).extract("persona-nana", unit))

    by_type = {m.type: m for m in memories}
    assert [m.type for m in memories] == ["fact", "preference", "relationship", "emotion"]
    assert len(llm.json_calls) == 1

    fact = by_type["fact"]
    assert fact.content == "Nana was a nurse for thirty years"
    assert fact.importance == 0.8
    assert fact.metadata == {"topics": ["work", "family"], "people": ["Grandpa Joe"], "location": "Dublin"}
    assert fact.source == "audio"
    assert fact.source_url == "file://clip.mp3"
    assert fact.persona_id == "persona-nana"
    assert fact.id.startswith("mem_")

    assert by_type["preference"].importance == 0.7
    assert by_type["preference"].metadata == {"topics": ["work", "family"]}
    assert by_type["relationship"].importance == 0.9
    assert by_type["relationship"].metadata == {"people": ["Grandpa Joe"]}
    emotion = by_type["emotion"]
    assert emotion.content == "Emotional context: proud, nostalgic"
    assert emotion.importance == 0.6
    assert emotion.metadata == {"sentiment": "proud"}
    assert all(m.embedding for m in memories)


def test_extract_returns_empty_for_blank_or_too_short_content_without_calling_llm() -> None:
    llm = _FakeLLM()
    extractor = _extractor(llm)

    assert asyncio.run(extractor.extract("p", ContentUnit(text="   \n\t "))) == []
    assert asyncio.run(extractor.extract("p", ContentUnit(text="hi"))) == []
    assert llm.json_calls == []


def test_extract_returns_empty_when_classification_fails_or_is_unparseable() -> None:
    failing = _extractor(_FakeLLM(error=RuntimeError("Gemini request failed after retries")))
    result = asyncio.run(failing.extract_detailed("p", ContentUnit(text="Nana loved the sea.")))
    assert result.memories == []
    assert result.diagnostics is not None
    assert result.diagnostics.llm_ok is False
    assert "failed after retries" in result.diagnostics.error

    class _NoneLLM(_FakeLLM):
        async def json_chat(self, messages, schema_hint, temperature=0.1, max_output_tokens=900):  # type: ignore[no-untyped-def]
            return None

    unparseable = _extractor(_NoneLLM())
    result = asyncio.run(unparseable.extract_detailed("p", ContentUnit(text="Nana loved the sea.")))
    assert result.memories == []
    assert result.diagnostics is not None
    assert result.diagnostics.llm_ok is True
    assert result.diagnostics.json_valid is False


def test_embedding_failure_drops_only_that_memory() -> None:
    embedder = _FakeEmbedder(fail_on="apple pie")
    result = asyncio.run(
        _extractor(_FakeLLM(), embedder).extract_detailed("p", ContentUnit(text="Family stories from Cork."))
    )

    assert [m.type for m in result.memories] == ["fact", "relationship", "emotion"]
    assert result.diagnostics is not None
    assert result.diagnostics.embedding_failures == 1
    assert result.diagnostics.candidate_count == 4


def test_extract_dedupes_by_normalized_content_and_caps_candidates() -> None:
    payload = {
        "facts": ["Grew up  in Galway", "grew up in galway", "Played the fiddle", "Kept bees"],
        "preferences": ["Hated cold tea"],
    }
    memories = asyncio.run(_extractor(_FakeLLM(payload), candidate_limit=2).extract("p", ContentUnit(text="Stories.")))

    assert [m.content for m in memories] == ["Grew up in Galway", "Played the fiddle"]


def test_candidate_cap_keeps_the_most_important_memories() -> None:
    payload = {
        "facts": ["Played the fiddle", "Kept bees"],
        "preferences": ["Hated cold tea"],
        "relationships": ["Married to Joe for fifty years"],
        "emotions": ["proud"],
    }
    memories = asyncio.run(_extractor(_FakeLLM(payload), candidate_limit=2).extract("p", ContentUnit(text="Stories.")))

    assert [(m.type, m.content) for m in memories] == [
        ("fact", "Played the fiddle"),
        ("relationship", "Married to Joe for fifty years"),
    ]


def test_extract_tolerates_non_list_facets() -> None:
    payload = {"facts": "Sang in the church choir", "people": None, "emotions": [{"bad": 1}, "joyful"]}
    memories = asyncio.run(_extractor(_FakeLLM(payload)).extract("p", ContentUnit(text="Choir memories.")))

    assert [m.content for m in memories] == ["Sang in the church choir", "Emotional context: joyful"]
    assert memories[0].metadata == {"topics": [], "people": []}


def test_image_units_are_described_before_analysis() -> None:
    llm = _FakeLLM()
    unit = ContentUnit(source="image", media_bytes=b"\x89PNG...", media_mime="image/png")

    result = asyncio.run(_extractor(llm).extract_detailed("p", unit))

    assert llm.images == [(b"\x89PNG...", "image/png")]
    assert "garden full of roses" in llm.json_calls[0][1]["content"]
    assert result.diagnostics is not None
    assert result.diagnostics.media_status == "vision_ok"
    assert result.memories


def test_audio_units_are_transcribed_and_failed_transcription_yields_nothing() -> None:
    llm = _FakeLLM()
    stt = _FakeSTT("Nana talking about her first job at the hospital")
    unit = ContentUnit(source="video", media_bytes=b"\x00\x00ftypmp4", media_mime="video/mp4")

    memories = asyncio.run(_extractor(llm, stt=stt).extract("p", unit))
    assert memories
    assert stt.calls == [(b"\x00\x00ftypmp4", "video/mp4")]
    assert "first job at the hospital" in llm.json_calls[0][1]["content"]

    silent = _FakeSTT("", status="empty")
    llm_silent = _FakeLLM()
    assert asyncio.run(_extractor(llm_silent, stt=silent).extract("p", unit)) == []
    assert llm_silent.json_calls == []


def test_supplied_text_skips_media_front_end() -> None:
    stt = _FakeSTT("should not be used")
    unit = ContentUnit(text="Transcript already here.", source="audio", media_bytes=b"abc")

    asyncio.run(_extractor(_FakeLLM(), stt=stt).extract("p", unit))

    assert stt.calls == []


def test_extract_from_exchange_marks_conversation_memories() -> None:
    llm = _FakeLLM({"facts": ["The user started a new job"], "emotions": ["excited"]})
    persona = PersonaProfile(id="persona-nana", name="Nana")
    user_text = "Guess what, I started a new job today! " * 5

    memories = asyncio.run(_extractor(llm).extract_from_exchange(persona, user_text, "Oh, that's wonderful, love!"))

    prompt = llm.json_calls[0][1]["content"]
    assert "User: Guess what" in prompt
    assert "Nana: Oh, that's wonderful, love!" in prompt
    assert len(memories) == 2
    for memory in memories:
        assert memory.importance == 0.5
        assert memory.metadata["conversation_context"] is True
        assert memory.metadata["user_message"] == user_text.strip()[:100]
        assert memory.source == "text"


def test_disabled_extractor_returns_nothing() -> None:
    llm = _FakeLLM()
    extractor = MemoryExtractor(enabled=False, llm=llm, embedder=_FakeEmbedder(), candidate_limit=5)

    assert asyncio.run(extractor.extract("p", ContentUnit(text="Plenty of text here."))) == []
    assert llm.json_calls == []
