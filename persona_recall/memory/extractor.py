from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, List, Protocol

from ..models import (
    META_CONVERSATION_CONTEXT,
    META_LOCATION,
    META_PEOPLE,
    META_SENTIMENT,
    META_TOPICS,
    META_USER_MESSAGE,
    ContentUnit,
    Memory,
    PersonaProfile,
)
from ..prompts.memory import (
    CONTENT_ANALYSIS_SCHEMA_HINT,
    CONTENT_ANALYSIS_SYSTEM_PROMPT,
    IMAGE_DESCRIPTION_PROMPT,
    build_content_analysis_user_prompt,
    build_conversation_exchange_text,
    build_emotion_memory_text,
)

logger = logging.getLogger("persona_recall")

FACET_KEYS = ("facts", "topics", "people", "locations", "emotions", "preferences", "relationships")

FACT_IMPORTANCE = 0.8
PREFERENCE_IMPORTANCE = 0.7
RELATIONSHIP_IMPORTANCE = 0.9
EMOTION_IMPORTANCE = 0.6
CONVERSATION_IMPORTANCE = 0.5


def _normalize_key(text: str) -> str:
    return re.sub(r"\s+", " ", text.strip().casefold())


@dataclass(slots=True)
class ContentFacets:
    facts: List[str] = field(default_factory=list)
    topics: List[str] = field(default_factory=list)
    people: List[str] = field(default_factory=list)
    locations: List[str] = field(default_factory=list)
    emotions: List[str] = field(default_factory=list)
    preferences: List[str] = field(default_factory=list)
    relationships: List[str] = field(default_factory=list)


@dataclass(slots=True)
class ExtractionDiagnostics:
    backend_name: str
    model_name: str
    latency_ms: int
    llm_attempted: bool
    llm_ok: bool
    json_valid: bool
    error: str = ""
    media_status: str = ""
    candidate_count: int = 0
    embedding_failures: int = 0
    returned_count: int = 0


@dataclass(slots=True)
class ExtractionResult:
    memories: List[Memory]
    diagnostics: ExtractionDiagnostics | None = None


class _JsonChatBackend(Protocol):
    async def json_chat(
        self,
        messages: list[dict[str, str]],
        schema_hint: str,
        temperature: float = 0.1,
        max_output_tokens: int = 900,
    ) -> dict[str, object] | None: ...


class _Embedder(Protocol):
    async def embed(self, text: str) -> list[float]: ...


class MemoryExtractor:
    """Turns content units into typed, scored and embedded memories via a structured-output LLM."""

    def __init__(
        self,
        enabled: bool,
        llm: _JsonChatBackend | Any,
        embedder: _Embedder | Any,
        candidate_limit: int,
        *,
        min_text_chars: int = 4,
        stt: Any | None = None,
        vision: Any | None = None,
    ) -> None:
        self.enabled = enabled
        self.llm = llm
        self.embedder = embedder
        self.candidate_limit = max(1, candidate_limit)
        self.min_text_chars = max(1, int(min_text_chars))
        self.stt = stt
        self.vision = vision if vision is not None else llm

    async def start(self) -> None:
        start_fn = getattr(self.llm, "start", None)
        if callable(start_fn):
            await start_fn()

    async def close(self) -> None:
        close_fn = getattr(self.llm, "close", None)
        if callable(close_fn):
            await close_fn()

    @property
    def backend_name(self) -> str:
        raw = str(getattr(self.llm, "backend_name", "") or "").strip().lower()
        if raw:
            return raw
        cls_name = self.llm.__class__.__name__.casefold()
        if "gemini" in cls_name:
            return "gemini"
        if "ollama" in cls_name:
            return "ollama"
        return "llm"

    @property
    def model_name(self) -> str:
        return str(getattr(self.llm, "model", "") or "").strip()

    @staticmethod
    def _sanitize_text(text: str) -> str:
        cleaned = re.sub(r"\s+", " ", text or "").strip()
        return cleaned[:8000]

    @staticmethod
    def _string_list(raw: object) -> list[str]:
        if isinstance(raw, str):
            raw = [raw]
        if not isinstance(raw, list):
            return []
        out: list[str] = []
        for item in raw:
            if isinstance(item, (dict, list)) or item is None:
                continue
            value = " ".join(str(item).split())
            if value:
                out.append(value)
        return out

    @classmethod
    def parse_facets(cls, payload: dict[str, object]) -> ContentFacets:
        return ContentFacets(**{key: cls._string_list(payload.get(key)) for key in FACET_KEYS})

    @staticmethod
    def facets_to_memories(persona_id: str, facets: ContentFacets, unit: ContentUnit) -> list[Memory]:
        def _memory(content: str, memory_type: str, importance: float, metadata: dict[str, Any]) -> Memory:
            return Memory(
                persona_id=persona_id,
                content=content,
                type=memory_type,
                source=unit.source,
                source_url=unit.source_url,
                importance=importance,
                metadata=metadata,
            )

        out: list[Memory] = []
        for fact in facets.facts:
            metadata: dict[str, Any] = {META_TOPICS: list(facets.topics), META_PEOPLE: list(facets.people)}
            if facets.locations:
                metadata[META_LOCATION] = facets.locations[0]
            out.append(_memory(fact, "fact", FACT_IMPORTANCE, metadata))
        for preference in facets.preferences:
            out.append(_memory(preference, "preference", PREFERENCE_IMPORTANCE, {META_TOPICS: list(facets.topics)}))
        for relationship in facets.relationships:
            out.append(
                _memory(relationship, "relationship", RELATIONSHIP_IMPORTANCE, {META_PEOPLE: list(facets.people)})
            )
        if facets.emotions:
            out.append(
                _memory(
                    build_emotion_memory_text(facets.emotions),
                    "emotion",
                    EMOTION_IMPORTANCE,
                    {META_SENTIMENT: facets.emotions[0]},
                )
            )
        return out

    def _dedupe(self, memories: list[Memory]) -> list[Memory]:
        seen: set[str] = set()
        unique: list[Memory] = []
        for memory in memories:
            key = _normalize_key(memory.content)
            if not key or key in seen:
                continue
            seen.add(key)
            unique.append(memory)
        if len(unique) <= self.candidate_limit:
            return unique
        ranked = sorted(range(len(unique)), key=lambda i: unique[i].importance, reverse=True)
        keep = sorted(ranked[: self.candidate_limit])
        return [unique[i] for i in keep]

    async def _resolve_text(self, unit: ContentUnit) -> tuple[str, str]:
        if unit.text.strip() or not unit.media_bytes:
            return unit.text, ""

        if unit.source in {"audio", "video"}:
            if self.stt is None:
                return "", "stt_unavailable"
            result = await self.stt.transcribe_media(unit.media_bytes, unit.media_mime)
            return (result.text if result.ok else ""), f"stt_{result.status}"

        if unit.source == "image":
            describe = getattr(self.vision, "describe_image", None)
            if not callable(describe):
                return "", "vision_unavailable"
            try:
                description = await describe(unit.media_bytes, unit.media_mime or "image/jpeg", IMAGE_DESCRIPTION_PROMPT)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("Image description failed source_url=%s: %s", unit.source_url, exc)
                return "", "vision_error"
            return description, "vision_ok"

        return "", "unsupported_media"

    async def _embed_all(self, memories: list[Memory]) -> tuple[list[Memory], int]:
        kept: list[Memory] = []
        failures = 0
        for memory in memories:
            try:
                memory.embedding = list(await self.embedder.embed(memory.content))
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                failures += 1
                logger.warning("Memory embedding failed; dropping memory id=%s: %s", memory.id, exc)
                continue
            if not memory.embedding:
                failures += 1
                continue
            kept.append(memory)
        return kept, failures

    async def extract_detailed(self, persona_id: str, unit: ContentUnit) -> ExtractionResult:
        started = time.perf_counter()
        diagnostics = ExtractionDiagnostics(
            backend_name=self.backend_name,
            model_name=self.model_name,
            latency_ms=0,
            llm_attempted=False,
            llm_ok=False,
            json_valid=False,
        )

        def _finish(memories: list[Memory]) -> ExtractionResult:
            diagnostics.latency_ms = max(0, int((time.perf_counter() - started) * 1000))
            diagnostics.returned_count = len(memories)
            return ExtractionResult(memories=memories, diagnostics=diagnostics)

        if not self.enabled:
            return _finish([])

        try:
            raw_text, diagnostics.media_status = await self._resolve_text(unit)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Media front-end failed source=%s source_url=%s", unit.source, unit.source_url)
            diagnostics.error = str(exc)[:220]
            return _finish([])

        text = self._sanitize_text(raw_text)
        if len(text) < self.min_text_chars:
            return _finish([])

        messages = [
            {"role": "system", "content": CONTENT_ANALYSIS_SYSTEM_PROMPT},
            {"role": "user", "content": build_content_analysis_user_prompt(text, unit.source)},
        ]
        diagnostics.llm_attempted = True
        try:
            payload = await self.llm.json_chat(
                messages,
                schema_hint=CONTENT_ANALYSIS_SCHEMA_HINT,
                temperature=0.1,
                max_output_tokens=1200,
            )
            diagnostics.llm_ok = True
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            diagnostics.error = str(exc)[:220]
            logger.warning("Content analysis failed backend=%s source=%s: %s", self.backend_name, unit.source, exc)
            return _finish([])

        if not isinstance(payload, dict):
            logger.warning("Content analysis returned unparseable output backend=%s", self.backend_name)
            return _finish([])
        diagnostics.json_valid = True

        candidates = self._dedupe(self.facets_to_memories(persona_id, self.parse_facets(payload), unit))
        diagnostics.candidate_count = len(candidates)
        memories, diagnostics.embedding_failures = await self._embed_all(candidates)
        return _finish(memories)

    async def extract(self, persona_id: str, unit: ContentUnit) -> list[Memory]:
        result = await self.extract_detailed(persona_id, unit)
        return result.memories

    async def extract_from_exchange(
        self,
        persona: PersonaProfile,
        user_text: str,
        persona_text: str,
    ) -> list[Memory]:
        """Extract memories from one user/persona exchange for conversation re-ingestion."""
        exchange = build_conversation_exchange_text(persona.name, user_text, persona_text)
        memories = await self.extract(persona.id, ContentUnit(text=exchange, source="text"))
        for memory in memories:
            memory.importance = CONVERSATION_IMPORTANCE
            memory.metadata[META_CONVERSATION_CONTEXT] = True
            memory.metadata[META_USER_MESSAGE] = user_text.strip()[:100]
        return memories
