from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List


MEMORY_TYPES = ("fact", "experience", "preference", "relationship", "skill", "emotion")
MEMORY_SOURCES = ("video", "image", "audio", "text", "social_media")
SESSION_MODALITIES = ("text", "voice", "video")
TURN_SENDERS = ("user", "persona")

# Well-known metadata keys. The metadata map stays open, but these are the keys
# the flow classifier, importance scoring and conversation re-ingestion read/write.
META_TOPICS = "topics"
META_PEOPLE = "people"
META_LOCATION = "location"
META_SENTIMENT = "sentiment"
META_CONVERSATION_CONTEXT = "conversation_context"
META_USER_MESSAGE = "user_message"

# Turn metadata keys.
TURN_META_CONFIDENCE = "confidence"
TURN_META_LATENCY_MS = "response_latency_ms"
TURN_META_FLOW = "flow"
TURN_META_FALLBACK = "fallback"
TURN_META_INTERRUPTED = "interrupted"


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_memory_id() -> str:
    return f"mem_{uuid.uuid4().hex}"


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def normalize_memory_type(value: str, *, default: str = "fact") -> str:
    raw = str(value or "").strip().casefold()
    aliases = {
        "facts": "fact",
        "experiences": "experience",
        "episodic": "experience",
        "preferences": "preference",
        "relationships": "relationship",
        "skills": "skill",
        "emotions": "emotion",
    }
    normalized = aliases.get(raw, raw)
    return normalized if normalized in MEMORY_TYPES else default


def normalize_memory_source(value: str, *, default: str = "text") -> str:
    raw = str(value or "").strip().casefold()
    aliases = {"social": "social_media", "socialmedia": "social_media", "photo": "image", "voice": "audio"}
    normalized = aliases.get(raw, raw)
    return normalized if normalized in MEMORY_SOURCES else default


@dataclass(slots=True)
class Memory:
    persona_id: str
    content: str
    type: str = "fact"
    source: str = "text"
    importance: float = 0.5
    id: str = field(default_factory=new_memory_id)
    source_url: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    embedding: List[float] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.content = " ".join(str(self.content or "").split())
        self.type = normalize_memory_type(self.type)
        self.source = normalize_memory_source(self.source)
        try:
            importance = float(self.importance)
        except (TypeError, ValueError):
            importance = 0.0
        self.importance = _clamp(importance, 0.0, 1.0)

    @property
    def is_persistable(self) -> bool:
        return bool(self.content)


@dataclass(slots=True)
class ScoredMemory:
    memory: Memory
    similarity: float


@dataclass(slots=True)
class PersonaProfile:
    id: str
    name: str
    relationship: str = ""
    personality_traits: str = ""
    common_phrases: List[str] = field(default_factory=list)


@dataclass(slots=True)
class ConversationSession:
    id: str
    persona_id: str
    user_id: str
    modality: str = "text"
    started_at: datetime = field(default_factory=utc_now)
    ended_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.ended_at is None


@dataclass(slots=True)
class ConversationTurn:
    session_id: str
    sender: str
    content: str
    id: str = field(default_factory=lambda: new_id("turn"))
    timestamp: datetime = field(default_factory=utc_now)
    emotion: str | None = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def as_history_message(self) -> dict[str, str]:
        role = "assistant" if self.sender == "persona" else "user"
        return {"role": role, "content": self.content}


@dataclass(slots=True)
class ContentUnit:
    """One piece of raw content fed to the extractor.

    `text` is a transcript, an image/video description or freeform text. Media
    units may carry raw bytes instead; the extractor turns those into text first.
    """

    text: str = ""
    source: str = "text"
    source_url: str | None = None
    media_bytes: bytes | None = None
    media_mime: str | None = None

    def __post_init__(self) -> None:
        self.text = str(self.text or "")
        self.source = normalize_memory_source(self.source)
