from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, List, Sequence

from ..models import ConversationSession, ConversationTurn, PersonaProfile, ScoredMemory
from ..prompts.dialogue import build_interruption_message, build_memory_lines, build_persona_system_prompt
from .flow import DEFAULT_TOPIC, analyze_emotional_tone, classify_flow, detect_topic

logger = logging.getLogger("persona_recall")


@dataclass(slots=True)
class ConversationContext:
    persona: PersonaProfile
    utterance: str
    flow: str
    topic: str
    emotional_tone: str
    memories: List[ScoredMemory] = field(default_factory=list)
    history: List[ConversationTurn] = field(default_factory=list)
    interrupted: bool = False
    preferred_language: str = ""

    def system_prompt(self) -> str:
        memory_lines = build_memory_lines((item.memory.content, item.memory.type) for item in self.memories)
        return build_persona_system_prompt(
            name=self.persona.name,
            relationship=self.persona.relationship,
            personality_traits=self.persona.personality_traits,
            common_phrases=list(self.persona.common_phrases),
            flow=self.flow,
            emotional_tone=self.emotional_tone,
            topic=self.topic,
            memory_lines=memory_lines,
            preferred_language=self.preferred_language,
        )

    def user_message(self) -> str:
        return build_interruption_message(self.utterance) if self.interrupted else self.utterance

    def to_messages(self) -> list[dict[str, str]]:
        messages = [{"role": "system", "content": self.system_prompt()}]
        messages.extend(turn.as_history_message() for turn in self.history if turn.content.strip())
        messages.append({"role": "user", "content": self.user_message()})
        return messages


class ContextAssembler:
    """Retrieves memories for an utterance and frames them for the completion call."""

    def __init__(
        self,
        store: Any,
        *,
        search_top_k: int = 15,
        context_limit: int = 10,
        recent_turn_window: int = 10,
        preferred_language: str = "",
    ) -> None:
        self.store = store
        self.search_top_k = max(1, int(search_top_k))
        self.context_limit = max(0, int(context_limit))
        self.recent_turn_window = max(0, int(recent_turn_window))
        self.preferred_language = preferred_language

    def select_memories(self, retrieved: Sequence[ScoredMemory]) -> list[ScoredMemory]:
        # Stable sort keeps retrieval order among equal importance.
        ranked = sorted(retrieved, key=lambda item: item.memory.importance, reverse=True)
        return ranked[: self.context_limit]

    async def build_context(
        self,
        session: ConversationSession,
        persona: PersonaProfile,
        utterance: str,
        *,
        running_topic: str = DEFAULT_TOPIC,
        history: Sequence[ConversationTurn] = (),
        interrupted: bool = False,
    ) -> ConversationContext:
        retrieved = await self.store.search_memories(session.persona_id, utterance, self.search_top_k)
        memories = self.select_memories(retrieved)
        recent = list(history)[-self.recent_turn_window :] if self.recent_turn_window else []
        context = ConversationContext(
            persona=persona,
            utterance=utterance,
            flow=classify_flow(utterance, running_topic),
            topic=detect_topic(utterance),
            emotional_tone=analyze_emotional_tone(utterance),
            memories=memories,
            history=recent,
            interrupted=interrupted,
            preferred_language=self.preferred_language,
        )
        logger.debug(
            "Context built session=%s flow=%s topic=%s memories=%s/%s history=%s",
            session.id,
            context.flow,
            context.topic,
            len(memories),
            len(retrieved),
            len(recent),
        )
        return context
