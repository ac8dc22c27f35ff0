from __future__ import annotations

from typing import Any, Iterable

from .json_loader import load_prompt_json

_DEFAULTS: dict[str, Any] = {
    "persona_identity_template": "You are {name}, speaking as yourself in a real-time conversation. You are their {relationship}.",
    "persona_identity_no_relationship_template": "You are {name}, speaking as yourself in a real-time conversation.",
    "personality_template": "PERSONALITY: {personality_traits}",
    "default_personality": "Be warm, authentic, and engaging.",
    "conversation_state_lines": [
        "CURRENT CONVERSATION CONTEXT:",
        "- Emotional tone: {emotional_tone}",
        "- Current topic: {topic}",
    ],
    "flow_instructions": {
        "memory_sharing": "The user wants to hear memories. Share a relevant memory or story from your past together.",
        "emotional_support": "The user needs emotional support. Be extra caring, understanding, and offer comfort.",
        "topic_change": "The conversation topic is changing. Acknowledge the shift and engage with the new topic.",
        "continue": "Continue the natural flow of conversation.",
    },
    "flow_line_template": "CONVERSATION FLOW: {instruction}",
    "speaking_style_lines": [
        "SPEAKING STYLE:",
        "- Use these phrases naturally: {common_phrases}",
        "- Match the user's emotional tone and energy level",
        "- Keep responses conversational (1-3 sentences)",
        "- Show genuine emotional connection",
    ],
    "no_common_phrases": "speak naturally",
    "memories_header": "RELEVANT MEMORIES:",
    "memory_line_template": "- {content} ({memory_type})",
    "no_memories_line": "No specific memories are available for this moment; rely on your personality.",
    "memory_instructions": [
        "- Reference specific memories when relevant to the conversation",
        "- Don't explicitly say \"according to my memories\" - just speak naturally",
        "- If a memory contradicts something, acknowledge it naturally",
    ],
    "language_rule_template": "Always answer in {preferred_language} unless the user explicitly requests another language.",
    "closing_line": (
        "IMPORTANT: You are having a live conversation. Respond naturally and immediately, "
        "as if you're really there talking with them."
    ),
    "interruption_template": "[User interrupted to say: {text}]",
    "fallback_phrases": {
        "memory_sharing": [
            "That brings back such wonderful memories. I remember when we used to talk about things like that.",
            "You know, that reminds me of the times we spent together. Those were special moments.",
            "I have so many memories of conversations just like this one. Thank you for bringing that up.",
        ],
        "emotional_support": [
            "I can hear the emotion in your voice. I'm here for you, just like I always was.",
            "I understand how you're feeling. You know I've always believed in your strength.",
            "It's okay to feel this way. I'm here to listen, and I care about what you're going through.",
        ],
        "topic_change": [
            "That's an interesting topic. Tell me more about what you're thinking.",
            "I'd love to hear your thoughts on that. What's on your mind?",
            "That's something worth talking about. What would you like to share?",
        ],
        "continue": [
            "I'm listening. Please, go on.",
            "That's exactly what I was thinking. Tell me more.",
            "You always have such thoughtful things to say. Continue.",
        ],
    },
}


def _cfg() -> dict[str, Any]:
    return load_prompt_json("dialogue.json", _DEFAULTS)


def _lines(cfg: dict[str, Any], key: str) -> list[str]:
    raw = cfg.get(key)
    if not isinstance(raw, list):
        raw = _DEFAULTS[key]
    return [str(item) for item in raw if str(item).strip()]


def flow_instruction(flow: str) -> str:
    cfg = _cfg()
    instructions = cfg.get("flow_instructions")
    if not isinstance(instructions, dict):
        instructions = _DEFAULTS["flow_instructions"]
    return str(instructions.get(flow) or instructions.get("continue") or _DEFAULTS["flow_instructions"]["continue"])


def fallback_phrases(flow: str) -> list[str]:
    raw = _cfg().get("fallback_phrases")
    if not isinstance(raw, dict):
        raw = _DEFAULTS["fallback_phrases"]
    phrases = raw.get(flow) or raw.get("continue") or _DEFAULTS["fallback_phrases"]["continue"]
    return [str(item).strip() for item in phrases if str(item).strip()]


def build_interruption_message(text: str) -> str:
    template = str(_cfg().get("interruption_template", _DEFAULTS["interruption_template"]))
    return template.format(text=text)


def build_memory_lines(memories: Iterable[tuple[str, str]]) -> list[str]:
    cfg = _cfg()
    template = str(cfg.get("memory_line_template", _DEFAULTS["memory_line_template"]))
    return [template.format(content=content, memory_type=memory_type) for content, memory_type in memories]


def build_persona_system_prompt(
    *,
    name: str,
    relationship: str,
    personality_traits: str,
    common_phrases: list[str],
    flow: str,
    emotional_tone: str,
    topic: str,
    memory_lines: list[str],
    preferred_language: str,
) -> str:
    cfg = _cfg()
    sections: list[str] = []

    if relationship.strip():
        identity = str(cfg.get("persona_identity_template", _DEFAULTS["persona_identity_template"]))
    else:
        identity = str(
            cfg.get(
                "persona_identity_no_relationship_template",
                _DEFAULTS["persona_identity_no_relationship_template"],
            )
        )
    sections.append(identity.format(name=name or "Persona", relationship=relationship.strip()))

    traits = personality_traits.strip() or str(cfg.get("default_personality", _DEFAULTS["default_personality"]))
    sections.append(str(cfg.get("personality_template", _DEFAULTS["personality_template"])).format(personality_traits=traits))

    sections.append(
        "\n".join(
            line.format(emotional_tone=emotional_tone or "neutral", topic=topic or "general")
            for line in _lines(cfg, "conversation_state_lines")
        )
    )
    sections.append(
        str(cfg.get("flow_line_template", _DEFAULTS["flow_line_template"])).format(instruction=flow_instruction(flow))
    )

    phrases = ", ".join(p for p in common_phrases if p.strip()) or str(
        cfg.get("no_common_phrases", _DEFAULTS["no_common_phrases"])
    )
    sections.append("\n".join(line.format(common_phrases=phrases) for line in _lines(cfg, "speaking_style_lines")))

    header = str(cfg.get("memories_header", _DEFAULTS["memories_header"]))
    if memory_lines:
        memory_block = [header, *memory_lines, *_lines(cfg, "memory_instructions")]
    else:
        memory_block = [header, str(cfg.get("no_memories_line", _DEFAULTS["no_memories_line"]))]
    sections.append("\n".join(memory_block))

    if preferred_language.strip():
        template = str(cfg.get("language_rule_template", _DEFAULTS["language_rule_template"]))
        sections.append(template.format(preferred_language=preferred_language.strip()))
    sections.append(str(cfg.get("closing_line", _DEFAULTS["closing_line"])))
    return "\n\n".join(section for section in sections if section.strip())
