from __future__ import annotations

import json

from .json_loader import load_prompt_json

_DEFAULTS = {
    "content_analysis_schema_hint_object": {
        "facts": ["string"],
        "topics": ["string"],
        "people": ["string"],
        "locations": ["string"],
        "emotions": ["string"],
        "preferences": ["string"],
        "relationships": ["string"],
    },
    "content_analysis_system_prompt": (
        "You are an expert at analyzing content and extracting structured information about people. "
        "Always return valid JSON."
    ),
    "content_analysis_user_prompt_template": (
        "Analyze the following content and extract structured information about a person's life, "
        "personality, and experiences.\n\n"
        "Content source: {source}\n"
        'Content: "{text}"\n\n'
        "Extract:\n"
        "1. Facts: Concrete, factual information about the person (age, occupation, education, etc.)\n"
        "2. Topics: Main subjects or themes discussed\n"
        "3. People: Names of people mentioned (friends, family, colleagues)\n"
        "4. Locations: Places mentioned (cities, countries, specific venues)\n"
        "5. Emotions: Emotional states or feelings expressed\n"
        "6. Preferences: Likes, dislikes, opinions, or preferences mentioned\n"
        "7. Relationships: Information about relationships with others\n\n"
        "Return as JSON with these keys: facts, topics, people, locations, emotions, preferences, "
        "relationships (all arrays of strings)."
    ),
    "image_description_prompt": (
        "Analyze this image and extract: 1) What is happening in the image, 2) Who is in the image, "
        "3) Where might this be, 4) What emotions or mood does it convey, 5) Any text visible in the image. "
        "Provide detailed descriptions."
    ),
    "conversation_exchange_template": "User: {user_text}\n{persona_name}: {persona_text}",
    "emotion_memory_template": "Emotional context: {emotions}",
}


def _cfg() -> dict[str, object]:
    return load_prompt_json("memory.json", _DEFAULTS)


_CFG = _cfg()
_SCHEMA_OBJ = _CFG.get("content_analysis_schema_hint_object", _DEFAULTS["content_analysis_schema_hint_object"])
if not isinstance(_SCHEMA_OBJ, dict):
    _SCHEMA_OBJ = _DEFAULTS["content_analysis_schema_hint_object"]

CONTENT_ANALYSIS_SCHEMA_HINT = json.dumps(_SCHEMA_OBJ, ensure_ascii=False, separators=(",", ":"))
CONTENT_ANALYSIS_SYSTEM_PROMPT = str(
    _CFG.get("content_analysis_system_prompt", _DEFAULTS["content_analysis_system_prompt"])
)
IMAGE_DESCRIPTION_PROMPT = str(_CFG.get("image_description_prompt", _DEFAULTS["image_description_prompt"]))


def build_content_analysis_user_prompt(text: str, source: str) -> str:
    template = str(
        _cfg().get("content_analysis_user_prompt_template", _DEFAULTS["content_analysis_user_prompt_template"])
    )
    return template.format(text=text, source=source or "text")


def build_conversation_exchange_text(persona_name: str, user_text: str, persona_text: str) -> str:
    template = str(_cfg().get("conversation_exchange_template", _DEFAULTS["conversation_exchange_template"]))
    return template.format(
        persona_name=persona_name or "Persona",
        user_text=user_text.strip(),
        persona_text=persona_text.strip(),
    )


def build_emotion_memory_text(emotions: list[str]) -> str:
    template = str(_cfg().get("emotion_memory_template", _DEFAULTS["emotion_memory_template"]))
    return template.format(emotions=", ".join(emotions))
