from __future__ import annotations

FLOW_MEMORY_SHARING = "memory_sharing"
FLOW_EMOTIONAL_SUPPORT = "emotional_support"
FLOW_TOPIC_CHANGE = "topic_change"
FLOW_CONTINUE = "continue"
FLOWS = (FLOW_MEMORY_SHARING, FLOW_EMOTIONAL_SUPPORT, FLOW_TOPIC_CHANGE, FLOW_CONTINUE)

DEFAULT_TOPIC = "general"

MEMORY_SHARING_CUES = ("tell me about", "remember when", "do you remember")
EMOTIONAL_SUPPORT_CUES = ("sad", "miss", "difficult", "lonely", "hurt")

# Checked in order; first hit wins.
TOPIC_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("family", ("family", "children", "kids")),
    ("work", ("work", "job", "career")),
    ("health", ("health", "feeling", "doctor")),
    ("memories", ("memory", "remember", "past")),
)

TONE_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("happy", ("happy", "great", "wonderful")),
    ("sad", ("sad", "miss", "difficult")),
    ("excited", ("excited", "amazing", "love")),
    ("concerned", ("worried", "concerned", "anxious")),
)

# Prebuilt TTS voices keyed by response emotion.
EMOTION_VOICES = {
    "compassionate": "Sulafat",
    "joyful": "Puck",
    "nostalgic": "Vindemiatrix",
    "concerned": "Kore",
}


def _lowered(text: str) -> str:
    return " ".join(str(text or "").split()).casefold()


def _contains_any(text: str, cues: tuple[str, ...]) -> bool:
    return any(cue in text for cue in cues)


def detect_topic(utterance: str) -> str:
    lowered = _lowered(utterance)
    for topic, keywords in TOPIC_KEYWORDS:
        if _contains_any(lowered, keywords):
            return topic
    return DEFAULT_TOPIC


def analyze_emotional_tone(utterance: str) -> str:
    lowered = _lowered(utterance)
    for tone, keywords in TONE_KEYWORDS:
        if _contains_any(lowered, keywords):
            return tone
    return "neutral"


def classify_flow(utterance: str, running_topic: str = DEFAULT_TOPIC) -> str:
    lowered = _lowered(utterance)
    if _contains_any(lowered, MEMORY_SHARING_CUES):
        return FLOW_MEMORY_SHARING
    if _contains_any(lowered, EMOTIONAL_SUPPORT_CUES):
        return FLOW_EMOTIONAL_SUPPORT
    if detect_topic(utterance) != (running_topic or DEFAULT_TOPIC):
        return FLOW_TOPIC_CHANGE
    return FLOW_CONTINUE


def response_emotion(reply: str, emotional_tone: str) -> str:
    """Label the persona's reply by mirroring the user's tone where the reply supports it."""
    lowered = _lowered(reply)
    if emotional_tone == "sad" and _contains_any(lowered, ("understand", "here for you")):
        return "compassionate"
    if emotional_tone == "happy" and _contains_any(lowered, ("wonderful", "love")):
        return "joyful"
    if _contains_any(lowered, ("remember", "memory")):
        return "nostalgic"
    return "warm"


def response_confidence(reply: str, memory_count: int) -> float:
    confidence = 0.7
    if memory_count > 0:
        confidence += 0.2
    if len(reply) > 100:
        confidence += 0.1
    if len(reply) < 50:
        confidence -= 0.2
    return max(0.1, min(1.0, confidence))


def select_voice(emotion: str | None, default_voice: str) -> str:
    return EMOTION_VOICES.get(str(emotion or ""), default_voice)
