from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


load_dotenv()


def _env_lookup(name: str, aliases: tuple[str, ...] = ()) -> str | None:
    for key in (name, *aliases):
        # Be tolerant to UTF-8 BOM accidentally saved in .env key names.
        for candidate in (key, f"\ufeff{key}"):
            raw = os.getenv(candidate)
            if raw is not None:
                return raw
    return None


def _env_bool(name: str, default: bool, aliases: tuple[str, ...] = ()) -> bool:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int, aliases: tuple[str, ...] = ()) -> int:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _env_float(name: str, default: float, aliases: tuple[str, ...] = ()) -> float:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


def _env_str(name: str, default: str, aliases: tuple[str, ...] = ()) -> str:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    value = raw.strip()
    return value if value else default


@dataclass(slots=True)
class Settings:
    llm_backend: str

    gemini_api_key: str
    gemini_base_url: str
    gemini_model: str
    gemini_embedding_model: str
    gemini_tts_model: str
    gemini_tts_voice: str
    gemini_timeout_seconds: int
    gemini_temperature: float
    gemini_max_output_tokens: int

    ollama_base_url: str
    ollama_model: str
    ollama_embedding_model: str
    ollama_timeout_seconds: int

    sqlite_path: Path
    preferred_response_language: str

    memory_enabled: bool
    memory_search_top_k: int
    memory_similarity_threshold: float
    memory_context_limit: int
    memory_candidate_limit: int
    extractor_min_text_chars: int
    conversation_reingest_enabled: bool

    recent_turn_window: int
    turn_debounce_ms: int
    generation_timeout_seconds: float
    voice_synthesis_enabled: bool

    local_stt_enabled: bool
    local_stt_model: str
    local_stt_fallback_model: str
    local_stt_device: str
    local_stt_compute_type: str
    local_stt_language: str
    local_stt_max_audio_seconds: int

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            llm_backend=_env_str("LLM_BACKEND", "gemini").lower(),
            gemini_api_key=_env_str("GEMINI_API_KEY", ""),
            gemini_base_url=_env_str("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com"),
            gemini_model=_env_str("GEMINI_MODEL", "gemini-2.5-flash"),
            gemini_embedding_model=_env_str("GEMINI_EMBEDDING_MODEL", "text-embedding-004"),
            gemini_tts_model=_env_str("GEMINI_TTS_MODEL", "gemini-2.5-flash-preview-tts"),
            gemini_tts_voice=_env_str("GEMINI_TTS_VOICE", "Aoede"),
            gemini_timeout_seconds=_env_int("GEMINI_TIMEOUT_SECONDS", 30),
            gemini_temperature=_env_float("GEMINI_TEMPERATURE", 0.8),
            gemini_max_output_tokens=_env_int("GEMINI_MAX_OUTPUT_TOKENS", 0),
            ollama_base_url=_env_str("OLLAMA_BASE_URL", "http://127.0.0.1:11434"),
            ollama_model=_env_str("OLLAMA_MODEL", "qwen2.5:7b-instruct"),
            ollama_embedding_model=_env_str("OLLAMA_EMBEDDING_MODEL", "nomic-embed-text"),
            ollama_timeout_seconds=_env_int("OLLAMA_TIMEOUT_SECONDS", 45),
            sqlite_path=Path(_env_str("SQLITE_PATH", "./data/persona_recall.db")).expanduser(),
            preferred_response_language=_env_str("PREFERRED_RESPONSE_LANGUAGE", "English"),
            memory_enabled=_env_bool("MEMORY_ENABLED", True),
            memory_search_top_k=_env_int("MEMORY_SEARCH_TOP_K", 15),
            memory_similarity_threshold=_env_float("MEMORY_SIMILARITY_THRESHOLD", 0.7),
            memory_context_limit=_env_int("MEMORY_CONTEXT_LIMIT", 10),
            memory_candidate_limit=_env_int("MEMORY_CANDIDATE_LIMIT", 40),
            extractor_min_text_chars=_env_int("EXTRACTOR_MIN_TEXT_CHARS", 4),
            conversation_reingest_enabled=_env_bool("CONVERSATION_REINGEST_ENABLED", True),
            recent_turn_window=_env_int("RECENT_TURN_WINDOW", 10),
            turn_debounce_ms=_env_int("TURN_DEBOUNCE_MS", 500),
            generation_timeout_seconds=_env_float("GENERATION_TIMEOUT_SECONDS", 12.0),
            voice_synthesis_enabled=_env_bool("VOICE_SYNTHESIS_ENABLED", True),
            local_stt_enabled=_env_bool("LOCAL_STT_ENABLED", True),
            local_stt_model=_env_str("LOCAL_STT_MODEL", "medium"),
            local_stt_fallback_model=_env_str("LOCAL_STT_FALLBACK_MODEL", "small"),
            local_stt_device=_env_str("LOCAL_STT_DEVICE", "auto"),
            local_stt_compute_type=_env_str("LOCAL_STT_COMPUTE_TYPE", "int8"),
            local_stt_language=_env_str("LOCAL_STT_LANGUAGE", "en"),
            local_stt_max_audio_seconds=_env_int("LOCAL_STT_MAX_AUDIO_SECONDS", 600),
        )

    def validate(self) -> None:
        if self.llm_backend not in {"gemini", "ollama"}:
            raise ValueError("LLM_BACKEND must be 'gemini' or 'ollama'")

        if self.llm_backend == "gemini":
            if not self.gemini_api_key:
                raise ValueError("GEMINI_API_KEY is required")
            if self.gemini_api_key == "put_your_gemini_api_key_here":
                raise ValueError("GEMINI_API_KEY is still placeholder")
            if self.gemini_timeout_seconds < 5:
                raise ValueError("GEMINI_TIMEOUT_SECONDS must be >= 5")
            if self.gemini_max_output_tokens < 0:
                raise ValueError("GEMINI_MAX_OUTPUT_TOKENS must be >= 0 (0 disables explicit cap)")
        elif not self.ollama_model:
            raise ValueError("OLLAMA_MODEL cannot be empty")

        if self.memory_search_top_k < 1:
            raise ValueError("MEMORY_SEARCH_TOP_K must be >= 1")
        if self.memory_similarity_threshold < -1.0 or self.memory_similarity_threshold > 1.0:
            raise ValueError("MEMORY_SIMILARITY_THRESHOLD must be in [-1, 1]")
        if self.memory_context_limit < 1:
            raise ValueError("MEMORY_CONTEXT_LIMIT must be >= 1")
        if self.memory_candidate_limit < 1:
            raise ValueError("MEMORY_CANDIDATE_LIMIT must be >= 1")
        if self.extractor_min_text_chars < 1:
            raise ValueError("EXTRACTOR_MIN_TEXT_CHARS must be >= 1")

        if self.recent_turn_window < 2:
            raise ValueError("RECENT_TURN_WINDOW must be >= 2")
        if self.turn_debounce_ms < 50:
            raise ValueError("TURN_DEBOUNCE_MS must be >= 50")
        if self.generation_timeout_seconds < 1.0:
            raise ValueError("GENERATION_TIMEOUT_SECONDS must be >= 1")
        if self.local_stt_max_audio_seconds < 4:
            raise ValueError("LOCAL_STT_MAX_AUDIO_SECONDS must be >= 4")
