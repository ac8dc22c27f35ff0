from __future__ import annotations

import argparse
import asyncio
import json
import logging
import mimetypes
from pathlib import Path
from typing import Any, Sequence

from .config import Settings
from .conversation.context import ContextAssembler
from .conversation.engine import ConversationEngine
from .conversation.playback import WavFileAudioSink
from .memory.extractor import MemoryExtractor
from .memory.store import MemoryStore
from .models import ContentUnit, PersonaProfile
from .services.gemini_client import GeminiClient
from .services.local_stt import LocalSTT
from .services.ollama_chat_client import OllamaChatClient

logger = logging.getLogger("persona_recall")


def configure_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    logging.getLogger("faster_whisper").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


def build_llm(settings: Settings) -> GeminiClient | OllamaChatClient:
    if settings.llm_backend == "ollama":
        return OllamaChatClient(
            base_url=settings.ollama_base_url,
            model=settings.ollama_model,
            timeout_seconds=settings.ollama_timeout_seconds,
            embedding_model=settings.ollama_embedding_model,
        )
    return GeminiClient(
        api_key=settings.gemini_api_key,
        model=settings.gemini_model,
        timeout_seconds=settings.gemini_timeout_seconds,
        temperature=settings.gemini_temperature,
        max_output_tokens=settings.gemini_max_output_tokens,
        base_url=settings.gemini_base_url,
        embedding_model=settings.gemini_embedding_model,
        tts_model=settings.gemini_tts_model,
        tts_voice=settings.gemini_tts_voice,
    )


def build_engine(settings: Settings, *, audio_dir: Path | None = None) -> ConversationEngine:
    llm = build_llm(settings)
    store = MemoryStore(
        settings.sqlite_path,
        embedder=llm,
        similarity_threshold=settings.memory_similarity_threshold,
    )
    local_stt = LocalSTT(
        enabled=settings.local_stt_enabled,
        model=settings.local_stt_model,
        fallback_model=settings.local_stt_fallback_model,
        device=settings.local_stt_device,
        compute_type=settings.local_stt_compute_type,
        language=settings.local_stt_language,
        max_audio_seconds=settings.local_stt_max_audio_seconds,
    )
    extractor = MemoryExtractor(
        enabled=settings.memory_enabled,
        llm=llm,
        embedder=llm,
        candidate_limit=settings.memory_candidate_limit,
        min_text_chars=settings.extractor_min_text_chars,
        stt=local_stt,
    )
    assembler = ContextAssembler(
        store,
        search_top_k=settings.memory_search_top_k,
        context_limit=settings.memory_context_limit,
        recent_turn_window=settings.recent_turn_window,
        preferred_language=settings.preferred_response_language,
    )
    can_synthesize = isinstance(llm, GeminiClient)
    sink_factory = None
    if audio_dir is not None:
        sink_factory = lambda session_id: WavFileAudioSink(audio_dir / session_id)  # noqa: E731
    return ConversationEngine(
        store=store,
        extractor=extractor,
        assembler=assembler,
        llm=llm,
        synthesizer=llm if can_synthesize else None,
        stt=local_stt,
        sink_factory=sink_factory,
        debounce_ms=settings.turn_debounce_ms,
        generation_timeout_seconds=settings.generation_timeout_seconds,
        recent_turn_window=settings.recent_turn_window,
        voice_enabled=settings.voice_synthesis_enabled and can_synthesize,
        default_voice=settings.gemini_tts_voice,
        reingest_enabled=settings.conversation_reingest_enabled,
    )


def load_persona_json(path: Path) -> PersonaProfile:
    raw = json.loads(path.read_text(encoding="utf-8-sig"))
    if not isinstance(raw, dict):
        raise ValueError(f"{path}: persona file must contain a JSON object")
    persona_id = str(raw.get("id", "")).strip()
    name = str(raw.get("name", "")).strip()
    if not persona_id or not name:
        raise ValueError(f"{path}: persona requires non-empty 'id' and 'name'")
    phrases = raw.get("common_phrases") or []
    if not isinstance(phrases, list):
        raise ValueError(f"{path}: 'common_phrases' must be a list")
    return PersonaProfile(
        id=persona_id,
        name=name,
        relationship=str(raw.get("relationship", "")),
        personality_traits=str(raw.get("personality_traits", "")),
        common_phrases=[str(p) for p in phrases],
    )


def content_unit_from_file(path: Path, source: str | None = None) -> ContentUnit:
    mime, _ = mimetypes.guess_type(path.name)
    mime = mime or "application/octet-stream"
    if source is None:
        major = mime.split("/", 1)[0]
        source = major if major in {"image", "audio", "video"} else "text"
    if source in {"text", "social_media"}:
        return ContentUnit(text=path.read_text(encoding="utf-8-sig"), source=source, source_url=str(path))
    return ContentUnit(source=source, source_url=str(path), media_bytes=path.read_bytes(), media_mime=mime)


async def _print_turns(engine: ConversationEngine, session_id: str, persona_name: str) -> None:
    async for turn in engine.turns(session_id):
        if turn.sender != "persona":
            continue
        suffix = " (fallback)" if turn.metadata.get("fallback") else ""
        print(f"{persona_name}: {turn.content}{suffix}", flush=True)


async def _run_chat(engine: ConversationEngine, args: argparse.Namespace) -> None:
    persona = await engine.store.get_persona_profile(args.persona)
    if persona is None:
        raise SystemExit(f"Unknown persona '{args.persona}'. Register one with --persona-json.")
    session_id = await engine.start_session(persona.id, args.user, args.modality)
    printer = asyncio.create_task(_print_turns(engine, session_id, persona.name), name="turn-printer")
    print(f"Talking to {persona.name}. Type /quit to leave.", flush=True)
    try:
        while True:
            try:
                line = await asyncio.to_thread(input, "> ")
            except EOFError:
                break
            if line.strip() in {"/quit", "/exit"}:
                break
            await engine.submit_utterance(session_id, text=line)
        await engine.wait_until_settled(session_id)
    finally:
        await engine.end_session(session_id)
        await printer


async def _run(args: argparse.Namespace, settings: Settings) -> int:
    audio_dir = Path(args.audio_dir).expanduser() if getattr(args, "audio_dir", None) else None
    async with build_engine(settings, audio_dir=audio_dir) as engine:
        if args.persona_json:
            persona = load_persona_json(Path(args.persona_json))
            await engine.store.upsert_persona_profile(persona)
            logger.info("Persona registered id=%s name=%s", persona.id, persona.name)

        if args.command == "ingest":
            total = 0
            for raw_path in args.files:
                unit = content_unit_from_file(Path(raw_path), args.source)
                saved = await engine.ingest_content(args.persona, unit)
                print(f"{raw_path}: {saved} memories", flush=True)
                total += saved
            print(f"total: {total}", flush=True)
        elif args.command == "summary":
            summary: dict[str, Any] = await engine.store.get_memory_summary(args.persona)
            recent = [f"[{m.type}] {m.content}" for m in summary.pop("recent")]
            print(json.dumps({**summary, "recent": recent}, ensure_ascii=False, indent=2), flush=True)
        elif args.command == "chat":
            await _run_chat(engine, args)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="persona-recall", description="Memory-augmented persona conversations.")
    parser.add_argument("--persona-json", help="register or update a persona profile from a JSON file")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    ingest = sub.add_parser("ingest", help="extract memories from text, image, audio or video files")
    ingest.add_argument("--persona", required=True)
    ingest.add_argument("--source", choices=["text", "image", "audio", "video", "social_media"])
    ingest.add_argument("files", nargs="+")

    summary = sub.add_parser("summary", help="show stored memory counts for a persona")
    summary.add_argument("--persona", required=True)

    chat = sub.add_parser("chat", help="interactive text conversation")
    chat.add_argument("--persona", required=True)
    chat.add_argument("--user", default="local")
    chat.add_argument("--modality", choices=["text", "voice", "video"], default="text")
    chat.add_argument("--audio-dir", help="write synthesized replies as WAV files here")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(logging.DEBUG if args.verbose else logging.INFO)
    settings = Settings.from_env()
    settings.validate()
    try:
        return asyncio.run(_run(args, settings))
    except KeyboardInterrupt:
        logger.info("Shutdown requested, exiting.")
        return 130
