from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Callable, Dict, Tuple

from ..models import ContentUnit, ConversationTurn, SESSION_MODALITIES
from .context import ContextAssembler
from .events import FinalResult, SpeechEvent
from .orchestrator import BackgroundTasks, TurnOrchestrator
from .playback import AudioSink
from .state import SessionRuntime, TurnState

logger = logging.getLogger("persona_recall")


class ConversationEngine:
    """Entry point tying the memory store, extractor and per-session orchestrators together."""

    def __init__(
        self,
        *,
        store: Any,
        extractor: Any,
        assembler: ContextAssembler,
        llm: Any,
        synthesizer: Any | None = None,
        stt: Any | None = None,
        sink_factory: Callable[[str], AudioSink] | None = None,
        debounce_ms: int = 500,
        generation_timeout_seconds: float = 12.0,
        recent_turn_window: int = 10,
        voice_enabled: bool = False,
        default_voice: str = "Aoede",
        reingest_enabled: bool = True,
    ) -> None:
        self.store = store
        self.extractor = extractor
        self.assembler = assembler
        self.llm = llm
        self.synthesizer = synthesizer
        self.stt = stt
        self.sink_factory = sink_factory
        self.debounce_ms = debounce_ms
        self.generation_timeout_seconds = generation_timeout_seconds
        self.recent_turn_window = recent_turn_window
        self.voice_enabled = voice_enabled
        self.default_voice = default_voice
        self.reingest_enabled = reingest_enabled

        self.background = BackgroundTasks()
        self._sessions: Dict[str, TurnOrchestrator] = {}
        self._pairs: Dict[Tuple[str, str], str] = {}
        self._session_lock = asyncio.Lock()
        self._started = False

    async def __aenter__(self) -> "ConversationEngine":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def _clients(self) -> list[Any]:
        seen: set[int] = set()
        clients: list[Any] = []
        for client in (self.llm, getattr(self.extractor, "llm", None), getattr(self.store, "embedder", None), self.synthesizer):
            if client is None or id(client) in seen:
                continue
            seen.add(id(client))
            clients.append(client)
        return clients

    async def start(self) -> None:
        if self._started:
            return
        await self.store.init()
        for client in self._clients():
            start_fn = getattr(client, "start", None)
            if callable(start_fn):
                await start_fn()
        self._started = True

    async def close(self) -> None:
        for session_id in list(self._sessions):
            await self.end_session(session_id)
        await self.background.drain()
        for client in self._clients():
            close_fn = getattr(client, "close", None)
            if callable(close_fn):
                try:
                    await close_fn()
                except Exception:
                    logger.exception("Failed to close client %s", type(client).__name__)
        self._started = False

    @property
    def active_session_ids(self) -> list[str]:
        return list(self._sessions)

    def session_state(self, session_id: str) -> TurnState | None:
        orchestrator = self._sessions.get(session_id)
        return orchestrator.state if orchestrator else None

    async def wait_until_settled(self, session_id: str, timeout: float | None = None) -> bool:
        orchestrator = self._sessions.get(session_id)
        if orchestrator is None:
            return True
        return await orchestrator.wait_until_settled(timeout)

    async def start_session(self, persona_id: str, user_id: str, modality: str = "text") -> str:
        if modality not in SESSION_MODALITIES:
            raise ValueError(f"Unsupported session modality: {modality}")
        persona = await self.store.get_persona_profile(persona_id)
        if persona is None:
            raise ValueError(f"Unknown persona: {persona_id}")

        async with self._session_lock:
            previous = self._pairs.get((persona_id, user_id))
            if previous is not None:
                logger.info("Replacing active session=%s persona=%s user=%s", previous, persona_id, user_id)
                await self._stop_orchestrator(previous)

            session = await self.store.start_session(persona_id, user_id, modality)
            orchestrator = TurnOrchestrator(
                SessionRuntime(session=session, persona=persona),
                store=self.store,
                assembler=self.assembler,
                llm=self.llm,
                extractor=self.extractor,
                synthesizer=self.synthesizer,
                sink=self.sink_factory(session.id) if self.sink_factory else None,
                background=self.background,
                debounce_ms=self.debounce_ms,
                generation_timeout_seconds=self.generation_timeout_seconds,
                recent_turn_window=self.recent_turn_window,
                voice_enabled=self.voice_enabled and modality != "text",
                default_voice=self.default_voice,
                reingest_enabled=self.reingest_enabled,
            )
            self._sessions[session.id] = orchestrator
            self._pairs[(persona_id, user_id)] = session.id
            orchestrator.start()

        logger.info("Session started session=%s persona=%s user=%s modality=%s", session.id, persona_id, user_id, modality)
        return session.id

    async def submit_utterance(
        self,
        session_id: str,
        *,
        text: str | None = None,
        audio_chunk: bytes | None = None,
        sample_rate: int = 16000,
        channels: int = 1,
    ) -> bool:
        """Feed one finished utterance, either as text or as raw 16-bit PCM."""
        orchestrator = self._sessions.get(session_id)
        if orchestrator is None:
            logger.debug("Utterance for unknown session=%s ignored", session_id)
            return False
        if text is not None:
            return orchestrator.submit(FinalResult(text))
        if not audio_chunk:
            return False
        if self.stt is None:
            logger.warning("Audio utterance ignored: speech-to-text is not configured session=%s", session_id)
            return False

        result = await self.stt.transcribe(audio_chunk, sample_rate=sample_rate, channels=channels)
        if not result.ok:
            logger.debug("Audio utterance produced no transcript session=%s status=%s", session_id, result.status)
            return False
        return orchestrator.submit(FinalResult(result.text, result.confidence))

    def submit_speech_event(self, session_id: str, event: SpeechEvent) -> bool:
        orchestrator = self._sessions.get(session_id)
        if orchestrator is None:
            return False
        return orchestrator.submit(event)

    async def _stop_orchestrator(self, session_id: str) -> None:
        orchestrator = self._sessions.pop(session_id, None)
        if orchestrator is None:
            return
        session = orchestrator.runtime.session
        if self._pairs.get((session.persona_id, session.user_id)) == session_id:
            self._pairs.pop((session.persona_id, session.user_id), None)
        await orchestrator.stop()
        try:
            await self.store.end_session(session_id)
        except Exception:
            logger.exception("Failed to mark session ended session=%s", session_id)

    async def end_session(self, session_id: str) -> None:
        async with self._session_lock:
            await self._stop_orchestrator(session_id)
        logger.info("Session ended session=%s", session_id)

    async def ingest_content(self, persona_id: str, unit: ContentUnit) -> int:
        memories = await self.extractor.extract(persona_id, unit)
        if not memories:
            return 0
        return await self.store.save_memories(memories)

    async def turns(self, session_id: str) -> AsyncIterator[ConversationTurn]:
        orchestrator = self._sessions.get(session_id)
        if orchestrator is None:
            return
        async for turn in orchestrator.turns():
            yield turn
