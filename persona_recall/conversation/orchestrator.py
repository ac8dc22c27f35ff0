from __future__ import annotations

import asyncio
import logging
import re
import time
from collections import deque
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Awaitable, Coroutine

from ..models import (
    TURN_META_CONFIDENCE,
    TURN_META_FALLBACK,
    TURN_META_FLOW,
    TURN_META_INTERRUPTED,
    TURN_META_LATENCY_MS,
    ConversationTurn,
    utc_now,
)
from .context import ContextAssembler, ConversationContext
from .events import (
    FinalResult,
    PartialResult,
    RecognitionError,
    Resume,
    SilenceDetected,
    SpeechEvent,
    Stop,
    _DebounceElapsed,
    _GenerationFinished,
)
from .fallback import FallbackPhraseBank
from .flow import analyze_emotional_tone, classify_flow, detect_topic, response_confidence, response_emotion, select_voice
from .playback import AudioSink, NullAudioSink
from .state import SessionRuntime, TurnState

logger = logging.getLogger("persona_recall.turns")

FALLBACK_CONFIDENCE = 0.5


def _collapse(text: str) -> str:
    return " ".join(str(text or "").split())


def _is_meaningful(text: str) -> bool:
    return bool(re.search(r"\w", text, flags=re.UNICODE))


class BackgroundTasks:
    """Tracks fire-and-forget tasks so shutdown can drain them."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str | None = None) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self, timeout: float = 10.0) -> None:
        if not self._tasks:
            return
        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        if pending:
            logger.warning("Cancelling %s background task(s) still running at shutdown", len(pending))
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)


class TurnOrchestrator:
    """Per-session turn-taking loop.

    All state transitions happen on the session's event loop task, driven by
    speech events and by the orchestrator's own timer/generation events. Work
    that awaits services (context assembly, completion, synthesis, playback)
    runs in a single generation task that is cancelled on barge-in; it checks
    the epoch after every await and drops its results once the epoch moved on.
    """

    def __init__(
        self,
        runtime: SessionRuntime,
        *,
        store: Any,
        assembler: ContextAssembler,
        llm: Any,
        extractor: Any | None = None,
        synthesizer: Any | None = None,
        sink: AudioSink | None = None,
        background: BackgroundTasks | None = None,
        debounce_ms: int = 500,
        generation_timeout_seconds: float = 12.0,
        recent_turn_window: int = 10,
        voice_enabled: bool = False,
        default_voice: str = "Aoede",
        reingest_enabled: bool = True,
    ) -> None:
        self.runtime = runtime
        self.store = store
        self.assembler = assembler
        self.llm = llm
        self.extractor = extractor
        self.synthesizer = synthesizer
        self.sink: AudioSink = sink or NullAudioSink()
        self.background = background or BackgroundTasks()
        self.debounce_seconds = max(0, int(debounce_ms)) / 1000.0
        self.generation_timeout_seconds = max(0.1, float(generation_timeout_seconds))
        self.voice_enabled = voice_enabled
        self.default_voice = default_voice
        self.reingest_enabled = reingest_enabled
        self.fallbacks = FallbackPhraseBank(runtime.persona.common_phrases, seed=runtime.session.id)
        runtime.history = deque(runtime.history, maxlen=max(1, int(recent_turn_window)))

    @property
    def session_id(self) -> str:
        return self.runtime.session_id

    @property
    def state(self) -> TurnState:
        return self.runtime.state

    def start(self) -> None:
        if self.runtime.loop_task is None:
            self.runtime.loop_task = asyncio.create_task(self._run(), name=f"turns:{self.session_id}")
        self.submit(Resume())

    def submit(self, event: SpeechEvent) -> bool:
        if self.runtime.closed:
            return False
        self.runtime.events.put_nowait(event)
        return True

    async def stop(self) -> None:
        if self.runtime.closed:
            return
        task = self.runtime.loop_task
        if task is None or task.done():
            await self._shutdown()
            return
        self.submit(Stop())
        await task

    async def wait_until_settled(self, timeout: float | None = None) -> bool:
        """Wait until queued speech has been answered and the session is listening again."""
        if timeout is None:
            timeout = self.debounce_seconds + 2 * self.generation_timeout_seconds + 1.0
        rt = self.runtime
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not rt.closed:
            if rt.events.empty() and not rt.pending_transcript and rt.state in {TurnState.IDLE, TurnState.LISTENING}:
                return True
            if loop.time() >= deadline:
                logger.warning("Session did not settle session=%s state=%s", self.session_id, rt.state.value)
                return False
            await asyncio.sleep(0.02)
        return True

    async def turns(self) -> AsyncIterator[ConversationTurn]:
        stream = self.runtime.turn_stream
        while True:
            turn = await stream.get()
            if turn is None:
                # Leave the sentinel for any other consumer.
                stream.put_nowait(None)
                return
            yield turn

    async def _run(self) -> None:
        while True:
            event = await self.runtime.events.get()
            if isinstance(event, Stop):
                await self._shutdown()
                return
            try:
                await self._dispatch(event)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(
                    "Turn loop failed to handle event session=%s event=%s state=%s",
                    self.session_id,
                    type(event).__name__,
                    self.runtime.state.value,
                )

    async def _dispatch(self, event: Any) -> None:
        rt = self.runtime
        if isinstance(event, Resume):
            if rt.state == TurnState.IDLE:
                rt.state = TurnState.LISTENING
            return
        if isinstance(event, RecognitionError):
            if not event.is_quiet:
                logger.warning("Speech recognition error session=%s code=%s: %s", self.session_id, event.code, event.message)
            return
        if isinstance(event, _DebounceElapsed):
            if event.token == rt.debounce_token and rt.state == TurnState.DEBOUNCING:
                rt.debounce_task = None
                await self._begin_processing()
            return
        if isinstance(event, _GenerationFinished):
            if event.epoch == rt.epoch and rt.state in {TurnState.PROCESSING, TurnState.RESPONDING}:
                rt.generation_task = None
                rt.state = TurnState.LISTENING
            return
        if rt.state == TurnState.IDLE:
            logger.debug("Dropping %s while idle session=%s", type(event).__name__, self.session_id)
            return
        if isinstance(event, PartialResult):
            if _collapse(event.text) and rt.state == TurnState.RESPONDING:
                await self._interrupt("partial")
            return
        if isinstance(event, FinalResult):
            await self._on_final(event.text)
            return
        if isinstance(event, SilenceDetected):
            if rt.state == TurnState.DEBOUNCING:
                self._cancel_debounce()
                await self._begin_processing()

    async def _on_final(self, text: str) -> None:
        rt = self.runtime
        cleaned = _collapse(text)
        if not _is_meaningful(cleaned):
            return
        key = cleaned.casefold()
        if key == rt.last_processed_transcript.casefold() or key == rt.pending_transcript.casefold():
            logger.debug("Dropping duplicate final transcript session=%s", self.session_id)
            return

        if rt.state in {TurnState.PROCESSING, TurnState.RESPONDING}:
            await self._interrupt("final")

        rt.pending_transcript = f"{rt.pending_transcript} {cleaned}".strip() if rt.pending_transcript else cleaned
        rt.state = TurnState.DEBOUNCING
        self._restart_debounce()

    def _restart_debounce(self) -> None:
        self._cancel_debounce()
        token = self.runtime.debounce_token
        self.runtime.debounce_task = asyncio.create_task(self._debounce_timer(token))

    def _cancel_debounce(self) -> None:
        rt = self.runtime
        rt.debounce_token += 1
        task = rt.debounce_task
        rt.debounce_task = None
        if task is not None and not task.done():
            task.cancel()

    async def _debounce_timer(self, token: int) -> None:
        await asyncio.sleep(self.debounce_seconds)
        if not self.runtime.closed:
            self.runtime.events.put_nowait(_DebounceElapsed(token))

    async def _interrupt(self, reason: str) -> None:
        rt = self.runtime
        rt.epoch += 1
        task = rt.generation_task
        rt.generation_task = None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait({task}, timeout=2.0)
        await self._stop_playback()
        rt.interrupted = True
        rt.state = TurnState.LISTENING
        logger.info("Barge-in session=%s reason=%s", self.session_id, reason)

    async def _stop_playback(self) -> None:
        try:
            await self.sink.stop()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.debug("Audio sink stop failed session=%s: %s", self.session_id, exc)

    async def _begin_processing(self) -> None:
        rt = self.runtime
        text = rt.pending_transcript
        rt.pending_transcript = ""
        if not text:
            rt.state = TurnState.LISTENING
            return

        rt.last_processed_transcript = text
        interrupted = rt.interrupted
        rt.interrupted = False
        running_topic = rt.running_topic
        rt.running_topic = detect_topic(text)
        rt.epoch += 1
        epoch = rt.epoch
        rt.state = TurnState.PROCESSING

        history = list(rt.history)
        metadata = {TURN_META_INTERRUPTED: True} if interrupted else {}
        await self._record_turn(
            ConversationTurn(session_id=self.session_id, sender="user", content=text, metadata=metadata)
        )
        if epoch != rt.epoch:
            return
        rt.generation_task = asyncio.create_task(
            self._respond(text, epoch=epoch, interrupted=interrupted, history=history, running_topic=running_topic),
            name=f"generation:{self.session_id}:{epoch}",
        )

    async def _generate(
        self,
        text: str,
        *,
        interrupted: bool,
        history: list[ConversationTurn],
        running_topic: str,
        holder: list[ConversationContext],
    ) -> str:
        context = await self.assembler.build_context(
            self.runtime.session,
            self.runtime.persona,
            text,
            running_topic=running_topic,
            history=history,
            interrupted=interrupted,
        )
        holder.append(context)
        reply = await self.llm.chat(context.to_messages())
        return str(reply or "").strip()

    async def _respond(
        self,
        text: str,
        *,
        epoch: int,
        interrupted: bool,
        history: list[ConversationTurn],
        running_topic: str,
    ) -> None:
        rt = self.runtime
        started = time.perf_counter()
        holder: list[ConversationContext] = []
        reply = ""
        try:
            reply = await asyncio.wait_for(
                self._generate(text, interrupted=interrupted, history=history, running_topic=running_topic, holder=holder),
                timeout=self.generation_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Generation timed out session=%s after %.1fs; using fallback",
                self.session_id,
                self.generation_timeout_seconds,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Generation failed session=%s; using fallback: %s", self.session_id, exc)

        if epoch != rt.epoch:
            return

        context = holder[0] if holder else None
        flow = context.flow if context else classify_flow(text, running_topic)
        fallback_used = not reply
        if fallback_used:
            reply = self.fallbacks.pick(flow)
            emotion = "concerned"
            confidence = FALLBACK_CONFIDENCE
        else:
            tone = context.emotional_tone if context else analyze_emotional_tone(text)
            emotion = response_emotion(reply, tone)
            confidence = response_confidence(reply, len(context.memories) if context else 0)

        persona_turn = ConversationTurn(
            session_id=self.session_id,
            sender="persona",
            content=reply,
            emotion=emotion,
            metadata={
                TURN_META_CONFIDENCE: round(confidence, 3),
                TURN_META_LATENCY_MS: max(0, int((time.perf_counter() - started) * 1000)),
                TURN_META_FLOW: flow,
                TURN_META_FALLBACK: fallback_used,
            },
        )
        await self._record_turn(persona_turn)
        if self.reingest_enabled and self.extractor is not None:
            self.background.spawn(self._reingest(text, reply), name=f"reingest:{self.session_id}")
        if epoch != rt.epoch:
            return

        audio = None
        if self.voice_enabled and self.synthesizer is not None:
            remaining = self.generation_timeout_seconds
            if not fallback_used:
                remaining -= time.perf_counter() - started
            audio = await self._synthesize_within(reply, emotion, remaining)
            if epoch != rt.epoch:
                return

        rt.state = TurnState.RESPONDING
        if audio is not None:
            await self._stop_playback()
            if epoch != rt.epoch:
                return
            await self.sink.play(audio)

        if epoch == rt.epoch and not rt.closed:
            rt.events.put_nowait(_GenerationFinished(epoch))

    async def _synthesize_within(self, reply: str, emotion: str, budget: float) -> Any | None:
        if budget <= 0:
            logger.warning("No time left for speech synthesis session=%s; text only", self.session_id)
            return None
        try:
            return await asyncio.wait_for(self._synthesize(reply, emotion), timeout=budget)
        except asyncio.TimeoutError:
            logger.warning("Speech synthesis timed out session=%s after %.1fs; text only", self.session_id, budget)
            return None

    async def _synthesize(self, reply: str, emotion: str) -> Any | None:
        voice = select_voice(emotion, self.default_voice)
        try:
            return await self.synthesizer.synthesize(reply, voice=voice)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Speech synthesis failed session=%s voice=%s; text only: %s", self.session_id, voice, exc)
            return None

    def _next_timestamp(self) -> datetime:
        now = utc_now()
        last = self.runtime.last_turn_at
        if last is not None and now <= last:
            now = last + timedelta(microseconds=1)
        self.runtime.last_turn_at = now
        return now

    async def _record_turn(self, turn: ConversationTurn) -> None:
        turn.timestamp = self._next_timestamp()
        self.runtime.history.append(turn)
        self.runtime.turn_stream.put_nowait(turn)
        logger.info(
            "turn session=%s sender=%s flow=%s fallback=%s chars=%s",
            self.session_id,
            turn.sender,
            turn.metadata.get(TURN_META_FLOW, "-"),
            turn.metadata.get(TURN_META_FALLBACK, False),
            len(turn.content),
        )
        await self._persist(self.store.append_turn(turn))

    async def _persist(self, op: Awaitable[Any]) -> None:
        try:
            await op
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Turn persistence failed session=%s", self.session_id)

    async def _reingest(self, user_text: str, persona_text: str) -> None:
        try:
            memories = await self.extractor.extract_from_exchange(self.runtime.persona, user_text, persona_text)
            if memories:
                saved = await self.store.save_memories(memories)
                logger.debug("Re-ingested conversation memories session=%s saved=%s", self.session_id, saved)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Conversation re-ingestion failed session=%s", self.session_id)

    async def _shutdown(self) -> None:
        rt = self.runtime
        if rt.closed:
            return
        rt.closed = True
        self._cancel_debounce()
        rt.epoch += 1
        task = rt.generation_task
        rt.generation_task = None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait({task}, timeout=2.0)
        await self._stop_playback()
        rt.state = TurnState.IDLE
        rt.turn_stream.put_nowait(None)
