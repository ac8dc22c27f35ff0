from __future__ import annotations

import asyncio
import logging
import re
import wave
from pathlib import Path
from typing import Protocol

from ..services.gemini_client import SynthesizedAudio

logger = logging.getLogger("persona_recall")


class AudioSink(Protocol):
    async def play(self, audio: SynthesizedAudio) -> None: ...

    async def stop(self) -> None: ...


def _extract_int_param(mime_type: str | None, key: str, default: int) -> int:
    if not mime_type:
        return default
    match = re.search(rf"{re.escape(key)}=(\d+)", mime_type)
    if not match:
        return default
    try:
        return int(match.group(1))
    except ValueError:
        return default


def parse_pcm_mime(mime_type: str | None) -> tuple[int, int]:
    rate = _extract_int_param(mime_type, "rate", 24000)
    channels = max(1, _extract_int_param(mime_type, "channels", 1))
    return rate, channels


class NullAudioSink:
    """Sink for text-only sessions: accepts audio and drops it."""

    async def play(self, audio: SynthesizedAudio) -> None:
        return None

    async def stop(self) -> None:
        return None


class WavFileAudioSink:
    """Writes each synthesized PCM reply to `<directory>/reply_<n>.wav`."""

    def __init__(self, directory: Path | str) -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self._counter = 0
        self._current: Path | None = None

    def _write_sync(self, path: Path, audio: SynthesizedAudio) -> None:
        rate, channels = parse_pcm_mime(audio.mime_type)
        with wave.open(str(path), "wb") as writer:
            writer.setnchannels(channels)
            writer.setsampwidth(2)
            writer.setframerate(rate)
            writer.writeframes(audio.audio_bytes)

    async def play(self, audio: SynthesizedAudio) -> None:
        if not audio.audio_bytes:
            return
        if audio.mime_type and not audio.mime_type.lower().startswith(("audio/l16", "audio/pcm")):
            logger.debug("WavFileAudioSink skipped non-PCM audio mime=%s", audio.mime_type)
            return
        self._counter += 1
        path = self.directory / f"reply_{self._counter:04d}.wav"
        self._current = path
        await asyncio.to_thread(self._write_sync, path, audio)
        logger.info("Reply audio written path=%s voice=%s", path, audio.voice)

    async def stop(self) -> None:
        self._current = None
