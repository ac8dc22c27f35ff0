from __future__ import annotations

import asyncio
import contextlib
import logging
import mimetypes
import tempfile
import wave
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import numpy as np

try:
    import audioop
except ModuleNotFoundError:
    import audioop_lts as audioop  # type: ignore[import-not-found]


logger = logging.getLogger("persona_recall")

_TARGET_RATE = 16000
_SAMPLE_WIDTH = 2


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


@dataclass(slots=True)
class STTResult:
    text: str
    confidence: float
    duration_ms: int
    rms: int
    model_name: str
    status: str

    @property
    def ok(self) -> bool:
        return bool(self.text) and self.status in {"ok", "low_confidence"}


class LocalSTT:
    """faster-whisper transcription for voice chunks and uploaded audio/video files."""

    def __init__(
        self,
        enabled: bool,
        model: str,
        fallback_model: str,
        device: str,
        compute_type: str,
        language: str,
        max_audio_seconds: int,
    ) -> None:
        self.enabled = enabled
        self.model_name = model.strip() or "medium"
        self.fallback_model_name = fallback_model.strip()
        self.device = device.strip() or "auto"
        self.compute_type = compute_type.strip() or "int8"
        self.language = language.strip() or None
        self.max_audio_seconds = max(4, int(max_audio_seconds))

        self._models: dict[str, Any] = {}
        self._failed_models: set[str] = set()

    def _load_named_model_sync(self, name: str) -> Any | None:
        if not name:
            return None
        if name in self._models:
            return self._models[name]
        if name in self._failed_models:
            return None

        try:
            from faster_whisper import WhisperModel  # type: ignore
        except Exception:
            self._failed_models.add(name)
            logger.exception("Local STT failed to import faster_whisper")
            return None

        try:
            model_obj = WhisperModel(name, device=self.device, compute_type=self.compute_type)
        except Exception:
            self._failed_models.add(name)
            logger.exception(
                "Local STT failed to load model model=%s device=%s compute=%s",
                name,
                self.device,
                self.compute_type,
            )
            return None

        self._models[name] = model_obj
        return model_obj

    @staticmethod
    def _decode_segments(segments: Any) -> tuple[str, float]:
        chunks: list[str] = []
        logprobs: list[float] = []
        no_speech: list[float] = []

        for segment in segments:
            text = str(getattr(segment, "text", "")).strip()
            if text:
                chunks.append(" ".join(text.split()))

            avg_logprob = getattr(segment, "avg_logprob", None)
            if isinstance(avg_logprob, (float, int)):
                logprobs.append(float(avg_logprob))

            no_speech_prob = getattr(segment, "no_speech_prob", None)
            if isinstance(no_speech_prob, (float, int)):
                no_speech.append(float(no_speech_prob))

        transcript = " ".join(chunk for chunk in chunks if chunk).strip()
        if not transcript:
            return "", 0.0

        if logprobs:
            confidence = _clamp((sum(logprobs) / len(logprobs) + 1.4) / 1.4, 0.0, 1.0)
        else:
            confidence = 0.45

        if no_speech:
            avg_no_speech = _clamp(sum(no_speech) / len(no_speech), 0.0, 1.0)
            confidence *= _clamp(1.0 - avg_no_speech * 0.7, 0.25, 1.0)

        if len(transcript) < 6:
            confidence *= 0.82

        return transcript, _clamp(confidence, 0.0, 1.0)

    @staticmethod
    def pcm_duration_ms(pcm: bytes, sample_rate: int, channels: int) -> int:
        frame_bytes = _SAMPLE_WIDTH * max(1, int(channels))
        return int((len(pcm) / (max(1, int(sample_rate)) * frame_bytes)) * 1000)

    @staticmethod
    def _pcm_rms(pcm: bytes) -> int:
        try:
            return int(audioop.rms(pcm, _SAMPLE_WIDTH))
        except audioop.error:
            return 0

    @staticmethod
    def _downmix(pcm: bytes, channels: int) -> bytes:
        if channels <= 1:
            return pcm
        if channels == 2:
            return audioop.tomono(pcm, _SAMPLE_WIDTH, 0.5, 0.5)
        frames = np.frombuffer(pcm, dtype="<i2").reshape(-1, channels)
        return frames.mean(axis=1).round().astype("<i2").tobytes()

    def _write_wav(self, pcm: bytes, sample_rate: int, channels: int) -> Path | None:
        if not pcm:
            return None

        frame_bytes = _SAMPLE_WIDTH * max(1, channels)
        max_bytes = sample_rate * frame_bytes * self.max_audio_seconds
        if len(pcm) > max_bytes:
            pcm = pcm[-max_bytes:]
        pcm = pcm[: len(pcm) - (len(pcm) % frame_bytes)]

        mono = self._downmix(pcm, channels)
        if sample_rate != _TARGET_RATE:
            mono, _ = audioop.ratecv(mono, _SAMPLE_WIDTH, 1, sample_rate, _TARGET_RATE, None)

        with tempfile.NamedTemporaryFile(prefix="persona_stt_", suffix=".wav", delete=False) as tmp:
            raw_path = tmp.name

        with wave.open(raw_path, "wb") as writer:
            writer.setnchannels(1)
            writer.setsampwidth(_SAMPLE_WIDTH)
            writer.setframerate(_TARGET_RATE)
            writer.writeframes(mono)

        return Path(raw_path)

    @staticmethod
    def _write_media(media_bytes: bytes, mime_type: str | None) -> Path | None:
        if not media_bytes:
            return None
        suffix = mimetypes.guess_extension((mime_type or "").split(";")[0].strip()) or ".bin"
        with tempfile.NamedTemporaryFile(prefix="persona_media_", suffix=suffix, delete=False) as tmp:
            tmp.write(media_bytes)
            return Path(tmp.name)

    def _run_transcribe_pass(self, model_obj: Any, path: Path) -> tuple[str, float]:
        segments, _ = model_obj.transcribe(
            str(path),
            language=self.language,
            beam_size=4,
            best_of=4,
            temperature=0.0,
            vad_filter=True,
            condition_on_previous_text=False,
            no_speech_threshold=0.7,
            compression_ratio_threshold=2.6,
            log_prob_threshold=-1.4,
        )
        return self._decode_segments(segments)

    def _transcribe_path_sync(self, path: Path, *, duration_ms: int, rms: int) -> STTResult:
        def _result(status: str, text: str = "", confidence: float = 0.0, model_name: str | None = None) -> STTResult:
            return STTResult(
                text=text,
                confidence=_clamp(confidence, 0.0, 1.0),
                duration_ms=duration_ms,
                rms=rms,
                model_name=model_name or self.model_name,
                status=status,
            )

        primary = self._load_named_model_sync(self.model_name)
        if primary is None:
            return _result("model_unavailable")

        try:
            text, confidence = self._run_transcribe_pass(primary, path)
            model_name_used = self.model_name

            if (not text) or confidence < 0.34:
                fallback = self._load_named_model_sync(self.fallback_model_name)
                if fallback is not None:
                    fallback_text, fallback_conf = self._run_transcribe_pass(fallback, path)
                    if fallback_text and (fallback_conf >= confidence or not text):
                        text = fallback_text
                        confidence = fallback_conf
                        model_name_used = self.fallback_model_name

            if not text:
                return _result("empty", model_name=model_name_used)
            status = "ok" if confidence >= 0.34 else "low_confidence"
            return _result(status, text, confidence, model_name_used)
        except Exception:
            logger.exception(
                "Local STT transcribe failed status=error model=%s duration_ms=%s rms=%s",
                self.model_name,
                duration_ms,
                rms,
            )
            return _result("error")

    def _transcribe_pcm_sync(self, pcm: bytes, sample_rate: int, channels: int) -> STTResult:
        duration_ms = self.pcm_duration_ms(pcm, sample_rate, channels)
        rms = self._pcm_rms(pcm)
        if not self.enabled:
            return STTResult("", 0.0, duration_ms, rms, self.model_name, "disabled")
        if duration_ms < 180:
            return STTResult("", 0.0, duration_ms, rms, self.model_name, "too_short")

        wav_path = self._write_wav(pcm, sample_rate, channels)
        if wav_path is None:
            return STTResult("", 0.0, duration_ms, rms, self.model_name, "empty_audio")
        try:
            return self._transcribe_path_sync(wav_path, duration_ms=duration_ms, rms=rms)
        finally:
            with contextlib.suppress(OSError):
                wav_path.unlink()

    def _transcribe_media_sync(self, media_bytes: bytes, mime_type: str | None) -> STTResult:
        if not self.enabled:
            return STTResult("", 0.0, 0, 0, self.model_name, "disabled")
        media_path = self._write_media(media_bytes, mime_type)
        if media_path is None:
            return STTResult("", 0.0, 0, 0, self.model_name, "empty_audio")
        try:
            # faster-whisper decodes containers (mp3, mp4, webm, ...) through PyAV.
            return self._transcribe_path_sync(media_path, duration_ms=0, rms=0)
        finally:
            with contextlib.suppress(OSError):
                media_path.unlink()

    async def transcribe(self, pcm: bytes, *, sample_rate: int = 16000, channels: int = 1) -> STTResult:
        """Transcribe raw 16-bit PCM captured from a live voice session."""
        return await asyncio.to_thread(self._transcribe_pcm_sync, pcm, int(sample_rate), int(channels))

    async def transcribe_media(self, media_bytes: bytes, mime_type: str | None = None) -> STTResult:
        return await asyncio.to_thread(self._transcribe_media_sync, media_bytes, mime_type)
