from __future__ import annotations

import asyncio
import struct
import sys
import wave
from pathlib import Path
from types import SimpleNamespace
from typing import Any

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from persona_recall.conversation.playback import WavFileAudioSink, parse_pcm_mime  # noqa: E402
from persona_recall.services.gemini_client import SynthesizedAudio  # noqa: E402
from persona_recall.services.local_stt import LocalSTT  # noqa: E402


ONE_SECOND_MONO_16K = b"\x10\x00\xf0\xff" * 8000


class _FakeWhisperModel:
    def __init__(self, segments: list[Any]) -> None:
        self.segments = segments
        self.paths: list[str] = []

    def transcribe(self, path: str, **_: Any) -> tuple[Any, None]:
        self.paths.append(path)
        assert Path(path).exists()
        return iter(self.segments), None


def _stt(enabled: bool = True, fallback_model: str = "small") -> LocalSTT:
    return LocalSTT(
        enabled=enabled,
        model="medium",
        fallback_model=fallback_model,
        device="cpu",
        compute_type="int8",
        language="en",
        max_audio_seconds=20,
    )


def _segment(text: str, avg_logprob: float, no_speech_prob: float = 0.05) -> SimpleNamespace:
    return SimpleNamespace(text=text, avg_logprob=avg_logprob, no_speech_prob=no_speech_prob)


def test_pcm_duration_accounts_for_rate_and_channels() -> None:
    assert LocalSTT.pcm_duration_ms(ONE_SECOND_MONO_16K, 16000, 1) == 1000
    assert LocalSTT.pcm_duration_ms(ONE_SECOND_MONO_16K, 16000, 2) == 500
    assert LocalSTT.pcm_duration_ms(b"", 48000, 2) == 0


def test_disabled_and_too_short_audio_skip_model_loading(monkeypatch: pytest.MonkeyPatch) -> None:
    def _fail_load(self: LocalSTT, name: str) -> Any:
        raise AssertionError("model should not load")

    monkeypatch.setattr(LocalSTT, "_load_named_model_sync", _fail_load)

    disabled = asyncio.run(_stt(enabled=False).transcribe(ONE_SECOND_MONO_16K))
    assert disabled.status == "disabled"
    assert disabled.ok is False

    short = asyncio.run(_stt().transcribe(ONE_SECOND_MONO_16K[:3200]))
    assert short.status == "too_short"
    assert short.duration_ms == 100

    media = asyncio.run(_stt(enabled=False).transcribe_media(b"ID3...", "audio/mpeg"))
    assert media.status == "disabled"


def test_transcribe_uses_fallback_model_when_primary_is_unsure(monkeypatch: pytest.MonkeyPatch) -> None:
    models = {
        "medium": _FakeWhisperModel([_segment(" hmm ", -1.3)]),
        "small": _FakeWhisperModel([_segment("  Hello   Nana ", -0.2), _segment("how are you", -0.3)]),
    }
    monkeypatch.setattr(LocalSTT, "_load_named_model_sync", lambda self, name: models.get(name))

    result = asyncio.run(_stt().transcribe(ONE_SECOND_MONO_16K * 2, sample_rate=16000, channels=2))

    assert result.ok
    assert result.status == "ok"
    assert result.text == "Hello Nana how are you"
    assert result.model_name == "small"
    assert result.duration_ms == 1000
    assert 0.34 <= result.confidence <= 1.0
    assert not Path(models["medium"].paths[0]).exists()


def test_transcribe_reports_missing_model_and_silence(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(LocalSTT, "_load_named_model_sync", lambda self, name: None)
    assert asyncio.run(_stt().transcribe(ONE_SECOND_MONO_16K)).status == "model_unavailable"

    silent = _FakeWhisperModel([_segment("   ", -0.1, no_speech_prob=0.95)])
    monkeypatch.setattr(LocalSTT, "_load_named_model_sync", lambda self, name: silent if name == "medium" else None)
    result = asyncio.run(_stt().transcribe_media(b"\x00\x00\x00\x18ftypmp42", "video/mp4"))
    assert result.status == "empty"
    assert result.text == ""


def test_multichannel_pcm_is_downmixed_before_writing_wav() -> None:
    quad = struct.pack("<4h", 100, 200, 300, 400) * 16000

    assert LocalSTT._downmix(struct.pack("<4h", 100, 200, 300, 400), 4) == struct.pack("<h", 250)

    path = _stt()._write_wav(quad, 16000, 4)
    assert path is not None
    try:
        with wave.open(str(path), "rb") as reader:
            assert reader.getnchannels() == 1
            assert reader.getnframes() == 16000
            assert struct.unpack("<h", reader.readframes(1)) == (250,)
    finally:
        path.unlink()


def test_decode_segments_scores_short_and_noisy_transcripts_lower() -> None:
    clean_text, clean_conf = LocalSTT._decode_segments([_segment("Good morning, Nana", -0.2, 0.0)])
    short_text, short_conf = LocalSTT._decode_segments([_segment("Hi", -0.2, 0.0)])
    noisy_text, noisy_conf = LocalSTT._decode_segments([_segment("Good morning, Nana", -0.2, 0.9)])

    assert clean_text == noisy_text == "Good morning, Nana"
    assert short_text == "Hi"
    assert short_conf < clean_conf
    assert noisy_conf < clean_conf
    assert LocalSTT._decode_segments([]) == ("", 0.0)


def test_parse_pcm_mime_reads_rate_and_channels() -> None:
    assert parse_pcm_mime("audio/L16;codec=pcm;rate=24000") == (24000, 1)
    assert parse_pcm_mime("audio/pcm;rate=16000;channels=2") == (16000, 2)
    assert parse_pcm_mime(None) == (24000, 1)


def test_wav_file_sink_writes_pcm_replies_and_skips_other_formats(tmp_path: Path) -> None:
    sink = WavFileAudioSink(tmp_path / "sess_1")
    pcm = SynthesizedAudio(audio_bytes=b"\x01\x00" * 2400, mime_type="audio/L16;codec=pcm;rate=24000", voice="Puck")
    mp3 = SynthesizedAudio(audio_bytes=b"ID3", mime_type="audio/mpeg", voice="Puck")

    asyncio.run(sink.play(pcm))
    asyncio.run(sink.play(mp3))
    asyncio.run(sink.stop())

    written = sorted((tmp_path / "sess_1").glob("*.wav"))
    assert [p.name for p in written] == ["reply_0001.wav"]
    with wave.open(str(written[0]), "rb") as reader:
        assert reader.getframerate() == 24000
        assert reader.getnchannels() == 1
        assert reader.getnframes() == 2400
