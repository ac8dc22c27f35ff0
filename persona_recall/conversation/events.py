from __future__ import annotations

from dataclasses import dataclass
from typing import Union

QUIET_RECOGNITION_ERRORS = frozenset({"no-speech", "no_speech", "aborted"})


@dataclass(slots=True, frozen=True)
class PartialResult:
    text: str


@dataclass(slots=True, frozen=True)
class FinalResult:
    text: str
    confidence: float = 1.0


@dataclass(slots=True, frozen=True)
class SilenceDetected:
    pass


@dataclass(slots=True, frozen=True)
class RecognitionError:
    code: str
    message: str = ""

    @property
    def is_quiet(self) -> bool:
        return self.code.strip().casefold() in QUIET_RECOGNITION_ERRORS


@dataclass(slots=True, frozen=True)
class Resume:
    pass


@dataclass(slots=True, frozen=True)
class Stop:
    pass


# Internal events posted by the orchestrator's own timers and tasks.
@dataclass(slots=True, frozen=True)
class _DebounceElapsed:
    token: int


@dataclass(slots=True, frozen=True)
class _GenerationFinished:
    epoch: int


SpeechEvent = Union[PartialResult, FinalResult, SilenceDetected, RecognitionError, Resume, Stop]
