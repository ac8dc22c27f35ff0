from __future__ import annotations

import random
import zlib

from ..prompts.dialogue import fallback_phrases


class FallbackPhraseBank:
    """In-character replies used when generation fails or times out.

    Choices are varied but reproducible for a given seed, and never repeat the
    previous pick back to back when an alternative exists.
    """

    def __init__(self, common_phrases: list[str] | None = None, *, seed: str | int = 0) -> None:
        self.common_phrases = [p.strip() for p in (common_phrases or []) if str(p).strip()]
        if isinstance(seed, str):
            seed = zlib.crc32(seed.encode("utf-8"))
        self._rng = random.Random(seed)
        self._last = ""

    def candidates(self, flow: str) -> list[str]:
        phrases = fallback_phrases(flow)
        if self.common_phrases:
            phrases = phrases + [f"{phrase} {base}" for phrase in self.common_phrases for base in phrases[:1]]
        return phrases

    def pick(self, flow: str) -> str:
        pool = self.candidates(flow)
        if len(pool) > 1 and self._last in pool:
            pool = [p for p in pool if p != self._last]
        choice = self._rng.choice(pool)
        self._last = choice
        return choice
