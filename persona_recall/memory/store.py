from __future__ import annotations

from pathlib import Path

import aiosqlite

from .storage.memories import MemoryRecordsMixin, _Embedder
from .storage.personas import MemoryPersonasMixin
from .storage.schema import MemorySchemaMixin
from .storage.sessions import MemorySessionsMixin


class MemoryStore(
    MemorySchemaMixin,
    MemoryPersonasMixin,
    MemorySessionsMixin,
    MemoryRecordsMixin,
):
    """Persistent persona memory store with embedding search, sessions and turns."""

    backend_name = "sqlite"

    def __init__(
        self,
        db_path: Path | str,
        embedder: _Embedder | None = None,
        *,
        similarity_threshold: float = 0.7,
    ) -> None:
        super().__init__(Path(db_path))
        self.embedder = embedder
        self.similarity_threshold = float(similarity_threshold)

    async def ping(self) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("SELECT 1")
