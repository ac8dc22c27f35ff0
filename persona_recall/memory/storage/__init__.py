from .memories import MemoryRecordsMixin
from .personas import MemoryPersonasMixin
from .schema import MemorySchemaMixin
from .sessions import MemorySessionsMixin

__all__ = [
    "MemorySchemaMixin",
    "MemoryPersonasMixin",
    "MemorySessionsMixin",
    "MemoryRecordsMixin",
]
