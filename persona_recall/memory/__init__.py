from .extractor import ExtractionDiagnostics, ExtractionResult, MemoryExtractor
from .store import MemoryStore

__all__ = ["ExtractionDiagnostics", "ExtractionResult", "MemoryExtractor", "MemoryStore"]
