from .context import ContextAssembler, ConversationContext
from .engine import ConversationEngine
from .events import FinalResult, PartialResult, RecognitionError, Resume, SilenceDetected, SpeechEvent, Stop
from .orchestrator import BackgroundTasks, TurnOrchestrator
from .state import SessionRuntime, TurnState

__all__ = [
    "BackgroundTasks",
    "ContextAssembler",
    "ConversationContext",
    "ConversationEngine",
    "FinalResult",
    "PartialResult",
    "RecognitionError",
    "Resume",
    "SessionRuntime",
    "SilenceDetected",
    "SpeechEvent",
    "Stop",
    "TurnOrchestrator",
    "TurnState",
]
