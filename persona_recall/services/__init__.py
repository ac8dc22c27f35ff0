from .gemini_client import GeminiClient, SynthesizedAudio
from .local_stt import LocalSTT, STTResult
from .ollama_chat_client import OllamaChatClient
from .ollama_extractor_backend import OllamaExtractorBackend

__all__ = ["GeminiClient", "LocalSTT", "OllamaChatClient", "OllamaExtractorBackend", "STTResult", "SynthesizedAudio"]
