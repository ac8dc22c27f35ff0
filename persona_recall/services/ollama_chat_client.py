from __future__ import annotations

import base64
import re
from typing import Any

from .ollama_extractor_backend import OllamaExtractorBackend


class OllamaChatClient(OllamaExtractorBackend):
    """Ollama client exposing the same `chat/json_chat/embed` surface as GeminiClient."""

    backend_name = "ollama"

    @staticmethod
    def _strip_reasoning_blocks(text: str) -> str:
        cleaned = str(text or "").strip()
        cleaned = re.sub(r"<think>.*?</think>\s*", "", cleaned, flags=re.IGNORECASE | re.DOTALL).strip()
        return cleaned

    def __init__(
        self,
        *,
        base_url: str,
        model: str,
        timeout_seconds: int = 45,
        temperature: float = 0.8,
        max_output_tokens: int = 0,
        embedding_model: str = "nomic-embed-text",
    ) -> None:
        super().__init__(
            base_url=base_url,
            model=model,
            timeout_seconds=timeout_seconds,
            temperature=temperature,
            embedding_model=embedding_model,
        )
        self.max_output_tokens = max(0, int(max_output_tokens or 0))

    async def chat(
        self,
        messages: list[dict[str, Any]],
        temperature: float | None = None,
        max_output_tokens: int | None = None,
    ) -> str:
        mapped_messages = self._sanitize_messages(messages)
        if not mapped_messages:
            return ""

        options: dict[str, Any] = {
            "temperature": float(self.temperature if temperature is None else temperature),
        }
        selected_tokens = self.max_output_tokens if max_output_tokens is None else max_output_tokens
        if isinstance(selected_tokens, int) and selected_tokens > 0:
            options["num_predict"] = selected_tokens

        payload: dict[str, Any] = {
            "model": self.model,
            "messages": mapped_messages,
            "stream": False,
            "think": False,
            "options": options,
        }
        data = await self._request(payload)
        return self._strip_reasoning_blocks(self._extract_message_text(data))

    async def describe_image(self, image_bytes: bytes, mime_type: str, prompt: str) -> str:
        if not image_bytes:
            raise ValueError("Cannot describe empty image")
        message = {
            "role": "user",
            "content": prompt,
            "images": [base64.b64encode(image_bytes).decode("ascii")],
        }
        return await self.chat([message], temperature=0.3, max_output_tokens=1000)

    async def synthesize(self, text: str, voice: str | None = None) -> Any:
        raise RuntimeError("Ollama backend does not provide speech synthesis")
