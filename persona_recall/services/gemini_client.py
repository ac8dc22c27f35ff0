from __future__ import annotations

import asyncio
import base64
import json
import random
import re
from dataclasses import dataclass
from typing import Any, Dict, List

import aiohttp


_RETRIABLE_STATUSES = {408, 409, 429, 500, 502, 503, 504}


@dataclass(slots=True)
class SynthesizedAudio:
    audio_bytes: bytes
    mime_type: str
    voice: str


class GeminiClient:
    backend_name = "gemini"

    def __init__(
        self,
        api_key: str,
        model: str,
        timeout_seconds: int,
        temperature: float,
        max_output_tokens: int,
        base_url: str = "https://generativelanguage.googleapis.com",
        embedding_model: str = "text-embedding-004",
        tts_model: str = "gemini-2.5-flash-preview-tts",
        tts_voice: str = "Aoede",
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.embedding_model = embedding_model
        self.tts_model = tts_model
        self.tts_voice = tts_voice
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.temperature = temperature
        self.max_output_tokens: int | None = int(max_output_tokens) if int(max_output_tokens) > 0 else None
        self._session: aiohttp.ClientSession | None = None

    async def start(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    def _endpoint(self, model: str | None = None, method: str = "generateContent") -> str:
        return f"{self.base_url}/v1beta/models/{model or self.model}:{method}?key={self.api_key}"

    @staticmethod
    def _map_messages(messages: List[Dict[str, str]]) -> Dict[str, Any]:
        system_lines: List[str] = []
        contents: List[Dict[str, Any]] = []

        for message in messages:
            role = str(message.get("role", "")).strip().lower()
            content = str(message.get("content", "")).strip()
            if not content:
                continue
            if role == "system":
                system_lines.append(content)
                continue
            mapped_role = "model" if role == "assistant" else "user"
            contents.append({"role": mapped_role, "parts": [{"text": content}]})

        payload: Dict[str, Any] = {"contents": contents}
        if system_lines:
            payload["systemInstruction"] = {
                "parts": [{"text": "\n\n".join(system_lines)}],
            }
        return payload

    async def _request(self, payload: Dict[str, Any], retries: int = 3, *, url: str | None = None) -> Dict[str, Any]:
        if self._session is None or self._session.closed:
            await self.start()
        assert self._session is not None

        url = url or self._endpoint()
        last_error: Exception | None = None

        for attempt in range(1, retries + 1):
            try:
                async with self._session.post(url, json=payload) as response:
                    text = await response.text()
                    if response.status == 200:
                        return json.loads(text)

                    if response.status not in _RETRIABLE_STATUSES:
                        raise RuntimeError(f"Gemini error {response.status}: {text[:400]}")
                    last_error = RuntimeError(f"Gemini retriable error {response.status}: {text[:400]}")
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                last_error = exc

            if attempt < retries:
                await asyncio.sleep(min(4.0, 0.35 * attempt + random.random() * 0.2))

        if last_error is not None:
            raise RuntimeError(f"Gemini request failed after retries: {last_error}")
        raise RuntimeError("Gemini request failed without explicit error")

    @staticmethod
    def _first_candidate_parts(data: Dict[str, Any]) -> tuple[Dict[str, Any], List[Dict[str, Any]]]:
        candidates = data.get("candidates") or []
        if not candidates:
            prompt_feedback = data.get("promptFeedback") or {}
            block_reason = prompt_feedback.get("blockReason")
            if block_reason:
                raise RuntimeError(f"Gemini blocked response: {block_reason}")
            raise RuntimeError("Gemini returned no candidates")
        first = candidates[0]
        content = first.get("content") or {}
        return first, list(content.get("parts") or [])

    @classmethod
    def _extract_text(cls, data: Dict[str, Any]) -> str:
        first, parts = cls._first_candidate_parts(data)
        chunks: List[str] = []
        for part in parts:
            text = part.get("text")
            if isinstance(text, str) and text.strip():
                chunks.append(text.strip())

        joined = "\n".join(chunks).strip()
        if joined:
            return joined

        finish_reason = first.get("finishReason")
        if finish_reason:
            raise RuntimeError(f"Gemini empty response (finishReason={finish_reason})")
        raise RuntimeError("Gemini empty response")

    async def chat(
        self,
        messages: List[Dict[str, str]],
        temperature: float | None = None,
        max_output_tokens: int | None = None,
    ) -> str:
        payload = self._map_messages(messages)
        generation_config: Dict[str, Any] = {
            "temperature": self.temperature if temperature is None else temperature,
        }
        selected_tokens = self.max_output_tokens if max_output_tokens is None else max_output_tokens
        if selected_tokens is not None and int(selected_tokens) > 0:
            generation_config["maxOutputTokens"] = int(selected_tokens)
        payload["generationConfig"] = generation_config
        data = await self._request(payload)
        return self._extract_text(data)

    @staticmethod
    def _strip_json_fences(text: str) -> str:
        cleaned = text.strip()
        if cleaned.startswith("```"):
            cleaned = re.sub(r"^```(?:json)?", "", cleaned, flags=re.IGNORECASE).strip()
            cleaned = re.sub(r"```$", "", cleaned).strip()
        return cleaned

    async def json_chat(
        self,
        messages: List[Dict[str, str]],
        schema_hint: str,
        temperature: float = 0.1,
        max_output_tokens: int = 900,
    ) -> Dict[str, Any] | None:
        payload = self._map_messages(messages)
        payload["generationConfig"] = {
            "temperature": temperature,
            "responseMimeType": "application/json",
        }
        if int(max_output_tokens) > 0:
            payload["generationConfig"]["maxOutputTokens"] = int(max_output_tokens)
        hint = f"Return only valid JSON object with no markdown and no additional commentary. Schema hint: {schema_hint}"
        system = payload.setdefault("systemInstruction", {"parts": []})
        system["parts"].append({"text": hint})

        raw = self._extract_text(await self._request(payload))
        cleaned = self._strip_json_fences(raw)
        try:
            parsed = json.loads(cleaned)
        except json.JSONDecodeError:
            return None
        if not isinstance(parsed, dict):
            return None
        return parsed

    async def embed(self, text: str) -> List[float]:
        cleaned = " ".join(str(text or "").split())
        if not cleaned:
            raise ValueError("Cannot embed empty text")
        model = self.embedding_model if self.embedding_model.startswith("models/") else f"models/{self.embedding_model}"
        payload = {"model": model, "content": {"parts": [{"text": cleaned}]}}
        data = await self._request(payload, url=self._endpoint(self.embedding_model, "embedContent"))
        values = (data.get("embedding") or {}).get("values")
        if not isinstance(values, list) or not values:
            raise RuntimeError("Gemini returned an empty embedding")
        return [float(v) for v in values]

    async def synthesize(self, text: str, voice: str | None = None) -> SynthesizedAudio:
        cleaned = " ".join(str(text or "").split())
        if not cleaned:
            raise ValueError("Cannot synthesize empty text")
        voice_name = voice or self.tts_voice
        payload = {
            "contents": [{"role": "user", "parts": [{"text": cleaned}]}],
            "generationConfig": {
                "responseModalities": ["AUDIO"],
                "speechConfig": {"voiceConfig": {"prebuiltVoiceConfig": {"voiceName": voice_name}}},
            },
        }
        data = await self._request(payload, url=self._endpoint(self.tts_model))
        _, parts = self._first_candidate_parts(data)
        for part in parts:
            inline = part.get("inlineData") or {}
            encoded = inline.get("data")
            if isinstance(encoded, str) and encoded:
                return SynthesizedAudio(
                    audio_bytes=base64.b64decode(encoded),
                    mime_type=str(inline.get("mimeType") or "audio/L16;codec=pcm;rate=24000"),
                    voice=voice_name,
                )
        raise RuntimeError("Gemini TTS returned no audio")

    async def describe_image(self, image_bytes: bytes, mime_type: str, prompt: str) -> str:
        if not image_bytes:
            raise ValueError("Cannot describe empty image")
        payload = {
            "contents": [
                {
                    "role": "user",
                    "parts": [
                        {"text": prompt},
                        {"inlineData": {"mimeType": mime_type or "image/jpeg", "data": base64.b64encode(image_bytes).decode("ascii")}},
                    ],
                }
            ],
            "generationConfig": {"temperature": 0.3, "maxOutputTokens": 1000},
        }
        return self._extract_text(await self._request(payload))
