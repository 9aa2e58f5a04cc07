"""Inference backends the gateway dispatches validated requests to."""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import AsyncIterator
from urllib.parse import urlparse

import httpx

from .validation import (
    CHAT,
    SPEECH,
    VISION,
    ChatRequest,
    GatewayRequest,
    SpeechRequest,
)

logger = logging.getLogger("aigate.backend")


@dataclass
class InferenceResult:
    text: str
    id: str = ""
    model: str | None = None
    language: str | None = None

    def __post_init__(self) -> None:
        if not self.id:
            self.id = f"aigate-{uuid.uuid4().hex[:24]}"


class InferenceBackend(ABC):
    """Black-box model provider.

    :meth:`invoke` returns a complete result; :meth:`stream` yields text
    fragments in order.  Backends that cannot stream natively get a
    single-fragment stream from the default :meth:`stream`.
    """

    name = "backend"

    @abstractmethod
    async def invoke(self, kind: str, request: GatewayRequest) -> InferenceResult:
        ...

    async def stream(self, kind: str, request: GatewayRequest) -> AsyncIterator[str]:
        result = await self.invoke(kind, request)
        if result.text:
            yield result.text

    async def close(self) -> None:
        pass


def _last_user_message(request: ChatRequest) -> str:
    for msg in reversed(request.messages):
        if msg.role == "user":
            return msg.content
    return request.messages[-1].content


class EchoBackend(InferenceBackend):
    """Deterministic stand-in used when no real model is configured.

    Chat echoes the latest user message back; vision and speech return
    fixed placeholders.  Streaming splits the text on word boundaries,
    optionally pausing *delay* seconds between fragments.
    """

    name = "echo"

    def __init__(self, delay: float = 0.0) -> None:
        self.delay = delay

    async def invoke(self, kind: str, request: GatewayRequest) -> InferenceResult:
        if kind == CHAT:
            text = f"Echo: {_last_user_message(request)}"
        elif kind == VISION:
            text = "Vision placeholder"
        elif kind == SPEECH:
            text = "Speech placeholder"
        else:
            raise ValueError(f"Unknown endpoint kind: {kind!r}")
        return InferenceResult(
            text=text,
            model=getattr(request, "model", None),
            language=getattr(request, "language", None),
        )

    async def stream(self, kind: str, request: GatewayRequest) -> AsyncIterator[str]:
        result = await self.invoke(kind, request)
        words = result.text.split(" ")
        for i, word in enumerate(words):
            if self.delay:
                await asyncio.sleep(self.delay)
            yield word if i == len(words) - 1 else word + " "


class OpenAIBackend(InferenceBackend):
    """Client for an OpenAI-compatible inference server.

    Chat and vision go through ``/v1/chat/completions`` (vision as an
    ``image_url`` content part); speech goes through
    ``/v1/audio/transcriptions``.
    """

    name = "openai"

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str | None = None,
        model: str = "gpt-4o-mini",
        transcription_model: str = "whisper-1",
        timeout: float = 120.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.transcription_model = transcription_model
        self.client = client or httpx.AsyncClient(
            base_url=self.base_url, timeout=timeout, headers=headers,
        )

    async def close(self) -> None:
        await self.client.aclose()

    def _chat_messages(self, kind: str, request: GatewayRequest) -> list[dict]:
        if kind == CHAT:
            return [{"role": m.role, "content": m.content} for m in request.messages]
        if kind == VISION:
            url = request.image_url or f"data:image/jpeg;base64,{request.image_base64}"
            return [{
                "role": "user",
                "content": [
                    {"type": "text", "text": request.prompt or "Describe this image."},
                    {"type": "image_url", "image_url": {"url": url}},
                ],
            }]
        raise ValueError(f"{kind!r} requests do not map onto chat completions")

    def _completion_body(self, kind: str, request: GatewayRequest, *, stream: bool) -> dict:
        body = {
            "model": request.model or self.model,
            "messages": self._chat_messages(kind, request),
            "stream": stream,
        }
        if getattr(request, "temperature", None) is not None:
            body["temperature"] = request.temperature
        if request.max_tokens is not None:
            body["max_tokens"] = request.max_tokens
        return body

    async def invoke(self, kind: str, request: GatewayRequest) -> InferenceResult:
        if kind == SPEECH:
            return await self._transcribe(request)

        body = self._completion_body(kind, request, stream=False)
        logger.debug("chat completion: kind=%s model=%s", kind, body["model"])
        resp = await self.client.post("/v1/chat/completions", json=body)
        resp.raise_for_status()
        data = resp.json()
        text = data["choices"][0]["message"].get("content") or ""
        return InferenceResult(text=text, model=data.get("model", body["model"]))

    async def stream(self, kind: str, request: GatewayRequest) -> AsyncIterator[str]:
        if kind == SPEECH:
            result = await self._transcribe(request)
            if result.text:
                yield result.text
            return

        body = self._completion_body(kind, request, stream=True)
        async with self.client.stream("POST", "/v1/chat/completions", json=body) as resp:
            resp.raise_for_status()
            async for line in resp.aiter_lines():
                if not line.startswith("data: "):
                    continue
                payload = line[6:].strip()
                if payload == "[DONE]":
                    break
                chunk = json.loads(payload)
                choices = chunk.get("choices") or [{}]
                delta = choices[0].get("delta", {}).get("content")
                if delta:
                    yield delta

    async def _transcribe(self, request: SpeechRequest) -> InferenceResult:
        if request.audio_base64 is not None:
            audio = base64.b64decode(request.audio_base64, validate=True)
        else:
            scheme = urlparse(request.audio_url or "").scheme
            if scheme not in ("http", "https"):
                raise ValueError(f"Unsupported audio URL scheme: {scheme!r}")
            # Separate client: the upstream API key must not go to the audio host.
            async with httpx.AsyncClient(timeout=self.client.timeout) as fetcher:
                fetched = await fetcher.get(request.audio_url)
            fetched.raise_for_status()
            audio = fetched.content

        data = {"model": request.model or self.transcription_model}
        if request.language:
            data["language"] = request.language
        resp = await self.client.post(
            "/v1/audio/transcriptions",
            data=data,
            files={"file": ("audio", audio, "application/octet-stream")},
        )
        resp.raise_for_status()
        payload = resp.json()
        return InferenceResult(
            text=payload.get("text", ""),
            model=data["model"],
            language=payload.get("language") or request.language,
        )
