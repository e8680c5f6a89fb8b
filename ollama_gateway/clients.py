"""Wrappers around the Ollama backend and the transcription provider."""
from __future__ import annotations

import asyncio
import io
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx
from opentelemetry import trace
from opentelemetry.propagate import inject
from opentelemetry.trace import Status, StatusCode
from openai import OpenAI, OpenAIError

from .streaming import StreamAggregator
from .telemetry import annotate_span, get_correlation_id, mark_span_failed

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class OllamaResponseError(RuntimeError):
    """Raised when Ollama reports an error inside an otherwise valid response."""


class TranscriptionError(RuntimeError):
    """Raised when the transcription provider fails to fulfil a request."""


@dataclass
class BackendCompletion:
    """Container for an aggregated Ollama completion."""

    content: str
    model: str
    done: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TranscriptionResult:
    """Container for ASR transcription results."""

    text: str
    language: Optional[str] = None


class OllamaClient:
    """Async HTTP client for the Ollama REST API.

    One instance owns the connection pool for the whole process and must be
    closed with :meth:`aclose` on shutdown.
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers=headers,
            transport=transport,
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    async def aclose(self) -> None:
        await self._client.aclose()

    def _headers(self) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        correlation_id = get_correlation_id()
        if correlation_id:
            headers["X-Correlation-ID"] = correlation_id
        inject(headers)
        return headers

    async def chat(self, payload: Dict[str, Any], timeout_ms: float) -> BackendCompletion:
        """POST ``/api/chat`` and reassemble the streamed reply."""

        return await self._complete("/api/chat", payload, timeout_ms, "Ollama.chat", "chat")

    async def generate(self, payload: Dict[str, Any], timeout_ms: float) -> BackendCompletion:
        """POST ``/api/generate``; streamed and single-object replies are both accepted."""

        return await self._complete(
            "/api/generate", payload, timeout_ms, "Ollama.generate", "generate"
        )

    async def tags(self, timeout_ms: float) -> Dict[str, Any]:
        return await self._request_json("GET", "/api/tags", timeout_ms, operation="tags")

    async def show(self, name: str, timeout_ms: float) -> Dict[str, Any]:
        """Describe a local model (modelfile, parameters, template)."""

        return await self._request_json(
            "POST", "/api/show", timeout_ms, operation="show", payload={"name": name}
        )

    async def pull(self, name: str, timeout_ms: float) -> Dict[str, Any]:
        # Without stream=false Ollama reports download progress line by line.
        return await self._request_json(
            "POST",
            "/api/pull",
            timeout_ms,
            operation="pull",
            payload={"name": name, "stream": False},
        )

    async def delete(self, name: str, timeout_ms: float) -> Dict[str, Any]:
        return await self._request_json(
            "DELETE", "/api/delete", timeout_ms, operation="delete", payload={"name": name}
        )

    async def _request_json(
        self,
        method: str,
        path: str,
        timeout_ms: float,
        *,
        operation: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Send a non-streaming request; an empty body decodes to ``{}``."""

        with tracer.start_as_current_span(f"Ollama.{operation}") as span:
            attributes = {"llm.system": "ollama", "llm.operation": operation}
            if payload and "name" in payload:
                attributes["llm.model"] = payload["name"]
            annotate_span(span, attributes)
            try:
                response = await self._client.request(
                    method,
                    path,
                    json=payload,
                    headers=self._headers(),
                    timeout=httpx.Timeout(timeout_ms / 1000),
                )
                response.raise_for_status()
            except httpx.HTTPError as exc:
                mark_span_failed(span, exc)
                raise
            span.set_status(Status(StatusCode.OK))
            return response.json() if response.content else {}

    async def _complete(
        self,
        path: str,
        payload: Dict[str, Any],
        timeout_ms: float,
        span_name: str,
        operation: str,
    ) -> BackendCompletion:
        with tracer.start_as_current_span(span_name) as span:
            annotate_span(
                span,
                {
                    "llm.system": "ollama",
                    "llm.operation": operation,
                    "llm.model": payload.get("model", ""),
                    "llm.stream": bool(payload.get("stream")),
                },
            )
            aggregator = StreamAggregator()
            try:
                async with self._client.stream(
                    "POST",
                    path,
                    json=payload,
                    headers=self._headers(),
                    timeout=httpx.Timeout(timeout_ms / 1000),
                ) as response:
                    if response.status_code >= 400:
                        await response.aread()
                        logger.error(
                            "Ollama returned error %s for %s: %s",
                            response.status_code,
                            path,
                            response.text,
                        )
                        response.raise_for_status()
                    async for chunk in response.aiter_bytes():
                        aggregator.feed(chunk)
                content = aggregator.finish()
            except httpx.HTTPError as exc:
                mark_span_failed(span, exc)
                raise

            if aggregator.error:
                exc = OllamaResponseError(aggregator.error)
                mark_span_failed(span, exc)
                raise exc

            span.set_status(Status(StatusCode.OK))
            for key in ("eval_count", "prompt_eval_count"):
                value = aggregator.metadata.get(key)
                if isinstance(value, (int, float)):
                    span.set_attribute(f"llm.usage.{key}", value)
            return BackendCompletion(
                content=content,
                model=aggregator.metadata.get("model") or payload.get("model", ""),
                done=aggregator.done,
                metadata=dict(aggregator.metadata),
            )


class OpenAITranscriber:
    """Speech-to-text through the OpenAI audio transcription API."""

    def __init__(self, api_key: str, model: str) -> None:
        self._client = OpenAI(api_key=api_key)
        self._model = model

    async def transcribe(
        self,
        audio: bytes,
        audio_format: str = "wav",
        language: Optional[str] = None,
    ) -> TranscriptionResult:
        def _call() -> TranscriptionResult:
            buffer = io.BytesIO(audio)
            buffer.name = f"audio.{audio_format}"
            kwargs: Dict[str, Any] = {}
            if language:
                kwargs["language"] = language

            try:
                response = self._client.audio.transcriptions.create(
                    model=self._model,
                    file=(buffer.name, buffer, f"audio/{audio_format}"),
                    **kwargs,
                )
            except OpenAIError as exc:
                logger.exception("OpenAI transcription failed")
                raise TranscriptionError(str(exc)) from exc

            text = getattr(response, "text", None)
            if text is None:
                raise TranscriptionError("Transcription did not return text")

            return TranscriptionResult(text=text, language=language)

        with tracer.start_as_current_span("OpenAI.transcription") as span:
            annotate_span(
                span,
                {
                    "asr.system": "openai",
                    "asr.model": self._model,
                    "asr.audio_format": audio_format,
                },
            )
            try:
                result = await asyncio.to_thread(_call)
            except TranscriptionError as exc:
                mark_span_failed(span, exc)
                raise
            span.set_status(Status(StatusCode.OK))
            return result
