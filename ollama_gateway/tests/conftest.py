from __future__ import annotations

import json
import os
import sys
from collections.abc import Generator
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import httpx
import pytest
from fastapi.testclient import TestClient

os.environ.setdefault("GATEWAY_API_KEY", "test-key")
os.environ.setdefault("GATEWAY_RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("OTEL_SDK_DISABLED", "true")

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from ollama_gateway import main
from ollama_gateway.budget import ContextBudgeter
from ollama_gateway.clients import OllamaClient, TranscriptionResult
from ollama_gateway.service import CompletionService
from ollama_gateway.telemetry import RequestContext
from ollama_gateway.transport import RetryingTransport

API_KEY = os.environ["GATEWAY_API_KEY"]
AUTH_HEADERS = {"X-API-Key": API_KEY}

Responder = Union[Callable[[httpx.Request], httpx.Response], Exception]


def ndjson(*objects: Dict[str, Any], status_code: int = 200) -> Callable[[httpx.Request], httpx.Response]:
    """Reply with one JSON object per line, like a streamed Ollama response."""

    body = "".join(json.dumps(item) + "\n" for item in objects).encode()

    def _reply(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, content=body)

    return _reply


def json_reply(payload: Dict[str, Any], status_code: int = 200) -> Callable[[httpx.Request], httpx.Response]:
    def _reply(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, json=payload)

    return _reply


def chunked(*chunks: bytes) -> Callable[[httpx.Request], httpx.Response]:
    """Reply with a body delivered in the given network-sized pieces."""

    async def _stream():
        for chunk in chunks:
            yield chunk

    def _reply(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=_stream())

    return _reply


class OllamaStub:
    """Programmable stand-in for the Ollama HTTP API.

    Responders queued for a path are used in order; the last one repeats.
    """

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self._routes: Dict[str, List[Responder]] = {}

    def on(self, path: str, *responders: Responder) -> "OllamaStub":
        self._routes.setdefault(path, []).extend(responders)
        return self

    def calls(self, path: Optional[str] = None) -> List[httpx.Request]:
        return [request for request in self.requests if path is None or request.url.path == path]

    def payloads(self, path: Optional[str] = None) -> List[Dict[str, Any]]:
        return [json.loads(request.content) for request in self.calls(path)]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self._routes.get(request.url.path)
        if not queue:
            return httpx.Response(404, json={"error": f"no route for {request.url.path}"})
        responder = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(responder, Exception):
            raise responder
        return responder(request)


class DummyTranscriber:
    def __init__(self, text: str = "What is the capital of France?") -> None:
        self.text = text
        self.calls: List[Dict[str, Any]] = []

    async def transcribe(
        self,
        audio: bytes,
        audio_format: str = "wav",
        language: Optional[str] = None,
    ) -> TranscriptionResult:
        self.calls.append({"audio": audio, "audio_format": audio_format, "language": language})
        return TranscriptionResult(text=self.text, language=language)


async def no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture()
def ollama_stub() -> OllamaStub:
    return OllamaStub()


@pytest.fixture()
def ollama_client(ollama_stub: OllamaStub) -> OllamaClient:
    return OllamaClient(
        "http://ollama.test",
        api_key="backend-secret",
        transport=httpx.MockTransport(ollama_stub.handler),
    )


@pytest.fixture()
def completion_service(ollama_client: OllamaClient) -> CompletionService:
    return CompletionService(
        ollama_client,
        RetryingTransport(max_retries=3, timeout_ms=30000, sleep=no_sleep),
        ContextBudgeter(),
    )


@pytest.fixture()
def context() -> RequestContext:
    return RequestContext(correlation_id="test-correlation-id")


@pytest.fixture()
def transcriber() -> DummyTranscriber:
    return DummyTranscriber()


@pytest.fixture()
def client(
    ollama_client: OllamaClient,
    completion_service: CompletionService,
    transcriber: DummyTranscriber,
) -> Generator[TestClient, None, None]:
    main.app.dependency_overrides[main.get_ollama_client] = lambda: ollama_client
    main.app.dependency_overrides[main.get_completion_service] = lambda: completion_service
    main.app.dependency_overrides[main.get_transcriber] = lambda: transcriber
    with TestClient(main.app) as http_client:
        yield http_client
    main.app.dependency_overrides.clear()
