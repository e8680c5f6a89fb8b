from __future__ import annotations

import base64
import json

import httpx
from fastapi.testclient import TestClient

from conftest import API_KEY, AUTH_HEADERS, OllamaStub, json_reply, ndjson
from ollama_gateway import main
from ollama_gateway.config import Settings, get_settings
from ollama_gateway.errors import ValidationError
from ollama_gateway.telemetry import correlation_scope


def _chat_reply(content: str):
    return ndjson({"message": {"role": "assistant", "content": content}, "done": True})


def test_root_and_healthz_do_not_require_a_key(client: TestClient) -> None:
    assert client.get("/").json() == {"message": "Ollama gateway is running"}

    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_missing_api_key_is_rejected(client: TestClient, ollama_stub: OllamaStub) -> None:
    response = client.post(
        "/api/ollama/chat",
        json={"messages": [{"role": "user", "content": "Hi"}]},
        headers={"X-Correlation-ID": "cid-401"},
    )

    assert response.status_code == 401
    body = response.json()
    assert body["success"] is False
    assert body["error"] == {
        "message": "API key required",
        "code": "AUTHENTICATION_ERROR",
        "status_code": 401,
        "correlation_id": "cid-401",
    }
    assert body["correlation_id"] == "cid-401"
    assert "timestamp" in body
    assert response.headers["X-Correlation-ID"] == "cid-401"
    assert ollama_stub.requests == []


def test_invalid_api_key_is_rejected(client: TestClient) -> None:
    response = client.get("/api/ollama/models", headers={"X-API-Key": "wrong"})

    assert response.status_code == 401
    assert response.json()["error"]["message"] == "Invalid API key"


def test_chat_round_trip(client: TestClient, ollama_stub: OllamaStub) -> None:
    ollama_stub.on("/api/chat", _chat_reply("Hello!"))

    response = client.post(
        "/api/ollama/chat",
        json={"messages": [{"role": "user", "content": "Hi"}]},
        headers={**AUTH_HEADERS, "X-Correlation-ID": "cid-chat"},
    )

    assert response.status_code == 200
    assert response.json() == {
        "content": "Hello!",
        "model": "llama2",
        "usage": {"prompt_tokens": 2, "completion_tokens": 6, "total_tokens": 8},
    }
    assert response.headers["X-Correlation-ID"] == "cid-chat"
    [request] = ollama_stub.calls("/api/chat")
    assert request.headers["X-Correlation-ID"] == "cid-chat"


def test_security_headers_are_set(client: TestClient) -> None:
    response = client.get("/")

    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["X-Frame-Options"] == "DENY"
    assert "X-Process-Time-ms" in response.headers
    assert response.headers["X-Correlation-ID"]


def test_control_characters_are_stripped(client: TestClient, ollama_stub: OllamaStub) -> None:
    ollama_stub.on("/api/chat", _chat_reply("ok"))

    response = client.post(
        "/api/ollama/chat",
        json={"messages": [{"role": "user", "content": "Hi\u0000 there\u0007\n"}]},
        headers=AUTH_HEADERS,
    )

    assert response.status_code == 200
    [payload] = ollama_stub.payloads("/api/chat")
    assert payload["messages"][0]["content"] == "Hi there\n"


def test_invalid_body_returns_validation_envelope(
    client: TestClient, ollama_stub: OllamaStub
) -> None:
    response = client.post("/api/ollama/chat", json={"messages": []}, headers=AUTH_HEADERS)

    assert response.status_code == 400
    body = response.json()
    assert body["error"]["code"] == "VALIDATION_ERROR"
    assert "messages" in body["error"]["message"]
    assert ollama_stub.requests == []


def test_backend_failure_maps_to_bad_gateway(client: TestClient, ollama_stub: OllamaStub) -> None:
    ollama_stub.on("/api/generate", json_reply({"error": "boom"}, status_code=500))

    response = client.post(
        "/api/ollama/generate", json={"prompt": "Why is the sky blue?"}, headers=AUTH_HEADERS
    )

    assert response.status_code == 502
    assert response.json()["error"]["code"] == "EXTERNAL_SERVICE_ERROR"
    assert len(ollama_stub.calls("/api/generate")) == 3


def test_backend_timeout_maps_to_gateway_timeout(
    client: TestClient, ollama_stub: OllamaStub
) -> None:
    ollama_stub.on("/api/generate", httpx.ReadTimeout("timed out"))

    response = client.post(
        "/api/ollama/generate", json={"prompt": "Why is the sky blue?"}, headers=AUTH_HEADERS
    )

    assert response.status_code == 504
    assert response.json()["error"]["code"] == "TIMEOUT_ERROR"


def test_models_are_listed(client: TestClient, ollama_stub: OllamaStub) -> None:
    ollama_stub.on("/api/tags", json_reply({"models": [{"name": "llama2:latest"}]}))

    response = client.get("/api/ollama/models", headers=AUTH_HEADERS)

    assert response.status_code == 200
    assert response.json() == {"models": [{"name": "llama2:latest"}], "count": 1}


def test_backend_health_reports_unavailable(client: TestClient) -> None:
    # No /api/tags route registered: the backend answers 404.
    response = client.get("/api/ollama/health")

    assert response.status_code == 503
    assert response.json()["status"] == "unhealthy"


def test_stats_reports_uptime(client: TestClient) -> None:
    response = client.get("/api/ollama/stats", headers=AUTH_HEADERS)

    assert response.status_code == 200
    assert response.json()["uptime_seconds"] >= 0


def test_document_summary(client: TestClient, ollama_stub: OllamaStub) -> None:
    ollama_stub.on("/api/generate", ndjson({"response": "Revenue grew.", "done": True}))

    response = client.post(
        "/api/documents/summarize",
        json={"text": "Revenue grew by ten percent this quarter.", "max_length": 50},
        headers=AUTH_HEADERS,
    )

    assert response.status_code == 200
    body = response.json()
    assert body["summary"] == "Revenue grew."
    assert body["original_length"] == len("Revenue grew by ten percent this quarter.")


def test_document_question(client: TestClient, ollama_stub: OllamaStub) -> None:
    ollama_stub.on("/api/generate", ndjson({"response": "Ten percent.", "done": True}))

    response = client.post(
        "/api/documents/ask",
        json={"text": "Revenue grew by ten percent.", "question": "By how much?"},
        headers=AUTH_HEADERS,
    )

    assert response.status_code == 200
    assert response.json()["answer"] == "Ten percent."


def test_voice_processing(client: TestClient, ollama_stub: OllamaStub) -> None:
    ollama_stub.on("/api/chat", _chat_reply("Paris."))

    response = client.post(
        "/api/voice/process",
        json={"audio_base64": base64.b64encode(b"fake-audio").decode(), "audio_format": "mp3"},
        headers=AUTH_HEADERS,
    )

    assert response.status_code == 200
    assert response.json() == {
        "transcription": "What is the capital of France?",
        "response": "Paris.",
    }


def test_voice_rejects_invalid_base64(client: TestClient) -> None:
    response = client.post(
        "/api/voice/process",
        json={"audio_base64": "%%%not-base64%%%"},
        headers=AUTH_HEADERS,
    )

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "FILE_ERROR"


def test_voice_without_transcriber_is_unavailable(client: TestClient) -> None:
    main.app.dependency_overrides[main.get_transcriber] = lambda: None

    response = client.post(
        "/api/voice/process",
        json={"audio_base64": base64.b64encode(b"fake-audio").decode()},
        headers=AUTH_HEADERS,
    )

    assert response.status_code == 503
    assert response.json()["error"]["code"] == "SERVICE_UNAVAILABLE_ERROR"


def test_requests_are_throttled_when_limit_exceeded() -> None:
    test_settings = Settings(api_key=API_KEY, rate_limit_default="1/minute")
    main.app.dependency_overrides[get_settings] = lambda: test_settings
    main.configure_rate_limiter(main.app, test_settings)

    try:
        with TestClient(main.app) as client:
            first = client.get("/")
            assert first.status_code == 200

            second = client.get("/")
            assert second.status_code == 429
            body = second.json()
            assert body["error"]["code"] == "RATE_LIMIT_EXCEEDED"
            assert body["error"]["message"].startswith("Rate limit exceeded")
            assert "Retry-After" in second.headers
            assert second.headers.get("X-RateLimit-Limit") is not None
    finally:
        main.app.dependency_overrides.pop(get_settings, None)
        main.configure_rate_limiter(main.app, get_settings())


def test_backend_health_reports_healthy_without_api_key(
    client: TestClient, ollama_stub: OllamaStub
) -> None:
    ollama_stub.on("/api/tags", json_reply({"models": []}))

    response = client.get("/api/ollama/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_model_routes_still_require_api_key(client: TestClient) -> None:
    assert client.get("/api/ollama/models/llama2").status_code == 401
    assert client.post("/api/ollama/models/pull", json={"model": "llama2"}).status_code == 401


def test_model_info_route(client: TestClient, ollama_stub: OllamaStub) -> None:
    ollama_stub.on("/api/show", json_reply({"modelfile": "FROM llama2", "details": {}}))

    response = client.get("/api/ollama/models/llama2:latest", headers=AUTH_HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["model"]["modelfile"] == "FROM llama2"
    assert ollama_stub.payloads("/api/show") == [{"name": "llama2:latest"}]


def test_pull_model_route(client: TestClient, ollama_stub: OllamaStub) -> None:
    ollama_stub.on("/api/pull", json_reply({"status": "success"}))

    response = client.post(
        "/api/ollama/models/pull", json={"model": "mistral"}, headers=AUTH_HEADERS
    )

    assert response.status_code == 200
    body = response.json()
    assert body["message"] == "Model mistral pulled successfully"
    assert body["data"] == {"status": "success"}
    assert ollama_stub.payloads("/api/pull") == [{"name": "mistral", "stream": False}]


def test_delete_model_route(client: TestClient, ollama_stub: OllamaStub) -> None:
    ollama_stub.on("/api/delete", lambda request: httpx.Response(200))

    response = client.request(
        "DELETE", "/api/ollama/models/delete", json={"model": "phi"}, headers=AUTH_HEADERS
    )

    assert response.status_code == 200
    assert response.json()["message"] == "Model phi deleted successfully"
    [request] = ollama_stub.calls("/api/delete")
    assert request.method == "DELETE"


def test_model_operations_require_a_model_name(client: TestClient) -> None:
    response = client.post("/api/ollama/models/pull", json={}, headers=AUTH_HEADERS)

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


def test_error_envelope_is_built_from_the_error() -> None:
    error = ValidationError("Prompt is required")

    with correlation_scope("cid-envelope"):
        response = main.error_response(error)

    body = json.loads(response.body)
    assert response.status_code == 400
    assert body["error"] == error.to_dict()
    assert body["error"]["correlation_id"] == "cid-envelope"
    assert body["correlation_id"] == "cid-envelope"
