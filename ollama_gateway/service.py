"""Completion orchestration: budgeting, retries and usage accounting."""
from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .budget import ContextBudgeter
from .clients import BackendCompletion, OllamaClient
from .config import Settings
from .errors import ExternalServiceError, GatewayError, ValidationError
from .models import (
    BackendHealthResponse,
    ChatRequest,
    CompletionResponse,
    TextRequest,
    UsageStats,
)
from .telemetry import RequestContext
from .tokens import estimate_tokens
from .transport import RetryingTransport

logger = logging.getLogger(__name__)

BACKEND_NAME = "Ollama"


class CompletionService:
    """Send chat and text completions to Ollama and normalise the results."""

    def __init__(
        self,
        client: OllamaClient,
        transport: RetryingTransport,
        budgeter: ContextBudgeter,
        *,
        default_model: str = "llama2",
        default_temperature: float = 0.7,
        default_max_tokens: int = 2048,
    ) -> None:
        self._client = client
        self._transport = transport
        self._budgeter = budgeter
        self._default_model = default_model
        self._default_temperature = default_temperature
        self._default_max_tokens = default_max_tokens

    @classmethod
    def from_settings(cls, settings: Settings, client: OllamaClient) -> "CompletionService":
        return cls(
            client,
            RetryingTransport.from_settings(settings),
            ContextBudgeter.from_settings(settings),
            default_model=settings.default_model,
            default_temperature=settings.default_temperature,
            default_max_tokens=settings.default_max_tokens,
        )

    def _options(self, temperature: Optional[float], max_tokens: Optional[int]) -> Dict[str, Any]:
        return {
            "temperature": self._default_temperature if temperature is None else temperature,
            "num_predict": self._default_max_tokens if max_tokens is None else max_tokens,
        }

    async def chat_completion(
        self, request: ChatRequest, context: RequestContext
    ) -> CompletionResponse:
        correlation_id = context.correlation_id
        model = request.model or self._default_model
        start = time.perf_counter()
        logger.info(
            "Starting chat completion",
            extra={
                "correlation_id": correlation_id,
                "model": model,
                "message_count": len(request.messages or []),
            },
        )

        try:
            if not request.messages:
                raise ValidationError(
                    "Messages array is required and must not be empty", correlation_id
                )
            messages: List[Dict[str, Any]] = [
                message.model_dump(exclude_none=True) for message in request.messages
            ]
            fitted = list(self._budgeter.fit_messages(model, messages))
            prompt_tokens = estimate_tokens(fitted)
            payload = {
                "model": model,
                "messages": fitted,
                "options": self._options(request.temperature, request.max_tokens),
                "stream": True,
            }
            result: BackendCompletion = await self._transport.send(
                lambda timeout_ms: self._client.chat(payload, timeout_ms), correlation_id
            )
        except GatewayError:
            logger.exception(
                "Chat completion failed",
                extra={"correlation_id": correlation_id, "model": model},
            )
            raise
        except Exception as exc:
            logger.exception(
                "Chat completion failed",
                extra={"correlation_id": correlation_id, "model": model},
            )
            raise ExternalServiceError(
                "Chat completion failed", correlation_id, service=BACKEND_NAME, cause=exc
            ) from exc

        return self._finish("Chat completion completed", model, result, prompt_tokens, context, start)

    async def text_completion(
        self, request: TextRequest, context: RequestContext
    ) -> CompletionResponse:
        correlation_id = context.correlation_id
        model = request.model or self._default_model
        start = time.perf_counter()
        logger.info(
            "Starting text completion",
            extra={
                "correlation_id": correlation_id,
                "model": model,
                "prompt_length": len(request.prompt or ""),
            },
        )

        try:
            if not request.prompt:
                raise ValidationError("Prompt is required", correlation_id)
            prompt = self._budgeter.fit_prompt(model, request.prompt)
            prompt_tokens = estimate_tokens(prompt)
            payload = {
                "model": model,
                "prompt": prompt,
                "options": self._options(request.temperature, request.max_tokens),
                "stream": request.stream,
            }
            result: BackendCompletion = await self._transport.send(
                lambda timeout_ms: self._client.generate(payload, timeout_ms), correlation_id
            )
        except GatewayError:
            logger.exception(
                "Text completion failed",
                extra={"correlation_id": correlation_id, "model": model},
            )
            raise
        except Exception as exc:
            logger.exception(
                "Text completion failed",
                extra={"correlation_id": correlation_id, "model": model},
            )
            raise ExternalServiceError(
                "Text completion failed", correlation_id, service=BACKEND_NAME, cause=exc
            ) from exc

        return self._finish("Text completion completed", model, result, prompt_tokens, context, start)

    def _finish(
        self,
        event: str,
        model: str,
        result: BackendCompletion,
        prompt_tokens: int,
        context: RequestContext,
        start: float,
    ) -> CompletionResponse:
        # Completion tokens are the raw character count of the reply.
        usage = UsageStats.from_counts(prompt_tokens, len(result.content))
        logger.info(
            event,
            extra={
                "correlation_id": context.correlation_id,
                "model": model,
                "duration_ms": round((time.perf_counter() - start) * 1000, 2),
                "usage": usage.model_dump(),
            },
        )
        return CompletionResponse(content=result.content, model=model, usage=usage)

    async def _call_backend(
        self,
        failure: str,
        request_fn: Callable[[float], Awaitable[Dict[str, Any]]],
        context: RequestContext,
        **log_fields: Any,
    ) -> Dict[str, Any]:
        """Run a retried non-streaming backend call, wrapping unexpected errors."""

        correlation_id = context.correlation_id
        try:
            return await self._transport.send(request_fn, correlation_id)
        except GatewayError:
            logger.exception(failure, extra={"correlation_id": correlation_id, **log_fields})
            raise
        except Exception as exc:
            logger.exception(failure, extra={"correlation_id": correlation_id, **log_fields})
            raise ExternalServiceError(
                failure, correlation_id, service=BACKEND_NAME, cause=exc
            ) from exc

    async def list_models(self, context: RequestContext) -> List[Dict[str, Any]]:
        logger.info(
            "Starting model list retrieval", extra={"correlation_id": context.correlation_id}
        )
        data = await self._call_backend("Failed to list models", self._client.tags, context)
        models = data.get("models") or []
        logger.info(
            "Model list retrieved",
            extra={"correlation_id": context.correlation_id, "model_count": len(models)},
        )
        return models

    def _require_model_name(self, name: str, context: RequestContext) -> str:
        if not name or not name.strip():
            raise ValidationError("Model name is required", context.correlation_id)
        return name.strip()

    async def model_info(self, name: str, context: RequestContext) -> Dict[str, Any]:
        name = self._require_model_name(name, context)
        info = await self._call_backend(
            "Failed to get model info",
            lambda timeout_ms: self._client.show(name, timeout_ms),
            context,
            model=name,
        )
        logger.info(
            "Model info retrieved", extra={"correlation_id": context.correlation_id, "model": name}
        )
        return info

    async def pull_model(self, name: str, context: RequestContext) -> Dict[str, Any]:
        name = self._require_model_name(name, context)
        result = await self._call_backend(
            "Failed to pull model",
            lambda timeout_ms: self._client.pull(name, timeout_ms),
            context,
            model=name,
        )
        logger.info(
            "Model pulled", extra={"correlation_id": context.correlation_id, "model": name}
        )
        return result

    async def delete_model(self, name: str, context: RequestContext) -> Dict[str, Any]:
        name = self._require_model_name(name, context)
        result = await self._call_backend(
            "Failed to delete model",
            lambda timeout_ms: self._client.delete(name, timeout_ms),
            context,
            model=name,
        )
        logger.info(
            "Model deleted", extra={"correlation_id": context.correlation_id, "model": name}
        )
        return result

    async def health_check(self, context: RequestContext) -> BackendHealthResponse:
        """Call ``/api/tags`` once; failures are reported, not raised."""

        timestamp = datetime.now(timezone.utc).isoformat()
        try:
            data = await self._client.tags(self._transport.timeout_ms)
        except Exception as exc:
            logger.warning(
                "Health check failed",
                extra={"correlation_id": context.correlation_id, "error": str(exc)},
            )
            return BackendHealthResponse(
                success=False, status="unhealthy", error=str(exc), timestamp=timestamp
            )
        return BackendHealthResponse(
            success=True,
            status="healthy",
            message=data or "Ollama is running",
            timestamp=timestamp,
        )
