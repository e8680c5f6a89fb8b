#!/usr/bin/env python3
"""Ollama gateway application: authenticated completions, documents and voice."""
from __future__ import annotations

from dotenv import load_dotenv

load_dotenv()

import logging
import platform
import sys
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from opentelemetry import trace
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from starlette.middleware.base import BaseHTTPMiddleware

from .auth import require_api_key
from .clients import OllamaClient, OpenAITranscriber
from .config import Settings, get_settings
from .documents import DocumentService
from .errors import GatewayError, RateLimitError, ValidationError
from .logging_config import configure_logging
from .models import (
    AnswerResponse,
    ChatRequest,
    CompletionResponse,
    ModelInfoResponse,
    ModelListResponse,
    ModelOperationRequest,
    ModelOperationResponse,
    QuestionRequest,
    SummarizeRequest,
    SummarizeResponse,
    TextRequest,
    VoiceRequest,
    VoiceResponse,
)
from .service import CompletionService
from .telemetry import (
    RequestContext,
    configure_tracing,
    correlation_scope,
    current_context,
    get_correlation_id,
)
from .voice import Transcriber, VoiceService, decode_audio

logger = logging.getLogger("ollama_gateway")
SERVICE_NAME = "ollama-gateway"
STARTED_AT = time.monotonic()

configure_logging(SERVICE_NAME)


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def error_response(error: GatewayError) -> JSONResponse:
    """Render the error envelope shared by every failing route.

    A missing correlation id on ``error`` is filled from the current request.
    """

    if error.correlation_id is None:
        error.correlation_id = get_correlation_id()
    return JSONResponse(
        status_code=error.status_code,
        content={
            "success": False,
            "error": error.to_dict(),
            "correlation_id": error.correlation_id,
            "timestamp": _timestamp(),
        },
    )


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Attach correlation identifiers and latency to responses."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        start = time.perf_counter()
        with correlation_scope(request.headers.get("X-Correlation-ID")) as correlation_id:
            try:
                response = await call_next(request)
            except Exception:
                logger.exception(
                    "Unhandled exception during request", extra={"path": request.url.path}
                )
                raise
            finally:
                duration_ms = (time.perf_counter() - start) * 1000
                logger.info(
                    "Request completed",
                    extra={
                        "path": request.url.path,
                        "method": request.method,
                        "duration_ms": round(duration_ms, 2),
                    },
                )
        current_span = trace.get_current_span()
        if current_span and current_span.is_recording():
            current_span.set_attribute("correlation.id", correlation_id)
        response.headers["X-Correlation-ID"] = correlation_id
        response.headers["X-Process-Time-ms"] = f"{duration_ms:.2f}"
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-XSS-Protection"] = "1; mode=block"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response


def configure_rate_limiter(app: FastAPI, settings: Settings) -> None:
    """Configure SlowAPI rate limiting according to runtime settings."""

    default_limits: List[str] = []
    if settings.rate_limit_default:
        default_limits = [settings.rate_limit_default]

    limiter = Limiter(
        key_func=get_remote_address,
        default_limits=default_limits,
        headers_enabled=True,
        enabled=settings.rate_limit_enabled,
    )
    app.state.limiter = limiter

    if not any(middleware.cls is SlowAPIMiddleware for middleware in app.user_middleware):
        app.add_middleware(SlowAPIMiddleware)

    # SlowAPIMiddleware calls this handler synchronously.
    def rate_limit_exceeded_handler(
        request: Request, exc: RateLimitExceeded
    ) -> JSONResponse:
        logger.warning(
            "Rate limit exceeded",
            extra={"ip": request.client.host if request.client else None},
        )
        response = error_response(RateLimitError(f"Rate limit exceeded: {exc.detail}"))
        current_limit = getattr(request.state, "view_rate_limit", None)
        if current_limit is not None:
            response = limiter._inject_headers(response, current_limit)
        elif exc.limit is not None and exc.limit.limit is not None:
            response.headers.setdefault("X-RateLimit-Limit", str(exc.limit.limit.amount))
            response.headers.setdefault("Retry-After", str(exc.limit.limit.get_expiry()))
        return response

    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    app.state.ollama_client = OllamaClient(
        settings.ollama_base_url, api_key=settings.ollama_api_key
    )
    logger.info("Ollama client ready", extra={"base_url": settings.ollama_base_url})
    try:
        yield
    finally:
        await app.state.ollama_client.aclose()


app = FastAPI(title="Ollama Gateway", version="0.1.0", lifespan=lifespan)
configure_tracing(app, SERVICE_NAME)
settings = get_settings()
configure_rate_limiter(app, settings)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(CorrelationIdMiddleware)


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        "Request error occurred",
        extra={
            "method": request.method,
            "path": request.url.path,
            "status_code": exc.status_code,
            "code": exc.code,
        },
    )
    return error_response(exc)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    details = "; ".join(
        f"{'.'.join(str(part) for part in error.get('loc', ()))}: {error.get('msg')}"
        for error in exc.errors()
    )
    return error_response(ValidationError(details))


# Dependency factories -----------------------------------------------------

def get_ollama_client(request: Request) -> OllamaClient:
    return request.app.state.ollama_client


def get_request_context() -> RequestContext:
    return current_context()


def get_completion_service(
    settings: Settings = Depends(get_settings),
    client: OllamaClient = Depends(get_ollama_client),
) -> CompletionService:
    return CompletionService.from_settings(settings, client)


def get_document_service(
    completions: CompletionService = Depends(get_completion_service),
) -> DocumentService:
    return DocumentService(completions)


def get_transcriber(settings: Settings = Depends(get_settings)) -> Optional[Transcriber]:
    if not settings.openai_api_key:
        return None
    return OpenAITranscriber(api_key=settings.openai_api_key, model=settings.asr_model)


def get_voice_service(
    settings: Settings = Depends(get_settings),
    completions: CompletionService = Depends(get_completion_service),
    transcriber: Optional[Transcriber] = Depends(get_transcriber),
) -> VoiceService:
    return VoiceService(completions, transcriber, max_file_size=settings.max_file_size)


# Routes -------------------------------------------------------------------

ollama_router = APIRouter(
    prefix="/api/ollama", tags=["Ollama"], dependencies=[Depends(require_api_key)]
)
documents_router = APIRouter(
    prefix="/api/documents", tags=["Documents"], dependencies=[Depends(require_api_key)]
)
voice_router = APIRouter(
    prefix="/api/voice", tags=["Voice"], dependencies=[Depends(require_api_key)]
)
# Health checks that orchestrators call without credentials.
ollama_public_router = APIRouter(prefix="/api/ollama", tags=["Ollama"])


@app.get("/")
async def root() -> Dict[str, str]:
    return {"message": "Ollama gateway is running"}


@app.get("/healthz")
async def healthz(settings: Settings = Depends(get_settings)) -> Dict[str, str]:
    """Simple readiness check for container orchestrators."""

    return {
        "status": "ok",
        "ollama_url": settings.ollama_base_url,
        "voice": "configured" if settings.openai_api_key else "missing",
    }


@ollama_router.post("/chat", response_model=CompletionResponse)
async def chat_completion(
    payload: ChatRequest,
    service: CompletionService = Depends(get_completion_service),
    context: RequestContext = Depends(get_request_context),
) -> CompletionResponse:
    return await service.chat_completion(payload, context)


@ollama_router.post("/generate", response_model=CompletionResponse)
async def text_completion(
    payload: TextRequest,
    service: CompletionService = Depends(get_completion_service),
    context: RequestContext = Depends(get_request_context),
) -> CompletionResponse:
    return await service.text_completion(payload, context)


@ollama_router.get("/models", response_model=ModelListResponse)
async def list_models(
    service: CompletionService = Depends(get_completion_service),
    context: RequestContext = Depends(get_request_context),
) -> ModelListResponse:
    models = await service.list_models(context)
    return ModelListResponse(models=models, count=len(models))


@ollama_router.get("/models/{model:path}", response_model=ModelInfoResponse)
async def model_info(
    model: str,
    service: CompletionService = Depends(get_completion_service),
    context: RequestContext = Depends(get_request_context),
) -> ModelInfoResponse:
    info = await service.model_info(model, context)
    return ModelInfoResponse(model=info, timestamp=_timestamp())


@ollama_router.post("/models/pull", response_model=ModelOperationResponse)
async def pull_model(
    payload: ModelOperationRequest,
    service: CompletionService = Depends(get_completion_service),
    context: RequestContext = Depends(get_request_context),
) -> ModelOperationResponse:
    data = await service.pull_model(payload.model, context)
    return ModelOperationResponse(
        message=f"Model {payload.model} pulled successfully", data=data, timestamp=_timestamp()
    )


@ollama_router.delete("/models/delete", response_model=ModelOperationResponse)
async def delete_model(
    payload: ModelOperationRequest,
    service: CompletionService = Depends(get_completion_service),
    context: RequestContext = Depends(get_request_context),
) -> ModelOperationResponse:
    data = await service.delete_model(payload.model, context)
    return ModelOperationResponse(
        message=f"Model {payload.model} deleted successfully", data=data, timestamp=_timestamp()
    )


@ollama_public_router.get("/health")
async def backend_health(
    service: CompletionService = Depends(get_completion_service),
    context: RequestContext = Depends(get_request_context),
) -> JSONResponse:
    result = await service.health_check(context)
    status_code = status.HTTP_200_OK if result.success else status.HTTP_503_SERVICE_UNAVAILABLE
    return JSONResponse(status_code=status_code, content=result.model_dump())


@ollama_router.get("/stats")
async def stats(settings: Settings = Depends(get_settings)) -> Dict[str, Any]:
    return {
        "uptime_seconds": round(time.monotonic() - STARTED_AT, 3),
        "python_version": platform.python_version(),
        "platform": sys.platform,
        "ollama_url": settings.ollama_base_url,
        "timestamp": _timestamp(),
    }


@documents_router.post("/summarize", response_model=SummarizeResponse)
async def summarize_document(
    payload: SummarizeRequest,
    service: DocumentService = Depends(get_document_service),
    context: RequestContext = Depends(get_request_context),
) -> SummarizeResponse:
    return await service.summarize(
        payload.text,
        context,
        model=payload.model,
        max_length=payload.max_length,
        temperature=payload.temperature,
        custom_prompt=payload.custom_prompt,
    )


@documents_router.post("/ask", response_model=AnswerResponse)
async def ask_document(
    payload: QuestionRequest,
    service: DocumentService = Depends(get_document_service),
    context: RequestContext = Depends(get_request_context),
) -> AnswerResponse:
    return await service.answer_question(
        payload.text,
        payload.question,
        context,
        model=payload.model,
        temperature=payload.temperature,
        max_tokens=payload.max_tokens,
    )


@voice_router.post("/process", response_model=VoiceResponse)
async def process_voice(
    payload: VoiceRequest,
    service: VoiceService = Depends(get_voice_service),
    context: RequestContext = Depends(get_request_context),
) -> VoiceResponse:
    audio = decode_audio(payload.audio_base64, context.correlation_id)
    return await service.process_voice_input(
        audio,
        payload.audio_format,
        context,
        language=payload.language,
        model=payload.model,
    )


app.include_router(ollama_public_router)
app.include_router(ollama_router)
app.include_router(documents_router)
app.include_router(voice_router)
