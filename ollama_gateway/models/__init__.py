"""Pydantic schemas exposed by the Ollama gateway."""
from .documents import AnswerResponse, QuestionRequest, SummarizeRequest, SummarizeResponse
from .llm import (
    BackendHealthResponse,
    ChatMessage,
    ChatRequest,
    CompletionResponse,
    ModelInfoResponse,
    ModelListResponse,
    ModelOperationRequest,
    ModelOperationResponse,
    TextRequest,
    UsageStats,
)
from .voice import VoiceRequest, VoiceResponse

__all__ = [
    "AnswerResponse",
    "BackendHealthResponse",
    "ChatMessage",
    "ChatRequest",
    "CompletionResponse",
    "ModelInfoResponse",
    "ModelListResponse",
    "ModelOperationRequest",
    "ModelOperationResponse",
    "QuestionRequest",
    "SummarizeRequest",
    "SummarizeResponse",
    "TextRequest",
    "UsageStats",
    "VoiceRequest",
    "VoiceResponse",
]
