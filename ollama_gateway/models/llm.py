"""Pydantic models representing LLM completions."""
from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from .common import CleanStr


class ChatMessage(BaseModel):
    """Single message item in a chat conversation."""

    role: Literal["system", "user", "assistant"] = Field(
        ..., description="Role of the author"
    )
    content: CleanStr = Field(..., description="Text content of the message")
    name: Optional[str] = Field(default=None, description="Optional author name")


class ChatRequest(BaseModel):
    """Request payload for chat completions."""

    messages: List[ChatMessage] = Field(..., min_length=1)
    model: Optional[str] = Field(
        default=None,
        min_length=1,
        description="Model to use; falls back to the configured default",
    )
    temperature: Optional[float] = Field(
        default=None,
        ge=0.0,
        le=2.0,
        description="Sampling temperature to apply to the completion",
    )
    max_tokens: Optional[int] = Field(
        default=None,
        ge=1,
        le=32768,
        description="Limit for generated tokens",
    )
    stream: bool = Field(default=False)


class TextRequest(BaseModel):
    """Request payload for raw text completions."""

    prompt: CleanStr = Field(..., min_length=1)
    model: Optional[str] = Field(default=None, min_length=1)
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)
    max_tokens: Optional[int] = Field(default=None, ge=1, le=32768)
    stream: bool = Field(default=False)


class UsageStats(BaseModel):
    """Approximate token usage computed by the gateway."""

    prompt_tokens: int
    completion_tokens: int
    total_tokens: int

    @classmethod
    def from_counts(cls, prompt_tokens: int, completion_tokens: int) -> "UsageStats":
        return cls(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
        )


class CompletionResponse(BaseModel):
    """Normalised result of a chat or text completion."""

    content: str = Field(..., description="Text produced by the model")
    model: str = Field(..., description="Model that generated the response")
    usage: UsageStats


class ModelListResponse(BaseModel):
    models: List[Dict[str, Any]] = Field(default_factory=list)
    count: int = 0


class BackendHealthResponse(BaseModel):
    success: bool
    status: Literal["healthy", "unhealthy"]
    message: Optional[Any] = None
    error: Optional[str] = None
    timestamp: str


class ModelOperationRequest(BaseModel):
    """Name of a model to pull or delete."""

    model: CleanStr = Field(..., min_length=1, description="Model name, e.g. llama2:7b")


class ModelInfoResponse(BaseModel):
    success: bool = True
    model: Dict[str, Any]
    timestamp: str


class ModelOperationResponse(BaseModel):
    success: bool = True
    message: str
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: str
