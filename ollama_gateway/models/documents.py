"""Pydantic models for document summarisation and question answering."""
from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field

from .common import CleanStr
from .llm import UsageStats


class SummarizeRequest(BaseModel):
    """Summarise text that has already been extracted from a document."""

    text: CleanStr = Field(..., min_length=1, description="Extracted document text")
    model: Optional[str] = Field(default=None, min_length=1)
    max_length: int = Field(default=500, ge=50, le=2000, description="Target summary length in words")
    temperature: float = Field(default=0.3, ge=0.0, le=2.0)
    custom_prompt: Optional[CleanStr] = Field(default=None, max_length=1000)


class SummarizeResponse(BaseModel):
    summary: str
    model: str
    original_length: int
    summary_length: int
    usage: UsageStats


class QuestionRequest(BaseModel):
    """Ask a question about text that has already been extracted."""

    text: CleanStr = Field(..., min_length=1, description="Extracted document text")
    question: CleanStr = Field(..., min_length=1, max_length=1000)
    model: Optional[str] = Field(default=None, min_length=1)
    temperature: float = Field(default=0.3, ge=0.0, le=2.0)
    max_tokens: int = Field(default=1000, ge=50, le=2000)


class AnswerResponse(BaseModel):
    answer: str
    question: str
    model: str
    usage: UsageStats
