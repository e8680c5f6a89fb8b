"""Pydantic models for voice interactions."""
from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field


class VoiceRequest(BaseModel):
    """Request payload for transcription followed by a chat reply."""

    audio_base64: str = Field(..., min_length=1, description="Audio content encoded in base64")
    audio_format: str = Field(
        "wav",
        min_length=1,
        description="File extension of the encoded audio (e.g. wav, mp3)",
    )
    language: Optional[str] = Field(
        default=None,
        description="Optional BCP-47 language tag to guide transcription",
    )
    model: Optional[str] = Field(default=None, min_length=1)


class VoiceResponse(BaseModel):
    transcription: str = Field(..., description="Recognised transcript of the provided audio")
    response: str = Field(..., description="Assistant reply to the transcript")
