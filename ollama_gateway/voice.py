"""Voice input: transcription followed by a chat completion."""
from __future__ import annotations

import base64
import binascii
import logging
from typing import Optional, Protocol, Sequence

from .clients import TranscriptionResult
from .errors import FileError, GatewayError, ServiceUnavailableError
from .models import ChatMessage, ChatRequest, VoiceResponse
from .service import CompletionService
from .telemetry import RequestContext

logger = logging.getLogger(__name__)

SUPPORTED_FORMATS = ("wav", "mp3", "m4a", "flac", "ogg")
VOICE_TEMPERATURE = 0.7
VOICE_MAX_TOKENS = 1000


class Transcriber(Protocol):
    async def transcribe(
        self,
        audio: bytes,
        audio_format: str = "wav",
        language: Optional[str] = None,
    ) -> TranscriptionResult:
        ...


def decode_audio(audio_base64: str, correlation_id: str) -> bytes:
    try:
        return base64.b64decode(audio_base64, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise FileError("Invalid base64 audio payload", correlation_id) from exc


class VoiceService:
    def __init__(
        self,
        completions: CompletionService,
        transcriber: Optional[Transcriber],
        *,
        max_file_size: int,
        supported_formats: Sequence[str] = SUPPORTED_FORMATS,
    ) -> None:
        self._completions = completions
        self._transcriber = transcriber
        self._max_file_size = max_file_size
        self._supported_formats = tuple(fmt.lower() for fmt in supported_formats)

    def _check_audio(self, audio: bytes, audio_format: str, correlation_id: str) -> None:
        if audio_format.lower().lstrip(".") not in self._supported_formats:
            raise FileError(
                f"Unsupported audio format '{audio_format}'. "
                f"Supported formats: {', '.join(self._supported_formats)}",
                correlation_id,
            )
        if not audio:
            raise FileError("Audio payload is empty", correlation_id)
        if len(audio) > self._max_file_size:
            raise FileError(
                f"Audio payload exceeds the maximum size of {self._max_file_size} bytes",
                correlation_id,
            )

    async def transcribe(
        self,
        audio: bytes,
        audio_format: str,
        context: RequestContext,
        language: Optional[str] = None,
    ) -> str:
        correlation_id = context.correlation_id
        if self._transcriber is None:
            raise ServiceUnavailableError("Voice transcription is not configured", correlation_id)
        self._check_audio(audio, audio_format, correlation_id)

        logger.info(
            "Starting audio transcription",
            extra={"correlation_id": correlation_id, "file_size": len(audio)},
        )
        try:
            result = await self._transcriber.transcribe(
                audio, audio_format.lower().lstrip("."), language
            )
        except GatewayError:
            raise
        except Exception as exc:
            logger.exception("Audio transcription failed", extra={"correlation_id": correlation_id})
            raise FileError(f"Failed to transcribe audio: {exc}", correlation_id) from exc

        logger.info(
            "Audio transcription completed",
            extra={"correlation_id": correlation_id, "transcription_length": len(result.text)},
        )
        return result.text

    async def process_voice_input(
        self,
        audio: bytes,
        audio_format: str,
        context: RequestContext,
        *,
        language: Optional[str] = None,
        model: Optional[str] = None,
    ) -> VoiceResponse:
        transcription = await self.transcribe(audio, audio_format, context, language)
        if not transcription.strip():
            raise FileError("No speech detected in audio", context.correlation_id)

        reply = await self._completions.chat_completion(
            ChatRequest(
                model=model,
                messages=[ChatMessage(role="user", content=transcription)],
                temperature=VOICE_TEMPERATURE,
                max_tokens=VOICE_MAX_TOKENS,
            ),
            context,
        )
        logger.info(
            "Voice processing completed",
            extra={
                "correlation_id": context.correlation_id,
                "transcription_length": len(transcription),
                "response_length": len(reply.content),
            },
        )
        return VoiceResponse(transcription=transcription, response=reply.content)
