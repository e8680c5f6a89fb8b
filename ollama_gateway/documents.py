"""Prompt construction for questions and summaries over extracted text."""
from __future__ import annotations

import logging
from typing import Optional

from .errors import ValidationError
from .models import AnswerResponse, SummarizeResponse, TextRequest
from .service import CompletionService
from .telemetry import RequestContext

logger = logging.getLogger(__name__)

SUMMARY_TEXT_LIMIT = 8000
QUESTION_TEXT_LIMIT = 6000
MAX_SUMMARY_TOKENS = 2048

# Replies that mean the model asked for the document instead of summarising it.
CHATBOT_REPLY_MARKERS = (
    "please provide",
    "i need",
    "paste the text",
    "ready when you are",
)


def _clip(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def build_summary_prompt(text: str, max_length: int) -> str:
    return (
        f"TASK: Summarize the following document in {max_length} words or less.\n\n"
        f"DOCUMENT:\n{text}\n\n"
        "SUMMARY:"
    )


def build_fallback_summary_prompt(text: str, max_length: int) -> str:
    return f"Summarize this text in {max_length} words:\n\n{text}\n\nSummary:"


def build_question_prompt(text: str, question: str) -> str:
    return (
        "You are a document analysis assistant. Your task is to answer questions "
        "based on the provided document content.\n\n"
        "INSTRUCTIONS:\n"
        "- Read the document content below\n"
        "- Answer the question based on the information in the document\n"
        '- If the answer cannot be found in the document, state "The answer cannot '
        'be found in the provided document"\n'
        "- Provide a direct, factual answer\n"
        "- Do not ask for more information or respond as a chatbot\n\n"
        f"DOCUMENT CONTENT:\n{text}\n\n"
        f"QUESTION: {question}\n\n"
        "ANSWER:"
    )


def looks_like_chatbot_reply(reply: str) -> bool:
    lowered = reply.lower()
    return any(marker in lowered for marker in CHATBOT_REPLY_MARKERS)


class DocumentService:
    """Summaries and question answering on plain text already extracted from files."""

    def __init__(self, completions: CompletionService) -> None:
        self._completions = completions

    async def summarize(
        self,
        text: str,
        context: RequestContext,
        *,
        model: Optional[str] = None,
        max_length: int = 500,
        temperature: float = 0.3,
        custom_prompt: Optional[str] = None,
    ) -> SummarizeResponse:
        if not text or not text.strip():
            raise ValidationError("Document text is required", context.correlation_id)

        clipped = _clip(text, SUMMARY_TEXT_LIMIT)
        logger.info(
            "Starting document summarization",
            extra={
                "correlation_id": context.correlation_id,
                "original_length": len(text),
                "was_truncated": len(clipped) != len(text),
                "max_length": max_length,
            },
        )
        max_tokens = min(max_length * 2, MAX_SUMMARY_TOKENS)
        prompt = custom_prompt or build_summary_prompt(clipped, max_length)
        result = await self._completions.text_completion(
            TextRequest(model=model, prompt=prompt, temperature=temperature, max_tokens=max_tokens),
            context,
        )

        if looks_like_chatbot_reply(result.content):
            logger.warning(
                "Detected chatbot response, trying alternative prompt",
                extra={"correlation_id": context.correlation_id, "response": result.content[:100]},
            )
            result = await self._completions.text_completion(
                TextRequest(
                    model=model,
                    prompt=build_fallback_summary_prompt(clipped, max_length),
                    temperature=temperature,
                    max_tokens=max_tokens,
                ),
                context,
            )

        logger.info(
            "Document summarization completed",
            extra={
                "correlation_id": context.correlation_id,
                "summary_length": len(result.content),
            },
        )
        return SummarizeResponse(
            summary=result.content,
            model=result.model,
            original_length=len(text),
            summary_length=len(result.content),
            usage=result.usage,
        )

    async def answer_question(
        self,
        text: str,
        question: str,
        context: RequestContext,
        *,
        model: Optional[str] = None,
        temperature: float = 0.3,
        max_tokens: int = 1000,
    ) -> AnswerResponse:
        if not text or not text.strip():
            raise ValidationError("Document text is required", context.correlation_id)
        if not question or not question.strip():
            raise ValidationError("Question is required", context.correlation_id)

        prompt = build_question_prompt(_clip(text, QUESTION_TEXT_LIMIT), question)
        result = await self._completions.text_completion(
            TextRequest(model=model, prompt=prompt, temperature=temperature, max_tokens=max_tokens),
            context,
        )
        logger.info(
            "Question answered",
            extra={
                "correlation_id": context.correlation_id,
                "question_length": len(question),
                "answer_length": len(result.content),
            },
        )
        return AnswerResponse(
            answer=result.content,
            question=question,
            model=result.model,
            usage=result.usage,
        )
