"""Reassembly of newline-delimited JSON streams returned by Ollama."""
from __future__ import annotations

import codecs
import json
import logging
from typing import Any, AsyncIterable, Dict, Iterable, List, Optional, Union

logger = logging.getLogger(__name__)

Chunk = Union[bytes, bytearray, str]

DONE_FIELDS = (
    "model",
    "done_reason",
    "total_duration",
    "eval_count",
    "prompt_eval_count",
)


def _fragment_of(payload: Dict[str, Any]) -> str:
    message = payload.get("message")
    if isinstance(message, dict) and isinstance(message.get("content"), str):
        return message["content"]
    response = payload.get("response")
    if isinstance(response, str):
        return response
    return ""


class StreamAggregator:
    """Fold stream chunks into a single completion string.

    Chunks may split JSON objects, lines or multi-byte characters at any
    point; only complete lines are parsed. ``/api/chat`` lines contribute
    ``message.content`` and ``/api/generate`` lines contribute ``response``.
    A single non-streamed JSON body is handled as a one-line stream.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._parts: List[str] = []
        self._finished = False
        self.done = False
        self.error: Optional[str] = None
        self.metadata: Dict[str, Any] = {}

    @property
    def content(self) -> str:
        return "".join(self._parts)

    def feed(self, chunk: Chunk) -> None:
        if self._finished:
            raise RuntimeError("Stream already finished")
        if isinstance(chunk, (bytes, bytearray)):
            chunk = self._decoder.decode(bytes(chunk))
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split("\n")
        for line in lines:
            self._consume(line, final=False)

    def finish(self) -> str:
        """Flush the trailing partial line and return the full content."""

        if not self._finished:
            self._buffer += self._decoder.decode(b"", final=True)
            remainder, self._buffer = self._buffer, ""
            self._consume(remainder, final=True)
            self._finished = True
        return self.content

    def _consume(self, line: str, *, final: bool) -> None:
        line = line.strip()
        if not line:
            return
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            if final:
                logger.debug("Discarding incomplete trailing chunk", extra={"chunk": line[:100]})
            else:
                logger.warning("Failed to parse chunk", extra={"chunk": line[:100]})
            return
        if not isinstance(payload, dict):
            return

        if payload.get("error"):
            self.error = str(payload["error"])
            return
        fragment = _fragment_of(payload)
        if fragment:
            self._parts.append(fragment)
        if payload.get("done"):
            self.done = True
            self.metadata = {key: payload[key] for key in DONE_FIELDS if key in payload}


def aggregate_chunks(chunks: Iterable[Chunk]) -> str:
    aggregator = StreamAggregator()
    for chunk in chunks:
        aggregator.feed(chunk)
    return aggregator.finish()


async def aggregate_stream(chunks: AsyncIterable[Chunk]) -> StreamAggregator:
    """Consume an async chunk iterator and return the finished aggregator."""

    aggregator = StreamAggregator()
    async for chunk in chunks:
        aggregator.feed(chunk)
    aggregator.finish()
    return aggregator
