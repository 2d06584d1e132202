"""Newline-delimited JSON stream decoding for agent stdout."""

from __future__ import annotations

import codecs
import json
from dataclasses import dataclass
from typing import Any

from work_loop.engine.backend.base import TokenUsage
from work_loop.sanitization import strip_control_sequences

_ERROR_SUBTYPE_PREFIX = "error"


class NdjsonLineBuffer:
    """Reassemble complete lines from arbitrarily split byte chunks."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    def feed(self, chunk: bytes) -> list[str]:
        self._pending += self._decoder.decode(chunk)
        *lines, self._pending = self._pending.split("\n")
        return lines

    def flush(self) -> str | None:
        """Return the trailing partial line left at end of stream, if any."""

        remainder = self._pending + self._decoder.decode(b"", final=True)
        self._pending = ""
        return remainder if remainder.strip() else None


@dataclass(slots=True)
class DecodedLine:
    """One stdout line: a structured event, raw text, or nothing."""

    event: dict[str, Any] | None = None
    raw_text: str | None = None


def decode_line(raw: str) -> DecodedLine:
    """Decode one complete line; non-JSON lines come back as raw text."""

    cleaned = strip_control_sequences(raw.strip())
    if not cleaned:
        return DecodedLine()
    try:
        payload = json.loads(cleaned)
    except json.JSONDecodeError:
        return DecodedLine(raw_text=cleaned)
    if not isinstance(payload, dict):
        return DecodedLine(raw_text=cleaned)
    return DecodedLine(event=payload)


def extract_text_deltas(event: dict[str, Any]) -> list[str]:
    """Collect incremental assistant text carried by one event."""

    event_type = event.get("type")
    chunks: list[str] = []
    if event_type == "assistant":
        if isinstance(event.get("content"), str):
            chunks.append(event["content"])
        if event.get("subtype") == "text" and isinstance(event.get("text"), str):
            chunks.append(event["text"])
        message = event.get("message")
        if isinstance(message, dict) and isinstance(message.get("content"), list):
            chunks.extend(
                block["text"]
                for block in message["content"]
                if isinstance(block, dict)
                and block.get("type") == "text"
                and isinstance(block.get("text"), str)
            )
    elif event_type == "content_block_delta":
        delta = event.get("delta")
        if isinstance(delta, dict) and isinstance(delta.get("text"), str):
            chunks.append(delta["text"])
    return chunks


@dataclass(slots=True)
class ResultCapture:
    """Latest terminal ``result`` event observed on the stream."""

    seen: bool = False
    text: str = ""
    session_id: str = ""
    usage: TokenUsage | None = None
    subtype: str | None = None
    is_error: bool = False
    error_message: str | None = None

    def update(self, event: dict[str, Any]) -> None:
        self.seen = True
        subtype = event.get("subtype")
        self.subtype = subtype if isinstance(subtype, str) else None
        self.is_error = event.get("is_error") is True
        if isinstance(event.get("result"), str):
            self.text = event["result"]
        if isinstance(event.get("session_id"), str):
            self.session_id = event["session_id"]
        self.usage = _parse_usage(event.get("usage")) or self.usage
        error = event.get("error")
        self.error_message = error if isinstance(error, str) else None

    @property
    def failed(self) -> bool:
        if self.is_error:
            return True
        return self.subtype is not None and self.subtype.startswith(_ERROR_SUBTYPE_PREFIX)

    def failure_message(self) -> str:
        if self.error_message:
            return self.error_message
        if self.text:
            return self.text
        return f"Agent exited with error ({self.subtype or 'unknown'})"


def _parse_usage(raw: object) -> TokenUsage | None:
    if not isinstance(raw, dict):
        return None
    input_tokens = raw.get("input_tokens")
    output_tokens = raw.get("output_tokens")
    if not isinstance(input_tokens, int) or not isinstance(output_tokens, int):
        return None
    return TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens)
