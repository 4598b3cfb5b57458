"""
Completion capability for extraction, dedup arbitration and merging.

Talks to an OpenAI-compatible ``/chat/completions`` endpoint. Backend
failures raise CompletionUnavailableError; output that is not JSON makes
``complete_json`` return None so callers can fall back to a default.
"""

import json
import re
from typing import Any, Dict, List, Optional

import httpx

from errors import CompletionUnavailableError
from remote_api import post_json

_FENCE_PATTERN = re.compile(r"```(?:json)?\s*\n?([\s\S]*?)\n?```", re.IGNORECASE)
_NOT_FOUND = object()


def extract_chat_message_text(payload: Dict[str, Any]) -> str:
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        return ""
    first_choice = choices[0]
    if not isinstance(first_choice, dict):
        return ""
    message = first_choice.get("message")
    if not isinstance(message, dict):
        return ""
    content = message.get("content")
    if isinstance(content, str):
        return content.strip()
    if isinstance(content, list):
        parts: List[str] = []
        for item in content:
            if not isinstance(item, dict):
                continue
            text_content = item.get("text")
            if isinstance(text_content, str) and text_content.strip():
                parts.append(text_content.strip())
        return "\n".join(parts).strip()
    return ""


def _balanced_object_end(text: str, start: int) -> int:
    """Index of the brace closing the object opened at ``start``, or -1."""
    depth = 0
    in_string = False
    escaped = False
    for pos in range(start, len(text)):
        char = text[pos]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return pos
    return -1


def _try_loads(candidate: str) -> Any:
    try:
        return json.loads(candidate)
    except (TypeError, ValueError):
        return _NOT_FOUND


def parse_json_from_response(text: str) -> Optional[Any]:
    """
    Pull a JSON value out of an LLM reply.

    Order: the whole reply, then a fenced block, then each balanced
    ``{...}`` span from left to right (string literals and escapes are
    respected, invalid spans are skipped). Returns None when nothing parses.
    """
    candidate = (text or "").strip()
    if not candidate:
        return None

    parsed = _try_loads(candidate)
    if parsed is not _NOT_FOUND:
        return parsed

    fence_match = _FENCE_PATTERN.search(candidate)
    if fence_match:
        parsed = _try_loads(fence_match.group(1).strip())
        if parsed is not _NOT_FOUND:
            return parsed

    start = candidate.find("{")
    while start >= 0:
        end = _balanced_object_end(candidate, start)
        if end > start:
            parsed = _try_loads(candidate[start : end + 1])
            if parsed is not _NOT_FOUND:
                return parsed
        start = candidate.find("{", start + 1)
    return None


class LlmClient:
    def __init__(
        self,
        *,
        model: str,
        api_base: str,
        api_key: str = "",
        timeout_sec: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.model = model
        self._api_base = api_base
        self._api_key = api_key
        self._timeout_sec = timeout_sec
        self._transport = transport

    async def complete(self, prompt: str) -> str:
        payload = {
            "model": self.model,
            "temperature": 0,
            "messages": [{"role": "user", "content": prompt}],
        }
        response = await post_json(
            self._api_base,
            "/chat/completions",
            payload,
            api_key=self._api_key,
            timeout_sec=self._timeout_sec,
            transport=self._transport,
            error_cls=CompletionUnavailableError,
        )
        return extract_chat_message_text(response)

    async def complete_json(self, prompt: str) -> Optional[Any]:
        raw = await self.complete(prompt)
        return parse_json_from_response(raw)
