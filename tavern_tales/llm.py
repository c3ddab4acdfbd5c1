"""LLM clients: the narrative service and short-text generation.

Two protocols are used by the rest of the package:

    LLM                async def __call__(self, stage, prompt) -> str
                       One-shot completion. `stage` names the caller
                       ("legend_title", "scene_prompt", ...) for logging.
    NarrativeService   stream_turn(request) yields TextFragment events while
                       the narrative arrives, then exactly one FinalPayload;
                       generate_short_text(kind, context) -> str.

Implementations:

    HttpLLM            one-shot client for an OpenAI-compatible chat
                       completions API.
    HttpNarrator       streams an OpenAI-compatible chat completion (SSE),
                       pulling the "story" field out of the JSON as it grows.
    ScriptedNarrator   plays back canned turns. No network; lets you drive
                       a whole session deterministically.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator, Iterable
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

import httpx
from pydantic import BaseModel, Field

from tavern_tales import prompts
from tavern_tales.models import QuestProgress
from tavern_tales.responses import decode_payload

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocols and wire types
# ---------------------------------------------------------------------------

class LLM(Protocol):
    async def __call__(self, stage: str, prompt: str) -> str: ...


ShortTextKind = Literal["legend_title", "scene_prompt", "antagonist_profile"]


class HistoryLine(BaseModel):
    role: str
    text: str


class TurnRequest(BaseModel):
    """Everything the narrator is told about the current turn."""

    action: str
    character_summary: str
    level: int = 1
    current_location: str = ""
    explored_areas: list[str] = Field(default_factory=list)
    inventory: list[str] = Field(default_factory=list)
    active_quests: list[QuestProgress] = Field(default_factory=list)
    recent_history: list[HistoryLine] = Field(default_factory=list)
    story_length: int = 0


class TextFragment(BaseModel):
    text: str


class FinalPayload(BaseModel):
    data: dict[str, Any] | None = None


StreamEvent = TextFragment | FinalPayload


class NarrativeService(Protocol):
    def stream_turn(self, request: TurnRequest) -> AsyncIterator[StreamEvent]: ...

    async def generate_short_text(self, kind: ShortTextKind, context: dict[str, Any]) -> str: ...


# ---------------------------------------------------------------------------
# HttpLLM: one-shot completions
# ---------------------------------------------------------------------------

class HttpLLM:
    """Async HTTP client for an OpenAI-compatible chat completions backend.

    POST /v1/chat/completions   {"model": ..., "messages": [...]}
    Response: {"choices": [{"message": {"content": "..."}}]}
    """

    def __init__(
        self,
        provider_url: str,
        api_key: str = "",
        model: str = "",
        timeout: float = 120.0,
        max_tokens: int = 300,
    ) -> None:
        self._base_url = provider_url.rstrip("/")
        self._api_key = api_key
        self._model = model
        self._timeout = timeout
        self._max_tokens = max_tokens

    def _headers(self) -> dict[str, str]:
        return _headers(self._api_key)

    def _build_request(self, prompt: str) -> tuple[str, dict]:
        """Return (url, body) for a single-message chat completion."""
        body: dict = {
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": self._max_tokens,
        }
        if self._model:
            body["model"] = self._model
        return f"{self._base_url}/v1/chat/completions", body

    def _parse_response(self, data: Any) -> str:
        """Extract the completion text from the response body."""
        choices = data.get("choices") if isinstance(data, dict) else None
        first = choices[0] if isinstance(choices, list) and choices else None
        message = first.get("message") if isinstance(first, dict) else None
        if not isinstance(message, dict) or "content" not in message:
            raise LLMError("Unexpected response format from chat completions backend")
        return str(message["content"] or "")

    async def __call__(self, stage: str, prompt: str) -> str:
        url, body = self._build_request(prompt)
        logger.debug("llm call stage=%s url=%s prompt_len=%d", stage, url, len(prompt))

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, json=body, headers=self._headers())
                resp.raise_for_status()
        except httpx.ConnectError as e:
            raise LLMError(f"Cannot connect to LLM backend at {self._base_url}") from e
        except httpx.HTTPStatusError as e:
            raise LLMError(f"LLM backend returned HTTP {e.response.status_code}") from e
        except httpx.TimeoutException as e:
            raise LLMError(f"LLM backend timed out after {self._timeout}s") from e

        try:
            data = resp.json()
        except ValueError as e:
            raise LLMError("LLM backend returned a non-JSON body") from e
        text = self._parse_response(data)
        logger.debug("llm response stage=%s len=%d", stage, len(text))
        return text


def _headers(api_key: str) -> dict[str, str]:
    headers: dict[str, str] = {"Content-Type": "application/json"}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    return headers


# ---------------------------------------------------------------------------
# Incremental "story" extraction from a growing JSON document
# ---------------------------------------------------------------------------

_ESCAPES = {'"': '"', "\\": "\\", "/": "/", "b": "\b", "f": "\f", "n": "\n", "r": "\r", "t": "\t"}


class StoryFieldScanner:
    """Feeds on raw JSON chunks and returns newly decoded story text.

    Only the first top-level "story" string is followed; everything after
    its closing quote is ignored. Escapes split across chunks are held back
    until complete.
    """

    _KEY = '"story"'

    def __init__(self) -> None:
        self._buf = ""
        self._pos: int | None = None
        self._closed = False

    def feed(self, chunk: str) -> str:
        self._buf += chunk
        if self._closed:
            return ""
        if self._pos is None:
            self._pos = self._find_value_start()
            if self._pos is None:
                return ""

        buf, i, out = self._buf, self._pos, []
        while i < len(buf):
            ch = buf[i]
            if ch == '"':
                self._closed = True
                i += 1
                break
            if ch != "\\":
                out.append(ch)
                i += 1
                continue
            if i + 1 >= len(buf):
                break
            esc = buf[i + 1]
            if esc == "u":
                if i + 6 > len(buf):
                    break
                try:
                    out.append(chr(int(buf[i + 2:i + 6], 16)))
                except ValueError:
                    pass
                i += 6
                continue
            out.append(_ESCAPES.get(esc, esc))
            i += 2
        self._pos = i
        return "".join(out)

    def _find_value_start(self) -> int | None:
        key = self._buf.find(self._KEY)
        if key < 0:
            return None
        i = key + len(self._KEY)
        while i < len(self._buf) and self._buf[i] in " \t\r\n:":
            i += 1
        if i >= len(self._buf):
            return None
        if self._buf[i] != '"':
            self._closed = True
            return None
        return i + 1


_DONE = object()


def _parse_sse_line(line: str) -> str | object | None:
    """Return the content delta of one SSE line, _DONE, or None to skip."""
    if not line.startswith("data:"):
        return None
    data = line[len("data:"):].strip()
    if data == "[DONE]":
        return _DONE
    try:
        chunk = json.loads(data)
    except json.JSONDecodeError:
        logger.debug("Skipping unparseable SSE line: %.80s", data)
        return None
    choices = chunk.get("choices") if isinstance(chunk, dict) else None
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        logger.debug("Skipping SSE line without choices: %.80s", data)
        return None
    delta = choices[0].get("delta")
    if not isinstance(delta, dict):
        return None
    content = delta.get("content")
    return content if isinstance(content, str) else None


# ---------------------------------------------------------------------------
# HttpNarrator: streaming narrative service
# ---------------------------------------------------------------------------

class HttpNarrator:
    """Narrative service over an OpenAI-compatible chat completions API.

    Args:
        provider_url: Base URL, e.g. "https://api.openai.com".
        api_key:      Bearer token, or empty string if not required.
        model:        Model identifier.
        timeout:      HTTP timeout in seconds.
        llm:          One-shot client for short texts; built from the same
                      connection settings when omitted.
        transport:    Optional httpx transport for the streaming call.
    """

    def __init__(
        self,
        provider_url: str,
        api_key: str = "",
        model: str = "gpt-3.5-turbo",
        timeout: float = 120.0,
        llm: LLM | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = provider_url.rstrip("/")
        self._api_key = api_key
        self._model = model
        self._timeout = timeout
        self._transport = transport
        self._llm = llm or HttpLLM(provider_url, api_key, model, timeout)

    def _turn_body(self, request: TurnRequest) -> dict:
        return {
            "model": self._model,
            "messages": [
                {"role": "system", "content": prompts.render_narrator_prompt(request)},
                {"role": "user", "content": request.action},
            ],
            "stream": True,
            "response_format": {"type": "json_object"},
            "temperature": 0.9,
            "max_tokens": 500,
        }

    async def stream_turn(self, request: TurnRequest) -> AsyncIterator[StreamEvent]:
        url = f"{self._base_url}/v1/chat/completions"
        body = self._turn_body(request)
        logger.debug("narrator stream url=%s action_len=%d", url, len(request.action))

        scanner = StoryFieldScanner()
        raw: list[str] = []
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                async with client.stream("POST", url, json=body, headers=_headers(self._api_key)) as resp:
                    resp.raise_for_status()
                    async for line in resp.aiter_lines():
                        delta = _parse_sse_line(line)
                        if delta is _DONE:
                            break
                        if not delta:
                            continue
                        raw.append(delta)
                        fragment = scanner.feed(delta)
                        if fragment:
                            yield TextFragment(text=fragment)
        except httpx.ConnectError as e:
            raise LLMError(f"Cannot connect to narrative service at {self._base_url}") from e
        except httpx.HTTPStatusError as e:
            raise LLMError(f"Narrative service returned HTTP {e.response.status_code}") from e
        except httpx.TimeoutException as e:
            raise LLMError(f"Narrative service timed out after {self._timeout}s") from e
        except httpx.TransportError as e:
            raise LLMError(f"Narrative stream broke off: {e}") from e
        except ValueError as e:
            raise LLMError(f"Malformed narrative stream: {e}") from e

        text = "".join(raw)
        logger.debug("narrator stream finished len=%d", len(text))
        yield FinalPayload(data=decode_payload(text))

    async def generate_short_text(self, kind: ShortTextKind, context: dict[str, Any]) -> str:
        prompt = prompts.render_short_prompt(kind, context)
        return (await self._llm(kind, prompt)).strip()


# ---------------------------------------------------------------------------
# ScriptedNarrator: canned turns, no network
# ---------------------------------------------------------------------------

@dataclass
class ScriptedTurn:
    """One canned turn: fragments to stream, then a payload or an error."""

    fragments: list[str] = field(default_factory=list)
    payload: dict[str, Any] | None = None
    error: Exception | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any], fragment_size: int = 16) -> ScriptedTurn:
        story = str(payload.get("story", ""))
        fragments = [story[i:i + fragment_size] for i in range(0, len(story), fragment_size)]
        return cls(fragments=fragments, payload=payload)


class ScriptedNarrator:
    """Plays back ScriptedTurns in order and records every request.

    ``short_texts`` maps a kind to a reply (or a list of replies consumed in
    order). A kind with no reply raises LLMError, as an unreachable service
    would.
    """

    def __init__(
        self,
        turns: Iterable[ScriptedTurn | dict[str, Any]] = (),
        short_texts: dict[str, str | list[str]] | None = None,
    ) -> None:
        self._turns = [t if isinstance(t, ScriptedTurn) else ScriptedTurn.from_payload(t) for t in turns]
        self._short: dict[str, list[str]] = {
            k: [v] if isinstance(v, str) else list(v) for k, v in (short_texts or {}).items()
        }
        self.requests: list[TurnRequest] = []
        self.short_calls: list[tuple[str, dict[str, Any]]] = []

    async def stream_turn(self, request: TurnRequest) -> AsyncIterator[StreamEvent]:
        self.requests.append(request)
        if not self._turns:
            raise LLMError("No scripted turns left")
        turn = self._turns.pop(0)
        for fragment in turn.fragments:
            yield TextFragment(text=fragment)
        if turn.error is not None:
            raise turn.error
        yield FinalPayload(data=turn.payload)

    async def generate_short_text(self, kind: ShortTextKind, context: dict[str, Any]) -> str:
        self.short_calls.append((kind, context))
        replies = self._short.get(kind)
        if not replies:
            raise LLMError(f"No scripted reply for {kind}")
        return replies.pop(0) if len(replies) > 1 else replies[0]

    def assert_exhausted(self) -> None:
        assert not self._turns, f"{len(self._turns)} scripted turns were never played"


# ---------------------------------------------------------------------------
# LLMError: raised for every connection and protocol failure
# ---------------------------------------------------------------------------

class LLMError(RuntimeError):
    """Raised when a language service cannot be reached or returns an error."""
