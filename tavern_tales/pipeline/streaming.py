"""Streaming text channel: live narrative fragments for the UI.

The channel accumulates fragments in arrival order and reports the text so
far after each one. Completion fires exactly once, carrying the final
structured payload, or ``None`` when the stream broke off or never sent one.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterable, Callable
from typing import Any

import httpx

from tavern_tales.llm import FinalPayload, LLMError, StreamEvent, TextFragment

logger = logging.getLogger(__name__)

FragmentCallback = Callable[[str], None]
DoneCallback = Callable[[str, "dict[str, Any] | None"], None]


class StreamingTextChannel:
    def __init__(
        self,
        on_fragment: FragmentCallback | None = None,
        on_done: DoneCallback | None = None,
    ) -> None:
        self._on_fragment = on_fragment
        self._on_done = on_done
        self._text = ""
        self._done = False
        self._payload: dict[str, Any] | None = None

    @property
    def text(self) -> str:
        return self._text

    @property
    def done(self) -> bool:
        return self._done

    @property
    def payload(self) -> dict[str, Any] | None:
        """The final payload; only meaningful once ``done`` is True."""
        return self._payload

    def push(self, fragment: str) -> None:
        if self._done:
            logger.debug("Fragment after completion ignored")
            return
        if not fragment:
            return
        self._text += fragment
        if self._on_fragment is not None:
            self._on_fragment(self._text)

    def finish(self, payload: dict[str, Any] | None) -> None:
        if self._done:
            return
        self._done = True
        self._payload = payload
        if self._on_done is not None:
            self._on_done(self._text, payload)

    async def consume(self, events: AsyncIterable[StreamEvent]) -> dict[str, Any] | None:
        """Drive the channel from a narrative event stream until it ends.

        A transport failure completes the channel with whatever text has
        arrived and no payload; the failure itself is not re-raised.
        """
        payload: dict[str, Any] | None = None
        try:
            async for event in events:
                if isinstance(event, TextFragment):
                    self.push(event.text)
                elif isinstance(event, FinalPayload):
                    payload = event.data
        except (LLMError, httpx.HTTPError) as e:
            logger.warning("Narrative stream failed after %d chars: %s", len(self._text), e)
            payload = None
        self.finish(payload)
        return self._payload
