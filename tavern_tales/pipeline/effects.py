"""Side-effect pipeline: detached voice, scene art and legend recording.

Everything here runs as ``asyncio`` tasks that the turn never awaits. Each
result is written back through the store addressed by the owning entry's
id; if that entry no longer exists (the session was reset) the result is
dropped. Failures are logged and swallowed.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
import uuid
from collections.abc import Callable, Coroutine
from typing import Any

from tavern_tales.llm import NarrativeService
from tavern_tales.media import ImageClient, SpeechClient, build_image_prompt
from tavern_tales.models import LegendEntry
from tavern_tales.pipeline.rules import LegendTitleRequest
from tavern_tales.storage import Storage
from tavern_tales.store import GameStore
from tavern_tales.transitions import PatchEntry, SetPlaying, SetSceneImage, Transition

logger = logging.getLogger(__name__)

DEFAULT_SCENE_PROMPT = "Medieval fantasy tavern, warm lighting"
MAX_SCENE_PROMPT = 60
SCENE_STORY_CHARS = 200

_QUOTES_RE = re.compile(r"['\"]")
_UNSAFE_WORDS_RE = re.compile(
    r"\b(weapon|sword|blood|violence|death|kill|attack|fight|battle|war)\b", re.IGNORECASE
)


def clean_scene_prompt(text: str | None) -> str:
    """Strip quotes and violent vocabulary; cap the length."""
    cleaned = _QUOTES_RE.sub("", text or "")
    cleaned = _UNSAFE_WORDS_RE.sub("", cleaned)
    cleaned = re.sub(r"\s+", " ", cleaned).strip()[:MAX_SCENE_PROMPT].strip()
    return cleaned or DEFAULT_SCENE_PROMPT


def clean_legend_title(text: str | None, character_name: str) -> str:
    title = _QUOTES_RE.sub("", text or "").strip()
    return title or f"{character_name}, the Adventurer"


class SideEffectPipeline:
    """Schedules and tracks detached work for one game session.

    At most one speech task and one image task run per story entry;
    scheduling the same entry again while its task runs is a no-op.
    """

    def __init__(
        self,
        store: GameStore,
        *,
        narrator: NarrativeService | None = None,
        speech: SpeechClient | None = None,
        images: ImageClient | None = None,
        storage: Storage | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._narrator = narrator
        self._speech = speech
        self._images = images
        self._storage = storage
        self._clock = clock
        self._tasks: set[asyncio.Task] = set()
        self._scheduled: set[tuple[str, str]] = set()
        self._closed = False

    @property
    def pending(self) -> int:
        return len(self._tasks)

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def schedule_narration(self, entry_id: str, text: str) -> list[asyncio.Task]:
        """Start voice and scene-image generation for a narrator entry."""
        tasks = []
        if self._speech is not None:
            task = self._spawn("voice", entry_id, lambda: self._voice(entry_id, text))
            if task is not None:
                tasks.append(task)
        if self._images is not None and self._narrator is not None:
            task = self._spawn("image", entry_id, lambda: self._scene_image(entry_id, text))
            if task is not None:
                tasks.append(task)
        return tasks

    def schedule_legend(self, request: LegendTitleRequest) -> asyncio.Task | None:
        if self._storage is None:
            logger.debug("No storage configured; legend for %s not recorded", request.character_name)
            return None
        key = f"{request.character_name}:{request.summary[:40]}"
        return self._spawn("legend", key, lambda: self._legend(request))

    def _spawn(
        self, kind: str, key: str, make: Callable[[], Coroutine[Any, Any, None]]
    ) -> asyncio.Task | None:
        if self._closed:
            return None
        if (kind, key) in self._scheduled:
            logger.debug("%s already scheduled for %s", kind, key)
            return None
        self._scheduled.add((kind, key))
        task = asyncio.create_task(self._guarded(kind, key, make()))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        task.add_done_callback(lambda _: self._scheduled.discard((kind, key)))
        return task

    async def _guarded(self, kind: str, key: str, work: Coroutine[Any, Any, None]) -> None:
        try:
            await work
        except Exception as e:
            logger.warning("%s generation for %s failed: %s", kind, key, e)

    # ------------------------------------------------------------------
    # Work
    # ------------------------------------------------------------------

    def _patch(self, entry_id: str, *transitions: Transition) -> bool:
        if self._closed:
            logger.debug("Pipeline closed; result for %s dropped", entry_id)
            return False
        if not self._store.has_entry(entry_id):
            logger.debug("Entry %s is gone; result dropped", entry_id)
            return False
        self._store.apply(transitions)
        return True

    async def _voice(self, entry_id: str, text: str) -> None:
        handle = await self._speech.synthesize(text)
        if not handle:
            return
        transitions: list[Transition] = [PatchEntry(entry_id=entry_id, voice_url=handle)]
        if self._store.snapshot().auto_play_voice:
            transitions.append(SetPlaying(entry_id=entry_id, is_playing=True))
        self._patch(entry_id, *transitions)

    async def _scene_image(self, entry_id: str, text: str) -> None:
        try:
            raw = await self._narrator.generate_short_text(
                "scene_prompt", {"story": text[:SCENE_STORY_CHARS]}
            )
        except Exception as e:
            logger.warning("Scene prompt generation failed: %s", e)
            raw = None
        url = await self._images.generate(build_image_prompt(clean_scene_prompt(raw)))
        if url:
            self._patch(entry_id, SetSceneImage(entry_id=entry_id, url=url))

    async def _legend(self, request: LegendTitleRequest) -> None:
        raw = None
        if self._narrator is not None:
            try:
                raw = await self._narrator.generate_short_text("legend_title", request.model_dump())
            except Exception as e:
                logger.warning("Legend title generation failed: %s", e)
        scene = self._store.snapshot().scene_image
        self._storage.append_legend(LegendEntry(
            id=f"legend-{uuid.uuid4().hex[:12]}",
            character_name=request.character_name,
            character_class=request.character_class,
            level=request.level,
            title=clean_legend_title(raw, request.character_name),
            summary=request.summary,
            image_url=scene.url if scene else None,
            achievements=dict(request.achievements),
            completed_at=self._clock(),
        ))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def drain(self) -> None:
        """Wait until every outstanding task (including ones they start) ends."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def close(self) -> None:
        """Stop writing results back. Running tasks finish but patch nothing."""
        self._closed = True
