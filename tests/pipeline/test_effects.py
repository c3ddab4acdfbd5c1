"""Tests for tavern_tales.pipeline.effects."""

import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock

from tavern_tales.llm import ScriptedNarrator
from tavern_tales.media import build_image_prompt
from tavern_tales.models import StoryEntry, new_game_state
from tavern_tales.pipeline.effects import (
    DEFAULT_SCENE_PROMPT,
    MAX_SCENE_PROMPT,
    SideEffectPipeline,
    clean_legend_title,
    clean_scene_prompt,
)
from tavern_tales.pipeline.rules import LegendTitleRequest
from tavern_tales.store import GameStore
from tavern_tales.transitions import AppendEntry, Reset, ToggleAutoPlay

TEXT = "The lanterns of the harbour flicker as the tide rolls in."


@pytest.fixture
def entry_store(store: GameStore) -> GameStore:
    store.dispatch(AppendEntry(entry=StoryEntry(id="n-1", role="narrator", text=TEXT, created_at=1.0)))
    return store


def _speech(handle: str | None = "voice/n1.mp3") -> MagicMock:
    speech = MagicMock()
    speech.synthesize = AsyncMock(return_value=handle)
    return speech


def _images(url: str | None = "https://cdn.test/scene.png") -> MagicMock:
    images = MagicMock()
    images.generate = AsyncMock(return_value=url)
    return images


def _legend_request() -> LegendTitleRequest:
    return LegendTitleRequest(
        character_name="Aria",
        character_class="Fighter",
        level=4,
        summary="Aria sealed the crypt for good.",
        achievements={"enemies_defeated": 3},
    )


class TestCleaning:
    def test_scene_prompt_strips_quotes_and_violence(self) -> None:
        assert clean_scene_prompt('"Sword" by the harbour at dawn') == "by the harbour at dawn"

    def test_scene_prompt_default(self) -> None:
        assert clean_scene_prompt(None) == DEFAULT_SCENE_PROMPT
        assert clean_scene_prompt("battle war") == DEFAULT_SCENE_PROMPT

    def test_scene_prompt_capped(self) -> None:
        assert len(clean_scene_prompt("misty harbour " * 20)) <= MAX_SCENE_PROMPT

    def test_legend_title(self) -> None:
        assert clean_legend_title('"The Ember Warden"', "Aria") == "The Ember Warden"
        assert clean_legend_title("  ", "Aria") == "Aria, the Adventurer"


class TestNarrationEffects:
    async def test_voice_patches_entry_and_plays(self, entry_store: GameStore) -> None:
        speech = _speech()
        pipeline = SideEffectPipeline(entry_store, speech=speech)
        tasks = pipeline.schedule_narration("n-1", TEXT)
        assert len(tasks) == 1
        await pipeline.drain()
        entry = entry_store.snapshot().entry("n-1")
        assert entry.voice_url == "voice/n1.mp3"
        assert entry.is_playing
        speech.synthesize.assert_awaited_once_with(TEXT)

    async def test_voice_without_auto_play(self, entry_store: GameStore) -> None:
        entry_store.dispatch(ToggleAutoPlay())
        pipeline = SideEffectPipeline(entry_store, speech=_speech())
        pipeline.schedule_narration("n-1", TEXT)
        await pipeline.drain()
        entry = entry_store.snapshot().entry("n-1")
        assert entry.voice_url == "voice/n1.mp3"
        assert not entry.is_playing

    async def test_scene_image(self, entry_store: GameStore) -> None:
        narrator = ScriptedNarrator(short_texts={"scene_prompt": "'Misty' harbour at dusk"})
        images = _images()
        pipeline = SideEffectPipeline(entry_store, narrator=narrator, images=images)
        pipeline.schedule_narration("n-1", TEXT)
        await pipeline.drain()
        scene = entry_store.snapshot().scene_image
        assert (scene.entry_id, scene.url) == ("n-1", "https://cdn.test/scene.png")
        images.generate.assert_awaited_once_with(build_image_prompt("Misty harbour at dusk"))
        assert narrator.short_calls[0] == ("scene_prompt", {"story": TEXT})

    async def test_scene_prompt_failure_uses_default(self, entry_store: GameStore) -> None:
        images = _images()
        pipeline = SideEffectPipeline(entry_store, narrator=ScriptedNarrator(), images=images)
        pipeline.schedule_narration("n-1", TEXT)
        await pipeline.drain()
        images.generate.assert_awaited_once_with(build_image_prompt(DEFAULT_SCENE_PROMPT))

    async def test_at_most_one_task_per_entry(self, entry_store: GameStore) -> None:
        speech = _speech()
        pipeline = SideEffectPipeline(entry_store, speech=speech)
        pipeline.schedule_narration("n-1", TEXT)
        assert pipeline.schedule_narration("n-1", TEXT) == []
        await pipeline.drain()
        assert speech.synthesize.await_count == 1

    async def test_finished_task_releases_its_slot(self, entry_store: GameStore) -> None:
        speech = _speech()
        pipeline = SideEffectPipeline(entry_store, speech=speech)
        pipeline.schedule_narration("n-1", TEXT)
        await pipeline.drain()
        assert len(pipeline.schedule_narration("n-1", TEXT)) == 1
        await pipeline.drain()
        assert speech.synthesize.await_count == 2

    async def test_null_handles_leave_entry_unpatched(self, entry_store: GameStore) -> None:
        before = entry_store.snapshot().entry("n-1")
        version = entry_store.version
        pipeline = SideEffectPipeline(
            entry_store,
            narrator=ScriptedNarrator(short_texts={"scene_prompt": "harbour at dusk"}),
            speech=_speech(None),
            images=_images(None),
        )
        assert len(pipeline.schedule_narration("n-1", TEXT)) == 2
        await pipeline.drain()
        state = entry_store.snapshot()
        assert state.entry("n-1") == before
        assert state.scene_image is None
        assert entry_store.version == version
        assert pipeline.pending == 0

    async def test_late_results_patch_their_own_entry(self, entry_store: GameStore) -> None:
        second = StoryEntry(id="n-2", role="narrator", text="Second.", created_at=2.0)
        entry_store.dispatch(AppendEntry(entry=second))
        gates = {TEXT: asyncio.Event(), "Second.": asyncio.Event()}
        handles = {TEXT: "voice/first.mp3", "Second.": "voice/second.mp3"}

        async def synthesize(text: str) -> str:
            await gates[text].wait()
            return handles[text]

        speech = MagicMock()
        speech.synthesize = synthesize
        pipeline = SideEffectPipeline(entry_store, speech=speech)
        pipeline.schedule_narration("n-1", TEXT)
        pipeline.schedule_narration("n-2", "Second.")
        await asyncio.sleep(0)
        assert pipeline.pending == 2

        gates["Second."].set()
        await asyncio.sleep(0.01)
        state = entry_store.snapshot()
        assert state.entry("n-2").voice_url == "voice/second.mp3"
        assert state.entry("n-1").voice_url is None

        gates[TEXT].set()
        await pipeline.drain()
        state = entry_store.snapshot()
        assert state.entry("n-1").voice_url == "voice/first.mp3"
        assert state.entry("n-2").voice_url == "voice/second.mp3"

    async def test_result_for_reset_session_dropped(self, entry_store: GameStore) -> None:
        pipeline = SideEffectPipeline(entry_store, speech=_speech())
        pipeline.schedule_narration("n-1", TEXT)
        entry_store.dispatch(Reset(state=new_game_state(entry_store.session_id)))
        version = entry_store.version
        await pipeline.drain()
        assert entry_store.version == version
        assert entry_store.snapshot().story_log == []

    async def test_closed_pipeline_writes_nothing(self, entry_store: GameStore) -> None:
        pipeline = SideEffectPipeline(entry_store, speech=_speech())
        pipeline.schedule_narration("n-1", TEXT)
        pipeline.close()
        await pipeline.drain()
        assert entry_store.snapshot().entry("n-1").voice_url is None
        assert pipeline.schedule_narration("n-2", TEXT) == []

    async def test_failures_are_swallowed(self, entry_store: GameStore) -> None:
        speech = MagicMock()
        speech.synthesize = AsyncMock(side_effect=RuntimeError("boom"))
        pipeline = SideEffectPipeline(entry_store, speech=speech)
        pipeline.schedule_narration("n-1", TEXT)
        await pipeline.drain()
        assert entry_store.snapshot().entry("n-1").voice_url is None
        assert pipeline.pending == 0

    async def test_turn_is_not_blocked(self, entry_store: GameStore) -> None:
        release = asyncio.Event()

        async def slow(text: str) -> str:
            await release.wait()
            return "voice/slow.mp3"

        speech = MagicMock()
        speech.synthesize = slow
        pipeline = SideEffectPipeline(entry_store, speech=speech)
        pipeline.schedule_narration("n-1", TEXT)
        await asyncio.sleep(0)
        assert pipeline.pending == 1
        assert entry_store.snapshot().entry("n-1").voice_url is None
        release.set()
        await pipeline.drain()
        assert entry_store.snapshot().entry("n-1").voice_url == "voice/slow.mp3"


class TestLegend:
    async def test_records_titled_legend(self, store: GameStore, storage, clock) -> None:
        narrator = ScriptedNarrator(short_texts={"legend_title": '"The Ember Warden"'})
        pipeline = SideEffectPipeline(store, narrator=narrator, storage=storage, clock=clock)
        pipeline.schedule_legend(_legend_request())
        await pipeline.drain()
        legend = storage.get_legends()[0]
        assert legend.title == "The Ember Warden"
        assert legend.level == 4
        assert legend.achievements == {"enemies_defeated": 3}
        assert legend.completed_at == clock.now

    async def test_title_failure_falls_back(self, store: GameStore, storage) -> None:
        pipeline = SideEffectPipeline(store, narrator=ScriptedNarrator(), storage=storage)
        pipeline.schedule_legend(_legend_request())
        await pipeline.drain()
        assert storage.get_legends()[0].title == "Aria, the Adventurer"

    async def test_without_storage(self, store: GameStore) -> None:
        pipeline = SideEffectPipeline(store)
        assert pipeline.schedule_legend(_legend_request()) is None
