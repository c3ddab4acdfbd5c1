"""Tests for tavern_tales.pipeline.streaming."""

import httpx

from tavern_tales.llm import LLMError, ScriptedNarrator, ScriptedTurn, TurnRequest
from tavern_tales.pipeline.streaming import StreamingTextChannel


def _request() -> TurnRequest:
    return TurnRequest(action="look", character_summary="Aria")


class TestStreamingTextChannel:
    def test_fragments_accumulate(self) -> None:
        seen: list[str] = []
        channel = StreamingTextChannel(on_fragment=seen.append)
        channel.push("The ")
        channel.push("")
        channel.push("door")
        assert seen == ["The ", "The door"]
        assert channel.text == "The door"

    def test_finish_fires_once(self) -> None:
        done: list[tuple] = []
        channel = StreamingTextChannel(on_done=lambda text, payload: done.append((text, payload)))
        channel.push("Hi")
        channel.finish({"story": "Hi"})
        channel.finish(None)
        assert done == [("Hi", {"story": "Hi"})]
        assert channel.done
        assert channel.payload == {"story": "Hi"}

    def test_fragments_after_finish_ignored(self) -> None:
        channel = StreamingTextChannel()
        channel.finish(None)
        channel.push("late")
        assert channel.text == ""

    async def test_consume_payload(self) -> None:
        narrator = ScriptedNarrator([ScriptedTurn.from_payload({"story": "A cold wind blows.", "xp_gained": 5}, 4)])
        seen: list[str] = []
        channel = StreamingTextChannel(on_fragment=seen.append)
        payload = await channel.consume(narrator.stream_turn(_request()))
        assert payload == {"story": "A cold wind blows.", "xp_gained": 5}
        assert seen[-1] == "A cold wind blows."
        assert seen == sorted(seen, key=len)

    async def test_consume_broken_stream(self) -> None:
        narrator = ScriptedNarrator([ScriptedTurn(fragments=["A cold"], error=LLMError("reset"))])
        channel = StreamingTextChannel()
        assert await channel.consume(narrator.stream_turn(_request())) is None
        assert channel.done
        assert channel.text == "A cold"

    async def test_consume_transport_error(self) -> None:
        narrator = ScriptedNarrator([ScriptedTurn(error=httpx.ReadError("gone"))])
        channel = StreamingTextChannel()
        assert await channel.consume(narrator.stream_turn(_request())) is None
        assert channel.done

    async def test_stream_without_payload(self) -> None:
        narrator = ScriptedNarrator([ScriptedTurn(fragments=["x"], payload=None)])
        channel = StreamingTextChannel()
        assert await channel.consume(narrator.stream_turn(_request())) is None
