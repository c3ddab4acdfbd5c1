"""Tests for tavern_tales.storage."""

import pytest

from tavern_tales.models import LegendEntry, StoryEntry
from tavern_tales.storage import Storage


def _legend(legend_id: str = "legend-1") -> LegendEntry:
    return LegendEntry(
        id=legend_id,
        character_name="Aria",
        character_class="Fighter",
        level=3,
        title="The Warden of Ashfall",
        summary="Aria sealed the crypt.",
        achievements={"enemies_defeated": 4},
        completed_at=2000.0,
    )


class TestSaveGames:
    def test_round_trip(self, storage: Storage, state) -> None:
        state.story_log.append(StoryEntry(id="n-1", role="narrator", text="Hello", created_at=1.0))
        storage.save_state(state)
        loaded = storage.load_state(state.session_id)
        assert loaded == state

    def test_missing_session(self, storage: Storage) -> None:
        assert storage.load_state("nope") is None

    def test_list_and_delete(self, storage: Storage, state) -> None:
        storage.save_state(state)
        assert storage.list_sessions() == ["test-session"]
        assert storage.delete_state("test-session")
        assert not storage.delete_state("test-session")
        assert storage.list_sessions() == []

    @pytest.mark.parametrize("bad", ["", "../etc", ".hidden", "a/b"])
    def test_rejects_path_like_ids(self, storage: Storage, bad: str) -> None:
        with pytest.raises(ValueError):
            storage.load_state(bad)


class TestLegends:
    def test_empty(self, storage: Storage) -> None:
        assert storage.get_legends() == []

    def test_append_is_idempotent_by_id(self, storage: Storage) -> None:
        storage.append_legend(_legend())
        storage.append_legend(_legend())
        storage.append_legend(_legend("legend-2"))
        legends = storage.get_legends()
        assert [l.id for l in legends] == ["legend-1", "legend-2"]
        assert legends[0].achievements == {"enemies_defeated": 4}

    def test_persisted_across_instances(self, tmp_path) -> None:
        Storage(tmp_path).append_legend(_legend())
        assert len(Storage(tmp_path).get_legends()) == 1
