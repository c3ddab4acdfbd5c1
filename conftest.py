import itertools

import pytest

from tavern_tales.models import GameState, new_game_state
from tavern_tales.storage import Storage
from tavern_tales.store import GameStore


@pytest.fixture
def state() -> GameState:
    """A fresh level-1 fighter with 10 HP and the default main quest."""
    return new_game_state("test-session", character_name="Aria", max_hit_points=10, started_at=1000.0)


@pytest.fixture
def store(state: GameState) -> GameStore:
    return GameStore(state)


@pytest.fixture
def storage(tmp_path) -> Storage:
    return Storage(tmp_path / "data")


@pytest.fixture
def make_id():
    """Deterministic id factory: "<prefix>-1", "<prefix>-2", ..."""
    counter = itertools.count(1)
    return lambda prefix: f"{prefix}-{next(counter)}"


@pytest.fixture
def clock():
    """A manually advanced clock: clock() reads, clock.advance(s) moves."""

    class _Clock:
        def __init__(self) -> None:
            self.now = 1000.0

        def __call__(self) -> float:
            return self.now

        def advance(self, seconds: float) -> None:
            self.now += seconds

    return _Clock()
