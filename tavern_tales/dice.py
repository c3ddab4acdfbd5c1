"""Injectable randomness.

Every probabilistic decision in a turn goes through a ``RandomSource`` so that
a recorded list of draws replays the same outcomes. ``random.Random``
already satisfies the protocol and is what production code uses.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Protocol

logger = logging.getLogger(__name__)


class RandomSource(Protocol):
    def random(self) -> float: ...


def chance(rng: RandomSource, probability: float) -> bool:
    """Draw once; True when the draw falls below ``probability``."""
    return rng.random() < probability


def roll(rng: RandomSource, sides: int = 20) -> int:
    """Draw once and map it onto a die with ``sides`` faces."""
    return min(int(rng.random() * sides) + 1, sides)


class RecordingRandom:
    """Wraps another source and keeps every value it handed out."""

    def __init__(self, source: RandomSource) -> None:
        self._source = source
        self.draws: list[float] = []

    def random(self) -> float:
        value = self._source.random()
        self.draws.append(value)
        return value


class ScriptedRandom:
    """Replays a fixed list of draws.

    Once the list is used up, ``default`` is returned if one was given;
    otherwise an IndexError is raised so a test notices the extra draw.
    """

    def __init__(self, draws: Iterable[float], default: float | None = None) -> None:
        self._draws = list(draws)
        self._index = 0
        self._default = default

    def random(self) -> float:
        if self._index < len(self._draws):
            value = self._draws[self._index]
            self._index += 1
            return value
        if self._default is None:
            raise IndexError(f"ScriptedRandom exhausted after {self._index} draws")
        return self._default

    @property
    def remaining(self) -> int:
        return len(self._draws) - self._index

    def assert_exhausted(self) -> None:
        assert self.remaining == 0, f"{self.remaining} scripted draws were never used"
