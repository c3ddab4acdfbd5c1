"""Response interpreter: structured payload in, transitions and requests out.

``interpret`` never touches the store. It runs every rule in RULES against
the same prior snapshot and returns what should happen, in order, for the
store to apply as one unit.
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from typing import Any

from pydantic import BaseModel, Field

from tavern_tales.config import InterpreterConfig
from tavern_tales.dice import RandomSource
from tavern_tales.models import GameState
from tavern_tales.pipeline.rules import RULES, SideEffect, TurnContext, new_id
from tavern_tales.responses import StructuredTurnResponse, load_turn_response
from tavern_tales.transitions import Transition

logger = logging.getLogger(__name__)

FALLBACK_NARRATIVE = (
    "The mystical energies are disrupted... The storyteller falls silent for a moment. "
    "Try your action again."
)

_default_rng = random.Random()


class Interpretation(BaseModel):
    narrative: str
    transitions: list[Transition] = Field(default_factory=list)
    side_effects: list[SideEffect] = Field(default_factory=list)
    response: StructuredTurnResponse | None = None
    fallback: bool = False


def interpret(
    payload: StructuredTurnResponse | dict[str, Any] | None,
    prior: GameState,
    *,
    rng: RandomSource | None = None,
    config: InterpreterConfig | None = None,
    now: float | None = None,
    make_id: Callable[[str], str] = new_id,
) -> Interpretation:
    """Turn one structured payload into an ordered Interpretation.

    A missing payload or one without a usable story yields the fallback
    narrative and nothing else.
    """
    response = load_turn_response(payload)
    if response is None:
        logger.warning("No usable turn payload; falling back")
        return Interpretation(narrative=FALLBACK_NARRATIVE, fallback=True)

    ctx = TurnContext(
        response=response,
        prior=prior,
        rng=rng if rng is not None else _default_rng,
        config=config or InterpreterConfig(),
        now=time.time() if now is None else now,
        make_id=make_id,
    )
    result = Interpretation(narrative=response.story, response=response)
    for name, rule in RULES:
        out = rule(ctx)
        if out.transitions or out.side_effects:
            logger.debug(
                "rule %s: %d transitions, %d side effects",
                name, len(out.transitions), len(out.side_effects),
            )
        result.transitions.extend(out.transitions)
        result.side_effects.extend(out.side_effects)
    return result
