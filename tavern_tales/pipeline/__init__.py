"""Turn pipeline.

Executes one player turn:
  1. Stream the narrator's reply (streaming.StreamingTextChannel).
  2. Interpret the structured payload into transitions and side-effect
     requests (interpreter.interpret, driven by the ordered rules.RULES).
  3. Apply the transitions to the store as one unit.
  4. Detach voice, scene image and legend work (effects.SideEffectPipeline).

Rule order (each rule sees the state as it was before the turn):
  damage, healing, experience, item, quest, conditions, inspiration,
  location, story_progress, dice_request, chaos_die, npc_mention,
  npc_reaction, puzzle, combat, skill_check, side_quest, companion

Random draws: chaos_die always draws once, side_quest draws once when a
suggestion is present, companion always draws once. Replaying the same
draw list reproduces the same transitions.
"""

from .interpreter import FALLBACK_NARRATIVE, Interpretation, interpret  # noqa: F401
from .orchestrator import (  # noqa: F401
    ActionUnavailableError,
    GameSession,
    SessionBusyError,
    TurnResult,
    UnknownSideQuestError,
)
