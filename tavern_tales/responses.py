"""The structured payload a narrative turn returns, and how to read it.

Every field except ``story`` is optional and absent means "no effect".
Unknown fields are ignored. A malformed optional section is dropped with a
warning rather than failing the whole turn; only a missing or blank story
makes the payload unusable.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator, model_validator

from tavern_tales.models import Attitude, DiceRoll

logger = logging.getLogger(__name__)


class _Section(BaseModel):
    model_config = ConfigDict(extra="ignore")


class ItemFound(_Section):
    name: str
    description: str = ""
    type: str = "treasure"
    rarity: str = "common"
    value: int = 0
    properties: list[str] = Field(default_factory=list)


class QuestUpdate(_Section):
    id: str
    progress: int | None = None
    milestone_completed: str | None = None


class ConditionAdded(_Section):
    name: str
    description: str = ""
    duration: int = -1
    source: str = ""


class LocationUpdate(_Section):
    current_location: str | None = None
    discovered_locations: list[str] = Field(default_factory=list)
    room_completed: str | None = None


class StoryProgressUpdate(_Section):
    current_act: int | None = None
    total_acts: int | None = None
    is_climax: bool | None = None
    is_ending: bool = False


class NPCReaction(_Section):
    name: str
    attitude_change: Attitude | None = None
    information_gained: str = ""
    relationship_change: str = ""
    dialogue: str = ""


class PuzzleSolved(_Section):
    is_solved: bool = True
    solution_details: str = ""
    reward: str = ""
    difficulty: str = ""


class CombatSummary(_Section):
    enemies_defeated: list[str] = Field(default_factory=list)
    player_status: str = "victorious"
    damage_dealt: int = 0
    damage_taken: int = 0
    critical_hits: int = 0
    loot_gained: list[str] = Field(default_factory=list)


class SkillCheck(_Section):
    skill: str
    success: bool
    difficulty: int | None = None
    roll_value: int | None = None
    narrative_effect: str = ""


class SuggestedMilestone(_Section):
    description: str
    location: str | None = None


class SideQuestSuggestion(_Section):
    title: str
    description: str = ""
    difficulty: str = "medium"
    reward: str = ""
    related_to: str | None = None
    milestones: list[SuggestedMilestone] = Field(default_factory=list)


# Optional sections that are validated one by one before the whole payload.
_SECTIONS: dict[str, TypeAdapter] = {
    "item_found": TypeAdapter(ItemFound),
    "quest_update": TypeAdapter(QuestUpdate),
    "conditions_added": TypeAdapter(list[ConditionAdded]),
    "conditions_removed": TypeAdapter(list[str]),
    "dice_rolls": TypeAdapter(list[DiceRoll]),
    "location_update": TypeAdapter(LocationUpdate),
    "story_progress": TypeAdapter(StoryProgressUpdate),
    "npc_reaction": TypeAdapter(NPCReaction),
    "puzzle_solved": TypeAdapter(PuzzleSolved),
    "combat_summary": TypeAdapter(CombatSummary),
    "skill_check": TypeAdapter(SkillCheck),
    "side_quest_suggestion": TypeAdapter(SideQuestSuggestion),
    "damage_taken": TypeAdapter(int),
    "damage_dealt": TypeAdapter(int),
    "healing_received": TypeAdapter(int),
    "xp_gained": TypeAdapter(int),
    "inspiration_granted": TypeAdapter(bool),
}


class StructuredTurnResponse(_Section):
    story: str
    damage_taken: int | None = None
    damage_dealt: int | None = None
    healing_received: int | None = None
    xp_gained: int | None = None
    item_found: ItemFound | None = None
    quest_update: QuestUpdate | None = None
    conditions_added: list[ConditionAdded] = Field(default_factory=list)
    conditions_removed: list[str] = Field(default_factory=list)
    inspiration_granted: bool = False
    dice_rolls: list[DiceRoll] = Field(default_factory=list)
    location_update: LocationUpdate | None = None
    story_progress: StoryProgressUpdate | None = None
    npc_reaction: NPCReaction | None = None
    puzzle_solved: PuzzleSolved | None = None
    combat_summary: CombatSummary | None = None
    skill_check: SkillCheck | None = None
    side_quest_suggestion: SideQuestSuggestion | None = None

    @model_validator(mode="before")
    @classmethod
    def _drop_invalid_sections(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        cleaned = dict(data)
        for key, adapter in _SECTIONS.items():
            value = cleaned.get(key)
            if value is None:
                cleaned.pop(key, None)
                continue
            try:
                adapter.validate_python(value)
            except ValidationError as e:
                logger.warning("Dropping malformed %s section: %s", key, e.error_count())
                cleaned.pop(key)
        return cleaned

    @field_validator("story")
    @classmethod
    def _story_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("story is blank")
        return value


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def decode_payload(text: str | None) -> dict | None:
    """Parse JSON from model output, stripping markdown fences."""
    if not text:
        return None
    cleaned = text.strip()
    if cleaned.startswith("```"):
        lines = cleaned.split("\n")
        lines = [l for l in lines[1:] if not l.strip().startswith("```")]
        cleaned = "\n".join(lines)
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        logger.warning("Turn payload is not valid JSON: %s", e)
        return None
    return data if isinstance(data, dict) else None


def load_turn_response(data: Any) -> StructuredTurnResponse | None:
    """Validate a decoded payload; None when it has no usable story."""
    if data is None:
        return None
    if isinstance(data, StructuredTurnResponse):
        return data
    try:
        return StructuredTurnResponse.model_validate(data)
    except ValidationError as e:
        logger.warning("Turn payload rejected: %s", e)
        return None


def parse_turn_response(text: str | None) -> StructuredTurnResponse | None:
    return load_turn_response(decode_payload(text))
