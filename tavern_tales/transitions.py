"""The closed set of state transitions.

Every change to GameState is expressed as one of these frozen records and
applied by tavern_tales.store. Anything time- or identity-dependent (entry
ids, timestamps, die results) travels inside the payload so that the
reducer itself stays deterministic.

Transitions round-trip through JSON via the ``type`` discriminator:

    TRANSITIONS.validate_python([{"type": "heal", "amount": 3}])
"""

from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from tavern_tales.models import (
    Attitude,
    Companion,
    CompanionMemory,
    Condition,
    GameState,
    InventoryItem,
    SideQuestOffer,
    StoryEntry,
)


class _Transition(BaseModel):
    model_config = ConfigDict(frozen=True)


# ---------------------------------------------------------------------------
# Story log
# ---------------------------------------------------------------------------

class AppendEntry(_Transition):
    type: Literal["append_entry"] = "append_entry"
    entry: StoryEntry


class PatchEntry(_Transition):
    """Attach a voice handle to an existing entry."""
    type: Literal["patch_entry"] = "patch_entry"
    entry_id: str
    voice_url: str


class SetPlaying(_Transition):
    """Mark one entry as playing (every other entry stops) or stop it."""
    type: Literal["set_playing"] = "set_playing"
    entry_id: str
    is_playing: bool


class ToggleAutoPlay(_Transition):
    type: Literal["toggle_auto_play"] = "toggle_auto_play"


class SetSceneImage(_Transition):
    type: Literal["set_scene_image"] = "set_scene_image"
    entry_id: str
    url: str


# ---------------------------------------------------------------------------
# Character vitals
# ---------------------------------------------------------------------------

class TakeDamage(_Transition):
    type: Literal["take_damage"] = "take_damage"
    amount: int


class BeginDying(_Transition):
    type: Literal["begin_dying"] = "begin_dying"


class Heal(_Transition):
    type: Literal["heal"] = "heal"
    amount: int


class GrantExperience(_Transition):
    type: Literal["grant_experience"] = "grant_experience"
    amount: int


class ClearLevelUp(_Transition):
    type: Literal["clear_level_up"] = "clear_level_up"


class AddCondition(_Transition):
    type: Literal["add_condition"] = "add_condition"
    condition: Condition


class RemoveCondition(_Transition):
    type: Literal["remove_condition"] = "remove_condition"
    name: str


class GrantInspiration(_Transition):
    type: Literal["grant_inspiration"] = "grant_inspiration"


class UseInspiration(_Transition):
    type: Literal["use_inspiration"] = "use_inspiration"


class DeathSave(_Transition):
    """Resolve one death saving throw and log it as a system entry."""
    type: Literal["death_save"] = "death_save"
    roll: int
    entry_id: str
    at: float


class Revive(_Transition):
    type: Literal["revive"] = "revive"


# ---------------------------------------------------------------------------
# Inventory and quests
# ---------------------------------------------------------------------------

class AddItem(_Transition):
    type: Literal["add_item"] = "add_item"
    item: InventoryItem


class RemoveItem(_Transition):
    type: Literal["remove_item"] = "remove_item"
    item_id: str


class UpdateQuestProgress(_Transition):
    """Recompute a quest's progress; an explicit value may only raise it."""
    type: Literal["update_quest_progress"] = "update_quest_progress"
    quest_id: str
    progress: int | None = None


class CompleteMilestone(_Transition):
    type: Literal["complete_milestone"] = "complete_milestone"
    quest_id: str
    milestone_id: str


class OfferSideQuest(_Transition):
    type: Literal["offer_side_quest"] = "offer_side_quest"
    offer: SideQuestOffer


class AcceptSideQuest(_Transition):
    type: Literal["accept_side_quest"] = "accept_side_quest"
    offer_id: str


class DeclineSideQuest(_Transition):
    type: Literal["decline_side_quest"] = "decline_side_quest"
    offer_id: str


# ---------------------------------------------------------------------------
# Map and story arc
# ---------------------------------------------------------------------------

class MoveTo(_Transition):
    type: Literal["move_to"] = "move_to"
    location: str
    at: float


class RevealArea(_Transition):
    type: Literal["reveal_area"] = "reveal_area"
    area_id: str


class MarkAreaComplete(_Transition):
    type: Literal["mark_area_complete"] = "mark_area_complete"
    area_id: str


class UpdateStoryProgress(_Transition):
    type: Literal["update_story_progress"] = "update_story_progress"
    current_act: int | None = None
    total_acts: int | None = None
    is_climax_near: bool | None = None
    is_ending_near: bool | None = None


class CompleteStory(_Transition):
    type: Literal["complete_story"] = "complete_story"


class DeclareVictory(_Transition):
    type: Literal["declare_victory"] = "declare_victory"


# ---------------------------------------------------------------------------
# Dice
# ---------------------------------------------------------------------------

class SetDiceRollPending(_Transition):
    type: Literal["set_dice_roll_pending"] = "set_dice_roll_pending"
    pending: bool


class SetChaosDiceAvailable(_Transition):
    type: Literal["set_chaos_dice_available"] = "set_chaos_dice_available"
    available: bool


class RollChaosDie(_Transition):
    """Spend the chaos die; the result is kept for display."""
    type: Literal["roll_chaos_die"] = "roll_chaos_die"
    result: int


# ---------------------------------------------------------------------------
# World memory
# ---------------------------------------------------------------------------

class RememberNPC(_Transition):
    """Create or update a known NPC. Unset fields leave the stored value."""
    type: Literal["remember_npc"] = "remember_npc"
    key: str
    name: str
    description: str | None = None
    attitude: Attitude | None = None
    last_interaction: str | None = None
    location: str | None = None
    role: str | None = None
    relationship: str | None = None


class RecordDecision(_Transition):
    type: Literal["record_decision"] = "record_decision"
    decision_id: str
    decision: str
    consequence: str
    at: float


class SetFlag(_Transition):
    type: Literal["set_flag"] = "set_flag"
    name: str
    value: bool = True


class IncrementStats(_Transition):
    type: Literal["increment_stats"] = "increment_stats"
    enemies_defeated: int = 0
    damage_dealt: int = 0
    damage_taken: int = 0
    critical_hits: int = 0
    critical_fails: int = 0
    puzzles_solved: int = 0
    treasures_found: int = 0


# ---------------------------------------------------------------------------
# Party
# ---------------------------------------------------------------------------

class JoinCompanion(_Transition):
    type: Literal["join_companion"] = "join_companion"
    companion: Companion


class DismissCompanion(_Transition):
    type: Literal["dismiss_companion"] = "dismiss_companion"
    companion_id: str


class RememberForCompanion(_Transition):
    type: Literal["remember_for_companion"] = "remember_for_companion"
    companion_id: str
    memory: CompanionMemory


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------

class Reset(_Transition):
    """Replace the whole state with a fresh one."""
    type: Literal["reset"] = "reset"
    state: GameState


Transition = Annotated[
    Union[
        AppendEntry, PatchEntry, SetPlaying, ToggleAutoPlay, SetSceneImage,
        TakeDamage, BeginDying, Heal, GrantExperience, ClearLevelUp,
        AddCondition, RemoveCondition, GrantInspiration, UseInspiration,
        DeathSave, Revive,
        AddItem, RemoveItem, UpdateQuestProgress, CompleteMilestone,
        OfferSideQuest, AcceptSideQuest, DeclineSideQuest,
        MoveTo, RevealArea, MarkAreaComplete, UpdateStoryProgress,
        CompleteStory, DeclareVictory,
        SetDiceRollPending, SetChaosDiceAvailable, RollChaosDie,
        RememberNPC, RecordDecision, SetFlag, IncrementStats,
        JoinCompanion, DismissCompanion, RememberForCompanion,
        Reset,
    ],
    Field(discriminator="type"),
]

TRANSITIONS: TypeAdapter[list[Transition]] = TypeAdapter(list[Transition])
