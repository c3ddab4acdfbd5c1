"""Tests for the response interpreter and its ordered rule table."""

import itertools
import random

import pytest

from tavern_tales.config import InterpreterConfig
from tavern_tales.dice import RecordingRandom, ScriptedRandom
from tavern_tales.models import Companion, GameState, KnownNPC, StoryEntry
from tavern_tales.pipeline.interpreter import FALLBACK_NARRATIVE, interpret
from tavern_tales.pipeline.rules import RULES, LegendTitleRequest, Notify
from tavern_tales.store import reduce_all
from tavern_tales.transitions import (
    AddCondition,
    AddItem,
    BeginDying,
    CompleteMilestone,
    CompleteStory,
    DeclareVictory,
    GrantExperience,
    GrantInspiration,
    Heal,
    IncrementStats,
    JoinCompanion,
    MarkAreaComplete,
    MoveTo,
    OfferSideQuest,
    RecordDecision,
    RememberNPC,
    RemoveCondition,
    RevealArea,
    SetChaosDiceAvailable,
    SetDiceRollPending,
    TakeDamage,
    UpdateQuestProgress,
    UpdateStoryProgress,
)

NOW = 500.0
MISS = 0.99  # fails every default chance
HIT = 0.01   # passes every default chance


def _ids():
    counter = itertools.count(1)
    return lambda prefix: f"{prefix}-{next(counter)}"


def _run(payload, prior: GameState, draws=(MISS, MISS), config: InterpreterConfig | None = None):
    rng = ScriptedRandom(draws)
    result = interpret(payload, prior, rng=rng, config=config, now=NOW, make_id=_ids())
    rng.assert_exhausted()
    return result


def _log_entry(n: int) -> StoryEntry:
    role = "narrator" if n % 2 else "player"
    return StoryEntry(id=f"e-{n}", role=role, text=f"line {n}", created_at=float(n))


def _types(result) -> list[type]:
    return [type(t) for t in result.transitions]


def _messages(result) -> list[str]:
    return [e.message for e in result.side_effects if isinstance(e, Notify)]


# ---------------------------------------------------------------------------
# General behaviour
# ---------------------------------------------------------------------------

class TestInterpret:
    def test_rule_table_order(self) -> None:
        assert [name for name, _ in RULES] == [
            "damage", "healing", "experience", "item", "quest", "conditions",
            "inspiration", "location", "story_progress", "dice_request", "chaos_die",
            "npc_mention", "npc_reaction", "puzzle", "combat", "skill_check",
            "side_quest", "companion",
        ]

    @pytest.mark.parametrize("payload", [None, {}, {"story": "  "}, {"damage_taken": 5}])
    def test_fallback_without_story(self, state: GameState, payload) -> None:
        result = _run(payload, state, draws=())
        assert result.fallback
        assert result.narrative == FALLBACK_NARRATIVE
        assert result.transitions == []
        assert result.side_effects == []

    def test_story_only_has_no_effects(self, state: GameState) -> None:
        result = _run({"story": "The hall is quiet."}, state)
        assert result.narrative == "The hall is quiet."
        assert result.transitions == []
        assert result.side_effects == []

    def test_transitions_follow_table_order(self, state: GameState) -> None:
        payload = {
            "story": "You stumble, recover and find a ring.",
            "item_found": {"name": "Silver Ring"},
            "xp_gained": 25,
            "healing_received": 1,
            "damage_taken": 2,
        }
        assert _types(_run(payload, state)) == [TakeDamage, Heal, GrantExperience, AddItem]

    def test_rules_see_prior_state_only(self, state: GameState) -> None:
        payload = {"story": "A blow, then a potion.", "damage_taken": 10, "healing_received": 5}
        result = _run(payload, state)
        assert _types(result) == [TakeDamage, BeginDying, Heal]
        after = reduce_all(state, result.transitions)
        assert after.vitals.hit_points == 5
        assert not after.is_dying

    def test_prior_state_not_modified(self, state: GameState) -> None:
        before = state.model_copy(deep=True)
        _run({"story": "x", "damage_taken": 3, "xp_gained": 400}, state)
        assert state == before

    def test_recorded_draws_replay_same_turn(self, state: GameState) -> None:
        payload = {
            "story": "Brom offers to join you as the dice glow.",
            "side_quest_suggestion": {"title": "Lost Cat", "milestones": [{"description": "Search"}]},
        }
        recorder = RecordingRandom(random.Random(3))
        first = interpret(payload, state, rng=recorder, now=NOW, make_id=_ids())
        replay = ScriptedRandom(recorder.draws)
        second = interpret(payload, state, rng=replay, now=NOW, make_id=_ids())
        replay.assert_exhausted()
        assert first.transitions == second.transitions
        assert first.side_effects == second.side_effects


# ---------------------------------------------------------------------------
# Vitals
# ---------------------------------------------------------------------------

class TestVitalRules:
    def test_lethal_damage_begins_dying(self, state: GameState) -> None:
        result = _run({"story": "x", "damage_taken": 12}, state)
        assert result.transitions == [TakeDamage(amount=12), BeginDying()]

    def test_temporary_hit_points_count(self, state: GameState) -> None:
        state.vitals.temporary_hit_points = 5
        result = _run({"story": "x", "damage_taken": 12}, state)
        assert _types(result) == [TakeDamage]

    def test_non_positive_amounts_ignored(self, state: GameState) -> None:
        result = _run({"story": "x", "damage_taken": 0, "healing_received": -3, "xp_gained": 0}, state)
        assert result.transitions == []

    def test_experience_notifies(self, state: GameState) -> None:
        result = _run({"story": "x", "xp_gained": 50}, state)
        assert result.transitions == [GrantExperience(amount=50)]
        assert _messages(result) == ["Gained 50 XP!"]

    def test_conditions(self, state: GameState) -> None:
        payload = {
            "story": "x",
            "conditions_added": [{"name": "Poisoned", "duration": 3}, {"name": " "}],
            "conditions_removed": ["Blinded"],
        }
        result = _run(payload, state)
        assert _types(result) == [AddCondition, RemoveCondition]
        assert result.transitions[0].condition.duration == 3
        assert _messages(result) == ["Condition: Poisoned", "Condition removed: Blinded"]

    def test_inspiration(self, state: GameState) -> None:
        result = _run({"story": "x", "inspiration_granted": True}, state)
        assert result.transitions == [GrantInspiration()]


# ---------------------------------------------------------------------------
# Items and quests
# ---------------------------------------------------------------------------

class TestItemRule:
    def test_weapon_is_equippable(self, state: GameState) -> None:
        payload = {"story": "x", "item_found": {"name": "Longsword", "type": "Weapon", "rarity": "Very Rare"}}
        item = _run(payload, state).transitions[0].item
        assert item.id == "item-1"
        assert item.type == "weapon"
        assert item.rarity == "very_rare"
        assert item.is_equippable
        assert item.equipment_slot == "main_hand"

    def test_unknown_type_becomes_treasure(self, state: GameState) -> None:
        payload = {"story": "x", "item_found": {"name": "Odd Shell", "type": "curio", "rarity": "mythic"}}
        result = _run(payload, state)
        item = result.transitions[0].item
        assert (item.type, item.rarity, item.is_equippable) == ("treasure", "common", False)
        assert _messages(result) == ["Found: Odd Shell!"]


class TestQuestRule:
    def test_milestone_completion(self, state: GameState) -> None:
        payload = {"story": "x", "quest_update": {"id": "main-quest-1", "milestone_completed": "milestone-1"}}
        result = _run(payload, state)
        assert result.transitions == [CompleteMilestone(quest_id="main-quest-1", milestone_id="milestone-1")]
        assert _messages(result) == ["Objective Complete: Begin your adventure and discover your purpose"]

    def test_last_milestone_completes_quest(self, state: GameState) -> None:
        for m in state.quests[0].milestones[:4]:
            m.is_completed = True
        payload = {"story": "x", "quest_update": {"id": "main-quest-1", "milestone_completed": "milestone-5"}}
        assert "Quest Completed: The Epic Quest" in _messages(_run(payload, state))

    def test_repeated_milestone_is_quiet(self, state: GameState) -> None:
        state.quests[0].milestones[0].is_completed = True
        payload = {"story": "x", "quest_update": {"id": "main-quest-1", "milestone_completed": "milestone-1"}}
        assert _messages(_run(payload, state)) == []

    def test_progress_only(self, state: GameState) -> None:
        payload = {"story": "x", "quest_update": {"id": "main-quest-1", "progress": 30}}
        assert _run(payload, state).transitions == [UpdateQuestProgress(quest_id="main-quest-1", progress=30)]


# ---------------------------------------------------------------------------
# Map and story arc
# ---------------------------------------------------------------------------

class TestStoryRules:
    def test_location_update(self, state: GameState) -> None:
        payload = {
            "story": "x",
            "location_update": {
                "current_location": "crypt",
                "discovered_locations": ["vault", ""],
                "room_completed": "entrance",
            },
        }
        result = _run(payload, state)
        assert result.transitions == [
            MoveTo(location="crypt", at=NOW),
            RevealArea(area_id="vault"),
            MarkAreaComplete(area_id="entrance"),
        ]

    def test_story_progress_passthrough(self, state: GameState) -> None:
        payload = {"story": "x", "story_progress": {"current_act": 2, "is_climax": True}}
        result = _run(payload, state)
        assert result.transitions == [UpdateStoryProgress(current_act=2, is_climax_near=True)]

    def test_ending_needs_terminal_phrase(self, state: GameState) -> None:
        payload = {"story": "The gate opens onto new roads.", "story_progress": {"is_ending": True}}
        result = _run(payload, state)
        assert _types(result) == [UpdateStoryProgress]
        assert result.transitions[0].is_ending_near
        assert not any(isinstance(e, LegendTitleRequest) for e in result.side_effects)

    def test_terminal_phrase_without_flag_only_nears_ending(self, state: GameState) -> None:
        result = _run({"story": "This is not the end, yet."}, state)
        assert result.transitions == [UpdateStoryProgress(is_ending_near=True)]

    def test_story_completion_requests_legend(self, state: GameState) -> None:
        payload = {"story": "And so the adventure reaches its end.", "story_progress": {"is_ending": True}}
        result = _run(payload, state)
        assert _types(result) == [UpdateStoryProgress, CompleteStory, DeclareVictory]
        legend = result.side_effects[0]
        assert isinstance(legend, LegendTitleRequest)
        assert legend.character_name == "Aria"
        assert legend.summary == "And so the adventure reaches its end."

    def test_completed_story_not_completed_twice(self, state: GameState) -> None:
        state.story_progress.is_complete = True
        payload = {"story": "The end.", "story_progress": {"is_ending": True}}
        assert _types(_run(payload, state)) == [UpdateStoryProgress]

    def test_terminal_phrases_are_configurable(self, state: GameState) -> None:
        config = InterpreterConfig(terminal_phrases=["fin"])
        payload = {"story": "Fin.", "story_progress": {"is_ending": True}}
        assert CompleteStory in _types(_run(payload, state, config=config))

    def test_dice_request(self, state: GameState) -> None:
        result = _run({"story": "Roll a d20 to climb the wall."}, state)
        assert result.transitions == [SetDiceRollPending(pending=True)]

    def test_dice_request_skipped_when_rolled(self, state: GameState) -> None:
        payload = {
            "story": "Roll a d20 to climb the wall.",
            "dice_rolls": [{"type": "d20", "result": 12, "total": 12}],
        }
        assert _run(payload, state).transitions == []

    def test_natural_ones_count_as_critical_fails(self, state: GameState) -> None:
        payload = {
            "story": "Your blade slips from your grip.",
            "dice_rolls": [
                {"type": "attack", "result": 1, "total": 4},
                {"type": "damage", "result": 1, "total": 1},
                {"type": "saving_throw", "result": 1, "total": 3},
                {"type": "d20", "result": 20, "total": 20},
            ],
        }
        result = _run(payload, state)
        assert result.transitions == [IncrementStats(critical_fails=2)]
        assert reduce_all(state, result.transitions).stats.critical_fails == 2

    def test_act_follows_story_length_without_marker(self, state: GameState) -> None:
        state.story_log = [_log_entry(n) for n in range(10)]
        result = _run({"story": "The road bends north."}, state)
        assert result.transitions == [UpdateStoryProgress(current_act=2)]

    def test_climax_follows_story_length_without_marker(self, state: GameState) -> None:
        state.story_log = [_log_entry(n) for n in range(23)]
        state.story_progress.current_act = 3
        result = _run({"story": "Thunder rolls over the keep."}, state)
        assert result.transitions == [UpdateStoryProgress(is_climax_near=True)]

    def test_length_pacing_never_moves_back(self, state: GameState) -> None:
        state.story_progress.current_act = 3
        state.story_progress.is_climax_near = True
        assert _run({"story": "Quiet."}, state).transitions == []


# ---------------------------------------------------------------------------
# Random rules
# ---------------------------------------------------------------------------

class TestChaosDie:
    def test_lucky_draw(self, state: GameState) -> None:
        result = _run({"story": "x"}, state, draws=(HIT, MISS))
        assert result.transitions == [SetChaosDiceAvailable(available=True)]
        assert _messages(result) == ["Chaos Dice Available!"]

    def test_already_available_still_draws(self, state: GameState) -> None:
        state.chaos_dice_available = True
        assert _run({"story": "x"}, state, draws=(HIT, MISS)).transitions == []


class TestSideQuestRule:
    PAYLOAD = {
        "story": "x",
        "side_quest_suggestion": {
            "title": "The Lost Heirloom",
            "difficulty": "brutal",
            "milestones": [{"description": "Find clues"}, {"description": "Recover it"}],
        },
    }

    def test_offer(self, state: GameState) -> None:
        result = _run(self.PAYLOAD, state, draws=(MISS, HIT, MISS))
        offer = result.transitions[0].offer
        assert isinstance(result.transitions[0], OfferSideQuest)
        assert offer.id == "side-quest-1"
        assert [m.id for m in offer.milestones] == ["side-milestone-2", "side-milestone-3"]
        assert offer.difficulty == "medium"
        assert offer.created_at == NOW

    def test_unlucky_draw(self, state: GameState) -> None:
        assert _run(self.PAYLOAD, state, draws=(MISS, MISS, MISS)).transitions == []


class TestCompanionRule:
    STORY = "A grizzled dwarf nods. Brom offers to join you on the road."

    def test_joins(self, state: GameState) -> None:
        result = _run({"story": self.STORY}, state, draws=(MISS, HIT))
        assert _types(result) == [JoinCompanion]
        companion = result.transitions[0].companion
        assert companion.name == "Brom"
        assert companion.description == "A grizzled dwarf nods."
        assert companion.memories[0].content == "Met Aria and decided to join their quest."
        assert _messages(result) == ["Brom has joined your party!"]

    def test_party_full(self, state: GameState) -> None:
        state.companions = [Companion(id=f"c-{i}", name=f"Ally{i}", joined_at=0.0) for i in range(2)]
        assert _run({"story": self.STORY}, state, draws=(MISS, HIT)).transitions == []

    def test_already_in_party(self, state: GameState) -> None:
        state.companions = [Companion(id="c-1", name="Brom", joined_at=0.0)]
        assert _run({"story": self.STORY}, state, draws=(MISS, HIT)).transitions == []

    def test_no_recruitment_phrase(self, state: GameState) -> None:
        assert _run({"story": "Brom waves."}, state, draws=(MISS, HIT)).transitions == []


# ---------------------------------------------------------------------------
# World memory
# ---------------------------------------------------------------------------

class TestNPCRules:
    def test_new_speaker_remembered(self, state: GameState) -> None:
        result = _run({"story": "A tall woman waits. Marta says welcome."}, state)
        npc = result.transitions[0]
        assert isinstance(npc, RememberNPC)
        assert (npc.key, npc.name, npc.attitude) == ("marta", "Marta", "neutral")
        assert npc.description == "A tall woman waits."
        assert npc.location == "entrance"

    def test_known_speaker_keeps_description(self, state: GameState) -> None:
        state.world_memory.known_npcs["marta"] = KnownNPC(name="Marta", description="Innkeeper", attitude="friendly")
        npc = _run({"story": "Marta says welcome back."}, state).transitions[0]
        assert npc.description is None
        assert npc.attitude is None
        assert npc.last_interaction == "Marta says welcome back."

    def test_reaction_with_information(self, state: GameState) -> None:
        payload = {
            "story": "x",
            "npc_reaction": {"name": "Marta", "attitude_change": "friendly", "information_gained": "The crypt is cursed."},
        }
        result = _run(payload, state)
        assert _types(result) == [RememberNPC, RecordDecision]
        assert result.transitions[0].attitude == "friendly"
        assert result.transitions[1].consequence == "Learned: The crypt is cursed."
        assert result.transitions[1].decision_id == "decision-1"

    def test_puzzle(self, state: GameState) -> None:
        payload = {"story": "x", "puzzle_solved": {"solution_details": "Mirror", "reward": "A key"}}
        result = _run(payload, state)
        assert result.transitions[0] == IncrementStats(puzzles_solved=1)
        assert _messages(result) == ["Puzzle Solved! Reward: A key"]

    def test_unsolved_puzzle(self, state: GameState) -> None:
        assert _run({"story": "x", "puzzle_solved": {"is_solved": False}}, state).transitions == []

    def test_combat(self, state: GameState) -> None:
        payload = {
            "story": "x",
            "combat_summary": {"enemies_defeated": ["goblin", "rat"], "damage_dealt": 9, "critical_hits": 1},
        }
        result = _run(payload, state)
        assert result.transitions[0] == IncrementStats(enemies_defeated=2, damage_dealt=9, critical_hits=1)
        assert "goblin, rat" in result.transitions[1].decision
        assert _messages(result) == ["Victory! Defeated goblin, rat"]

    def test_skill_check(self, state: GameState) -> None:
        payload = {
            "story": "x",
            "skill_check": {"skill": "stealth", "success": False, "difficulty": 15, "roll_value": 7},
        }
        result = _run(payload, state)
        decision = result.transitions[0]
        assert decision.decision == "Attempted stealth check (DC 15)"
        assert decision.consequence.startswith("Failure with a roll of 7.")
        assert _messages(result) == ["Stealth Check: Failed"]
