"""The ordered interpretation rules.

Each rule reads the structured response and the state as it was before the
turn, and returns the transitions and side-effect requests it wants. Rules
never see each other's output: every rule evaluates against the same prior
snapshot and the interpreter concatenates their results in table order.

Random draws happen in a fixed order (chaos die always, side quest only when
a suggestion is present, companion always) so a recorded draw list replays
the same turn.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Literal, get_args

from pydantic import BaseModel, ConfigDict, Field

from tavern_tales import prompts
from tavern_tales.config import InterpreterConfig
from tavern_tales.dice import RandomSource, chance
from tavern_tales.models import (
    Companion,
    CompanionMemory,
    Condition,
    GameState,
    InventoryItem,
    ItemType,
    NotificationCategory,
    QuestMilestone,
    Rarity,
    SideQuestOffer,
)
from tavern_tales.pipeline import textscan
from tavern_tales.responses import StructuredTurnResponse
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
    Transition,
    UpdateQuestProgress,
    UpdateStoryProgress,
)

logger = logging.getLogger(__name__)


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


# ---------------------------------------------------------------------------
# Side-effect requests
# ---------------------------------------------------------------------------

class Notify(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["notify"] = "notify"
    message: str
    category: NotificationCategory = "info"


class LegendTitleRequest(BaseModel):
    """Ask for a title for the finished adventure and record the legend."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["legend_title"] = "legend_title"
    character_name: str
    character_class: str
    level: int
    summary: str
    recent_story: list[str] = Field(default_factory=list)
    achievements: dict[str, int] = Field(default_factory=dict)


SideEffect = Notify | LegendTitleRequest


# ---------------------------------------------------------------------------
# Rule plumbing
# ---------------------------------------------------------------------------

@dataclass
class TurnContext:
    response: StructuredTurnResponse
    prior: GameState
    rng: RandomSource
    config: InterpreterConfig
    now: float
    make_id: Callable[[str], str] = new_id

    @property
    def story(self) -> str:
        return self.response.story


@dataclass
class RuleResult:
    transitions: list[Transition] = field(default_factory=list)
    side_effects: list[SideEffect] = field(default_factory=list)

    def add(self, *transitions: Transition) -> None:
        self.transitions.extend(transitions)

    def notify(self, message: str, category: NotificationCategory = "info") -> None:
        self.side_effects.append(Notify(message=message, category=category))


Rule = Callable[[TurnContext], RuleResult]


# ---------------------------------------------------------------------------
# Rules, in evaluation order
# ---------------------------------------------------------------------------

def damage_rule(ctx: TurnContext) -> RuleResult:
    out = RuleResult()
    amount = ctx.response.damage_taken or 0
    if amount <= 0:
        return out
    out.add(TakeDamage(amount=amount))
    v = ctx.prior.vitals
    through = amount - min(v.temporary_hit_points, amount)
    if v.hit_points - through <= 0 and not ctx.prior.is_dead:
        out.add(BeginDying())
    return out


def healing_rule(ctx: TurnContext) -> RuleResult:
    out = RuleResult()
    amount = ctx.response.healing_received or 0
    if amount > 0:
        out.add(Heal(amount=amount))
    return out


def experience_rule(ctx: TurnContext) -> RuleResult:
    out = RuleResult()
    amount = ctx.response.xp_gained or 0
    if amount > 0:
        out.add(GrantExperience(amount=amount))
        out.notify(f"Gained {amount} XP!", "success")
    return out


_ITEM_TYPES = set(get_args(ItemType))
_RARITIES = set(get_args(Rarity))
_EQUIP_SLOTS = {"weapon": "main_hand", "armor": "armor"}


def item_rule(ctx: TurnContext) -> RuleResult:
    out = RuleResult()
    found = ctx.response.item_found
    if found is None or not found.name.strip():
        return out
    item_type = found.type.strip().lower()
    if item_type not in _ITEM_TYPES:
        item_type = "treasure"
    rarity = found.rarity.strip().lower().replace(" ", "_")
    if rarity not in _RARITIES:
        rarity = "common"
    slot = _EQUIP_SLOTS.get(item_type)
    out.add(AddItem(item=InventoryItem(
        id=ctx.make_id("item"),
        name=found.name,
        description=found.description,
        type=item_type,
        rarity=rarity,
        value=found.value,
        properties=list(found.properties),
        is_equippable=slot is not None,
        equipment_slot=slot,
    )))
    out.notify(f"Found: {found.name}!", "special")
    return out


def quest_rule(ctx: TurnContext) -> RuleResult:
    out = RuleResult()
    update = ctx.response.quest_update
    if update is None:
        return out
    if not update.milestone_completed:
        out.add(UpdateQuestProgress(quest_id=update.id, progress=update.progress))
        return out

    out.add(CompleteMilestone(quest_id=update.id, milestone_id=update.milestone_completed))
    quest = ctx.prior.quest(update.id)
    milestone = quest.milestone(update.milestone_completed) if quest else None
    if milestone is None or milestone.is_completed:
        return out
    out.notify(f"Objective Complete: {milestone.description}", "success")
    remaining = [m for m in quest.milestones if not m.is_completed and m.id != milestone.id]
    if not remaining and not quest.is_completed:
        out.notify(f"Quest Completed: {quest.name}", "success")
    return out


def conditions_rule(ctx: TurnContext) -> RuleResult:
    out = RuleResult()
    for added in ctx.response.conditions_added:
        if not added.name.strip():
            continue
        out.add(AddCondition(condition=Condition(
            name=added.name,
            description=added.description,
            duration=added.duration,
            source=added.source,
        )))
        out.notify(f"Condition: {added.name}", "warning")
    for name in ctx.response.conditions_removed:
        if not name.strip():
            continue
        out.add(RemoveCondition(name=name))
        out.notify(f"Condition removed: {name}", "info")
    return out


def inspiration_rule(ctx: TurnContext) -> RuleResult:
    out = RuleResult()
    if ctx.response.inspiration_granted:
        out.add(GrantInspiration())
        out.notify("Inspiration Granted!", "special")
    return out


def location_rule(ctx: TurnContext) -> RuleResult:
    out = RuleResult()
    update = ctx.response.location_update
    if update is None:
        return out
    if update.current_location:
        out.add(MoveTo(location=update.current_location, at=ctx.now))
    for area in update.discovered_locations:
        if area:
            out.add(RevealArea(area_id=area))
    if update.room_completed:
        out.add(MarkAreaComplete(area_id=update.room_completed))
    return out


def story_progress_rule(ctx: TurnContext) -> RuleResult:
    out = RuleResult()
    progress = ctx.response.story_progress
    terminal = textscan.contains_phrase(ctx.story, ctx.config.terminal_phrases)
    ending = progress is not None and progress.is_ending

    if progress is not None:
        out.add(UpdateStoryProgress(
            current_act=progress.current_act,
            total_acts=progress.total_acts,
            is_climax_near=progress.is_climax,
            is_ending_near=True if ending or terminal else None,
        ))
    else:
        # No marker from the narrator: pace by story length, forward only.
        arc = prompts.story_arc(len(ctx.prior.story_log))
        current = ctx.prior.story_progress
        derived = UpdateStoryProgress(
            current_act=arc["act"] if arc["act"] > current.current_act else None,
            is_climax_near=True if arc["climax"] and not current.is_climax_near else None,
            is_ending_near=True if terminal else None,
        )
        if derived != UpdateStoryProgress():
            out.add(derived)

    if ending and terminal and not ctx.prior.story_progress.is_complete:
        prior = ctx.prior
        out.add(CompleteStory(), DeclareVictory())
        out.side_effects.append(LegendTitleRequest(
            character_name=prior.vitals.name,
            character_class=prior.vitals.class_name,
            level=prior.vitals.level,
            summary=ctx.story,
            recent_story=[e.text for e in prior.story_log[-5:]],
            achievements={
                "enemies_defeated": prior.stats.enemies_defeated,
                "treasures_found": prior.stats.treasures_found,
                "puzzles_solved": prior.stats.puzzles_solved,
                "turns_played": prior.turns_played,
            },
        ))
        logger.info("Story complete for session %s", prior.session_id)
    return out


_D20_ROLLS = {"d20", "attack", "saving_throw", "skill_check", "ability_check", "initiative"}


def dice_request_rule(ctx: TurnContext) -> RuleResult:
    out = RuleResult()
    rolls = ctx.response.dice_rolls
    if not rolls and textscan.requests_dice_roll(ctx.story):
        out.add(SetDiceRollPending(pending=True))
    fumbles = sum(1 for r in rolls if r.result == 1 and r.type.strip().lower() in _D20_ROLLS)
    if fumbles:
        out.add(IncrementStats(critical_fails=fumbles))
    return out


def chaos_die_rule(ctx: TurnContext) -> RuleResult:
    out = RuleResult()
    drawn = chance(ctx.rng, ctx.config.chaos_die_chance)
    if drawn and not ctx.prior.chaos_dice_available:
        out.add(SetChaosDiceAvailable(available=True))
        out.notify("Chaos Dice Available!", "special")
    return out


def npc_mention_rule(ctx: TurnContext) -> RuleResult:
    out = RuleResult()
    name = textscan.find_speaker(ctx.story)
    if name is None:
        return out
    key = textscan.npc_key(name)
    known = ctx.prior.world_memory.known_npcs.get(key)
    if known is None:
        out.add(RememberNPC(
            key=key,
            name=name,
            description=textscan.sentence_before(ctx.story, name) or textscan.DEFAULT_NPC_DESCRIPTION,
            attitude="neutral",
            last_interaction=ctx.story,
            location=ctx.prior.current_location,
        ))
    else:
        out.add(RememberNPC(
            key=key,
            name=known.name,
            last_interaction=ctx.story,
            location=ctx.prior.current_location,
        ))
    return out


def npc_reaction_rule(ctx: TurnContext) -> RuleResult:
    out = RuleResult()
    reaction = ctx.response.npc_reaction
    if reaction is None or not reaction.name.strip():
        return out
    key = textscan.npc_key(reaction.name)
    known = ctx.prior.world_memory.known_npcs.get(key)
    description = None
    if known is None:
        description = f"A character you met during your adventure. {reaction.information_gained}".strip()
    out.add(RememberNPC(
        key=key,
        name=known.name if known else reaction.name,
        description=description,
        attitude=reaction.attitude_change or (None if known else "neutral"),
        last_interaction=reaction.dialogue or ctx.story,
        location=ctx.prior.current_location,
        relationship=reaction.relationship_change or None,
    ))
    if reaction.information_gained:
        out.add(RecordDecision(
            decision_id=ctx.make_id("decision"),
            decision=f"Interacted with {reaction.name}",
            consequence=f"Learned: {reaction.information_gained}",
            at=ctx.now,
        ))
    return out


def puzzle_rule(ctx: TurnContext) -> RuleResult:
    out = RuleResult()
    puzzle = ctx.response.puzzle_solved
    if puzzle is None or not puzzle.is_solved:
        return out
    out.add(
        IncrementStats(puzzles_solved=1),
        RecordDecision(
            decision_id=ctx.make_id("decision"),
            decision="Solved a puzzle",
            consequence=puzzle.solution_details or "Found the correct solution",
            at=ctx.now,
        ),
    )
    if puzzle.reward:
        out.notify(f"Puzzle Solved! Reward: {puzzle.reward}", "success")
    return out


def combat_rule(ctx: TurnContext) -> RuleResult:
    out = RuleResult()
    combat = ctx.response.combat_summary
    if combat is None:
        return out
    enemies = [e for e in combat.enemies_defeated if e]
    stats = IncrementStats(
        enemies_defeated=len(enemies),
        damage_dealt=combat.damage_dealt,
        damage_taken=combat.damage_taken,
        critical_hits=combat.critical_hits,
    )
    if stats != IncrementStats():
        out.add(stats)
    foes = ", ".join(enemies) or "unknown foes"
    out.add(RecordDecision(
        decision_id=ctx.make_id("decision"),
        decision=f"Engaged in combat with {foes}",
        consequence=f"Outcome: {combat.player_status}. Defeated {len(enemies)} enemies.",
        at=ctx.now,
    ))
    if combat.player_status == "victorious":
        out.notify(f"Victory! Defeated {foes}", "success")
    return out


def skill_check_rule(ctx: TurnContext) -> RuleResult:
    out = RuleResult()
    check = ctx.response.skill_check
    if check is None or not check.skill.strip():
        return out
    skill = check.skill.strip()
    dc = f" (DC {check.difficulty})" if check.difficulty is not None else ""
    rolled = f" with a roll of {check.roll_value}" if check.roll_value is not None else ""
    outcome = "Success" if check.success else "Failure"
    out.add(RecordDecision(
        decision_id=ctx.make_id("decision"),
        decision=f"Attempted {skill} check{dc}",
        consequence=f"{outcome}{rolled}. {check.narrative_effect}".strip(),
        at=ctx.now,
    ))
    if check.success:
        out.notify(f"{skill[0].upper()}{skill[1:]} Check: Success!", "success")
    else:
        out.notify(f"{skill[0].upper()}{skill[1:]} Check: Failed", "warning")
    return out


def side_quest_rule(ctx: TurnContext) -> RuleResult:
    out = RuleResult()
    suggestion = ctx.response.side_quest_suggestion
    if suggestion is None:
        return out
    if not chance(ctx.rng, ctx.config.side_quest_chance):
        return out
    difficulty = suggestion.difficulty if suggestion.difficulty in ("easy", "medium", "hard") else "medium"
    offer = SideQuestOffer(
        id=ctx.make_id("side-quest"),
        title=suggestion.title,
        description=suggestion.description,
        difficulty=difficulty,
        reward=suggestion.reward,
        related_to=suggestion.related_to,
        milestones=[
            QuestMilestone(id=ctx.make_id("side-milestone"), description=m.description, location=m.location)
            for m in suggestion.milestones
        ],
        created_at=ctx.now,
    )
    out.add(OfferSideQuest(offer=offer))
    out.notify(f"New side quest offered: {offer.title}", "special")
    return out


def companion_rule(ctx: TurnContext) -> RuleResult:
    out = RuleResult()
    drawn = chance(ctx.rng, ctx.config.companion_chance)
    if not drawn or len(ctx.prior.companions) >= ctx.config.party_capacity:
        return out
    if not textscan.mentions_recruitment(ctx.story):
        return out
    name = textscan.find_recruit(ctx.story)
    if name is None:
        return out
    if any(c.name.lower() == name.lower() for c in ctx.prior.companions):
        return out
    out.add(JoinCompanion(companion=Companion(
        id=ctx.make_id("companion"),
        name=name,
        description=textscan.sentence_before(ctx.story, name) or f"{name} offered to travel with you.",
        joined_at=ctx.now,
        last_interaction=ctx.story,
        memories=[CompanionMemory(
            id=ctx.make_id("memory"),
            content=f"Met {ctx.prior.vitals.name} and decided to join their quest.",
            importance=8,
            timestamp=ctx.now,
        )],
    )))
    out.notify(f"{name} has joined your party!", "success")
    return out


RULES: list[tuple[str, Rule]] = [
    ("damage", damage_rule),
    ("healing", healing_rule),
    ("experience", experience_rule),
    ("item", item_rule),
    ("quest", quest_rule),
    ("conditions", conditions_rule),
    ("inspiration", inspiration_rule),
    ("location", location_rule),
    ("story_progress", story_progress_rule),
    ("dice_request", dice_request_rule),
    ("chaos_die", chaos_die_rule),
    ("npc_mention", npc_mention_rule),
    ("npc_reaction", npc_reaction_rule),
    ("puzzle", puzzle_rule),
    ("combat", combat_rule),
    ("skill_check", skill_check_rule),
    ("side_quest", side_quest_rule),
    ("companion", companion_rule),
]
