"""Game State Store: the only owner of GameState.

``reduce`` is a pure function of (state, transition). ``GameStore`` holds the
current state, applies a batch of transitions atomically (reduce over a deep
copy, then swap) and hands out deep-copied snapshots so no caller can mutate
the stored aggregate behind the store's back.

Rules the store enforces regardless of what the narrative claims:
  - hit points stay within [0, max]; temporary hit points absorb damage first
  - experience crossing a threshold levels up (max level 20)
  - quest milestone index only advances; quest progress never decreases
  - death saves: natural 20 revives, natural 1 counts twice, three failures kill
  - companion memories are bounded, oldest dropped first
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable

from tavern_tales.models import (
    COMPANION_MEMORY_LIMIT,
    GameState,
    KnownNPC,
    LocationVisit,
    MapRoom,
    PlayerDecision,
    QuestProgress,
    SceneImage,
    StoryEntry,
)
from tavern_tales.transitions import (
    AcceptSideQuest,
    AddCondition,
    AddItem,
    AppendEntry,
    BeginDying,
    ClearLevelUp,
    CompleteMilestone,
    CompleteStory,
    DeathSave,
    DeclareVictory,
    DeclineSideQuest,
    DismissCompanion,
    GrantExperience,
    GrantInspiration,
    Heal,
    IncrementStats,
    JoinCompanion,
    MarkAreaComplete,
    MoveTo,
    OfferSideQuest,
    PatchEntry,
    RecordDecision,
    RememberForCompanion,
    RememberNPC,
    RemoveCondition,
    RemoveItem,
    Reset,
    RevealArea,
    Revive,
    RollChaosDie,
    SetChaosDiceAvailable,
    SetDiceRollPending,
    SetFlag,
    SetPlaying,
    SetSceneImage,
    TakeDamage,
    ToggleAutoPlay,
    Transition,
    UpdateQuestProgress,
    UpdateStoryProgress,
    UseInspiration,
)

logger = logging.getLogger(__name__)

# D&D 5e cumulative experience needed for levels 1..20
XP_THRESHOLDS = [
    0, 300, 900, 2700, 6500, 14000, 23000, 34000, 48000, 64000,
    85000, 100000, 120000, 140000, 165000, 195000, 225000, 265000, 305000, 355000,
]
MAX_LEVEL = 20
HIT_POINTS_PER_LEVEL = 6
DEATH_SAVE_LIMIT = 3


def level_for_experience(experience: int) -> int:
    level = sum(1 for threshold in XP_THRESHOLDS if experience >= threshold)
    return max(1, min(level, MAX_LEVEL))


# ---------------------------------------------------------------------------
# Handlers: each mutates the working copy it is given
# ---------------------------------------------------------------------------

_Handler = Callable[[GameState, Transition], None]
_HANDLERS: dict[type, _Handler] = {}


def _handles(cls: type) -> Callable[[_Handler], _Handler]:
    def register(fn: _Handler) -> _Handler:
        _HANDLERS[cls] = fn
        return fn
    return register


def _replace_entry(state: GameState, entry_id: str, **changes) -> bool:
    for i, e in enumerate(state.story_log):
        if e.id == entry_id:
            state.story_log[i] = e.model_copy(update=changes)
            return True
    return False


# ── story log ────────────────────────────────────────────


@_handles(AppendEntry)
def _append_entry(state: GameState, t: AppendEntry) -> None:
    if state.entry(t.entry.id) is not None:
        return
    state.story_log.append(t.entry)


@_handles(PatchEntry)
def _patch_entry(state: GameState, t: PatchEntry) -> None:
    if not _replace_entry(state, t.entry_id, voice_url=t.voice_url):
        logger.debug("Voice for missing entry %s dropped", t.entry_id)


@_handles(SetPlaying)
def _set_playing(state: GameState, t: SetPlaying) -> None:
    if state.entry(t.entry_id) is None:
        return
    for i, e in enumerate(state.story_log):
        playing = t.is_playing if e.id == t.entry_id else False
        if e.is_playing != playing:
            state.story_log[i] = e.model_copy(update={"is_playing": playing})


@_handles(ToggleAutoPlay)
def _toggle_auto_play(state: GameState, t: ToggleAutoPlay) -> None:
    state.auto_play_voice = not state.auto_play_voice


@_handles(SetSceneImage)
def _set_scene_image(state: GameState, t: SetSceneImage) -> None:
    entry = state.entry(t.entry_id)
    if entry is None:
        return
    # An older turn's image must not replace a newer one.
    if state.scene_image is not None:
        current = state.entry(state.scene_image.entry_id)
        if current is not None and current.created_at > entry.created_at:
            return
    state.scene_image = SceneImage(entry_id=t.entry_id, url=t.url)


# ── vitals ───────────────────────────────────────────────


@_handles(TakeDamage)
def _take_damage(state: GameState, t: TakeDamage) -> None:
    if t.amount <= 0:
        return
    v = state.vitals
    absorbed = min(v.temporary_hit_points, t.amount)
    v.temporary_hit_points -= absorbed
    v.hit_points = max(0, v.hit_points - (t.amount - absorbed))


@_handles(BeginDying)
def _begin_dying(state: GameState, t: BeginDying) -> None:
    if state.is_dead:
        return
    state.vitals.hit_points = 0
    state.is_dying = True
    state.death_saves.successes = 0
    state.death_saves.failures = 0


@_handles(Heal)
def _heal(state: GameState, t: Heal) -> None:
    if t.amount <= 0 or state.is_dead:
        return
    v = state.vitals
    v.hit_points = min(v.max_hit_points, v.hit_points + t.amount)
    if v.hit_points > 0 and state.is_dying:
        state.is_dying = False
        state.death_saves.successes = 0
        state.death_saves.failures = 0


@_handles(GrantExperience)
def _grant_experience(state: GameState, t: GrantExperience) -> None:
    if t.amount <= 0:
        return
    v = state.vitals
    v.experience += t.amount
    new_level = level_for_experience(v.experience)
    if new_level > v.level:
        gained = new_level - v.level
        v.level = new_level
        v.max_hit_points += gained * HIT_POINTS_PER_LEVEL
        v.hit_points += gained * HIT_POINTS_PER_LEVEL
        v.has_leveled_up = True
        logger.info("Level up: %s is now level %d", v.name, v.level)


@_handles(ClearLevelUp)
def _clear_level_up(state: GameState, t: ClearLevelUp) -> None:
    state.vitals.has_leveled_up = False


@_handles(AddCondition)
def _add_condition(state: GameState, t: AddCondition) -> None:
    conditions = state.vitals.conditions
    for i, c in enumerate(conditions):
        if c.name.lower() == t.condition.name.lower():
            conditions[i] = t.condition
            return
    conditions.append(t.condition)


@_handles(RemoveCondition)
def _remove_condition(state: GameState, t: RemoveCondition) -> None:
    name = t.name.lower()
    state.vitals.conditions = [c for c in state.vitals.conditions if c.name.lower() != name]


@_handles(GrantInspiration)
def _grant_inspiration(state: GameState, t: GrantInspiration) -> None:
    state.vitals.inspiration = True


@_handles(UseInspiration)
def _use_inspiration(state: GameState, t: UseInspiration) -> None:
    state.vitals.inspiration = False


@_handles(DeathSave)
def _death_save(state: GameState, t: DeathSave) -> None:
    if not state.is_dying or state.is_dead:
        return
    saves = state.death_saves
    if t.roll >= 20:
        text = "Natural 20! You surge back to consciousness with 1 hit point."
        _revive(state, Revive())
    elif t.roll <= 1:
        saves.failures += 2
        text = "Natural 1! Two death save failures."
    elif t.roll >= 10:
        saves.successes += 1
        text = f"Death save succeeded ({t.roll})."
    else:
        saves.failures += 1
        text = f"Death save failed ({t.roll})."

    if saves.failures >= DEATH_SAVE_LIMIT:
        state.is_dying = False
        state.is_dead = True
        text += " Your adventure ends here."
        logger.info("%s has died", state.vitals.name)
    elif saves.successes >= DEATH_SAVE_LIMIT:
        state.is_dying = False
        saves.successes = 0
        saves.failures = 0
        text += " You are stable."

    state.story_log.append(
        StoryEntry(id=t.entry_id, role="system", kind="death_save", text=text, created_at=t.at)
    )


@_handles(Revive)
def _revive(state: GameState, t: Revive) -> None:
    state.is_dying = False
    state.is_dead = False
    state.death_saves.successes = 0
    state.death_saves.failures = 0
    state.vitals.hit_points = max(1, state.vitals.hit_points)


# ── inventory and quests ─────────────────────────────────


@_handles(AddItem)
def _add_item(state: GameState, t: AddItem) -> None:
    for i, item in enumerate(state.inventory):
        if item.id == t.item.id:
            state.inventory[i] = t.item
            return
    state.inventory.append(t.item)
    state.stats.treasures_found += 1


@_handles(RemoveItem)
def _remove_item(state: GameState, t: RemoveItem) -> None:
    state.inventory = [i for i in state.inventory if i.id != t.item_id]


def _recompute_quest(quest: QuestProgress, floor: int | None = None) -> None:
    total = len(quest.milestones)
    if total:
        done = sum(1 for m in quest.milestones if m.is_completed)
        computed = round(done / total * quest.max_progress)
        next_index = next(
            (i for i, m in enumerate(quest.milestones) if not m.is_completed), total
        )
        quest.current_milestone_index = max(quest.current_milestone_index, next_index)
    else:
        computed = quest.progress
    if floor is not None:
        computed = max(computed, min(floor, quest.max_progress))
    quest.progress = max(quest.progress, computed)
    if quest.progress >= quest.max_progress and not quest.is_completed:
        quest.is_completed = True
        logger.info("Quest completed: %s", quest.name)


@_handles(UpdateQuestProgress)
def _update_quest_progress(state: GameState, t: UpdateQuestProgress) -> None:
    quest = state.quest(t.quest_id)
    if quest is None:
        logger.debug("Progress for unknown quest %s ignored", t.quest_id)
        return
    _recompute_quest(quest, floor=t.progress)


@_handles(CompleteMilestone)
def _complete_milestone(state: GameState, t: CompleteMilestone) -> None:
    quest = state.quest(t.quest_id)
    if quest is None:
        logger.debug("Milestone for unknown quest %s ignored", t.quest_id)
        return
    milestone = quest.milestone(t.milestone_id)
    if milestone is None or milestone.is_completed:
        return
    milestone.is_completed = True
    _recompute_quest(quest)


@_handles(OfferSideQuest)
def _offer_side_quest(state: GameState, t: OfferSideQuest) -> None:
    state.pending_side_quest = t.offer


@_handles(AcceptSideQuest)
def _accept_side_quest(state: GameState, t: AcceptSideQuest) -> None:
    offer = state.pending_side_quest
    if offer is None or offer.id != t.offer_id:
        return
    state.pending_side_quest = None
    if state.quest(offer.id) is None:
        state.quests.append(offer.to_quest())


@_handles(DeclineSideQuest)
def _decline_side_quest(state: GameState, t: DeclineSideQuest) -> None:
    if state.pending_side_quest is not None and state.pending_side_quest.id == t.offer_id:
        state.pending_side_quest = None


# ── map and story arc ────────────────────────────────────


def _room(state: GameState, area_id: str) -> MapRoom:
    """The map room for an area, created on first sight."""
    for room in state.map_rooms:
        if room.id == area_id:
            return room
    name = " ".join(area_id.replace("_", " ").replace("-", " ").split()).title()
    kind = "entrance" if area_id == "entrance" else "chamber"
    room = MapRoom(id=area_id, name=name or area_id, type=kind)
    state.map_rooms.append(room)
    return room


def _connect(a: MapRoom, b: MapRoom) -> None:
    if a.id == b.id:
        return
    if b.id not in a.connections:
        a.connections.append(b.id)
    if a.id not in b.connections:
        b.connections.append(a.id)


@_handles(MoveTo)
def _move_to(state: GameState, t: MoveTo) -> None:
    _connect(_room(state, state.current_location), _room(state, t.location))
    state.current_location = t.location
    visit = state.world_memory.explored_locations.setdefault(t.location, LocationVisit())
    visit.visit_count += 1
    visit.last_visit = t.at
    if t.location not in state.explored_areas:
        state.explored_areas.append(t.location)


@_handles(RevealArea)
def _reveal_area(state: GameState, t: RevealArea) -> None:
    if t.area_id not in state.explored_areas:
        state.explored_areas.append(t.area_id)
    _connect(_room(state, state.current_location), _room(state, t.area_id))


@_handles(MarkAreaComplete)
def _mark_area_complete(state: GameState, t: MarkAreaComplete) -> None:
    if t.area_id not in state.completed_areas:
        state.completed_areas.append(t.area_id)
    _room(state, t.area_id).is_completed = True


@_handles(UpdateStoryProgress)
def _update_story_progress(state: GameState, t: UpdateStoryProgress) -> None:
    progress = state.story_progress
    if t.total_acts is not None:
        progress.total_acts = max(1, t.total_acts)
    if t.current_act is not None:
        progress.current_act = max(progress.current_act, min(t.current_act, progress.total_acts))
    if t.is_climax_near is not None:
        progress.is_climax_near = t.is_climax_near
    if t.is_ending_near is not None:
        progress.is_ending_near = t.is_ending_near


@_handles(CompleteStory)
def _complete_story(state: GameState, t: CompleteStory) -> None:
    state.story_progress.is_complete = True
    state.story_progress.is_ending_near = True


@_handles(DeclareVictory)
def _declare_victory(state: GameState, t: DeclareVictory) -> None:
    state.has_won = True


# ── dice ─────────────────────────────────────────────────


@_handles(SetDiceRollPending)
def _set_dice_roll_pending(state: GameState, t: SetDiceRollPending) -> None:
    state.dice_roll_pending = t.pending


@_handles(SetChaosDiceAvailable)
def _set_chaos_dice_available(state: GameState, t: SetChaosDiceAvailable) -> None:
    state.chaos_dice_available = t.available


@_handles(RollChaosDie)
def _roll_chaos_die(state: GameState, t: RollChaosDie) -> None:
    state.chaos_dice_available = False
    state.last_chaos_result = t.result


# ── world memory ─────────────────────────────────────────


@_handles(RememberNPC)
def _remember_npc(state: GameState, t: RememberNPC) -> None:
    npcs = state.world_memory.known_npcs
    npc = npcs.get(t.key)
    if npc is None:
        npc = KnownNPC(name=t.name)
        npcs[t.key] = npc
    for field in ("description", "attitude", "last_interaction", "location", "role", "relationship"):
        value = getattr(t, field)
        if value is not None:
            setattr(npc, field, value)


@_handles(RecordDecision)
def _record_decision(state: GameState, t: RecordDecision) -> None:
    decisions = state.world_memory.decisions
    if any(d.id == t.decision_id for d in decisions):
        return
    decisions.append(
        PlayerDecision(id=t.decision_id, decision=t.decision, consequence=t.consequence, timestamp=t.at)
    )


@_handles(SetFlag)
def _set_flag(state: GameState, t: SetFlag) -> None:
    state.world_memory.flags[t.name] = t.value


@_handles(IncrementStats)
def _increment_stats(state: GameState, t: IncrementStats) -> None:
    s = state.stats
    s.enemies_defeated += max(0, t.enemies_defeated)
    s.total_damage_dealt += max(0, t.damage_dealt)
    s.total_damage_taken += max(0, t.damage_taken)
    s.critical_hits += max(0, t.critical_hits)
    s.critical_fails += max(0, t.critical_fails)
    s.puzzles_solved += max(0, t.puzzles_solved)
    s.treasures_found += max(0, t.treasures_found)


# ── party ────────────────────────────────────────────────


@_handles(JoinCompanion)
def _join_companion(state: GameState, t: JoinCompanion) -> None:
    if any(c.id == t.companion.id for c in state.companions):
        return
    companion = t.companion.model_copy(deep=True)
    companion.memories = companion.memories[-COMPANION_MEMORY_LIMIT:]
    state.companions.append(companion)
    logger.info("%s joined the party", companion.name)


@_handles(DismissCompanion)
def _dismiss_companion(state: GameState, t: DismissCompanion) -> None:
    state.companions = [c for c in state.companions if c.id != t.companion_id]


@_handles(RememberForCompanion)
def _remember_for_companion(state: GameState, t: RememberForCompanion) -> None:
    for companion in state.companions:
        if companion.id == t.companion_id:
            companion.memories.append(t.memory)
            del companion.memories[:-COMPANION_MEMORY_LIMIT]
            companion.last_interaction = t.memory.content
            return


# ── session ──────────────────────────────────────────────


def _reduce_in_place(state: GameState, transition: Transition) -> GameState:
    if isinstance(transition, Reset):
        return transition.state.model_copy(deep=True)
    handler = _HANDLERS.get(type(transition))
    if handler is None:
        raise TypeError(f"Unknown transition: {type(transition).__name__}")
    handler(state, transition)
    return state


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def reduce(state: GameState, transition: Transition) -> GameState:
    """Return the state after applying one transition. ``state`` is untouched."""
    return _reduce_in_place(state.model_copy(deep=True), transition)


def reduce_all(state: GameState, transitions: Iterable[Transition]) -> GameState:
    """Fold a sequence of transitions over a copy of ``state``."""
    working = state.model_copy(deep=True)
    for t in transitions:
        working = _reduce_in_place(working, t)
    return working


class GameStore:
    """Holds the current GameState and serializes every change to it."""

    def __init__(self, state: GameState) -> None:
        self._state = state.model_copy(deep=True)
        self._version = 0

    @property
    def version(self) -> int:
        """Incremented once per successful dispatch/apply."""
        return self._version

    @property
    def session_id(self) -> str:
        return self._state.session_id

    def snapshot(self) -> GameState:
        return self._state.model_copy(deep=True)

    def has_entry(self, entry_id: str) -> bool:
        return self._state.entry(entry_id) is not None

    def dispatch(self, transition: Transition) -> None:
        self.apply([transition])

    def apply(self, transitions: Iterable[Transition]) -> None:
        """Apply transitions as one unit. On error the prior state is kept."""
        transitions = list(transitions)
        if not transitions:
            return
        self._state = reduce_all(self._state, transitions)
        self._version += 1
        logger.debug("Applied %d transitions (version %d)", len(transitions), self._version)
