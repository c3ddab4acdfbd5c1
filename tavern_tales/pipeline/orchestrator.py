"""Pipeline orchestrator: runs one player turn end-to-end.

Turn flow:
  1. Append the player's action to the story log.
  2. Maybe introduce the antagonist (once per adventure). When that happens
     the omen replaces the narrator call for this turn.
  3. Stream the narrator's reply through a StreamingTextChannel; fragments
     go to the caller as they arrive.
  4. Interpret the final payload against the state as it was before the
     reply, and apply every resulting transition plus the narrator entry
     as one unit.
  5. Queue notifications and hand voice, scene art and legend recording to
     the side-effect pipeline without awaiting them.

Only one turn may be in flight per session; a second call while the first
is running raises SessionBusyError.
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable

from pydantic import BaseModel, Field

from tavern_tales.config import InterpreterConfig
from tavern_tales.dice import RandomSource, chance, roll
from tavern_tales.llm import HistoryLine, NarrativeService, TurnRequest
from tavern_tales.models import (
    GameState,
    NotificationEvent,
    QuestProgress,
    StoryEntry,
    new_game_state,
)
from tavern_tales.notifications import NotificationQueue
from tavern_tales.pipeline import textscan
from tavern_tales.pipeline.effects import SideEffectPipeline
from tavern_tales.pipeline.interpreter import Interpretation, interpret
from tavern_tales.pipeline.rules import LegendTitleRequest, Notify, new_id
from tavern_tales.pipeline.streaming import FragmentCallback, StreamingTextChannel
from tavern_tales.responses import decode_payload
from tavern_tales.storage import Storage
from tavern_tales.store import GameStore
from tavern_tales.transitions import (
    AcceptSideQuest,
    AppendEntry,
    ClearLevelUp,
    DeathSave,
    DeclineSideQuest,
    DismissCompanion,
    RecordDecision,
    RememberNPC,
    Reset,
    Revive,
    RollChaosDie,
    SetDiceRollPending,
    SetFlag,
    SetPlaying,
    ToggleAutoPlay,
    Transition,
    UseInspiration,
)

logger = logging.getLogger(__name__)

ANTAGONIST_FLAG = "antagonist_introduced"
_ANTAGONIST_DEFAULTS = {
    "role": "Mysterious Wizard",
    "backstory": "A powerful mage with unknown intentions who has been watching your progress.",
    "appearance": "A tall figure in ornate robes with piercing eyes that seem to look through you.",
    "relationship": "They seem to know more about your destiny than you do yourself.",
}
DECISION_MIN_CHARS = 20


class SessionBusyError(RuntimeError):
    """Raised when an action arrives while a turn is still in flight."""


class UnknownSideQuestError(ValueError):
    """Raised when accepting or declining an offer that is not pending."""


class ActionUnavailableError(RuntimeError):
    """Raised when an action does not apply to the current state."""


class TurnResult(BaseModel):
    player_entry: StoryEntry
    narrator_entry: StoryEntry
    interpretation: Interpretation | None = None
    omen: bool = False
    notifications: list[NotificationEvent] = Field(default_factory=list)

    @property
    def fallback(self) -> bool:
        return self.interpretation is not None and self.interpretation.fallback


class GameSession:
    """One adventure: store, narrator, side effects and notifications."""

    def __init__(
        self,
        store: GameStore,
        narrator: NarrativeService,
        *,
        effects: SideEffectPipeline | None = None,
        notifications: NotificationQueue | None = None,
        storage: Storage | None = None,
        rng: RandomSource | None = None,
        config: InterpreterConfig | None = None,
        clock: Callable[[], float] = time.time,
        make_id: Callable[[str], str] = new_id,
    ) -> None:
        self._store = store
        self._narrator = narrator
        self._effects = effects or SideEffectPipeline(store, narrator=narrator, storage=storage)
        self._notifications = notifications or NotificationQueue()
        self._storage = storage
        self._rng = rng if rng is not None else random.Random()
        self._config = config or InterpreterConfig()
        self._clock = clock
        self._make_id = make_id
        self._busy = False

    @property
    def session_id(self) -> str:
        return self._store.session_id

    @property
    def busy(self) -> bool:
        return self._busy

    @property
    def state(self) -> GameState:
        return self._store.snapshot()

    @property
    def notifications(self) -> NotificationQueue:
        return self._notifications

    @property
    def effects(self) -> SideEffectPipeline:
        return self._effects

    def save(self) -> None:
        if self._storage is not None:
            self._storage.save_state(self._store.snapshot())

    # ------------------------------------------------------------------
    # Turn
    # ------------------------------------------------------------------

    async def run_turn(self, action: str, on_fragment: FragmentCallback | None = None) -> TurnResult:
        if self._busy:
            raise SessionBusyError("A turn is already in progress")
        action = action.strip()
        if not action:
            raise ValueError("Action must not be empty")
        state = self._store.snapshot()
        if state.is_dead:
            raise ActionUnavailableError("The adventurer has died")
        if state.is_dying:
            raise ActionUnavailableError("Roll death saves before acting")

        self._busy = True
        try:
            result = await self._run_turn(action, on_fragment)
        finally:
            self._busy = False
        self.save()
        return result

    async def _run_turn(self, action: str, on_fragment: FragmentCallback | None) -> TurnResult:
        player_entry = StoryEntry(
            id=self._make_id("player"), role="player", text=action, created_at=self._clock()
        )
        self._store.dispatch(AppendEntry(entry=player_entry))
        prior = self._store.snapshot()

        omen = await self._maybe_introduce_antagonist(prior)
        if omen is not None:
            return TurnResult(player_entry=player_entry, narrator_entry=omen, omen=True)

        channel = StreamingTextChannel(on_fragment=on_fragment)
        payload = await channel.consume(self._narrator.stream_turn(self._turn_request(action, prior)))

        now = self._clock()
        interpretation = interpret(
            payload, prior, rng=self._rng, config=self._config, now=now, make_id=self._make_id
        )
        response = interpretation.response
        narrator_entry = StoryEntry(
            id=self._make_id("narrator"),
            role="narrator",
            text=interpretation.narrative,
            created_at=now,
            dice_rolls=response.dice_rolls if response else [],
            damage_dealt=response.damage_dealt if response else None,
            damage_taken=response.damage_taken if response else None,
        )

        transitions: list[Transition] = [*interpretation.transitions, AppendEntry(entry=narrator_entry)]
        if not interpretation.fallback and self._is_decision(action):
            transitions.append(RecordDecision(
                decision_id=self._make_id("decision"),
                decision=action,
                consequence=interpretation.narrative,
                at=now,
            ))
        self._store.apply(transitions)

        notes = []
        for effect in interpretation.side_effects:
            if isinstance(effect, Notify):
                notes.append(self._notifications.push(effect.message, effect.category))
            elif isinstance(effect, LegendTitleRequest):
                self._effects.schedule_legend(effect)
        if not interpretation.fallback:
            self._effects.schedule_narration(narrator_entry.id, narrator_entry.text)

        return TurnResult(
            player_entry=player_entry,
            narrator_entry=narrator_entry,
            interpretation=interpretation,
            notifications=notes,
        )

    def _turn_request(self, action: str, prior: GameState) -> TurnRequest:
        v = prior.vitals
        recent = prior.story_log[-self._config.recent_history:] if self._config.recent_history > 0 else []
        return TurnRequest(
            action=action,
            character_summary=f"{v.name}, level {v.level} {v.class_name} ({v.hit_points}/{v.max_hit_points} HP)",
            level=v.level,
            current_location=prior.current_location,
            explored_areas=list(prior.explored_areas),
            inventory=[i.name for i in prior.inventory],
            active_quests=prior.active_quests(),
            recent_history=[HistoryLine(role=e.role, text=e.text) for e in recent],
            story_length=len(prior.story_log),
        )

    def _is_decision(self, action: str) -> bool:
        lowered = action.lower()
        return len(action) > DECISION_MIN_CHARS and any(w in lowered for w in self._config.decision_words)

    async def _maybe_introduce_antagonist(self, prior: GameState) -> StoryEntry | None:
        if prior.world_memory.flags.get(ANTAGONIST_FLAG):
            return None
        if not chance(self._rng, self._config.antagonist_chance):
            return None

        name = self._config.antagonist_name
        try:
            raw = await self._narrator.generate_short_text(
                "antagonist_profile", {"antagonist_name": name, "character_name": prior.vitals.name}
            )
        except Exception as e:
            logger.warning("Antagonist profile generation failed: %s", e)
            return None

        data = decode_payload(raw) or {}
        profile = {
            key: str(data.get(key) or default).strip() for key, default in _ANTAGONIST_DEFAULTS.items()
        }
        role = profile["role"]
        hostile = any(w in role.lower() for w in ("nemesis", "adversary"))
        entry = StoryEntry(
            id=self._make_id("omen"),
            role="system",
            kind="omen",
            text=f"The air shimmers as {name}, {role}, makes their presence known. {profile['appearance']}",
            created_at=self._clock(),
        )
        self._store.apply([
            RememberNPC(
                key=textscan.npc_key(name),
                name=name,
                description=profile["appearance"],
                attitude="hostile" if hostile else "neutral",
                last_interaction=profile["backstory"],
                location=prior.current_location,
                role=role,
                relationship=profile["relationship"],
            ),
            SetFlag(name=ANTAGONIST_FLAG),
            AppendEntry(entry=entry),
        ])
        self._notifications.push(f"{name} has appeared!", "special")
        logger.info("Antagonist %s introduced as %s", name, role)
        return entry

    # ------------------------------------------------------------------
    # Player actions outside the narrative turn
    # ------------------------------------------------------------------

    def _dispatch(self, *transitions: Transition) -> None:
        self._store.apply(transitions)
        self.save()

    def accept_side_quest(self, offer_id: str) -> QuestProgress:
        offer = self._store.snapshot().pending_side_quest
        if offer is None or offer.id != offer_id:
            raise UnknownSideQuestError(f"No pending side quest {offer_id!r}")
        self._dispatch(AcceptSideQuest(offer_id=offer_id))
        self._notifications.push(f"Side quest accepted: {offer.title}", "success")
        return self._store.snapshot().quest(offer_id)

    def decline_side_quest(self, offer_id: str) -> None:
        offer = self._store.snapshot().pending_side_quest
        if offer is None or offer.id != offer_id:
            raise UnknownSideQuestError(f"No pending side quest {offer_id!r}")
        self._dispatch(DeclineSideQuest(offer_id=offer_id))

    def roll_death_save(self) -> StoryEntry:
        if not self._store.snapshot().is_dying:
            raise ActionUnavailableError("Not making death saves")
        entry_id = self._make_id("death-save")
        self._dispatch(DeathSave(roll=roll(self._rng, 20), entry_id=entry_id, at=self._clock()))
        return self._store.snapshot().entry(entry_id)

    def revive(self) -> None:
        self._dispatch(Revive())

    def roll_chaos_die(self) -> int:
        if not self._store.snapshot().chaos_dice_available:
            raise ActionUnavailableError("No chaos die available")
        result = roll(self._rng, 20)
        self._dispatch(RollChaosDie(result=result))
        return result

    def roll_dice(self, sides: int = 20) -> int:
        """Roll for a check the narrator asked for; clears the pending flag."""
        result = roll(self._rng, sides)
        self._dispatch(SetDiceRollPending(pending=False))
        return result

    def use_inspiration(self) -> None:
        if not self._store.snapshot().vitals.inspiration:
            raise ActionUnavailableError("No inspiration to spend")
        self._dispatch(UseInspiration())

    def set_playing(self, entry_id: str, playing: bool) -> None:
        if not self._store.has_entry(entry_id):
            raise KeyError(entry_id)
        self._dispatch(SetPlaying(entry_id=entry_id, is_playing=playing))

    def toggle_auto_play(self) -> bool:
        self._dispatch(ToggleAutoPlay())
        return self._store.snapshot().auto_play_voice

    def clear_level_up(self) -> None:
        self._dispatch(ClearLevelUp())

    def dismiss_companion(self, companion_id: str) -> None:
        if not any(c.id == companion_id for c in self._store.snapshot().companions):
            raise KeyError(companion_id)
        self._dispatch(DismissCompanion(companion_id=companion_id))

    def reset(self) -> GameState:
        """Start the adventure over with the same character."""
        if self._busy:
            raise SessionBusyError("A turn is already in progress")
        v = self._store.snapshot().vitals
        fresh = new_game_state(
            self.session_id,
            character_name=v.name,
            class_name=v.class_name,
            max_hit_points=v.max_hit_points,
            started_at=self._clock(),
        )
        self._dispatch(Reset(state=fresh))
        self._notifications.clear()
        return self._store.snapshot()
