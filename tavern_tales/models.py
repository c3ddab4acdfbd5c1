"""Core domain models.

GameState is the single aggregate the store owns; every other component
reads a deep-copied snapshot and requests transitions. Pydantic is used for
validation and serialisation at every data boundary (save files, HTTP).
"""

from __future__ import annotations

from typing import Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

EntryRole = Literal["player", "narrator", "system"]
EntryKind = Literal["turn", "death_save", "level_up", "quest_complete", "omen"]
Attitude = Literal["friendly", "neutral", "hostile"]
ItemType = Literal["weapon", "armor", "potion", "tool", "treasure", "spell_component"]
Rarity = Literal["common", "uncommon", "rare", "very_rare", "legendary", "artifact"]
EquipmentSlot = Literal["main_hand", "armor"]
Difficulty = Literal["easy", "medium", "hard"]
NotificationCategory = Literal["info", "success", "warning", "special"]

COMPANION_MEMORY_LIMIT = 20


class DiceRoll(BaseModel):
    type: str  # "d20", "attack", "saving_throw", ...
    result: int
    modifier: int = 0
    total: int
    purpose: str = ""
    is_critical: bool = Field(
        default=False, validation_alias=AliasChoices("is_critical", "isCritical")
    )


class StoryEntry(BaseModel):
    """One line of the story log.

    Append-only. The side-effect pipeline may later patch ``voice_url`` and
    ``is_playing``; nothing else changes after the entry is appended.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    role: EntryRole
    kind: EntryKind = "turn"
    text: str
    created_at: float
    dice_rolls: list[DiceRoll] = Field(default_factory=list)
    damage_dealt: int | None = None
    damage_taken: int | None = None
    voice_url: str | None = None
    is_playing: bool = False


class Condition(BaseModel):
    name: str
    description: str = ""
    duration: int = -1  # -1 = until removed
    source: str = ""


class InventoryItem(BaseModel):
    id: str
    name: str
    description: str = ""
    type: ItemType = "treasure"
    rarity: Rarity = "common"
    value: int = 0
    properties: list[str] = Field(default_factory=list)
    quantity: int = 1
    is_equippable: bool = False
    equipment_slot: EquipmentSlot | None = None


class Vitals(BaseModel):
    name: str = "Adventurer"
    class_name: str = "Fighter"
    level: int = 1
    experience: int = 0
    hit_points: int = 10
    max_hit_points: int = 10
    temporary_hit_points: int = 0
    inspiration: bool = False
    has_leveled_up: bool = False
    conditions: list[Condition] = Field(default_factory=list)


class DeathSaves(BaseModel):
    successes: int = 0
    failures: int = 0


class QuestMilestone(BaseModel):
    id: str
    description: str
    is_completed: bool = False
    location: str | None = None
    completion_hint: str | None = None


class QuestProgress(BaseModel):
    """A quest and its milestones.

    ``current_milestone_index`` only moves forward and ``progress`` never
    decreases; the store enforces both.
    """

    id: str
    name: str
    description: str = ""
    milestones: list[QuestMilestone] = Field(default_factory=list)
    current_milestone_index: int = 0
    progress: int = 0
    max_progress: int = 100
    is_main: bool = True
    is_completed: bool = False
    reward: str = ""

    def milestone(self, milestone_id: str) -> QuestMilestone | None:
        for m in self.milestones:
            if m.id == milestone_id:
                return m
        return None


class SideQuestOffer(BaseModel):
    """A suggested side quest awaiting the player's decision."""

    id: str
    title: str
    description: str = ""
    difficulty: Difficulty = "medium"
    reward: str = ""
    related_to: str | None = None
    milestones: list[QuestMilestone] = Field(default_factory=list)
    created_at: float = 0.0

    def to_quest(self) -> QuestProgress:
        return QuestProgress(
            id=self.id,
            name=self.title,
            description=self.description,
            milestones=[m.model_copy() for m in self.milestones],
            max_progress=max(len(self.milestones), 1),
            is_main=False,
            reward=self.reward,
        )


class CompanionMemory(BaseModel):
    id: str
    content: str
    importance: int = 5  # 1-10
    timestamp: float


class Companion(BaseModel):
    id: str
    name: str
    description: str = ""
    personality: str = ""
    loyalty: int = 70  # 0-100
    skills: list[str] = Field(default_factory=list)
    relationship: Literal["loyal", "neutral", "suspicious", "hostile"] = "neutral"
    joined_at: float
    last_interaction: str = ""
    memories: list[CompanionMemory] = Field(default_factory=list)


class KnownNPC(BaseModel):
    name: str
    description: str = ""
    attitude: Attitude = "neutral"
    last_interaction: str = ""
    location: str = ""
    is_alive: bool = True
    role: str | None = None
    relationship: str | None = None


class LocationVisit(BaseModel):
    visit_count: int = 0
    last_visit: float = 0.0
    notes: str = ""


class PlayerDecision(BaseModel):
    id: str
    decision: str
    consequence: str
    timestamp: float


class WorldMemory(BaseModel):
    known_npcs: dict[str, KnownNPC] = Field(default_factory=dict)  # keyed by lower-case name
    explored_locations: dict[str, LocationVisit] = Field(default_factory=dict)
    decisions: list[PlayerDecision] = Field(default_factory=list)
    flags: dict[str, bool] = Field(default_factory=dict)


class MapRoom(BaseModel):
    id: str
    name: str
    description: str = ""
    type: str = "chamber"
    connections: list[str] = Field(default_factory=list)
    is_completed: bool = False


class StoryProgress(BaseModel):
    current_act: int = 1
    total_acts: int = 3
    is_climax_near: bool = False
    is_ending_near: bool = False
    is_complete: bool = False


class GameStats(BaseModel):
    total_damage_dealt: int = 0
    total_damage_taken: int = 0
    enemies_defeated: int = 0
    treasures_found: int = 0
    puzzles_solved: int = 0
    critical_hits: int = 0
    critical_fails: int = 0
    started_at: float = 0.0


class SceneImage(BaseModel):
    entry_id: str
    url: str


class GameState(BaseModel):
    """The whole adventure: story log, character, quests, party, world."""

    session_id: str
    story_log: list[StoryEntry] = Field(default_factory=list)
    vitals: Vitals = Field(default_factory=Vitals)
    death_saves: DeathSaves = Field(default_factory=DeathSaves)
    inventory: list[InventoryItem] = Field(default_factory=list)
    quests: list[QuestProgress] = Field(default_factory=list)
    pending_side_quest: SideQuestOffer | None = None
    companions: list[Companion] = Field(default_factory=list)
    world_memory: WorldMemory = Field(default_factory=WorldMemory)
    map_rooms: list[MapRoom] = Field(default_factory=list)
    explored_areas: list[str] = Field(default_factory=list)
    completed_areas: list[str] = Field(default_factory=list)
    current_location: str = "entrance"
    story_progress: StoryProgress = Field(default_factory=StoryProgress)
    stats: GameStats = Field(default_factory=GameStats)
    scene_image: SceneImage | None = None
    is_dying: bool = False
    is_dead: bool = False
    has_won: bool = False
    dice_roll_pending: bool = False
    chaos_dice_available: bool = False
    last_chaos_result: int | None = None
    auto_play_voice: bool = True

    def entry(self, entry_id: str) -> StoryEntry | None:
        for e in self.story_log:
            if e.id == entry_id:
                return e
        return None

    def quest(self, quest_id: str) -> QuestProgress | None:
        for q in self.quests:
            if q.id == quest_id:
                return q
        return None

    def active_quests(self) -> list[QuestProgress]:
        return [q for q in self.quests if not q.is_completed]

    @property
    def turns_played(self) -> int:
        return sum(1 for e in self.story_log if e.role == "player")


class LegendEntry(BaseModel):
    """A finished adventure, recorded in the hall of legends."""

    id: str
    character_name: str
    character_class: str
    level: int
    title: str
    summary: str
    image_url: str | None = None
    achievements: dict[str, int] = Field(default_factory=dict)
    completed_at: float


class NotificationEvent(BaseModel):
    id: str
    message: str
    category: NotificationCategory = "info"
    created_at: float


def default_main_quest() -> QuestProgress:
    """The opening quest every new adventure starts with."""
    descriptions = [
        ("Begin your adventure and discover your purpose", None),
        ("Find the first clue to your quest", "Explore the nearby village and talk to the locals"),
        ("Overcome your first challenge", None),
        ("Discover the truth behind your quest", None),
        ("Face the final challenge", None),
    ]
    return QuestProgress(
        id="main-quest-1",
        name="The Epic Quest",
        description="Your first adventure awaits. Discover what lies ahead and prove your worth.",
        milestones=[
            QuestMilestone(id=f"milestone-{i}", description=desc, completion_hint=hint)
            for i, (desc, hint) in enumerate(descriptions, start=1)
        ],
    )


def new_game_state(
    session_id: str,
    *,
    character_name: str = "Adventurer",
    class_name: str = "Fighter",
    max_hit_points: int = 10,
    started_at: float = 0.0,
) -> GameState:
    """Create the state for a fresh adventure, seeded with the main quest."""
    return GameState(
        session_id=session_id,
        vitals=Vitals(
            name=character_name,
            class_name=class_name,
            hit_points=max_hit_points,
            max_hit_points=max_hit_points,
        ),
        quests=[default_main_quest()],
        explored_areas=["entrance"],
        stats=GameStats(started_at=started_at),
    )
