"""Handlebars prompt rendering for the narrator and the short-text stages."""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import pybars

if TYPE_CHECKING:
    from tavern_tales.llm import TurnRequest


_compiler = pybars.Compiler()
_cache: dict[str, Callable] = {}

STORY_ARC_LENGTH = 30


class PromptError(Exception):
    """Raised when a Handlebars template fails to compile or render."""


# ── Custom Handlebars helpers ────────────────────────────


def _helper_take(this, options, items, count):
    """{{#take array N}}...{{/take}} iterates over the first N items."""
    result = []
    for item in list(items or [])[:int(count)]:
        result.extend(options["fn"](item))
    return result


def _helper_last(this, options, items, count):
    """{{#last array N}}...{{/last}} iterates over the last N items."""
    result = []
    for item in list(items or [])[-int(count):]:
        result.extend(options["fn"](item))
    return result


_HELPERS: dict[str, Callable] = {
    "take": _helper_take,
    "last": _helper_last,
}


def render_prompt(template_str: str, context: dict[str, Any]) -> str:
    """Compile and render a Handlebars template with the given context.

    Templates are cached by source string to avoid recompilation.
    """
    try:
        compiled = _cache.get(template_str)
        if compiled is None:
            compiled = _compiler.compile(template_str)
            _cache[template_str] = compiled
        return str(compiled(context, helpers=_HELPERS))
    except Exception as e:
        raise PromptError(f"Template error: {e}") from e


# ── Templates ────────────────────────────────────────────

NARRATOR_TEMPLATE = """\
You are a master storyteller at the Tavern of Tales. Create a dynamic, engaging fantasy adventure with clear progression.

STORY STRUCTURE ({{arc.length}}/{{arc.total}} actions):
- Current Act: {{arc.act}}/3
{{#if arc.climax}}- APPROACHING CLIMAX: build tension!
{{/if}}{{#if arc.ending}}- APPROACHING ENDING: work toward resolution!
{{/if}}
{{#if main_quest}}CURRENT MAIN QUEST: {{{main_quest.name}}}
Progress: {{main_quest.progress}}/{{main_quest.max_progress}}
{{#if main_milestone}}Current objective ({{{main_milestone.id}}}): {{{main_milestone.description}}}
{{#if main_milestone.completion_hint}}Hint: {{{main_milestone.completion_hint}}}
{{/if}}{{/if}}{{/if}}
{{#each side_quests}}ACTIVE SIDE QUEST: {{{name}}} (id {{{id}}}), progress {{progress}}/{{max_progress}}
{{/each}}
Respond with a single json object. Fields (all optional except story):
- story: your vivid response to the player, 30-50 words. Always put this field first.
- damage_taken, healing_received, xp_gained: whole numbers
- item_found: name, description, type (weapon|armor|potion|tool|treasure|spell_component), rarity, value
- quest_update: id, progress, milestone_completed (a milestone id)
- conditions_added: list of name, description, duration; conditions_removed: list of names
- inspiration_granted: true or false
- dice_rolls: list of type, result, modifier, total, purpose
- location_update: current_location (currently "{{{location}}}"), discovered_locations, room_completed
- story_progress: current_act ({{arc.act}}), total_acts (3), is_climax, is_ending
- npc_reaction: name, attitude_change (friendly|neutral|hostile), information_gained, dialogue
- puzzle_solved: is_solved, solution_details, reward
- combat_summary: enemies_defeated (list), player_status, damage_dealt, damage_taken
- skill_check: skill, success, difficulty, roll_value, narrative_effect
- side_quest_suggestion: title, description, difficulty (easy|medium|hard), reward, milestones (list of description)

CRITICAL RULES:
- Keep story responses SHORT (30-50 words)
- Always end with a choice or question
- Create immediate consequences
- Focus on story, not mechanics
- Do not end the story before the main quest is complete; set story_progress.is_ending only for the true conclusion
- If the player's action completes the current objective, include quest_update with milestone_completed

Player Context:
- Character: {{{character}}}
- Level: {{level}}
- Items: {{#if inventory}}{{#take inventory 3}}{{{this}}}; {{/take}}{{else}}none{{/if}}
- Current Location: {{{location}}}
- Recent Events:
{{#if history}}{{#each history}}  {{{speaker}}}: {{{text}}}
{{/each}}{{else}}  The tale begins.
{{/if}}"""

SCENE_PROMPT_TEMPLATE = """\
Create a safe, visually descriptive, concise, and policy-compliant image prompt from this fantasy story. Focus on environment, lighting, and atmosphere. Avoid violence, weapons, or controversial content.

Story: {{{story}}}

Safe visual prompt (under 60 characters):"""

LEGEND_TITLE_TEMPLATE = """\
Create an epic, memorable title for a fantasy hero who has completed an adventure. The title should follow one of these formats:
1. "[Name], the [Trait] of [Symbolic Place]"
2. "The [Adjective] [Class] Who [Action]"
3. A legendary quote about the hero

Character: {{{character_name}}}, a level {{level}} {{{character_class}}}
Recent adventure:
{{#last recent_story 5}}{{{this}}}
{{/last}}
Create a single, epic title or quote (max 10 words):"""

ANTAGONIST_TEMPLATE = """\
Create a random appearance and role for a character named {{{antagonist_name}}} who will appear in a fantasy adventure.
{{{antagonist_name}}} should be mysterious and powerful, but the exact role should be randomly determined.

Generate a json object with these fields:
1. role: one of "Ancient Nemesis", "Reluctant Mentor", "Mysterious Observer", "Forgotten Relative", "Rival Spellcaster", "Prophesied Adversary", "Potential Ally", "Collector of Artifacts", "Dimensional Traveler", "Cursed Immortal"
2. backstory: a brief paragraph explaining their history and motivations
3. appearance: a vivid description of how they look when first encountered
4. relationship: how they are connected to the player character {{{character_name}}}

Make the role and relationship unpredictable: not always a villain.

Return ONLY the json object with these four fields."""

_SHORT_TEMPLATES: dict[str, str] = {
    "scene_prompt": SCENE_PROMPT_TEMPLATE,
    "legend_title": LEGEND_TITLE_TEMPLATE,
    "antagonist_profile": ANTAGONIST_TEMPLATE,
}


# ── Context building ─────────────────────────────────────


def story_arc(story_length: int) -> dict[str, Any]:
    """Act and pacing flags for a story of the given length."""
    act = 1 if story_length <= 8 else 2 if story_length <= 20 else 3
    return {
        "length": story_length,
        "total": STORY_ARC_LENGTH,
        "act": act,
        "climax": 22 <= story_length < 26,
        "ending": story_length >= 26,
    }


def build_turn_context(request: TurnRequest) -> dict[str, Any]:
    """Assemble template variables for the narrator prompt."""
    main = next((q for q in request.active_quests if q.is_main), None)
    milestone = None
    if main is not None and main.current_milestone_index < len(main.milestones):
        milestone = main.milestones[main.current_milestone_index].model_dump()
    return {
        "arc": story_arc(request.story_length),
        "main_quest": main.model_dump() if main else None,
        "main_milestone": milestone,
        "side_quests": [q.model_dump() for q in request.active_quests if not q.is_main][:1],
        "character": request.character_summary,
        "level": request.level,
        "inventory": request.inventory,
        "location": request.current_location or "unknown",
        "history": [
            {"speaker": "Player" if h.role == "player" else "Storyteller", "text": h.text}
            for h in request.recent_history
        ],
    }


def render_narrator_prompt(request: TurnRequest) -> str:
    return render_prompt(NARRATOR_TEMPLATE, build_turn_context(request))


def render_short_prompt(kind: str, context: dict[str, Any]) -> str:
    template = _SHORT_TEMPLATES.get(kind)
    if template is None:
        raise PromptError(f"Unknown prompt kind: {kind}")
    return render_prompt(template, context)
