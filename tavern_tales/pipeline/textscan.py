"""Heuristic text extraction from narrative prose.

All functions here are best-effort: no match means ``None`` or ``False``,
never an exception.
"""

from __future__ import annotations

import re
from collections.abc import Iterable

_NAME = r"([A-Z][a-z]+(?:\s[A-Z][a-z]+)?)"
_SPEAKER_RE = re.compile(_NAME + r" (?:says|replied|asked|exclaimed|whispered)\b")
_RECRUIT_RE = re.compile(_NAME + r" (?:offers|is willing|would like|agrees)\b")
_SENTENCE_END_RE = re.compile(r"[.!?]")

_ARTICLES = {"The", "A", "An"}

RECRUITMENT_PHRASES = ("offers to join you", "willing to accompany you", "could use your help")
_DICE_WORDS = ("dice", "d20", "check", "saving throw")

DEFAULT_NPC_DESCRIPTION = "A character you encountered on your journey."


def _clean_name(name: str) -> str | None:
    words = name.split()
    if words and words[0] in _ARTICLES:
        words = words[1:]
    return " ".join(words) or None


def _first_name(pattern: re.Pattern, text: str) -> str | None:
    for match in pattern.finditer(text or ""):
        name = _clean_name(match.group(1))
        if name:
            return name
    return None


def find_speaker(text: str) -> str | None:
    """Name of the first capitalised character shown speaking."""
    return _first_name(_SPEAKER_RE, text)


def find_recruit(text: str) -> str | None:
    """Name of the first character offering to join."""
    return _first_name(_RECRUIT_RE, text)


def npc_key(name: str) -> str:
    return " ".join(name.split()).lower()


def sentence_before(text: str, name: str) -> str | None:
    """The sentence immediately preceding the first mention of ``name``."""
    index = (text or "").find(name)
    if index <= 0:
        return None
    boundaries = [m.end() for m in _SENTENCE_END_RE.finditer(text, 0, index)]
    if not boundaries:
        return None
    end = boundaries[-1]
    if text[end:index].strip():
        return None
    start = boundaries[-2] if len(boundaries) > 1 else 0
    sentence = text[start:end].strip()
    return sentence or None


def contains_phrase(text: str, phrases: Iterable[str]) -> bool:
    lowered = (text or "").lower()
    return any(p.lower() in lowered for p in phrases if p)


def mentions_recruitment(text: str) -> bool:
    return contains_phrase(text, RECRUITMENT_PHRASES)


def requests_dice_roll(text: str) -> bool:
    lowered = (text or "").lower()
    return "roll" in lowered and any(word in lowered for word in _DICE_WORDS)
