"""Live game sessions for the HTTP service.

One GameSession per save game, built on first use from config and cached
for the process lifetime. Service clients come from config.json/.env unless
overrides were passed to init_sessions (tests pass scripted ones).
"""

from __future__ import annotations

import logging
import random
import time
import uuid
from pathlib import Path

from tavern_tales import config as app_config
from tavern_tales.dice import RandomSource
from tavern_tales.llm import HttpNarrator, NarrativeService
from tavern_tales.media import HttpImageClient, HttpSpeechClient, ImageClient, SpeechClient
from tavern_tales.models import new_game_state
from tavern_tales.pipeline import GameSession
from tavern_tales.pipeline.effects import SideEffectPipeline
from tavern_tales.storage import Storage
from tavern_tales.store import GameStore

logger = logging.getLogger(__name__)

_data_dir: Path | None = None
_storage: Storage | None = None
_sessions: dict[str, GameSession] = {}
_overrides: dict[str, object] = {}


def init_sessions(
    data_dir: Path,
    *,
    narrator: NarrativeService | None = None,
    speech: SpeechClient | None = None,
    images: ImageClient | None = None,
    rng: RandomSource | None = None,
) -> None:
    global _data_dir, _storage
    _data_dir = data_dir
    _data_dir.mkdir(parents=True, exist_ok=True)
    _storage = Storage(data_dir)
    _storage.media_dir.mkdir(parents=True, exist_ok=True)
    _sessions.clear()
    _overrides.clear()
    _overrides.update(
        {k: v for k, v in {"narrator": narrator, "speech": speech, "images": images, "rng": rng}.items() if v is not None}
    )


def data_dir() -> Path:
    assert _data_dir is not None, "Sessions not initialized; call init_sessions() first"
    return _data_dir


def storage() -> Storage:
    assert _storage is not None, "Sessions not initialized; call init_sessions() first"
    return _storage


# ── service clients ──────────────────────────────────────


def _narrator(cfg: dict) -> NarrativeService:
    if "narrator" in _overrides:
        return _overrides["narrator"]
    n = cfg["narrator"]
    return HttpNarrator(n["provider_url"], n["api_key"], n["model"], float(n["timeout"]))


def _speech(cfg: dict) -> SpeechClient | None:
    if "speech" in _overrides:
        return _overrides["speech"]
    s = cfg["speech"]
    if not s["enabled"] or not s["api_key"]:
        return None
    return HttpSpeechClient(s["api_url"], s["api_key"], s["voice_id"], storage().media_dir, s["model_id"])


def _images(cfg: dict) -> ImageClient | None:
    if "images" in _overrides:
        return _overrides["images"]
    i = cfg["images"]
    if not i["enabled"] or not i["api_key"]:
        return None
    return HttpImageClient(i["api_url"], i["api_key"], i["model"], i["size"])


def _build(store: GameStore) -> GameSession:
    cfg = app_config.get_config(data_dir())
    narrator = _narrator(cfg)
    effects = SideEffectPipeline(
        store, narrator=narrator, speech=_speech(cfg), images=_images(cfg), storage=storage()
    )
    return GameSession(
        store,
        narrator,
        effects=effects,
        storage=storage(),
        rng=_overrides.get("rng") or random.Random(),
        config=app_config.interpreter_config(cfg),
    )


# ── registry ─────────────────────────────────────────────


def create_session(character_name: str, class_name: str, max_hit_points: int) -> GameSession:
    session_id = uuid.uuid4().hex[:12]
    state = new_game_state(
        session_id,
        character_name=character_name,
        class_name=class_name,
        max_hit_points=max_hit_points,
        started_at=time.time(),
    )
    session = _build(GameStore(state))
    session.save()
    _sessions[session_id] = session
    logger.info("Session %s created for %s", session_id, character_name)
    return session


def get_session(session_id: str) -> GameSession | None:
    session = _sessions.get(session_id)
    if session is not None:
        return session
    try:
        state = storage().load_state(session_id)
    except ValueError:
        return None
    if state is None:
        return None
    session = _build(GameStore(state))
    _sessions[session_id] = session
    return session


def list_sessions() -> list[str]:
    return storage().list_sessions()


def delete_session(session_id: str) -> bool:
    session = _sessions.pop(session_id, None)
    if session is not None:
        session.effects.close()
    try:
        return storage().delete_state(session_id)
    except ValueError:
        return False
