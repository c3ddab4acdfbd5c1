"""App configuration: service connections and interpreter tuning.

Stored as ``{data_dir}/config.json``; anything missing there falls back to
``_CONFIG_DEFAULTS``. API keys may also come from the environment (loaded
from ``.env`` by the app entry points), which wins over the stored file so
secrets never have to be written to disk.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field


class InterpreterConfig(BaseModel):
    """Probabilities and vocabularies used while interpreting a turn."""

    chaos_die_chance: float = 0.10
    side_quest_chance: float = 0.20
    companion_chance: float = 0.05
    antagonist_chance: float = 0.10
    antagonist_name: str = "Gaeto"
    party_capacity: int = 2
    recent_history: int = 3
    terminal_phrases: list[str] = Field(
        default_factory=lambda: ["conclusion", "the end", "adventure reaches its end"]
    )
    decision_words: list[str] = Field(
        default_factory=lambda: ["decide", "choose", "accept", "reject"]
    )


_CONFIG_DEFAULTS: dict[str, Any] = {
    "narrator": {
        "provider_url": "https://api.openai.com",
        "api_key": "",
        "model": "gpt-3.5-turbo",
        "timeout": 120.0,
    },
    "speech": {
        "enabled": True,
        "api_url": "https://api.elevenlabs.io",
        "api_key": "",
        "voice_id": "21m00Tcm4TlvDq8ikWAM",
        "model_id": "eleven_monolingual_v1",
    },
    "images": {
        "enabled": True,
        "api_url": "https://api.openai.com",
        "api_key": "",
        "model": "dall-e-3",
        "size": "1024x1024",
    },
    "interpreter": InterpreterConfig().model_dump(),
}

# env var -> (section, key)
_ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "NARRATOR_URL": ("narrator", "provider_url"),
    "NARRATOR_API_KEY": ("narrator", "api_key"),
    "NARRATOR_MODEL": ("narrator", "model"),
    "ELEVENLABS_API_KEY": ("speech", "api_key"),
    "ELEVENLABS_VOICE_ID": ("speech", "voice_id"),
    "OPENAI_API_KEY": ("images", "api_key"),
}


def _config_path(data_dir: Path) -> Path:
    return data_dir / "config.json"


def _defaults() -> dict[str, Any]:
    return json.loads(json.dumps(_CONFIG_DEFAULTS))


def _merge(config: dict[str, Any], fields: dict[str, Any]) -> None:
    for section, vals in fields.items():
        if section in config and isinstance(vals, dict):
            config[section].update(vals)


def get_config(data_dir: Path) -> dict[str, Any]:
    """Read config, returning defaults merged with stored values and env."""
    config = _defaults()
    path = _config_path(data_dir)
    if path.is_file():
        _merge(config, json.loads(path.read_text()))
    for var, (section, key) in _ENV_OVERRIDES.items():
        value = os.getenv(var)
        if value:
            config[section][key] = value
    # The narrator key doubles as the image key when only one is set.
    if not config["images"]["api_key"]:
        config["images"]["api_key"] = config["narrator"]["api_key"]
    return config


def update_config(data_dir: Path, fields: dict[str, Any]) -> dict[str, Any]:
    """Merge fields into the stored config and persist. Returns full config."""
    path = _config_path(data_dir)
    stored = _defaults()
    if path.is_file():
        _merge(stored, json.loads(path.read_text()))
    _merge(stored, fields)
    InterpreterConfig.model_validate(stored["interpreter"])
    data_dir.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(stored, indent=2))
    return get_config(data_dir)


def interpreter_config(config: dict[str, Any]) -> InterpreterConfig:
    return InterpreterConfig.model_validate(config.get("interpreter", {}))
