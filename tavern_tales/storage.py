"""JSON file storage.

All state is stored in flat JSON files under a configurable base directory.
There is no database: reads and writes go through plain helper methods that
load and dump JSON.

Directory layout:

    {base}/
      sessions/
        {session_id}.json     ← one GameState per save game
      legends.json            ← append-only hall of legends
      media/
        voice/                ← synthesized narration clips
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from tavern_tales.models import GameState, LegendEntry

logger = logging.getLogger(__name__)


class Storage:
    def __init__(self, base_path: Path) -> None:
        self._base = base_path
        self._sessions_root = base_path / "sessions"
        self._sessions_root.mkdir(parents=True, exist_ok=True)

    @property
    def base(self) -> Path:
        return self._base

    @property
    def media_dir(self) -> Path:
        return self._base / "media"

    # ------------------------------------------------------------------
    # Internal path helpers
    # ------------------------------------------------------------------

    def _session_file(self, session_id: str) -> Path:
        if not session_id or "/" in session_id or session_id.startswith("."):
            raise ValueError(f"Invalid session id: {session_id!r}")
        return self._sessions_root / f"{session_id}.json"

    def _read_json(self, path: Path) -> Any:
        return json.loads(path.read_text())

    def _write_json(self, path: Path, data: Any) -> None:
        path.write_text(json.dumps(data, indent=2))

    # ------------------------------------------------------------------
    # Save games
    # ------------------------------------------------------------------

    def save_state(self, state: GameState) -> None:
        self._session_file(state.session_id).write_text(state.model_dump_json(indent=2))

    def load_state(self, session_id: str) -> GameState | None:
        path = self._session_file(session_id)
        if not path.exists():
            return None
        return GameState.model_validate_json(path.read_text())

    def list_sessions(self) -> list[str]:
        return sorted(p.stem for p in self._sessions_root.glob("*.json"))

    def delete_state(self, session_id: str) -> bool:
        path = self._session_file(session_id)
        if not path.exists():
            return False
        path.unlink()
        return True

    # ------------------------------------------------------------------
    # Hall of legends (append-only)
    # ------------------------------------------------------------------

    def get_legends(self) -> list[LegendEntry]:
        path = self._base / "legends.json"
        if not path.exists():
            return []
        return [LegendEntry.model_validate(e) for e in self._read_json(path)]

    def append_legend(self, legend: LegendEntry) -> None:
        legends = self.get_legends()
        if any(e.id == legend.id for e in legends):
            return
        legends.append(legend)
        self._write_json(self._base / "legends.json", [e.model_dump() for e in legends])
        logger.info("Legend recorded: %s", legend.title)
