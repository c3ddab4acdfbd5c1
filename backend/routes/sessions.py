"""Game session endpoints: create/load, turns, and out-of-turn actions."""

import asyncio
import json
from collections.abc import Iterator
from contextlib import contextmanager

from fastapi import APIRouter, HTTPException
from fastapi.responses import StreamingResponse

from backend import sessions
from tavern_tales.pipeline import (
    ActionUnavailableError,
    GameSession,
    SessionBusyError,
    TurnResult,
    UnknownSideQuestError,
)

from .models import CreateSession, DiceBody, PlayingBody, SideQuestBody, TurnBody

router = APIRouter()


def _require(session_id: str) -> GameSession:
    session = sessions.get_session(session_id)
    if session is None:
        raise HTTPException(404, "Session not found")
    return session


@contextmanager
def _errors() -> Iterator[None]:
    """Map session errors onto HTTP status codes."""
    try:
        yield
    except SessionBusyError as e:
        raise HTTPException(409, str(e)) from e
    except UnknownSideQuestError as e:
        raise HTTPException(404, str(e)) from e
    except ActionUnavailableError as e:
        raise HTTPException(400, str(e)) from e
    except KeyError as e:
        raise HTTPException(404, f"Not found: {e.args[0]}") from e


def _turn_payload(session: GameSession, result: TurnResult) -> dict:
    return {
        **result.model_dump(mode="json", exclude={"interpretation"}),
        "fallback": result.fallback,
        "state": session.state.model_dump(mode="json"),
    }


@router.get("/sessions")
async def list_sessions():
    """List saved session ids."""
    return sessions.list_sessions()


@router.post("/sessions")
async def create_session(body: CreateSession):
    """Start a new adventure."""
    session = sessions.create_session(body.character_name, body.class_name, body.max_hit_points)
    return session.state


@router.get("/sessions/{session_id}")
async def get_session(session_id: str):
    """Current game state (includes late voice/image patches)."""
    session = _require(session_id)
    return {**session.state.model_dump(mode="json"), "busy": session.busy}


@router.delete("/sessions/{session_id}")
async def delete_session(session_id: str):
    if not sessions.delete_session(session_id):
        raise HTTPException(404, "Session not found")
    return {"ok": True}


@router.post("/sessions/{session_id}/turns")
async def post_turn(session_id: str, body: TurnBody):
    """Play one turn.

    With ``stream`` (default) the response is newline-delimited JSON:
    {"type": "fragment", "text": <text so far>} lines while the narrative
    arrives, then one {"type": "turn", ...} line (or {"type": "error"}).
    """
    session = _require(session_id)
    if session.busy:
        raise HTTPException(409, "A turn is already in progress")
    state = session.state
    if state.is_dead or state.is_dying:
        raise HTTPException(400, "The adventurer cannot act right now")

    if not body.stream:
        with _errors():
            result = await session.run_turn(body.action)
        return _turn_payload(session, result)

    queue: asyncio.Queue[dict | None] = asyncio.Queue()

    async def run() -> None:
        try:
            result = await session.run_turn(
                body.action,
                on_fragment=lambda text: queue.put_nowait({"type": "fragment", "text": text}),
            )
            queue.put_nowait({"type": "turn", **_turn_payload(session, result)})
        except (SessionBusyError, ActionUnavailableError, ValueError) as e:
            queue.put_nowait({"type": "error", "detail": str(e)})
        finally:
            queue.put_nowait(None)

    async def lines():
        task = asyncio.create_task(run())
        while (item := await queue.get()) is not None:
            yield json.dumps(item) + "\n"
        await task

    return StreamingResponse(lines(), media_type="application/x-ndjson")


@router.post("/sessions/{session_id}/side-quest/accept")
async def accept_side_quest(session_id: str, body: SideQuestBody):
    session = _require(session_id)
    with _errors():
        quest = session.accept_side_quest(body.offer_id)
    return quest


@router.post("/sessions/{session_id}/side-quest/decline")
async def decline_side_quest(session_id: str, body: SideQuestBody):
    session = _require(session_id)
    with _errors():
        session.decline_side_quest(body.offer_id)
    return {"ok": True}


@router.post("/sessions/{session_id}/death-save")
async def death_save(session_id: str):
    session = _require(session_id)
    with _errors():
        entry = session.roll_death_save()
    state = session.state
    return {"entry": entry, "death_saves": state.death_saves, "is_dying": state.is_dying, "is_dead": state.is_dead}


@router.post("/sessions/{session_id}/revive")
async def revive(session_id: str):
    session = _require(session_id)
    session.revive()
    return session.state.vitals


@router.post("/sessions/{session_id}/chaos-die")
async def roll_chaos_die(session_id: str):
    session = _require(session_id)
    with _errors():
        result = session.roll_chaos_die()
    return {"result": result}


@router.post("/sessions/{session_id}/dice")
async def roll_dice(session_id: str, body: DiceBody):
    session = _require(session_id)
    return {"result": session.roll_dice(body.sides)}


@router.post("/sessions/{session_id}/inspiration/use")
async def use_inspiration(session_id: str):
    session = _require(session_id)
    with _errors():
        session.use_inspiration()
    return {"ok": True}


@router.post("/sessions/{session_id}/entries/{entry_id}/playing")
async def set_playing(session_id: str, entry_id: str, body: PlayingBody):
    session = _require(session_id)
    with _errors():
        session.set_playing(entry_id, body.playing)
    return {"ok": True}


@router.post("/sessions/{session_id}/auto-play")
async def toggle_auto_play(session_id: str):
    session = _require(session_id)
    return {"auto_play_voice": session.toggle_auto_play()}


@router.post("/sessions/{session_id}/level-up/clear")
async def clear_level_up(session_id: str):
    session = _require(session_id)
    session.clear_level_up()
    return {"ok": True}


@router.delete("/sessions/{session_id}/companions/{companion_id}")
async def dismiss_companion(session_id: str, companion_id: str):
    session = _require(session_id)
    with _errors():
        session.dismiss_companion(companion_id)
    return {"ok": True}


@router.post("/sessions/{session_id}/reset")
async def reset_session(session_id: str):
    session = _require(session_id)
    with _errors():
        state = session.reset()
    return state


@router.get("/sessions/{session_id}/notifications")
async def get_notifications(session_id: str):
    """Live notifications; expired ones are pruned on read."""
    return _require(session_id).notifications.active()


@router.delete("/sessions/{session_id}/notifications/{notification_id}")
async def dismiss_notification(session_id: str, notification_id: str):
    if not _require(session_id).notifications.dismiss(notification_id):
        raise HTTPException(404, "Notification not found")
    return {"ok": True}
