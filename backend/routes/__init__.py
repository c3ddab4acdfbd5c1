"""FastAPI API endpoints under /api.

Endpoint groups: settings/health, sessions (state, streamed turns, side
quests, dice, death saves, voice playback, notifications), legends.

Turns stream as newline-delimited JSON; see sessions.post_turn.
"""

from fastapi import APIRouter

from .legends import router as legends_router
from .sessions import router as sessions_router
from .settings import router as settings_router

router = APIRouter()
router.include_router(settings_router)
router.include_router(sessions_router)
router.include_router(legends_router)
