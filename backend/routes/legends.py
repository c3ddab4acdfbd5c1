"""Hall of legends: finished adventures."""

from fastapi import APIRouter

from backend import sessions

router = APIRouter()


@router.get("/legends")
async def list_legends():
    """All recorded legends, most recent first."""
    legends = sessions.storage().get_legends()
    return sorted(legends, key=lambda e: e.completed_at, reverse=True)
