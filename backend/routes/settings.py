"""Health check and settings endpoints."""

from fastapi import APIRouter, HTTPException
from pydantic import ValidationError

from backend import sessions
from tavern_tales import config as app_config

router = APIRouter()


def _masked(config: dict) -> dict:
    """Config with API keys reduced to a set/unset marker."""
    masked = {section: dict(values) for section, values in config.items()}
    for values in masked.values():
        if "api_key" in values:
            values["api_key"] = "********" if values["api_key"] else ""
    return masked


@router.get("/health")
async def health():
    """Health check."""
    return {"status": "ok"}


@router.get("/settings")
async def get_settings():
    """Get app settings (service connections, interpreter tuning)."""
    return _masked(app_config.get_config(sessions.data_dir()))


@router.patch("/settings")
async def update_settings(body: dict):
    """Update app settings (partial merge). Applies to sessions loaded afterwards."""
    try:
        updated = app_config.update_config(sessions.data_dir(), body)
    except ValidationError as e:
        raise HTTPException(400, f"Invalid interpreter settings: {e.error_count()} errors") from e
    return _masked(updated)
