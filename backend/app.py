import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.staticfiles import StaticFiles

from backend import sessions
from backend.routes import router

load_dotenv(Path(__file__).parent.parent / ".env")

DEFAULT_DATA_DIR = Path(__file__).parent.parent / "data"


def create_app(data_dir: Path | None = None) -> FastAPI:
    resolved = data_dir or Path(os.getenv("DATA_DIR", str(DEFAULT_DATA_DIR)))
    sessions.init_sessions(resolved)
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))

    app = FastAPI(title="Tavern Tales")
    app.include_router(router, prefix="/api")
    # Synthesized voice clips, referenced by StoryEntry.voice_url
    app.mount("/media", StaticFiles(directory=sessions.storage().media_dir), name="media")
    return app


# Default app instance for uvicorn (uses DATA_DIR env var or default)
app = create_app()
