"""Pydantic request/response models for API endpoints."""

from pydantic import BaseModel, Field


class CreateSession(BaseModel):
    character_name: str = Field(min_length=1)
    class_name: str = "Fighter"
    max_hit_points: int = Field(default=10, ge=1)


class TurnBody(BaseModel):
    action: str = Field(min_length=1)
    stream: bool = True


class SideQuestBody(BaseModel):
    offer_id: str


class DiceBody(BaseModel):
    sides: int = Field(default=20, ge=2, le=100)


class PlayingBody(BaseModel):
    playing: bool = True
