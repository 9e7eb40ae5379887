"""
Pydantic models for the RecallAR backend.
Defines data structures for API communication.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class Person(BaseModel):
    """
    A known person as shown to the caregiver.
    The embedding itself never leaves the server; only whether one exists.
    """
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    relation: str
    has_embedding: bool
    created_at: datetime
    updated_at: datetime


class PersonCreate(BaseModel):
    """Input model for registering a new person with a reference photo."""
    name: str = Field(min_length=1)
    relation: str = Field(min_length=1)

    # Base64-encoded photo, data URL prefix allowed
    image_base64: str = Field(min_length=1)


class PersonUpdate(BaseModel):
    """Editable fields of a person. The face embedding is immutable."""
    name: Optional[str] = Field(default=None, min_length=1)
    relation: Optional[str] = Field(default=None, min_length=1)


class Conversation(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    person_id: int
    raw_text: str
    summary: str
    date: datetime
    created_at: datetime


class ConversationCreate(BaseModel):
    """
    Input model for logging a conversation.
    With use_ai the summary is generated; otherwise it must be provided.
    """
    raw_text: str = Field(min_length=1)
    use_ai: bool = True
    summary: Optional[str] = None


class SummarizeRequest(BaseModel):
    text: str


class SummarizeResponse(BaseModel):
    summary: str


class Stats(BaseModel):
    total_people: int
    total_conversations: int
    recent_conversations: List[Conversation]


class OverlayPerson(BaseModel):
    """Identified person rendered beside the face."""
    id: int
    name: str
    relation: str
    last_conversation: str


class OverlayPosition(BaseModel):
    # Percentages of the frame
    x: float
    y: float


class OverlayState(BaseModel):
    """
    Outgoing AR overlay state.
    Pushed to the client every time the overlay animator redraws.
    """
    status: str
    tracking: bool
    position: OverlayPosition
    person: Optional[OverlayPerson] = None


class WebSocketMessage(BaseModel):
    """
    Generic WebSocket message wrapper.
    Supports different message types for extensibility.
    """
    type: str  # "frame", "overlay", "ping", "pong"
    data: Optional[dict] = None
