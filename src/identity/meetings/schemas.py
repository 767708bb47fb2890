"""Pydantic v2 schemas for meeting identification."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class MeetingInfo(BaseModel):
    """Calendar event metadata for the meeting a transcript belongs to."""

    id: str
    summary: str = ""
    description: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    organizer: str | None = None
    attendees_count: int = 0
    location: str | None = None
    recurring: bool = False


class ParticipantLookup(BaseModel):
    """A matched meeting and the normalized emails of its attendees."""

    event: MeetingInfo
    participant_emails: set[str] = Field(default_factory=set)
