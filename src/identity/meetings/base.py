"""Meeting lookup interface consumed by the coordinator."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from src.identity.meetings.schemas import ParticipantLookup


@runtime_checkable
class MeetingLookup(Protocol):
    """Find the meeting behind a transcript file and its participants."""

    def find_participants(self, file_id: str) -> ParticipantLookup | None:
        """Return the matched meeting, or None when no meeting is found."""
        ...
