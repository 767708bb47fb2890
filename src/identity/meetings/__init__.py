"""Meeting identification -- find the calendar event behind a transcript file.

Supplies the participant set the coordinator resolves. The GoogleMeetingLookup
implementation matches a Drive recording/transcript file to a Calendar event;
any object with ``find_participants(file_id)`` can stand in for it.
"""

from src.identity.meetings.base import MeetingLookup
from src.identity.meetings.schemas import MeetingInfo, ParticipantLookup

__all__ = ["MeetingInfo", "MeetingLookup", "ParticipantLookup"]
