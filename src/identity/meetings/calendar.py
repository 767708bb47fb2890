"""Google Drive + Calendar meeting lookup via a service account.

Given the Drive ID of a meeting transcript or recording, finds the Calendar
event it belongs to and returns the attendee emails. Candidate events are
those within 24 hours of the file's creation time; the match is chosen by,
in order:

1. An event attachment whose fileId equals the file ID
2. An attachment URL / icon link containing the file ID
3. Time window (event start <= file created <= event end + 1h) plus a
   fuzzy title match against the title extracted from the file name;
   the event whose end is closest to the file creation wins.

Meeting rooms and other resources are excluded from the participants.
Any API failure is logged and reported as "no meeting found" so the
coordinator can continue with an empty participant set.
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta
from typing import Any

import structlog
from google.oauth2 import service_account
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from src.identity.meetings.schemas import MeetingInfo, ParticipantLookup

logger = structlog.get_logger(__name__)

DRIVE_SCOPES = ["https://www.googleapis.com/auth/drive.readonly"]
CALENDAR_SCOPES = ["https://www.googleapis.com/auth/calendar.readonly"]

SEARCH_WINDOW = timedelta(hours=24)
RECORDING_GRACE = timedelta(hours=1)

# Date prefixes and suffixes Drive/Meet put around meeting titles
_TITLE_PREFIXES = (
    re.compile(r"^\d{4}年\d{1,2}月\d{1,2}日[_\s]"),
    re.compile(r"^\d{4}[-/.]\d{1,2}[-/.]\d{1,2}[_\s-]+"),
)
_TITLE_SUFFIXES = (
    re.compile(r"\s*-\s*(Transcript|Recording|Gemini によるメモ|Notes by Gemini)\s*$", re.IGNORECASE),
    re.compile(r"\s*\(\d{4}-\d{2}-\d{2}[^)]*\)\s*$"),
)
_EXTENSION = re.compile(r"\.\w+$")


def parse_rfc3339(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def extract_meeting_title(file_name: str | None) -> str | None:
    """Strip date prefixes, Meet suffixes and the extension from a file name.

    "2025年1月15日_Release sync.txt" -> "Release sync"
    """
    if not file_name:
        return None
    title = _EXTENSION.sub("", file_name)
    for pattern in _TITLE_PREFIXES:
        title = pattern.sub("", title)
    for pattern in _TITLE_SUFFIXES:
        title = pattern.sub("", title)
    return title.strip() or None


def fuzzy_match(first: str | None, second: str | None) -> bool:
    """Whitespace/case-insensitive containment in either direction."""
    if not first or not second:
        return False
    a = re.sub(r"\s+", "", first.lower())
    b = re.sub(r"\s+", "", second.lower())
    return a in b or b in a


def participants_from_event(event: dict[str, Any]) -> set[str]:
    """Lower-cased attendee emails, excluding rooms and other resources."""
    return {
        attendee["email"].strip().lower()
        for attendee in event.get("attendees", [])
        if not attendee.get("resource") and attendee.get("email")
    }


def _event_start(event: dict[str, Any]) -> datetime | None:
    return parse_rfc3339((event.get("start") or {}).get("dateTime"))


def _event_end(event: dict[str, Any]) -> datetime | None:
    end = parse_rfc3339((event.get("end") or {}).get("dateTime"))
    if end is not None:
        return end
    start = _event_start(event)
    return start + timedelta(hours=1) if start else None


def match_by_attachment_id(events: list[dict[str, Any]], file_id: str) -> dict[str, Any] | None:
    for event in events:
        if any(att.get("fileId") == file_id for att in event.get("attachments", [])):
            return event
    return None


def match_by_attachment_url(events: list[dict[str, Any]], file_id: str) -> dict[str, Any] | None:
    for event in events:
        for att in event.get("attachments", []):
            if file_id in (att.get("fileUrl") or "") or file_id in (att.get("iconLink") or ""):
                return event
    return None


def match_by_time_and_title(
    events: list[dict[str, Any]],
    created_at: datetime,
    file_name: str | None,
) -> dict[str, Any] | None:
    title = extract_meeting_title(file_name)
    if not title:
        return None

    candidates = []
    for event in events:
        start = _event_start(event)
        end = _event_end(event)
        if start is None or end is None:
            continue
        if start <= created_at <= end + RECORDING_GRACE and fuzzy_match(event.get("summary"), title):
            candidates.append((abs((created_at - end).total_seconds()), event))

    if not candidates:
        return None
    return min(candidates, key=lambda pair: pair[0])[1]


def to_meeting_info(event: dict[str, Any]) -> MeetingInfo:
    start = event.get("start") or {}
    end = event.get("end") or {}
    return MeetingInfo(
        id=event["id"],
        summary=event.get("summary", ""),
        description=event.get("description"),
        start_time=parse_rfc3339(start.get("dateTime") or start.get("date")),
        end_time=parse_rfc3339(end.get("dateTime") or end.get("date")),
        organizer=(event.get("organizer") or {}).get("email"),
        attendees_count=len(event.get("attendees", [])),
        location=event.get("location"),
        recurring=event.get("recurringEventId") is not None,
    )


class GoogleMeetingLookup:
    """Match Drive transcript files to Calendar events.

    Args:
        service_account_info: Parsed service account key.
        calendar_id: Calendar to search (default: primary).
        delegated_user_email: Optional user to impersonate via domain-wide
            delegation.
        drive_service: Prebuilt Drive v3 resource (tests inject a mock).
        calendar_service: Prebuilt Calendar v3 resource.
    """

    def __init__(
        self,
        service_account_info: dict[str, Any] | None = None,
        calendar_id: str = "primary",
        delegated_user_email: str | None = None,
        drive_service: Any | None = None,
        calendar_service: Any | None = None,
    ) -> None:
        self._calendar_id = calendar_id
        if drive_service is None or calendar_service is None:
            if not service_account_info:
                raise ValueError("Service account credentials are required for meeting lookup")
            drive_service = drive_service or build(
                "drive", "v3",
                credentials=self._credentials(service_account_info, DRIVE_SCOPES, delegated_user_email),
                cache_discovery=False,
            )
            calendar_service = calendar_service or build(
                "calendar", "v3",
                credentials=self._credentials(service_account_info, CALENDAR_SCOPES, delegated_user_email),
                cache_discovery=False,
            )
        self._drive = drive_service
        self._calendar = calendar_service

    @staticmethod
    def _credentials(
        info: dict[str, Any],
        scopes: list[str],
        user_email: str | None,
    ) -> service_account.Credentials:
        credentials = service_account.Credentials.from_service_account_info(info, scopes=scopes)
        if user_email:
            credentials = credentials.with_subject(user_email)
        return credentials

    def _get_file(self, file_id: str) -> dict[str, Any] | None:
        try:
            return (
                self._drive.files()
                .get(fileId=file_id, fields="id,name,createdTime,mimeType,webViewLink")
                .execute()
            )
        except HttpError as exc:
            logger.warning("meeting_lookup.file_fetch_failed", file_id=file_id, error=str(exc))
            return None

    def _list_events(self, time_min: datetime, time_max: datetime) -> list[dict[str, Any]]:
        events: list[dict[str, Any]] = []
        params: dict[str, Any] = {
            "calendarId": self._calendar_id,
            "timeMin": time_min.isoformat(),
            "timeMax": time_max.isoformat(),
            "singleEvents": True,
            "orderBy": "startTime",
            "maxResults": 250,
        }
        while True:
            response = self._calendar.events().list(**params).execute()
            events.extend(response.get("items", []))
            page_token = response.get("nextPageToken")
            if not page_token:
                return events
            params["pageToken"] = page_token

    def find_meeting(self, file_id: str) -> tuple[dict[str, Any], dict[str, Any]] | None:
        """Return (event, file_info) for the meeting behind ``file_id``."""
        file_info = self._get_file(file_id)
        if not file_info:
            return None
        created_at = parse_rfc3339(file_info.get("createdTime"))
        if created_at is None:
            logger.warning("meeting_lookup.file_without_created_time", file_id=file_id)
            return None

        try:
            events = self._list_events(created_at - SEARCH_WINDOW, created_at + SEARCH_WINDOW)
        except HttpError as exc:
            logger.warning("meeting_lookup.event_list_failed", file_id=file_id, error=str(exc))
            return None

        event = (
            match_by_attachment_id(events, file_id)
            or match_by_attachment_url(events, file_id)
            or match_by_time_and_title(events, created_at, file_info.get("name"))
        )
        if event is None:
            logger.info("meeting_lookup.no_match", file_id=file_id, candidates=len(events))
            return None
        return event, file_info

    def find_participants(self, file_id: str) -> ParticipantLookup | None:
        match = self.find_meeting(file_id)
        if match is None:
            return None
        event, _file_info = match
        participants = participants_from_event(event)
        logger.info(
            "meeting_lookup.matched",
            file_id=file_id,
            event_id=event.get("id"),
            participants=len(participants),
        )
        return ParticipantLookup(event=to_meeting_info(event), participant_emails=participants)
