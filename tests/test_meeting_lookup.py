"""Tests for Drive/Calendar meeting lookup.

Drive and Calendar resources are MagicMocks shaped like googleapiclient
resources (``files().get(...).execute()``). Covers title extraction, the
three matching strategies in priority order, resource exclusion, and
error handling.
"""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
from googleapiclient.errors import HttpError

from src.identity.meetings.base import MeetingLookup
from src.identity.meetings.calendar import (
    GoogleMeetingLookup,
    extract_meeting_title,
    fuzzy_match,
    match_by_time_and_title,
    participants_from_event,
)


# ── Fixtures ─────────────────────────────────────────────────────────────────


FILE_INFO = {
    "id": "file-123",
    "name": "2025年1月15日_Release sync.txt",
    "createdTime": "2025-01-15T10:40:00Z",
}


def _event(
    event_id: str,
    summary: str,
    start: str = "2025-01-15T10:00:00Z",
    end: str = "2025-01-15T10:30:00Z",
    attendees: list[dict] | None = None,
    attachments: list[dict] | None = None,
) -> dict:
    return {
        "id": event_id,
        "summary": summary,
        "start": {"dateTime": start},
        "end": {"dateTime": end},
        "organizer": {"email": "alice@x.com"},
        "attendees": attendees if attendees is not None else [
            {"email": "Alice@X.com"},
            {"email": "bob@x.com"},
            {"email": "room-1@resource.calendar.google.com", "resource": True},
        ],
        "attachments": attachments or [],
    }


def _http_error(status: int = 404) -> HttpError:
    return HttpError(MagicMock(status=status, reason="error"), b"{}")


def _make_services(file_info: dict | Exception, *event_pages: dict) -> tuple[MagicMock, MagicMock]:
    drive = MagicMock()
    if isinstance(file_info, Exception):
        drive.files.return_value.get.return_value.execute.side_effect = file_info
    else:
        drive.files.return_value.get.return_value.execute.return_value = file_info

    calendar = MagicMock()
    calendar.events.return_value.list.return_value.execute.side_effect = list(event_pages)
    return drive, calendar


def _lookup(drive: MagicMock, calendar: MagicMock) -> GoogleMeetingLookup:
    return GoogleMeetingLookup(drive_service=drive, calendar_service=calendar)


# ── Helpers ──────────────────────────────────────────────────────────────────


class TestTitleHelpers:
    @pytest.mark.parametrize(
        "file_name,expected",
        [
            ("2025年1月15日_Release sync.txt", "Release sync"),
            ("2025-01-15 Weekly planning.docx", "Weekly planning"),
            ("Design review (2025-01-15 10:00 JST) - Transcript", "Design review"),
            ("Standup - Recording.mp4", "Standup"),
            ("", None),
        ],
    )
    def test_extract_meeting_title(self, file_name, expected):
        assert extract_meeting_title(file_name) == expected

    def test_fuzzy_match_ignores_case_and_whitespace(self):
        assert fuzzy_match("Release Sync", "releasesync")
        assert fuzzy_match("Weekly Release Sync", "release sync")
        assert not fuzzy_match("Release sync", "Budget review")
        assert not fuzzy_match(None, "x")

    def test_participants_exclude_resources_and_lowercase(self):
        assert participants_from_event(_event("e1", "x")) == {"alice@x.com", "bob@x.com"}

    def test_time_match_prefers_closest_end(self):
        created = datetime(2025, 1, 15, 10, 40, tzinfo=timezone.utc)
        early = _event("early", "Release sync", start="2025-01-15T09:00:00Z", end="2025-01-15T09:50:00Z")
        late = _event("late", "Release sync", start="2025-01-15T10:00:00Z", end="2025-01-15T10:30:00Z")
        other = _event("other", "Budget", start="2025-01-15T10:00:00Z", end="2025-01-15T10:45:00Z")

        assert match_by_time_and_title([early, late, other], created, "Release sync.txt")["id"] == "late"

    def test_time_match_requires_window(self):
        created = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)
        event = _event("e1", "Release sync", end="2025-01-15T10:30:00Z")
        assert match_by_time_and_title([event], created, "Release sync") is None


# ── GoogleMeetingLookup ──────────────────────────────────────────────────────


class TestGoogleMeetingLookup:
    def test_satisfies_protocol(self):
        drive, calendar = _make_services(FILE_INFO)
        assert isinstance(_lookup(drive, calendar), MeetingLookup)

    def test_attachment_id_match_wins(self):
        by_title = _event("by-title", "Release sync")
        by_attachment = _event(
            "by-attachment", "Unrelated", attachments=[{"fileId": "file-123"}],
            attendees=[{"email": "carol@x.com"}],
        )
        drive, calendar = _make_services(FILE_INFO, {"items": [by_title, by_attachment]})

        found = _lookup(drive, calendar).find_participants("file-123")

        assert found.event.id == "by-attachment"
        assert found.participant_emails == {"carol@x.com"}

    def test_attachment_url_match(self):
        event = _event(
            "by-url", "Unrelated",
            attachments=[{"fileUrl": "https://drive.google.com/file/d/file-123/view"}],
        )
        drive, calendar = _make_services(FILE_INFO, {"items": [event]})
        assert _lookup(drive, calendar).find_participants("file-123").event.id == "by-url"

    def test_time_and_title_match_across_pages(self):
        drive, calendar = _make_services(
            FILE_INFO,
            {"items": [_event("other", "Budget")], "nextPageToken": "p2"},
            {"items": [_event("sync", "Release sync")]},
        )

        found = _lookup(drive, calendar).find_participants("file-123")

        assert found.event.id == "sync"
        assert found.event.organizer == "alice@x.com"
        assert found.event.attendees_count == 3
        assert found.participant_emails == {"alice@x.com", "bob@x.com"}
        second_call = calendar.events.return_value.list.call_args_list[1]
        assert second_call.kwargs["pageToken"] == "p2"
        assert "pageToken" not in calendar.events.return_value.list.call_args_list[0].kwargs

    def test_no_match_returns_none(self):
        drive, calendar = _make_services(FILE_INFO, {"items": [_event("other", "Budget")]})
        assert _lookup(drive, calendar).find_participants("file-123") is None

    def test_drive_error_returns_none(self):
        drive, calendar = _make_services(_http_error())
        assert _lookup(drive, calendar).find_participants("file-123") is None
        calendar.events.assert_not_called()

    def test_calendar_error_returns_none(self):
        drive, calendar = _make_services(FILE_INFO)
        calendar.events.return_value.list.return_value.execute.side_effect = _http_error(500)
        assert _lookup(drive, calendar).find_participants("file-123") is None

    def test_requires_credentials_without_injected_services(self):
        with pytest.raises(ValueError):
            GoogleMeetingLookup()

    def test_builds_services_with_service_account(self):
        with patch("src.identity.meetings.calendar.service_account.Credentials") as creds_cls, \
                patch("src.identity.meetings.calendar.build") as build_fn:
            creds = MagicMock()
            creds.with_subject.return_value = creds
            creds_cls.from_service_account_info.return_value = creds

            GoogleMeetingLookup({"type": "service_account"}, delegated_user_email="admin@x.com")

        assert [c.args[:2] for c in build_fn.call_args_list] == [("drive", "v3"), ("calendar", "v3")]
        creds.with_subject.assert_called_with("admin@x.com")
