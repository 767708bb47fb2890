"""Tests for attaching resolved identities to meeting action items."""

from __future__ import annotations

import pytest

from src.identity.directory.schemas import (
    DirectoryService,
    ExternalUserRecord,
    MappingResult,
    NotFound,
    Resolved,
)
from src.identity.mapping.enrichment import (
    assign_action_owners,
    enrich_actions_with_assignees,
    find_email_for_assignee,
)
from src.identity.mapping.schemas import ProcessingResult, ProcessingStatus, ServiceMappings


def _resolved(user_id: str, email: str, name: str = "") -> Resolved:
    return Resolved(record=ExternalUserRecord(id=user_id, email=email, display_name=name))


@pytest.fixture
def result() -> ProcessingResult:
    return ProcessingResult(
        file_id="file-1",
        status=ProcessingStatus.COMPLETED,
        participants={"user1@example.com", "user2@example.com"},
        mappings=ServiceMappings(
            slack=MappingResult(
                service=DirectoryService.SLACK,
                by_email={
                    "user1@example.com": _resolved("U12345", "user1@example.com", "User One"),
                    "user2@example.com": _resolved("U67890", "user2@example.com", "User Two"),
                },
            ),
            notion=MappingResult(
                service=DirectoryService.NOTION,
                by_email={
                    "user1@example.com": _resolved("notion-user-1", "user1@example.com", "User One"),
                    "user2@example.com": NotFound(),
                },
            ),
        ),
    )


class TestFindEmailForAssignee:
    participants = ["user1@example.com", "user2@example.com"]

    def test_exact_match_is_case_insensitive(self):
        assert find_email_for_assignee("USER2@example.com", self.participants) == "user2@example.com"

    def test_partial_match_on_local_part(self):
        assert find_email_for_assignee("user1", self.participants) == "user1@example.com"
        assert find_email_for_assignee("user2 (PM)", self.participants) == "user2@example.com"

    def test_display_name_match(self):
        names = {"user1@example.com": "User One"}
        assert find_email_for_assignee("user one", self.participants, names) == "user1@example.com"

    def test_short_local_parts_are_ignored(self):
        participants = ["a@x.com", "@x.com", "user1@example.com"]
        assert find_email_for_assignee("Dana", participants) is None
        assert find_email_for_assignee("user1", participants) == "user1@example.com"

    def test_single_character_assignee_is_not_partial_matched(self):
        assert find_email_for_assignee("u", self.participants) is None

    @pytest.mark.parametrize("assignee", [None, "", "   ", "チーム"])
    def test_no_match(self, assignee):
        assert find_email_for_assignee(assignee, self.participants) is None


class TestEnrichActions:
    def test_enriches_matched_assignees(self, result):
        actions = [
            {"task": "Write notes", "assignee": "User One"},
            {"task": "Ship release", "assignee": "user2@example.com"},
            {"task": "Team retro", "assignee": "チーム"},
        ]

        enriched = enrich_actions_with_assignees(actions, result)

        assert enriched[0]["notion_user_id"] == "notion-user-1"
        assert enriched[0]["assignee_email"] == "user1@example.com"
        assert enriched[0]["slack_mention"] == "<@U12345>"
        assert enriched[1]["slack_user_id"] == "U67890"
        assert "notion_user_id" not in enriched[1]
        assert enriched[2] == actions[2]

    def test_inputs_are_not_mutated(self, result):
        actions = [{"task": "Write notes", "assignee": "user1"}]
        enrich_actions_with_assignees(actions, result)
        assert actions == [{"task": "Write notes", "assignee": "user1"}]

    @pytest.mark.parametrize("status", [ProcessingStatus.PARTIAL, ProcessingStatus.FAILED])
    def test_non_completed_result_is_ignored(self, result, status):
        actions = [{"task": "Write notes", "assignee": "user1"}]
        degraded = result.model_copy(update={"status": status})
        assert enrich_actions_with_assignees(actions, degraded) == actions


class TestAssignActionOwners:
    def test_marks_resolved_notion_users(self, result):
        actions = [
            {"task": "a", "assignee_email": "user1@example.com"},
            {"task": "b", "assignee_email": "user2@example.com"},
            {"task": "c"},
        ]

        owned = assign_action_owners(actions, result)

        assert owned[0]["notion_user_id"] == "notion-user-1"
        assert owned[0]["auto_assigned"] is True
        assert "auto_assigned" not in owned[1]
        assert owned[2] == {"task": "c"}
