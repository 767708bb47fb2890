"""Attach resolved identities to meeting action items.

Actions are plain dicts as produced by the transcript analyzer, e.g.
``{"task": "Ship release notes", "assignee": "alice"}``. Inputs are never
mutated; enriched copies are returned.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

import structlog

from src.identity.directory.slack import SlackDirectoryResolver
from src.identity.mapping.schemas import ProcessingResult, ProcessingStatus

logger = structlog.get_logger(__name__)

# Minimum fragment length for containment matching.
MIN_PARTIAL_LENGTH = 2


def find_email_for_assignee(
    assignee: str | None,
    participants: Iterable[str],
    display_names: dict[str, str] | None = None,
) -> str | None:
    """Match a free-text assignee against participant emails.

    Tries, case-insensitively: exact email, then containment either way
    (``"bob"`` matches ``bob@x.com``; ``"bob.k"`` contains the local part
    ``bob``), then a resolved display name. Containment ignores fragments
    shorter than ``MIN_PARTIAL_LENGTH`` on either side.
    """
    if not assignee or not assignee.strip():
        return None
    needle = assignee.strip().lower()
    candidates = sorted(p for p in participants if p)

    for email in candidates:
        if email.lower() == needle:
            return email

    for email in candidates:
        lowered = email.lower()
        local = lowered.split("@", 1)[0]
        if len(needle) >= MIN_PARTIAL_LENGTH and needle in lowered:
            return email
        if len(local) >= MIN_PARTIAL_LENGTH and local in needle:
            return email

    for email, name in sorted((display_names or {}).items()):
        if name and name.strip().lower() == needle:
            return email
    return None


def _display_names(result: ProcessingResult) -> dict[str, str]:
    names: dict[str, str] = {}
    for mapping in (result.mappings.notion, result.mappings.slack):
        for email, record in mapping.resolved().items():
            if record.display_name:
                names.setdefault(email, record.display_name)
    return names


def enrich_actions_with_assignees(
    actions: list[dict[str, Any]],
    result: ProcessingResult,
) -> list[dict[str, Any]]:
    """Add Notion/Slack identities for each action's assignee.

    Only a COMPLETED result is used; anything else returns the actions
    unchanged. Sets ``assignee_email`` and ``notion_user_id`` when the
    assignee resolves in Notion, ``slack_user_id`` and ``slack_mention``
    when they resolve in Slack.
    """
    if result.status != ProcessingStatus.COMPLETED:
        logger.info("enrichment.skipped", status=result.status.value)
        return [dict(action) for action in actions]

    names = _display_names(result)
    enriched: list[dict[str, Any]] = []
    matched = 0

    for action in actions:
        action = dict(action)
        enriched.append(action)
        email = find_email_for_assignee(action.get("assignee"), result.participants, names)
        if email is None:
            continue

        notion_record = result.mappings.notion.record_for(email)
        if notion_record is not None:
            action["notion_user_id"] = notion_record.id
            action["assignee_email"] = email

        slack_record = result.mappings.slack.record_for(email)
        if slack_record is not None:
            action["slack_user_id"] = slack_record.id
            action["slack_mention"] = SlackDirectoryResolver.generate_mention(slack_record.id)

        if notion_record is not None or slack_record is not None:
            matched += 1

    logger.info("enrichment.completed", actions=len(enriched), matched=matched)
    return enriched


def assign_action_owners(
    actions: list[dict[str, Any]],
    result: ProcessingResult,
) -> list[dict[str, Any]]:
    """Mark actions whose ``assignee_email`` is a resolved Notion user as auto-assigned."""
    owned: list[dict[str, Any]] = []
    for action in actions:
        action = dict(action)
        email = action.get("assignee_email")
        record = result.mappings.notion.record_for(email) if email else None
        if record is not None:
            action["notion_user_id"] = record.id
            action["auto_assigned"] = True
        owned.append(action)
    return owned
