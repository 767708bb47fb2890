"""Pydantic v2 schemas for directory lookups.

Every directory produces the same ``ExternalUserRecord`` envelope, and every
per-email lookup ends in exactly one tagged outcome: ``Resolved``,
``NotFound`` or ``LookupFailed``. ``MappingResult`` keeps an entry for every
requested email so callers can report what could not be mapped.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


# ── Enums ────────────────────────────────────────────────────────────────────


class DirectoryService(str, Enum):
    """External identity directories a participant can be resolved in."""

    SLACK = "slack"
    NOTION = "notion"

    @property
    def label(self) -> str:
        return self.value.capitalize()


class FailureKind(str, Enum):
    """Why a single lookup could not be completed."""

    RATE_LIMITED = "rate_limited"
    UNAVAILABLE = "unavailable"
    CANCELLED = "cancelled"
    INVALID_EMAIL = "invalid_email"
    UNKNOWN = "unknown"


# ── Records ──────────────────────────────────────────────────────────────────


class ExternalUserRecord(BaseModel):
    """A user as reported by one external directory. Immutable."""

    model_config = ConfigDict(frozen=True)

    id: str
    display_name: str = ""
    email: str
    raw: dict[str, Any] = Field(default_factory=dict)


# ── Tagged Lookup Outcomes ───────────────────────────────────────────────────


class Resolved(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: Literal["resolved"] = "resolved"
    record: ExternalUserRecord


class NotFound(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: Literal["not_found"] = "not_found"


class LookupFailed(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: Literal["failed"] = "failed"
    reason: str
    kind: FailureKind = FailureKind.UNKNOWN


LookupOutcome = Annotated[
    Union[Resolved, NotFound, LookupFailed],
    Field(discriminator="status"),
]


# ── Mapping Result ───────────────────────────────────────────────────────────


class MappingResult(BaseModel):
    """Outcome of resolving a participant set against one directory."""

    service: DirectoryService
    by_email: dict[str, LookupOutcome] = Field(default_factory=dict)

    def record_for(self, email: str) -> ExternalUserRecord | None:
        outcome = self.by_email.get(email.lower())
        if isinstance(outcome, Resolved):
            return outcome.record
        return None

    def resolved(self) -> dict[str, ExternalUserRecord]:
        return {
            email: outcome.record
            for email, outcome in self.by_email.items()
            if isinstance(outcome, Resolved)
        }

    def unresolved(self) -> list[str]:
        return sorted(
            email for email, outcome in self.by_email.items()
            if not isinstance(outcome, Resolved)
        )

    def failures(self) -> dict[str, LookupFailed]:
        return {
            email: outcome
            for email, outcome in self.by_email.items()
            if isinstance(outcome, LookupFailed)
        }


# ── Notion Task Assignment ───────────────────────────────────────────────────


class AssigneeUpdate(BaseModel):
    """Result of setting the assignee on one Notion task page."""

    page_id: str
    email: str | None = None
    user_id: str | None = None
    success: bool
    error: str | None = None
