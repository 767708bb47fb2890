"""Pydantic v2 schemas for one identity resolution request and statistics."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from src.identity.directory.schemas import DirectoryService, MappingResult, Resolved
from src.identity.meetings.schemas import MeetingInfo


class ProcessingStatus(str, Enum):
    """Coordinator state. Everything but PROCESSING is terminal."""

    PROCESSING = "processing"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"


class ServiceMappings(BaseModel):
    slack: MappingResult = Field(default_factory=lambda: MappingResult(service=DirectoryService.SLACK))
    notion: MappingResult = Field(default_factory=lambda: MappingResult(service=DirectoryService.NOTION))

    def for_service(self, service: DirectoryService) -> MappingResult:
        return self.slack if service == DirectoryService.SLACK else self.notion


class ProcessingResult(BaseModel):
    """Frozen outcome of one ``resolve`` call."""

    model_config = ConfigDict(frozen=True)

    file_id: str | None = None
    status: ProcessingStatus
    meeting: MeetingInfo | None = None
    participants: set[str] = Field(default_factory=set)
    mappings: ServiceMappings = Field(default_factory=ServiceMappings)
    warnings: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    elapsed_seconds: float = 0.0

    def resolved_counts(self) -> dict[str, int]:
        return {
            DirectoryService.SLACK.value: len(self.mappings.slack.resolved()),
            DirectoryService.NOTION.value: len(self.mappings.notion.resolved()),
        }

    def unmapped_users(self) -> dict[str, list[str]]:
        """Participants not resolved everywhere -> services that missed them."""
        unmapped: dict[str, list[str]] = {}
        for email in sorted(self.participants):
            missing = [
                service.label
                for service in DirectoryService
                if not isinstance(self.mappings.for_service(service).by_email.get(email), Resolved)
            ]
            if missing:
                unmapped[email] = missing
        return unmapped


class StatisticsSnapshot(BaseModel):
    """Point-in-time view of the coordinator's running counters."""

    total_processed: int = 0
    successful: int = 0
    failed: int = 0
    success_rate: float = 0.0
    average_processing_time: float = 0.0
    cumulative_time: float = 0.0
