"""Identity resolution coordination.

IdentityResolutionCoordinator runs participant discovery and the Slack and
Notion resolvers under one timeout, classifies the outcome, and keeps
process-wide statistics. The enrichment helpers attach the resolved
identities to meeting action items.
"""

from src.identity.mapping.coordinator import IdentityResolutionCoordinator, build_coordinator
from src.identity.mapping.enrichment import (
    assign_action_owners,
    enrich_actions_with_assignees,
    find_email_for_assignee,
)
from src.identity.mapping.schemas import (
    ProcessingResult,
    ProcessingStatus,
    ServiceMappings,
    StatisticsSnapshot,
)
from src.identity.mapping.statistics import ProcessingStatistics

__all__ = [
    "IdentityResolutionCoordinator",
    "ProcessingResult",
    "ProcessingStatistics",
    "ProcessingStatus",
    "ServiceMappings",
    "StatisticsSnapshot",
    "assign_action_owners",
    "build_coordinator",
    "enrich_actions_with_assignees",
    "find_email_for_assignee",
]
