"""Directory resolvers -- map participant emails to external user records.

Provides the abstract DirectoryResolver with concrete implementations:
- SlackDirectoryResolver: users.lookupByEmail point lookups or users.list prefetch
- NotionDirectoryResolver: workspace users.list prefetch (no email endpoint)

Both return the same ExternalUserRecord envelope and tagged per-email
outcomes (Resolved / NotFound / LookupFailed).
"""

from src.identity.directory.base import (
    DirectoryAuthError,
    DirectoryError,
    DirectoryFetchError,
    DirectoryResolver,
    RateLimitedError,
    ResolutionCancelled,
    TransientLookupError,
)
from src.identity.directory.notion import NotionDirectoryResolver
from src.identity.directory.schemas import (
    AssigneeUpdate,
    DirectoryService,
    ExternalUserRecord,
    FailureKind,
    LookupFailed,
    MappingResult,
    NotFound,
    Resolved,
)
from src.identity.directory.slack import SlackDirectoryResolver, SlackWebClient

__all__ = [
    "AssigneeUpdate",
    "DirectoryAuthError",
    "DirectoryError",
    "DirectoryFetchError",
    "DirectoryResolver",
    "DirectoryService",
    "ExternalUserRecord",
    "FailureKind",
    "LookupFailed",
    "MappingResult",
    "NotFound",
    "NotionDirectoryResolver",
    "RateLimitedError",
    "Resolved",
    "ResolutionCancelled",
    "SlackDirectoryResolver",
    "SlackWebClient",
    "TransientLookupError",
]
