"""Directory resolver abstract base class and error taxonomy.

Every external directory (Slack, Notion) implements ``DirectoryResolver``.
The base class owns the parts both directories share: email normalization,
the two-tier cache (per-email outcomes plus the whole prefetched directory),
cursor pagination for the prefetch strategy, cooperative cancellation, and
``batch_lookup`` which turns per-email errors into tagged outcomes.

Error taxonomy:
- ``TransientLookupError`` / ``RateLimitedError``: one email could not be
  looked up after retries. Downgraded to ``LookupFailed`` for that email.
- ``DirectoryAuthError`` / ``DirectoryFetchError``: the directory as a whole
  is unusable. ``batch_lookup`` re-raises so the coordinator can record a
  warning for this service while keeping the other service's results.
- ``ResolutionCancelled``: the caller gave up waiting; remaining work is
  abandoned.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections.abc import Iterable
from typing import Any

import structlog

from src.identity.core.cache import MISSING, TTLCache
from src.identity.core.monitoring import directory_lookups_total
from src.identity.directory.schemas import (
    DirectoryService,
    ExternalUserRecord,
    FailureKind,
    LookupFailed,
    LookupOutcome,
    MappingResult,
    NotFound,
    Resolved,
)

logger = structlog.get_logger(__name__)

DIRECTORY_CACHE_KEY = "directory"


# ── Errors ───────────────────────────────────────────────────────────────────


class DirectoryError(Exception):
    """Base class for directory failures."""

    def __init__(self, service: DirectoryService, message: str) -> None:
        super().__init__(message)
        self.service = service
        self.message = message


class DirectoryAuthError(DirectoryError):
    """Credentials missing, invalid or revoked. Affects the whole directory."""


class DirectoryFetchError(DirectoryError):
    """A directory listing could not be completed. Affects the whole directory."""

    def __init__(
        self,
        service: DirectoryService,
        message: str,
        pages_fetched: int = 0,
        records_indexed: int = 0,
    ) -> None:
        super().__init__(service, message)
        self.pages_fetched = pages_fetched
        self.records_indexed = records_indexed


class TransientLookupError(DirectoryError):
    """Network, timeout or 5xx failure that outlasted the retry budget."""


class RateLimitedError(TransientLookupError):
    """The API kept answering 429 / rate_limited after bounded retries."""

    def __init__(
        self,
        service: DirectoryService,
        message: str,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(service, message)
        self.retry_after = retry_after


class ResolutionCancelled(DirectoryError):
    """Cooperative cancellation was requested by the coordinator."""


def normalize_email(email: str) -> str:
    return email.strip().lower()


def is_plausible_email(email: str) -> bool:
    local, sep, domain = email.partition("@")
    return bool(sep and local and domain and "@" not in domain)


# ── Resolver ─────────────────────────────────────────────────────────────────


class DirectoryResolver(ABC):
    """Resolve participant emails to user records in one external directory.

    Subclasses provide the directory-specific pieces:
        _lookup_uncached: Point lookup of one email against the API.
        _fetch_page: One page of the full user listing.
        _to_record: Convert a raw API user into an ExternalUserRecord, or
            None when the user has no usable email.

    Args:
        lookup_cache: Per-email outcome cache (Resolved and NotFound only).
        directory_cache: Holds the whole prefetched email index.
    """

    service: DirectoryService

    def __init__(
        self,
        lookup_cache: TTLCache[LookupOutcome],
        directory_cache: TTLCache[dict[str, ExternalUserRecord]],
    ) -> None:
        self._lookup_cache = lookup_cache
        self._directory_cache = directory_cache

    # ── Directory-specific hooks ─────────────────────────────────────────

    @abstractmethod
    def _lookup_uncached(
        self, email: str, cancel: threading.Event | None
    ) -> LookupOutcome:
        """Resolve one normalized email without consulting the cache."""
        ...

    @abstractmethod
    def _fetch_page(self, cursor: str | None) -> tuple[list[dict[str, Any]], str | None]:
        """Fetch one page of users. Returns (raw_users, next_cursor)."""
        ...

    @abstractmethod
    def _to_record(self, raw: dict[str, Any]) -> ExternalUserRecord | None:
        """Convert a raw API user to a record; None if it has no email."""
        ...

    # ── Shared behaviour ─────────────────────────────────────────────────

    def _check_cancelled(self, cancel: threading.Event | None) -> None:
        if cancel is not None and cancel.is_set():
            raise ResolutionCancelled(self.service, f"{self.service.label} resolution cancelled")

    def lookup(self, email: str, cancel: threading.Event | None = None) -> LookupOutcome:
        """Resolve one email, serving from cache when possible.

        Resolved and NotFound outcomes are cached; failures are not, so a
        later call retries them.
        """
        email = normalize_email(email)
        if not is_plausible_email(email):
            return LookupFailed(reason=f"Invalid email address: {email!r}", kind=FailureKind.INVALID_EMAIL)

        cached = self._lookup_cache.get(email, MISSING)
        if cached is not MISSING:
            logger.debug("directory.lookup_cache_hit", service=self.service.value, email=email)
            return cached

        self._check_cancelled(cancel)
        outcome = self._lookup_uncached(email, cancel)
        if isinstance(outcome, (Resolved, NotFound)):
            self._lookup_cache.set(email, outcome)
        return outcome

    def _lookup_from_directory(
        self, email: str, cancel: threading.Event | None
    ) -> LookupOutcome:
        """Point lookup served from the prefetched directory index."""
        record = self.prefetch(cancel).get(email)
        return Resolved(record=record) if record is not None else NotFound()

    def prefetch(self, cancel: threading.Event | None = None) -> dict[str, ExternalUserRecord]:
        """List the whole directory and index it by lower-cased email.

        The index is cached under the coarse directory TTL. Records without
        an email are skipped; duplicate emails resolve last-write-wins.

        Raises:
            DirectoryFetchError: A page failed; the partial index is discarded.
            DirectoryAuthError: Credentials were rejected.
            ResolutionCancelled: Cancellation was requested between pages.
        """
        cached = self._directory_cache.get(DIRECTORY_CACHE_KEY)
        if cached is not None:
            return cached

        index: dict[str, ExternalUserRecord] = {}
        cursor: str | None = None
        pages = 0
        skipped = 0

        while True:
            self._check_cancelled(cancel)
            try:
                raw_users, cursor = self._fetch_page(cursor)
            except (DirectoryAuthError, DirectoryFetchError):
                raise
            except DirectoryError as exc:
                raise DirectoryFetchError(
                    self.service,
                    f"{self.service.label} directory listing failed on page {pages + 1}: {exc.message}",
                    pages_fetched=pages,
                    records_indexed=len(index),
                ) from exc
            pages += 1

            for raw in raw_users:
                record = self._to_record(raw) if isinstance(raw, dict) else None
                if record is None:
                    skipped += 1
                    continue
                index[record.email] = record

            if not cursor:
                break

        self._directory_cache.set(DIRECTORY_CACHE_KEY, index)
        logger.info(
            "directory.prefetched",
            service=self.service.value,
            pages=pages,
            users=len(index),
            skipped=skipped,
        )
        return index

    def batch_lookup(
        self,
        emails: Iterable[str],
        cancel: threading.Event | None = None,
    ) -> MappingResult:
        """Resolve every email, recording an outcome for each one.

        Per-email transient failures become ``LookupFailed`` entries.
        Directory-wide failures and cancellation propagate.
        """
        result = MappingResult(service=self.service)
        for email in sorted({normalize_email(e) for e in emails if e and e.strip()}):
            try:
                outcome = self.lookup(email, cancel)
            except RateLimitedError as exc:
                outcome = LookupFailed(reason=exc.message, kind=FailureKind.RATE_LIMITED)
            except TransientLookupError as exc:
                outcome = LookupFailed(reason=exc.message, kind=FailureKind.UNAVAILABLE)

            result.by_email[email] = outcome
            directory_lookups_total.labels(service=self.service.value, outcome=outcome.status).inc()

        resolved = len(result.resolved())
        logger.info(
            "directory.batch_lookup_complete",
            service=self.service.value,
            requested=len(result.by_email),
            resolved=resolved,
            unresolved=len(result.by_email) - resolved,
        )
        return result

    def clear_cache(self) -> None:
        self._lookup_cache.clear()
        self._directory_cache.clear()

    def refresh_cache(self) -> int:
        """Drop expired entries from both caches. Returns entries removed."""
        return self._lookup_cache.sweep() + self._directory_cache.sweep()
