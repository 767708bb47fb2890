"""IdentityResolutionCoordinator -- resolve a meeting's participants in Slack and Notion.

State machine per request: ``processing -> completed | partial | failed``.

Flow:
1. Discover participants through the MeetingLookup (optional; an empty or
   missing meeting yields a warning and an empty participant set).
2. Submit the Slack and Notion batch lookups to the worker pool concurrently.
3. Wait for both under one wall-clock budget (MAPPING_TIMEOUT, 60s) that
   covers discovery and resolution together.
4. Classify, update statistics, log a summary with unmapped users.

Terminal states:
- completed: every configured resolver returned (unresolved emails are
  recorded as NotFound/LookupFailed, not as a processing failure).
- partial: timeout, one resolver failed directory-wide (auth or listing), or
  an unexpected exception anywhere, including inside a resolver. Identity
  mapping is enrichment, so the meeting workflow keeps going with whatever
  was available.
- failed: there were participants and every configured resolver failed
  directory-wide.

The timeout bounds the wait, not the work. When it fires the cancel event is
set; resolvers stop before their next API call, but a request already in
flight runs to completion (bounded by API_TIMEOUT) on its worker thread.

``resolve`` never raises.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterable
from concurrent.futures import FIRST_EXCEPTION, Future, wait
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field

import structlog
from notion_client import Client as NotionClient

from src.identity.config import Settings
from src.identity.core.cache import TTLCache
from src.identity.core.executor import ConcurrencyExecutor
from src.identity.core.logging import configure_structlog, truncated_traceback
from src.identity.core.monitoring import (
    identity_resolution_duration_seconds,
    identity_resolutions_total,
)
from src.identity.core.rate_limiter import RateLimiter
from src.identity.directory.base import (
    DirectoryAuthError,
    DirectoryError,
    DirectoryFetchError,
    DirectoryResolver,
    normalize_email,
)
from src.identity.directory.notion import NotionDirectoryResolver
from src.identity.directory.schemas import DirectoryService, MappingResult
from src.identity.directory.slack import SlackDirectoryResolver, SlackWebClient
from src.identity.mapping.schemas import (
    ProcessingResult,
    ProcessingStatus,
    ServiceMappings,
    StatisticsSnapshot,
)
from src.identity.mapping.statistics import ProcessingStatistics
from src.identity.meetings.base import MeetingLookup
from src.identity.meetings.calendar import GoogleMeetingLookup
from src.identity.meetings.schemas import MeetingInfo

logger = structlog.get_logger(__name__)

TIMEOUT_WARNING = "Some user mappings may be incomplete due to timeout"
UNAVAILABLE_WARNING = "User mapping unavailable, continuing without it"


class MappingTimeout(Exception):
    """The request's wall-clock budget ran out."""


@dataclass
class _RequestState:
    """Mutable working state for one request; never leaves the coordinator."""

    file_id: str | None
    meeting: MeetingInfo | None = None
    participants: set[str] = field(default_factory=set)
    mappings: dict[DirectoryService, MappingResult] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


class IdentityResolutionCoordinator:
    """Orchestrates participant discovery and both directory resolutions.

    Args:
        settings: Feature flags, pool sizing and timeouts.
        slack_resolver: Slack directory resolver, or None if not configured.
        notion_resolver: Notion directory resolver, or None if not configured.
        meeting_lookup: Participant discovery collaborator (optional).
        executor: Pool for the per-request directory lookups.
        batch_executor: Pool for ``batch_resolve`` (one task per transcript).
            Kept separate from ``executor`` so a request never waits on
            lookups queued behind other requests in its own pool.
        clock: Monotonic time source.
    """

    def __init__(
        self,
        settings: Settings,
        slack_resolver: DirectoryResolver | None = None,
        notion_resolver: DirectoryResolver | None = None,
        meeting_lookup: MeetingLookup | None = None,
        executor: ConcurrencyExecutor | None = None,
        batch_executor: ConcurrencyExecutor | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings
        self._resolvers: dict[DirectoryService, DirectoryResolver | None] = {
            DirectoryService.SLACK: slack_resolver,
            DirectoryService.NOTION: notion_resolver,
        }
        self._meeting_lookup = meeting_lookup
        self._executor = executor or ConcurrencyExecutor(
            min_threads=settings.MIN_THREADS,
            max_threads=settings.MAX_THREADS,
            max_queue=settings.MAX_QUEUE,
            enabled=settings.PARALLEL_PROCESSING,
            name="identity-lookup",
        )
        self._batch_executor = batch_executor or ConcurrencyExecutor(
            min_threads=settings.MIN_THREADS,
            max_threads=settings.MAX_THREADS,
            max_queue=settings.MAX_QUEUE,
            enabled=settings.PARALLEL_PROCESSING,
            name="identity-batch",
        )
        self._timeout = settings.MAPPING_TIMEOUT
        self._clock = clock
        self._statistics = ProcessingStatistics()

    # ── Public API ───────────────────────────────────────────────────────

    def resolve(self, file_id: str) -> ProcessingResult:
        """Discover the meeting behind ``file_id`` and resolve its participants."""
        return self._run(file_id, participants=None)

    def resolve_participants(
        self,
        emails: Iterable[str],
        file_id: str | None = None,
    ) -> ProcessingResult:
        """Resolve a known participant list, skipping meeting discovery."""
        return self._run(file_id, participants=list(emails))

    def batch_resolve(self, file_ids: Iterable[str]) -> dict[str, ProcessingResult]:
        """Resolve several transcripts concurrently, each with its own timeout."""
        unique_ids = list(dict.fromkeys(file_ids))
        futures = {file_id: self._batch_executor.submit(self.resolve, file_id) for file_id in unique_ids}
        return {file_id: future.result() for file_id, future in futures.items()}

    def get_statistics(self) -> StatisticsSnapshot:
        return self._statistics.snapshot()

    def reset_statistics(self) -> None:
        self._statistics.reset()

    def close(self) -> None:
        """Stop both pools without waiting on abandoned lookups."""
        self._batch_executor.shutdown(wait=False, cancel_futures=True)
        self._executor.shutdown(wait=False, cancel_futures=True)

    # ── Request lifecycle ────────────────────────────────────────────────

    def _run(self, file_id: str | None, participants: list[str] | None) -> ProcessingResult:
        start = self._clock()
        deadline = start + self._timeout
        cancel = threading.Event()
        state = _RequestState(file_id=file_id)
        log = logger.bind(file_id=file_id)
        log.info("identity_mapping.started")

        try:
            status = self._execute(state, participants, deadline, cancel)
        except MappingTimeout:
            cancel.set()
            status = ProcessingStatus.PARTIAL
            log.error("identity_mapping.timeout", timeout_seconds=self._timeout)
            state.errors.append(f"Timeout during user mapping after {self._timeout:g} seconds")
            state.warnings.append(TIMEOUT_WARNING)
        except Exception as exc:
            cancel.set()
            status = ProcessingStatus.PARTIAL
            log.error(
                "identity_mapping.unexpected_error",
                error=str(exc),
                error_type=type(exc).__name__,
                traceback=truncated_traceback(exc),
            )
            state.errors.append(str(exc) or type(exc).__name__)
            state.warnings.append(UNAVAILABLE_WARNING)

        elapsed = self._clock() - start
        result = ProcessingResult(
            file_id=file_id,
            status=status,
            meeting=state.meeting,
            participants=set(state.participants),
            mappings=ServiceMappings(
                **{service.value: mapping for service, mapping in state.mappings.items()}
            ),
            warnings=list(state.warnings),
            errors=list(state.errors),
            elapsed_seconds=round(elapsed, 3),
        )

        self._statistics.record(status, elapsed)
        identity_resolutions_total.labels(status=status.value).inc()
        identity_resolution_duration_seconds.observe(elapsed)
        self._log_summary(result)
        return result

    def _remaining(self, deadline: float) -> float:
        # Zero still collects futures that already finished (sequential mode)
        return max(deadline - self._clock(), 0.0)

    def _execute(
        self,
        state: _RequestState,
        participants: list[str] | None,
        deadline: float,
        cancel: threading.Event,
    ) -> ProcessingStatus:
        if not self._settings.USER_MAPPING_ENABLED:
            state.warnings.append("User mapping is disabled")
            return ProcessingStatus.COMPLETED

        if participants is None:
            participants = self._discover_participants(state, deadline)
        state.participants = {normalize_email(e) for e in participants if e and e.strip()}

        if not state.participants:
            logger.info("identity_mapping.no_participants", file_id=state.file_id)
            return ProcessingStatus.COMPLETED

        return self._resolve_all(state, deadline, cancel)

    def _discover_participants(self, state: _RequestState, deadline: float) -> list[str]:
        if self._meeting_lookup is None or not self._settings.CALENDAR_ENABLED or not state.file_id:
            logger.info("identity_mapping.meeting_lookup_skipped", file_id=state.file_id)
            return []

        future = self._executor.submit(self._meeting_lookup.find_participants, state.file_id)
        try:
            found = future.result(timeout=self._remaining(deadline))
        except FutureTimeoutError as exc:
            raise MappingTimeout() from exc

        if not found:
            state.warnings.append(f"Meeting not found for file ID: {state.file_id}")
            return []
        state.meeting = found.event
        return sorted(found.participant_emails)

    def _resolve_all(
        self,
        state: _RequestState,
        deadline: float,
        cancel: threading.Event,
    ) -> ProcessingStatus:
        emails = sorted(state.participants)
        futures: dict[Future[MappingResult], DirectoryService] = {}

        for service, resolver in self._resolvers.items():
            if resolver is None:
                state.warnings.append(f"{service.label} user mapping is not configured")
                continue
            futures[self._executor.submit(resolver.batch_lookup, emails, cancel)] = service

        if not futures:
            return ProcessingStatus.COMPLETED

        done, pending = wait(futures, timeout=self._remaining(deadline), return_when=FIRST_EXCEPTION)
        # A failed resolver must not shorten the wait for the other one
        if pending:
            more, pending = wait(pending, timeout=self._remaining(deadline))
            done |= more

        failed: list[DirectoryService] = []
        unexpected: list[DirectoryService] = []
        for future in done:
            service = futures[future]
            try:
                state.mappings[service] = future.result()
            except (DirectoryAuthError, DirectoryFetchError) as exc:
                failed.append(service)
                self._record_resolver_failure(state, service, exc.message, exc)
            except Exception as exc:
                unexpected.append(service)
                message = exc.message if isinstance(exc, DirectoryError) else str(exc) or type(exc).__name__
                self._record_resolver_failure(state, service, message, exc)
                logger.error(
                    "identity_mapping.resolver_unexpected_error",
                    file_id=state.file_id,
                    service=service.value,
                    traceback=truncated_traceback(exc),
                )

        if unexpected:
            state.warnings.append(UNAVAILABLE_WARNING)
        if pending:
            raise MappingTimeout()
        if failed and len(failed) == len(futures):
            return ProcessingStatus.FAILED
        if failed or unexpected:
            return ProcessingStatus.PARTIAL
        return ProcessingStatus.COMPLETED

    @staticmethod
    def _record_resolver_failure(
        state: _RequestState,
        service: DirectoryService,
        message: str,
        exc: BaseException,
    ) -> None:
        logger.warning(
            "identity_mapping.resolver_failed",
            file_id=state.file_id,
            service=service.value,
            error=message,
            error_type=type(exc).__name__,
        )
        state.warnings.append(f"{service.label} user mapping failed: {message}")
        state.errors.append(f"{service.label}: {message}")

    # ── Reporting ────────────────────────────────────────────────────────

    @staticmethod
    def _log_summary(result: ProcessingResult) -> None:
        log = logger.bind(file_id=result.file_id, status=result.status.value)
        counts = result.resolved_counts()

        if result.status == ProcessingStatus.COMPLETED:
            log.info(
                "identity_mapping.completed",
                participants=len(result.participants),
                slack_resolved=counts["slack"],
                notion_resolved=counts["notion"],
                elapsed_seconds=result.elapsed_seconds,
            )
        elif result.status == ProcessingStatus.PARTIAL:
            log.warning(
                "identity_mapping.partial",
                warnings=result.warnings,
                slack_resolved=counts["slack"],
                notion_resolved=counts["notion"],
            )
        else:
            log.warning("identity_mapping.failed", errors=result.errors)

        unmapped = result.unmapped_users()
        if unmapped:
            log.info(
                "identity_mapping.unmapped_users",
                unmapped="; ".join(f"{email} ({', '.join(services)})" for email, services in unmapped.items()),
                count=len(unmapped),
            )


# ── Factory ──────────────────────────────────────────────────────────────────


def build_coordinator(settings: Settings) -> IdentityResolutionCoordinator:
    """Wire real API clients, caches and pools from configuration.

    A directory without credentials is left unconfigured; the coordinator
    reports that as a warning on every request instead of failing.
    """
    configure_structlog(settings)

    slack_resolver = None
    if settings.SLACK_BOT_TOKEN:
        rate_limiter = RateLimiter(
            max_requests_per_minute=settings.SLACK_RATE_LIMIT_PER_MINUTE,
            default_retry_after=settings.DEFAULT_RETRY_AFTER,
        )
        slack_resolver = SlackDirectoryResolver(
            SlackWebClient(
                settings.SLACK_BOT_TOKEN,
                rate_limiter,
                timeout=settings.API_TIMEOUT,
                max_retries=settings.RATE_LIMIT_MAX_RETRIES,
            ),
            lookup_cache=TTLCache(settings.LOOKUP_CACHE_TTL),
            directory_cache=TTLCache(settings.DIRECTORY_CACHE_TTL),
            strategy=settings.SLACK_RESOLUTION_STRATEGY,
            page_size=settings.SLACK_PAGE_SIZE,
        )

    notion_resolver = None
    if settings.NOTION_API_KEY:
        notion_resolver = NotionDirectoryResolver(
            NotionClient(auth=settings.NOTION_API_KEY, timeout_ms=int(settings.API_TIMEOUT * 1000)),
            lookup_cache=TTLCache(settings.LOOKUP_CACHE_TTL),
            directory_cache=TTLCache(settings.DIRECTORY_CACHE_TTL),
            page_size=settings.NOTION_PAGE_SIZE,
            max_retries=settings.RATE_LIMIT_MAX_RETRIES,
            default_retry_after=settings.DEFAULT_RETRY_AFTER,
        )

    meeting_lookup = None
    if settings.CALENDAR_ENABLED:
        service_account_info = settings.get_service_account_info()
        if service_account_info:
            meeting_lookup = GoogleMeetingLookup(service_account_info)
        else:
            logger.warning("identity_mapping.calendar_without_credentials")

    logger.info(
        "identity_mapping.coordinator_built",
        slack=slack_resolver is not None,
        notion=notion_resolver is not None,
        calendar=meeting_lookup is not None,
        parallel=settings.PARALLEL_PROCESSING,
    )
    return IdentityResolutionCoordinator(
        settings,
        slack_resolver=slack_resolver,
        notion_resolver=notion_resolver,
        meeting_lookup=meeting_lookup,
    )
