"""Notion directory resolver over the official notion-client SDK.

Notion has no lookup-by-email endpoint, so every lookup is served from the
prefetched workspace directory (``users.list`` with cursor pagination, 100
per page), cached for 10 minutes. Individual outcomes are cached too.

All API calls are wrapped with tenacity retry (3 attempts): rate-limited
responses honour Retry-After, timeouts and 5xx back off exponentially.
``unauthorized`` / ``restricted_resource`` are directory-wide auth failures.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from typing import Any

import httpx
import structlog
from notion_client import APIResponseError, Client
from notion_client.errors import HTTPResponseError, RequestTimeoutError
from tenacity import RetryCallState, Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.identity.core.cache import TTLCache
from src.identity.directory.base import (
    DirectoryAuthError,
    DirectoryError,
    DirectoryResolver,
    RateLimitedError,
    TransientLookupError,
)
from src.identity.directory.schemas import (
    AssigneeUpdate,
    DirectoryService,
    ExternalUserRecord,
    LookupOutcome,
)

logger = structlog.get_logger(__name__)

AUTH_ERROR_CODES = frozenset({"unauthorized", "restricted_resource"})
TRANSIENT_ERROR_CODES = frozenset({"internal_server_error", "service_unavailable", "conflict_error"})


def _error_code(exc: APIResponseError) -> str:
    code = exc.code
    return getattr(code, "value", code)


class NotionDirectoryResolver(DirectoryResolver):
    """Resolve participant emails to Notion workspace members.

    Args:
        client: notion_client.Client (synchronous).
        lookup_cache: Per-email outcome cache.
        directory_cache: Cache for the prefetched email index.
        page_size: users.list page size (Notion maximum is 100).
        max_retries: Total attempts per API call.
        default_retry_after: Backoff when a rate limit carries no Retry-After.
        sleep: Sleep function used between retries, injectable for tests.
    """

    service = DirectoryService.NOTION

    def __init__(
        self,
        client: Client,
        lookup_cache: TTLCache[LookupOutcome],
        directory_cache: TTLCache[dict[str, ExternalUserRecord]],
        page_size: int = 100,
        max_retries: int = 3,
        default_retry_after: float = 60.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        super().__init__(lookup_cache, directory_cache)
        self._client = client
        self._page_size = min(page_size, 100)
        self._max_retries = max_retries
        self._default_retry_after = default_retry_after
        self._sleep = sleep
        self._exponential = wait_exponential(multiplier=1, min=1, max=10)

    # ── API access ───────────────────────────────────────────────────────

    def _backoff(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, RateLimitedError):
            delay = exc.retry_after or self._default_retry_after
            logger.warning("notion.rate_limited", retry_after=delay)
            return delay
        return self._exponential(retry_state)

    def _attempt(self, operation: str, fn: Callable[..., dict[str, Any]], kwargs: dict[str, Any]) -> dict[str, Any]:
        try:
            return fn(**kwargs)
        except APIResponseError as exc:
            code = _error_code(exc)
            if code in AUTH_ERROR_CODES:
                logger.error("notion.auth_failed", operation=operation, code=code)
                raise DirectoryAuthError(self.service, f"Notion API authentication failed: {exc}") from exc
            if code == "rate_limited":
                headers = getattr(exc, "headers", None) or {}
                try:
                    retry_after = float(headers.get("retry-after", ""))
                except ValueError:
                    retry_after = None
                raise RateLimitedError(
                    self.service, f"Notion {operation} rate limited", retry_after=retry_after
                ) from exc
            if code in TRANSIENT_ERROR_CODES:
                raise TransientLookupError(self.service, f"Notion {operation} failed: {code}") from exc
            raise DirectoryError(self.service, f"Notion {operation} error: {code} - {exc}") from exc
        except HTTPResponseError as exc:
            raise TransientLookupError(
                self.service, f"Notion {operation} returned HTTP {getattr(exc, 'status', 'error')}"
            ) from exc
        except (RequestTimeoutError, httpx.TransportError) as exc:
            raise TransientLookupError(self.service, f"Notion {operation} request failed: {exc}") from exc

    def _call(self, operation: str, fn: Callable[..., dict[str, Any]], **kwargs: Any) -> dict[str, Any]:
        retrying = Retrying(
            stop=stop_after_attempt(self._max_retries),
            wait=self._backoff,
            retry=retry_if_exception_type(TransientLookupError),
            sleep=self._sleep,
            reraise=True,
        )
        return retrying(self._attempt, operation, fn, kwargs)

    # ── DirectoryResolver hooks ──────────────────────────────────────────

    def _lookup_uncached(self, email: str, cancel: threading.Event | None) -> LookupOutcome:
        return self._lookup_from_directory(email, cancel)

    def _fetch_page(self, cursor: str | None) -> tuple[list[dict[str, Any]], str | None]:
        params: dict[str, Any] = {"page_size": self._page_size}
        if cursor:
            params["start_cursor"] = cursor

        response = self._call("users.list", self._client.users.list, **params)
        results = response.get("results")
        if response.get("object") != "list" or not isinstance(results, list):
            raise TransientLookupError(self.service, "Notion users.list returned a malformed response")

        next_cursor = response.get("next_cursor") if response.get("has_more") else None
        return results, next_cursor

    def _to_record(self, raw: dict[str, Any]) -> ExternalUserRecord | None:
        if raw.get("type", "person") != "person":
            return None
        email = (raw.get("person") or {}).get("email")
        if not raw.get("id") or not isinstance(email, str) or not email.strip():
            return None
        return ExternalUserRecord(
            id=raw["id"],
            display_name=raw.get("name") or "",
            email=email.strip().lower(),
            raw=raw,
        )

    # ── Task assignment ──────────────────────────────────────────────────

    def update_assignee(
        self,
        page_id: str,
        user_id: str,
        property_name: str = "assignee",
    ) -> AssigneeUpdate:
        """Set a task page's people property to a single Notion user."""
        try:
            response = self._call(
                "pages.update",
                self._client.pages.update,
                page_id=page_id,
                properties={property_name: {"people": [{"id": user_id}]}},
            )
        except DirectoryError as exc:
            logger.warning("notion.assignee_update_failed", page_id=page_id, error=exc.message)
            return AssigneeUpdate(page_id=page_id, user_id=user_id, success=False, error=exc.message)

        success = response.get("object") == "page"
        logger.info("notion.assignee_updated", page_id=page_id, user_id=user_id, success=success)
        return AssigneeUpdate(
            page_id=page_id,
            user_id=user_id,
            success=success,
            error=None if success else "Unexpected response object",
        )

    def batch_update_task_assignees(
        self,
        task_assignments: dict[str, str],
        property_name: str = "assignee",
    ) -> dict[str, AssigneeUpdate]:
        """Assign each task page (page_id -> assignee email) to its Notion user."""
        results: dict[str, AssigneeUpdate] = {}
        for page_id, email in task_assignments.items():
            try:
                outcome = self.lookup(email)
            except DirectoryError as exc:
                results[page_id] = AssigneeUpdate(page_id=page_id, email=email, success=False, error=exc.message)
                continue

            record = getattr(outcome, "record", None)
            if record is None:
                results[page_id] = AssigneeUpdate(
                    page_id=page_id, email=email, success=False, error="No Notion user for email"
                )
                continue

            update = self.update_assignee(page_id, record.id, property_name)
            results[page_id] = update.model_copy(update={"email": email})
        return results
