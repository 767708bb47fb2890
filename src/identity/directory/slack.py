"""Slack directory resolver over the Slack Web API.

SlackWebClient is a thin synchronous httpx wrapper: every outbound call is
admitted by the shared RateLimiter first, and failed calls are retried with
tenacity (3 attempts). Transport errors and 5xx responses back off
exponentially (1-10s); HTTP 429 / ``error=rate_limited`` backs off for the
server's Retry-After (60s when absent). Exhausting the budget raises
RateLimitedError or TransientLookupError for that one call.

SlackDirectoryResolver supports both strategies:
- "point": ``users.lookupByEmail`` per email (default; cheapest for the
  handful of participants a meeting has).
- "prefetch": ``users.list`` pagination into an email index.
"""

from __future__ import annotations

import threading
from typing import Any

import httpx
import structlog
from tenacity import RetryCallState, Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.identity.core.cache import TTLCache
from src.identity.core.rate_limiter import RateLimiter
from src.identity.directory.base import (
    DirectoryAuthError,
    DirectoryResolver,
    RateLimitedError,
    TransientLookupError,
)
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

SLACK_API_BASE_URL = "https://slack.com/api"

# Error codes that mean the token itself is unusable
AUTH_ERRORS = frozenset(
    {"invalid_auth", "not_authed", "account_inactive", "token_revoked", "token_expired", "missing_scope"}
)


def _parse_retry_after(value: Any) -> float | None:
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return None
    return seconds if seconds > 0 else None


class SlackWebClient:
    """Synchronous Slack Web API client with rate limiting and retries.

    Args:
        bot_token: Slack bot token (xoxb-...).
        rate_limiter: Limiter admitting each outbound request.
        timeout: Per-request timeout in seconds.
        max_retries: Total attempts per call.
        http_client: Optional preconfigured httpx.Client (tests inject one
            with a MockTransport).
    """

    def __init__(
        self,
        bot_token: str,
        rate_limiter: RateLimiter,
        timeout: float = 30.0,
        max_retries: int = 3,
        http_client: httpx.Client | None = None,
    ) -> None:
        if not bot_token:
            raise ValueError("Slack bot token is required")
        self._rate_limiter = rate_limiter
        self._max_retries = max_retries
        self._exponential = wait_exponential(multiplier=1, min=1, max=10)
        self._http = http_client or httpx.Client(
            base_url=SLACK_API_BASE_URL,
            headers={"Authorization": f"Bearer {bot_token}"},
            timeout=timeout,
        )

    def _backoff(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, RateLimitedError):
            return self._rate_limiter.backoff_delay(exc.retry_after)
        return self._exponential(retry_state)

    def _send(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        self._rate_limiter.throttle()
        try:
            response = self._http.post(f"/{method}", data=params)
        except httpx.TransportError as exc:
            raise TransientLookupError(
                DirectoryService.SLACK, f"Slack {method} request failed: {exc}"
            ) from exc

        if response.status_code == 429:
            raise RateLimitedError(
                DirectoryService.SLACK,
                f"Slack {method} rate limited",
                retry_after=_parse_retry_after(response.headers.get("Retry-After")),
            )
        if response.status_code >= 500:
            raise TransientLookupError(
                DirectoryService.SLACK, f"Slack {method} returned HTTP {response.status_code}"
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise TransientLookupError(
                DirectoryService.SLACK, f"Slack {method} returned a non-JSON body"
            ) from exc

        if body.get("error") == "rate_limited":
            raise RateLimitedError(
                DirectoryService.SLACK,
                f"Slack {method} rate limited",
                retry_after=_parse_retry_after(
                    response.headers.get("Retry-After") or body.get("retry_after")
                ),
            )
        return body

    def call(self, method: str, **params: Any) -> dict[str, Any]:
        """Invoke a Web API method and return the decoded JSON body.

        ``ok: false`` bodies are returned as-is; callers interpret the
        error code.
        """
        retrying = Retrying(
            stop=stop_after_attempt(self._max_retries),
            wait=self._backoff,
            retry=retry_if_exception_type(TransientLookupError),
            sleep=self._rate_limiter.sleep,
            reraise=True,
        )
        clean = {k: v for k, v in params.items() if v is not None}
        return retrying(self._send, method, clean)

    def close(self) -> None:
        self._http.close()


class SlackDirectoryResolver(DirectoryResolver):
    """Resolve participant emails to Slack users.

    Args:
        client: SlackWebClient for API access.
        lookup_cache: Per-email outcome cache.
        directory_cache: Cache for the prefetched email index.
        strategy: "point" (users.lookupByEmail) or "prefetch" (users.list).
        page_size: users.list page size.
    """

    service = DirectoryService.SLACK

    def __init__(
        self,
        client: SlackWebClient,
        lookup_cache: TTLCache[LookupOutcome],
        directory_cache: TTLCache[dict[str, ExternalUserRecord]],
        strategy: str = "point",
        page_size: int = 200,
    ) -> None:
        super().__init__(lookup_cache, directory_cache)
        if strategy not in ("point", "prefetch"):
            raise ValueError(f"Unknown Slack resolution strategy: {strategy}")
        self._client = client
        self._strategy = strategy
        self._page_size = page_size

    @property
    def strategy(self) -> str:
        return self._strategy

    def _check_auth(self, body: dict[str, Any]) -> None:
        error = body.get("error")
        if error in AUTH_ERRORS:
            logger.error("slack.auth_failed", error=error)
            raise DirectoryAuthError(self.service, f"Slack authentication failed: {error}")

    def _to_record(self, raw: dict[str, Any], email: str | None = None) -> ExternalUserRecord | None:
        profile = raw.get("profile") or {}
        address = profile.get("email") or email
        if not raw.get("id") or not isinstance(address, str) or not address.strip():
            return None
        return ExternalUserRecord(
            id=raw["id"],
            display_name=profile.get("display_name") or raw.get("real_name") or raw.get("name") or "",
            email=address.strip().lower(),
            raw=raw,
        )

    def _lookup_uncached(self, email: str, cancel: threading.Event | None) -> LookupOutcome:
        if self._strategy == "prefetch":
            return self._lookup_from_directory(email, cancel)

        body = self._client.call("users.lookupByEmail", email=email)
        if body.get("ok"):
            record = self._to_record(body.get("user") or {}, email=email)
            if record is None:
                return LookupFailed(reason="Slack returned a malformed user", kind=FailureKind.UNKNOWN)
            logger.debug("slack.user_resolved", email=email, user_id=record.id)
            return Resolved(record=record)

        self._check_auth(body)
        error = body.get("error", "unknown_error")
        if error == "users_not_found":
            logger.info("slack.user_not_found", email=email)
            return NotFound()
        if error == "invalid_email":
            return LookupFailed(reason=f"Slack rejected email {email!r}", kind=FailureKind.INVALID_EMAIL)

        logger.warning("slack.lookup_error", email=email, error=error)
        return LookupFailed(reason=f"Slack API error: {error}", kind=FailureKind.UNKNOWN)

    def _fetch_page(self, cursor: str | None) -> tuple[list[dict[str, Any]], str | None]:
        body = self._client.call("users.list", limit=self._page_size, cursor=cursor)
        if not body.get("ok"):
            self._check_auth(body)
            raise TransientLookupError(
                self.service, f"Slack users.list failed: {body.get('error', 'unknown_error')}"
            )
        members = body.get("members")
        if not isinstance(members, list):
            raise TransientLookupError(self.service, "Slack users.list returned no members array")
        next_cursor = (body.get("response_metadata") or {}).get("next_cursor") or None
        return members, next_cursor

    def get_user_info(self, user_id: str) -> ExternalUserRecord | None:
        """Fetch one user by Slack ID (users.info)."""
        body = self._client.call("users.info", user=user_id)
        if not body.get("ok"):
            self._check_auth(body)
            logger.warning("slack.user_info_failed", user_id=user_id, error=body.get("error"))
            return None
        return self._to_record(body.get("user") or {})

    @staticmethod
    def generate_mention(user_id: str | None) -> str | None:
        """Format a Slack user ID as an in-message mention."""
        if not user_id:
            return None
        return f"<@{user_id}>"

    @staticmethod
    def generate_mentions(mapping: MappingResult) -> list[str]:
        """Mentions for every resolved user in ``mapping``, ordered by email."""
        return [
            SlackDirectoryResolver.generate_mention(record.id)
            for _, record in sorted(mapping.resolved().items())
        ]
