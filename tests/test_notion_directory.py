"""Tests for the Notion directory resolver.

The notion_client.Client is replaced with a MagicMock whose ``users.list``
and ``pages.update`` return canned API payloads. Covers prefetch
pagination, record filtering, error mapping with retries, and task
assignee updates.
"""

from __future__ import annotations

import threading
from unittest.mock import MagicMock

import httpx
import pytest
from notion_client import APIResponseError

from src.identity.core.cache import TTLCache
from src.identity.directory.base import (
    DirectoryAuthError,
    DirectoryFetchError,
    ResolutionCancelled,
)
from src.identity.directory.notion import NotionDirectoryResolver
from src.identity.directory.schemas import NotFound, Resolved


# ── Helpers ─────────────────────────────────────────────────────────────────


def _notion_user(user_id: str, email: str | None, name: str = "", kind: str = "person") -> dict:
    user = {"object": "user", "id": user_id, "type": kind, "name": name}
    if kind == "person":
        user["person"] = {"email": email} if email is not None else {}
    else:
        user["bot"] = {}
    return user


def _page(users: list[dict], next_cursor: str | None = None) -> dict:
    return {
        "object": "list",
        "results": users,
        "next_cursor": next_cursor,
        "has_more": next_cursor is not None,
    }


def _api_error(code: str, headers: dict | None = None) -> APIResponseError:
    """Build an APIResponseError without depending on its constructor signature."""
    exc = APIResponseError.__new__(APIResponseError)
    exc.code = code
    exc.headers = httpx.Headers(headers or {})
    return exc


def _make_mock_client(*pages) -> MagicMock:
    client = MagicMock()
    client.users = MagicMock()
    client.users.list = MagicMock(side_effect=list(pages))
    client.pages = MagicMock()
    client.pages.update = MagicMock(return_value={"object": "page", "id": "task-1"})
    return client


def _make_resolver(client: MagicMock, clock) -> NotionDirectoryResolver:
    return NotionDirectoryResolver(
        client,
        lookup_cache=TTLCache(600, clock=clock),
        directory_cache=TTLCache(600, clock=clock),
        sleep=clock.sleep,
    )


# ── Prefetch ────────────────────────────────────────────────────────────────


class TestPrefetch:
    def test_paginates_with_start_cursor(self, clock):
        client = _make_mock_client(
            _page([_notion_user("n-1", "alice@x.com", "Alice")], next_cursor="c2"),
            _page([_notion_user("n-2", "bob@x.com", "Bob")]),
        )
        resolver = _make_resolver(client, clock)

        index = resolver.prefetch()

        assert sorted(index) == ["alice@x.com", "bob@x.com"]
        first, second = client.users.list.call_args_list
        assert first.kwargs == {"page_size": 100}
        assert second.kwargs == {"page_size": 100, "start_cursor": "c2"}

    def test_skips_bots_and_people_without_email(self, clock):
        client = _make_mock_client(_page([
            _notion_user("n-1", "alice@x.com"),
            _notion_user("bot-1", None, kind="bot"),
            _notion_user("n-3", None),
            {"object": "user", "type": "person", "person": {"email": "noid@x.com"}},
        ]))

        index = _make_resolver(client, clock).prefetch()

        assert list(index) == ["alice@x.com"]

    def test_duplicate_email_last_write_wins(self, clock):
        client = _make_mock_client(_page([
            _notion_user("n-old", "Carol@x.com"),
            _notion_user("n-new", "carol@x.com"),
        ]))
        assert _make_resolver(client, clock).prefetch()["carol@x.com"].id == "n-new"

    def test_lookups_share_one_directory_fetch(self, clock):
        client = _make_mock_client(_page([_notion_user("n-1", "alice@x.com", "Alice")]))
        resolver = _make_resolver(client, clock)

        result = resolver.batch_lookup(["alice@x.com", "ghost@x.com"])

        assert result.record_for("alice@x.com").display_name == "Alice"
        assert isinstance(result.by_email["ghost@x.com"], NotFound)
        assert client.users.list.call_count == 1

    def test_directory_refetched_after_ttl(self, clock):
        client = _make_mock_client(
            _page([_notion_user("n-1", "alice@x.com")]),
            _page([_notion_user("n-1", "alice@x.com"), _notion_user("n-2", "bob@x.com")]),
        )
        resolver = _make_resolver(client, clock)
        assert isinstance(resolver.lookup("bob@x.com"), NotFound)

        clock.advance(601)

        assert isinstance(resolver.lookup("bob@x.com"), Resolved)
        assert client.users.list.call_count == 2

    def test_refresh_cache_sweeps_both_tiers(self, clock):
        client = _make_mock_client(_page([_notion_user("n-1", "alice@x.com")]))
        resolver = _make_resolver(client, clock)
        resolver.batch_lookup(["alice@x.com", "ghost@x.com"])

        assert resolver.refresh_cache() == 0

        clock.advance(601)

        assert resolver.refresh_cache() == 3
        assert resolver.refresh_cache() == 0

    def test_failed_second_page_raises_fetch_error(self, clock):
        client = _make_mock_client(
            _page([_notion_user("n-1", "alice@x.com")], next_cursor="c2"),
            {"object": "error", "message": "garbage"},
        )
        resolver = _make_resolver(client, clock)

        with pytest.raises(DirectoryFetchError) as exc_info:
            resolver.batch_lookup(["alice@x.com"])

        assert exc_info.value.pages_fetched == 1
        assert exc_info.value.records_indexed == 1

    def test_cancellation_checked_between_pages(self, clock):
        cancel = threading.Event()

        def first_page(**_kwargs):
            cancel.set()
            return _page([_notion_user("n-1", "alice@x.com")], next_cursor="c2")

        client = _make_mock_client()
        client.users.list = MagicMock(side_effect=first_page)

        with pytest.raises(ResolutionCancelled):
            _make_resolver(client, clock).prefetch(cancel)
        assert client.users.list.call_count == 1


# ── Error mapping ───────────────────────────────────────────────────────────


class TestErrorMapping:
    def test_unauthorized_is_directory_wide(self, clock):
        client = _make_mock_client(_api_error("unauthorized"))
        with pytest.raises(DirectoryAuthError):
            _make_resolver(client, clock).prefetch()
        assert client.users.list.call_count == 1

    def test_rate_limited_waits_for_retry_after(self, clock):
        client = _make_mock_client(
            _api_error("rate_limited", {"Retry-After": "4"}),
            _page([_notion_user("n-1", "alice@x.com")]),
        )

        index = _make_resolver(client, clock).prefetch()

        assert "alice@x.com" in index
        assert clock.sleeps == [4.0]

    def test_transport_errors_retried_then_fail_directory(self, clock):
        client = _make_mock_client(*[httpx.ConnectError("connection refused") for _ in range(3)])

        with pytest.raises(DirectoryFetchError):
            _make_resolver(client, clock).prefetch()

        assert client.users.list.call_count == 3
        assert len(clock.sleeps) == 2

    def test_validation_error_is_not_retried(self, clock):
        client = _make_mock_client(_api_error("validation_error"))
        with pytest.raises(DirectoryFetchError):
            _make_resolver(client, clock).prefetch()
        assert client.users.list.call_count == 1


# ── Task assignment ─────────────────────────────────────────────────────────


class TestAssigneeUpdates:
    def test_update_assignee_sets_people_property(self, clock):
        client = _make_mock_client()
        resolver = _make_resolver(client, clock)

        update = resolver.update_assignee("task-1", "n-1", property_name="Owner")

        assert update.success is True
        client.pages.update.assert_called_once_with(
            page_id="task-1",
            properties={"Owner": {"people": [{"id": "n-1"}]}},
        )

    def test_update_failure_is_reported_not_raised(self, clock):
        client = _make_mock_client()
        client.pages.update.side_effect = _api_error("object_not_found")

        update = _make_resolver(client, clock).update_assignee("task-404", "n-1")

        assert update.success is False
        assert "object_not_found" in update.error

    def test_batch_update_resolves_emails_first(self, clock):
        client = _make_mock_client(_page([_notion_user("n-1", "alice@x.com")]))
        resolver = _make_resolver(client, clock)

        results = resolver.batch_update_task_assignees({"task-1": "alice@x.com", "task-2": "ghost@x.com"})

        assert results["task-1"].success is True
        assert results["task-1"].email == "alice@x.com"
        assert results["task-1"].user_id == "n-1"
        assert results["task-2"].success is False
        client.pages.update.assert_called_once()
