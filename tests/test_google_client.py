"""Tests for the Google OAuth + Calendar HTTP client.

All HTTP is stubbed with ``AsyncMock(spec=httpx.AsyncClient)``; responses are
real ``httpx.Response`` objects so status/JSON handling runs for real.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone
from typing import Any
from unittest.mock import AsyncMock, patch
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from calsync.config import GoogleOAuthConfig, SyncSettings
from calsync.errors import ExternalApiError, TokenRefreshError
from calsync.google_client import (
    GOOGLE_OAUTH_REVOKE_URL,
    GOOGLE_OAUTH_TOKEN_URL,
    CursorInvalid,
    FetchedEvents,
    GoogleCalendarClient,
    TimeWindow,
    _redact_credential_values,
    full_sync_window,
)
from calsync.testing import NOW, FixedClock, google_event

pytestmark = pytest.mark.unit

EVENTS_URL = "https://www.googleapis.com/calendar/v3/calendars/primary/events"


def _response(
    status_code: int,
    payload: Any = None,
    *,
    method: str = "GET",
    url: str = EVENTS_URL,
    headers: dict[str, str] | None = None,
) -> httpx.Response:
    kwargs: dict[str, Any] = {"headers": headers or {}}
    if payload is not None:
        kwargs["json"] = payload
    return httpx.Response(status_code, request=httpx.Request(method, url), **kwargs)


@pytest.fixture
def http_client() -> AsyncMock:
    return AsyncMock(spec=httpx.AsyncClient)


@pytest.fixture
def client(http_client: AsyncMock) -> GoogleCalendarClient:
    return GoogleCalendarClient(
        "client-id-123",
        "client-secret-xyz",
        page_size=50,
        http_client=http_client,
        clock=FixedClock(),
    )


def _script_requests(http_client: AsyncMock, *responses: httpx.Response) -> list[dict[str, Any]]:
    """Queue responses for ``request`` and capture a snapshot of each call's params."""
    seen: list[dict[str, Any]] = []
    queue = list(responses)

    async def _request(method: str, url: str, **kwargs: Any) -> httpx.Response:
        seen.append(
            {
                "method": method,
                "url": url,
                "params": dict(kwargs.get("params") or {}),
                "headers": dict(kwargs.get("headers") or {}),
            }
        )
        return queue.pop(0)

    http_client.request.side_effect = _request
    return seen


# ---------------------------------------------------------------------------
# Full-sync window
# ---------------------------------------------------------------------------


class TestFullSyncWindow:
    def test_default_span(self) -> None:
        window = full_sync_window(datetime(2025, 6, 15, 10, 30, tzinfo=UTC))
        assert window == TimeWindow(
            start=datetime(2024, 1, 1, tzinfo=UTC),
            end=datetime(2027, 12, 31, tzinfo=UTC),
        )

    def test_year_taken_in_utc(self) -> None:
        local_new_year = datetime(2026, 1, 1, 1, 0, tzinfo=timezone(timedelta(hours=5)))
        window = full_sync_window(local_new_year, past_years=0, future_years=0)
        assert window.start == datetime(2025, 1, 1, tzinfo=UTC)
        assert window.end == datetime(2025, 12, 31, tzinfo=UTC)

    def test_client_window_uses_configured_years(self, http_client: AsyncMock) -> None:
        client = GoogleCalendarClient(
            "id",
            "secret",
            full_sync_past_years=2,
            full_sync_future_years=1,
            http_client=http_client,
            clock=FixedClock(),
        )
        window = client.default_time_window()
        assert window.start == datetime(2023, 1, 1, tzinfo=UTC)
        assert window.end == datetime(2026, 12, 31, tzinfo=UTC)


# ---------------------------------------------------------------------------
# Event listing
# ---------------------------------------------------------------------------


class TestListEvents:
    async def test_full_fetch_sends_window_params(
        self, client: GoogleCalendarClient, http_client: AsyncMock
    ) -> None:
        seen = _script_requests(
            http_client,
            _response(200, {"items": [google_event("g1")], "nextSyncToken": "cursor-1"}),
        )

        outcome = await client.list_events("access-1")

        assert isinstance(outcome, FetchedEvents)
        assert [event.id for event in outcome.events] == ["g1"]
        assert outcome.next_cursor_token == "cursor-1"
        params = seen[0]["params"]
        assert params["timeMin"] == "2024-01-01T00:00:00Z"
        assert params["timeMax"] == "2027-12-31T00:00:00Z"
        assert params["singleEvents"] == "false"
        assert params["maxResults"] == 50
        assert "syncToken" not in params
        assert seen[0]["url"] == EVENTS_URL
        assert seen[0]["headers"]["Authorization"] == "Bearer access-1"

    async def test_incremental_fetch_sends_only_cursor(
        self, client: GoogleCalendarClient, http_client: AsyncMock
    ) -> None:
        seen = _script_requests(http_client, _response(200, {"items": [], "nextSyncToken": "c2"}))

        outcome = await client.list_events("access-1", cursor_token="c1")

        assert outcome == FetchedEvents(events=[], next_cursor_token="c2")
        params = seen[0]["params"]
        assert params["syncToken"] == "c1"
        assert "timeMin" not in params
        assert "timeMax" not in params
        assert "singleEvents" not in params

    async def test_explicit_window_overrides_default(
        self, client: GoogleCalendarClient, http_client: AsyncMock
    ) -> None:
        seen = _script_requests(http_client, _response(200, {"items": []}))
        window = TimeWindow(
            start=datetime(2025, 3, 1, tzinfo=UTC), end=datetime(2025, 4, 1, tzinfo=UTC)
        )

        await client.list_events("access-1", time_window=window)

        assert seen[0]["params"]["timeMin"] == "2025-03-01T00:00:00Z"
        assert seen[0]["params"]["timeMax"] == "2025-04-01T00:00:00Z"

    async def test_pages_are_followed_and_last_cursor_kept(
        self, client: GoogleCalendarClient, http_client: AsyncMock
    ) -> None:
        seen = _script_requests(
            http_client,
            _response(200, {"items": [google_event("g1")], "nextPageToken": "p2"}),
            _response(200, {"items": [google_event("g2")], "nextPageToken": "p3"}),
            _response(200, {"items": [google_event("g3")], "nextSyncToken": "cursor-final"}),
        )

        outcome = await client.list_events("access-1", cursor_token="c1")

        assert isinstance(outcome, FetchedEvents)
        assert [event.id for event in outcome.events] == ["g1", "g2", "g3"]
        assert outcome.next_cursor_token == "cursor-final"
        assert "pageToken" not in seen[0]["params"]
        assert seen[1]["params"]["pageToken"] == "p2"
        assert seen[2]["params"]["pageToken"] == "p3"
        assert all(call["params"]["syncToken"] == "c1" for call in seen)

    async def test_missing_next_sync_token_yields_none(
        self, client: GoogleCalendarClient, http_client: AsyncMock
    ) -> None:
        _script_requests(http_client, _response(200, {"items": [google_event("g1")]}))
        outcome = await client.list_events("access-1")
        assert isinstance(outcome, FetchedEvents)
        assert outcome.next_cursor_token is None

    async def test_cursor_rejected_returns_cursor_invalid(
        self, client: GoogleCalendarClient, http_client: AsyncMock
    ) -> None:
        _script_requests(
            http_client, _response(410, {"error": {"code": 410, "message": "Sync token invalid"}})
        )
        outcome = await client.list_events("access-1", cursor_token="stale")
        assert outcome == CursorInvalid(cursor_token="stale")

    async def test_gone_without_cursor_is_an_api_error(
        self, client: GoogleCalendarClient, http_client: AsyncMock
    ) -> None:
        _script_requests(http_client, _response(410, {"error": {"message": "gone"}}))
        with pytest.raises(ExternalApiError) as exc_info:
            await client.list_events("access-1")
        assert exc_info.value.remote_status == 410

    async def test_server_error_raises_with_remote_status(
        self, client: GoogleCalendarClient, http_client: AsyncMock
    ) -> None:
        _script_requests(http_client, _response(500, {"error": {"message": "backend"}}))
        with pytest.raises(ExternalApiError) as exc_info:
            await client.list_events("access-1", cursor_token="c1")
        assert exc_info.value.remote_status == 500
        assert exc_info.value.status_code == 502

    async def test_non_object_payload_raises(
        self, client: GoogleCalendarClient, http_client: AsyncMock
    ) -> None:
        _script_requests(http_client, _response(200, ["not", "an", "object"]))
        with pytest.raises(ExternalApiError, match="unexpected payload"):
            await client.list_events("access-1")

    async def test_transport_failure_raises(
        self, client: GoogleCalendarClient, http_client: AsyncMock
    ) -> None:
        http_client.request.side_effect = httpx.ConnectError("boom")
        with pytest.raises(ExternalApiError, match="ConnectError") as exc_info:
            await client.list_events("access-1")
        assert exc_info.value.remote_status == 500

    async def test_malformed_items_are_skipped(
        self, client: GoogleCalendarClient, http_client: AsyncMock
    ) -> None:
        broken = google_event("broken")
        del broken["start"]
        _script_requests(
            http_client,
            _response(
                200,
                {
                    "items": [broken, "garbage", google_event("ok"), {"status": "confirmed"}],
                    "nextSyncToken": "c",
                },
            ),
        )
        outcome = await client.list_events("access-1")
        assert isinstance(outcome, FetchedEvents)
        assert [event.id for event in outcome.events] == ["ok"]

    async def test_cancelled_tombstones_are_kept(
        self, client: GoogleCalendarClient, http_client: AsyncMock
    ) -> None:
        _script_requests(
            http_client,
            _response(200, {"items": [google_event("gone", status="cancelled")]}),
        )
        outcome = await client.list_events("access-1", cursor_token="c1")
        assert isinstance(outcome, FetchedEvents)
        assert outcome.events[0].is_cancelled

    async def test_calendar_id_is_url_encoded(self, http_client: AsyncMock) -> None:
        client = GoogleCalendarClient(
            "id", "secret", calendar_id="team@group.calendar.google.com", http_client=http_client
        )
        seen = _script_requests(http_client, _response(200, {"items": []}))
        await client.list_events("access-1", cursor_token="c1")
        assert seen[0]["url"].endswith("/calendars/team%40group.calendar.google.com/events")


class TestRateLimitRetry:
    async def test_retries_429_honouring_retry_after(
        self, client: GoogleCalendarClient, http_client: AsyncMock
    ) -> None:
        _script_requests(
            http_client,
            _response(429, {"error": {"message": "slow down"}}, headers={"Retry-After": "7"}),
            _response(200, {"items": [], "nextSyncToken": "c"}),
        )
        with patch("calsync.google_client.asyncio.sleep", new=AsyncMock()) as sleep:
            outcome = await client.list_events("access-1", cursor_token="c0")

        assert isinstance(outcome, FetchedEvents)
        sleep.assert_awaited_once_with(7.0)

    async def test_long_retry_after_is_capped(
        self, client: GoogleCalendarClient, http_client: AsyncMock
    ) -> None:
        _script_requests(
            http_client,
            _response(429, headers={"Retry-After": "3600"}),
            _response(200, {"items": [], "nextSyncToken": "c"}),
        )
        with patch("calsync.google_client.asyncio.sleep", new=AsyncMock()) as sleep:
            await client.list_events("access-1", cursor_token="c0")

        sleep.assert_awaited_once_with(60.0)

    async def test_retries_503_with_exponential_backoff(
        self, client: GoogleCalendarClient, http_client: AsyncMock
    ) -> None:
        _script_requests(
            http_client,
            _response(503),
            _response(503),
            _response(200, {"items": []}),
        )
        with patch("calsync.google_client.asyncio.sleep", new=AsyncMock()) as sleep:
            await client.list_events("access-1", cursor_token="c0")

        assert [call.args[0] for call in sleep.await_args_list] == [1.0, 2.0]

    async def test_gives_up_after_max_retries(
        self, client: GoogleCalendarClient, http_client: AsyncMock
    ) -> None:
        _script_requests(http_client, *[_response(429) for _ in range(4)])
        with patch("calsync.google_client.asyncio.sleep", new=AsyncMock()) as sleep:
            with pytest.raises(ExternalApiError) as exc_info:
                await client.list_events("access-1", cursor_token="c0")

        assert exc_info.value.remote_status == 429
        assert sleep.await_count == 3
        assert http_client.request.await_count == 4


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


class TestAuthorizationUrl:
    def test_contains_offline_consent_and_state(self, client: GoogleCalendarClient) -> None:
        url = client.build_authorization_url(
            redirect_uri="http://localhost:3000/oauth/google/callback", state="abc"
        )
        parsed = urlparse(url)
        query = parse_qs(parsed.query)
        assert parsed.netloc == "accounts.google.com"
        assert query["client_id"] == ["client-id-123"]
        assert query["access_type"] == ["offline"]
        assert query["prompt"] == ["consent"]
        assert query["response_type"] == ["code"]
        assert query["state"] == ["abc"]
        assert query["redirect_uri"] == ["http://localhost:3000/oauth/google/callback"]
        assert "https://www.googleapis.com/auth/calendar.readonly" in query["scope"][0]


class TestExchangeCode:
    async def test_success(self, client: GoogleCalendarClient, http_client: AsyncMock) -> None:
        http_client.post.return_value = _response(
            200,
            {
                "access_token": "at-1",
                "refresh_token": "rt-1",
                "expires_in": 3599,
                "scope": "calendar",
            },
            method="POST",
            url=GOOGLE_OAUTH_TOKEN_URL,
        )

        grant = await client.exchange_code("code-1", "http://cb")

        assert grant.access_token == "at-1"
        assert grant.refresh_token == "rt-1"
        assert grant.expires_at == NOW + timedelta(seconds=3599)
        data = http_client.post.call_args.kwargs["data"]
        assert data["grant_type"] == "authorization_code"
        assert data["code"] == "code-1"
        assert data["redirect_uri"] == "http://cb"

    async def test_missing_refresh_token_and_bad_expiry(
        self, client: GoogleCalendarClient, http_client: AsyncMock
    ) -> None:
        http_client.post.return_value = _response(
            200, {"access_token": "at-1", "expires_in": "soon"}, method="POST"
        )
        grant = await client.exchange_code("code-1", "http://cb")
        assert grant.refresh_token is None
        assert grant.expires_at == NOW + timedelta(hours=1)

    async def test_rejected_code_raises(
        self, client: GoogleCalendarClient, http_client: AsyncMock
    ) -> None:
        http_client.post.return_value = _response(
            400, {"error": "invalid_grant", "error_description": "Bad code"}, method="POST"
        )
        with pytest.raises(ExternalApiError, match="Failed to exchange authorization code"):
            await client.exchange_code("bad", "http://cb")

    async def test_transport_failure_is_400(
        self, client: GoogleCalendarClient, http_client: AsyncMock
    ) -> None:
        http_client.post.side_effect = httpx.ReadTimeout("slow")
        with pytest.raises(ExternalApiError) as exc_info:
            await client.exchange_code("code", "http://cb")
        assert exc_info.value.remote_status == 400


class TestAccountInfo:
    async def test_returns_email(
        self, client: GoogleCalendarClient, http_client: AsyncMock
    ) -> None:
        http_client.get.return_value = _response(
            200, {"email": "user@example.com", "verified_email": True}
        )
        info = await client.get_account_info("at-1")
        assert info.email == "user@example.com"
        assert info.email_verified is True
        assert http_client.get.call_args.kwargs["headers"]["Authorization"] == "Bearer at-1"

    async def test_missing_email_raises(
        self, client: GoogleCalendarClient, http_client: AsyncMock
    ) -> None:
        http_client.get.return_value = _response(200, {"id": "123"})
        with pytest.raises(ExternalApiError, match="missing an email"):
            await client.get_account_info("at-1")


class TestRefresh:
    async def test_success(self, client: GoogleCalendarClient, http_client: AsyncMock) -> None:
        http_client.post.return_value = _response(
            200, {"access_token": "at-2", "expires_in": 1800}, method="POST"
        )
        refreshed = await client.refresh("rt-1")
        assert refreshed.access_token == "at-2"
        assert refreshed.expires_at == NOW + timedelta(seconds=1800)
        assert http_client.post.call_args.kwargs["data"]["grant_type"] == "refresh_token"

    async def test_rejection_raises_refresh_error(
        self, client: GoogleCalendarClient, http_client: AsyncMock
    ) -> None:
        http_client.post.return_value = _response(
            400, {"error": "invalid_grant"}, method="POST"
        )
        with pytest.raises(TokenRefreshError, match="status 400"):
            await client.refresh("rt-1")

    async def test_missing_access_token_raises_refresh_error(
        self, client: GoogleCalendarClient, http_client: AsyncMock
    ) -> None:
        http_client.post.return_value = _response(200, {"expires_in": 100}, method="POST")
        with pytest.raises(TokenRefreshError):
            await client.refresh("rt-1")

    async def test_transport_failure_raises_refresh_error(
        self, client: GoogleCalendarClient, http_client: AsyncMock
    ) -> None:
        http_client.post.side_effect = httpx.ConnectError("down")
        with pytest.raises(TokenRefreshError):
            await client.refresh("rt-1")


class TestRevoke:
    async def test_success_posts_token(
        self, client: GoogleCalendarClient, http_client: AsyncMock
    ) -> None:
        http_client.post.return_value = _response(
            200, {}, method="POST", url=GOOGLE_OAUTH_REVOKE_URL
        )
        await client.revoke("at-1")
        assert http_client.post.call_args.args[0] == GOOGLE_OAUTH_REVOKE_URL
        assert http_client.post.call_args.kwargs["params"] == {"token": "at-1"}

    async def test_failure_raises(
        self, client: GoogleCalendarClient, http_client: AsyncMock
    ) -> None:
        http_client.post.return_value = _response(400, {"error": "invalid_token"}, method="POST")
        with pytest.raises(ExternalApiError) as exc_info:
            await client.revoke("at-1")
        assert exc_info.value.remote_status == 400

    async def test_transport_failure_is_503(
        self, client: GoogleCalendarClient, http_client: AsyncMock
    ) -> None:
        http_client.post.side_effect = httpx.ConnectError("down")
        with pytest.raises(ExternalApiError) as exc_info:
            await client.revoke("at-1")
        assert exc_info.value.remote_status == 503


# ---------------------------------------------------------------------------
# Secret hygiene
# ---------------------------------------------------------------------------


class TestRedaction:
    @pytest.mark.parametrize(
        "message",
        [
            "bad request refresh_token=abc123 rejected",
            'payload {"access_token": "abc123"}',
            "client_secret: abc123",
        ],
    )
    def test_credential_values_masked(self, message: str) -> None:
        redacted = _redact_credential_values(message)
        assert "abc123" not in redacted
        assert "[REDACTED]" in redacted

    def test_repr_hides_secret(self, client: GoogleCalendarClient) -> None:
        assert "client-secret-xyz" not in repr(client)

    def test_from_config(self, http_client: AsyncMock) -> None:
        google = GoogleOAuthConfig(
            client_id="cid", client_secret="s3cr3t-value", calendar_id="work"
        )
        client = GoogleCalendarClient.from_config(
            google, SyncSettings(page_size=10), http_client=http_client
        )
        assert client.calendar_id == "work"
        assert "s3cr3t-value" not in repr(client)
