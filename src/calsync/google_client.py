"""HTTP client for the Google OAuth and Calendar v3 endpoints.

Every remote call the sync engine makes goes through
:class:`GoogleCalendarClient`. The client never stores tokens itself; callers
pass the access token per call and decide what to persist.

Event listing returns a tagged result rather than raising on an invalidated
change-feed cursor::

    outcome = await client.list_events(token, cursor_token=cursor)
    match outcome:
        case FetchedEvents(events=events, next_cursor_token=next_cursor): ...
        case CursorInvalid(): ...  # retry without a cursor
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import quote, urlencode

import httpx
from pydantic import ValidationError

from calsync.config import (
    DEFAULT_CALENDAR_ID,
    DEFAULT_FULL_SYNC_FUTURE_YEARS,
    DEFAULT_FULL_SYNC_PAST_YEARS,
    DEFAULT_HTTP_TIMEOUT_SECONDS,
    DEFAULT_PAGE_SIZE,
    DEFAULT_SCOPES,
    GoogleOAuthConfig,
    SyncSettings,
)
from calsync.errors import ExternalApiError, TokenRefreshError
from calsync.models import AccountInfo, ExternalEvent, RefreshedToken, TokenGrant

logger = logging.getLogger(__name__)

GOOGLE_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_OAUTH_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"

RATE_LIMIT_RETRY_STATUS_CODES = {429, 503}
RATE_LIMIT_MAX_RETRIES = 3
RATE_LIMIT_BASE_BACKOFF_SECONDS = 1.0
RATE_LIMIT_MAX_BACKOFF_SECONDS = 60.0

# Google returns 410 Gone once a syncToken has been invalidated server-side.
CURSOR_INVALID_STATUS_CODE = 410
DEFAULT_EXPIRES_IN_SECONDS = 3600


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TimeWindow:
    """Closed-open ``[start, end)`` range used for a full (cursorless) fetch."""

    start: datetime
    end: datetime


@dataclass(frozen=True)
class FetchedEvents:
    events: list[ExternalEvent] = field(default_factory=list)
    next_cursor_token: str | None = None


@dataclass(frozen=True)
class CursorInvalid:
    """The remote rejected the supplied change-feed cursor; a full fetch is required."""

    cursor_token: str


FetchOutcome = FetchedEvents | CursorInvalid


def full_sync_window(
    now: datetime,
    *,
    past_years: int = DEFAULT_FULL_SYNC_PAST_YEARS,
    future_years: int = DEFAULT_FULL_SYNC_FUTURE_YEARS,
) -> TimeWindow:
    """January 1 of ``now.year - past_years`` through December 31 of ``now.year + future_years``."""
    now_utc = now if now.tzinfo is not None else now.replace(tzinfo=UTC)
    year = now_utc.astimezone(UTC).year
    return TimeWindow(
        start=datetime(year - past_years, 1, 1, tzinfo=UTC),
        end=datetime(year + future_years, 12, 31, tzinfo=UTC),
    )


# ---------------------------------------------------------------------------
# Error helpers
# ---------------------------------------------------------------------------


def _google_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _safe_google_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return _redact_credential_values(" ".join(message.split())[:200])
        if isinstance(error_payload, str) and error_payload.strip():
            description = payload.get("error_description")
            if isinstance(description, str) and description.strip():
                error_payload = f"{error_payload}: {description}"
            return _redact_credential_values(" ".join(error_payload.split())[:200])

    raw_text = response.text.strip()
    if raw_text:
        return _redact_credential_values(" ".join(raw_text.split())[:200])
    return "Request failed without an error payload"


def _redact_credential_values(message: str) -> str:
    """Mask token and secret values that Google sometimes echoes back in errors."""
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|token|code)\s*=\s*([^\s,;&]+)",
        r"\1=[REDACTED]",
        message,
    )
    redacted = re.sub(
        r"""(?i)(['"]?(?:client_secret|refresh_token|access_token|token)['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|token)\s*:\s*([^\s,;'\"]+)",
        r"\1: [REDACTED]",
        redacted,
    )
    return redacted


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, int | float):
        return int(value) if value > 0 else DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip()) or DEFAULT_EXPIRES_IN_SECONDS
    return DEFAULT_EXPIRES_IN_SECONDS


def _json_object(response: httpx.Response) -> dict[str, Any] | None:
    try:
        payload = response.json()
    except ValueError:
        return None
    return payload if isinstance(payload, dict) else None


def _non_empty_str(payload: dict[str, Any], key: str) -> str | None:
    value = payload.get(key)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _is_success(response: httpx.Response) -> bool:
    return 200 <= response.status_code < 300


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class GoogleCalendarClient:
    """Google OAuth + Calendar v3 client bound to one OAuth app registration.

    Parameters
    ----------
    client_id, client_secret:
        OAuth client registration used for the code and refresh grants.
    calendar_id:
        The single external calendar the engine imports from.
    http_client:
        Optional shared ``httpx.AsyncClient``. When omitted the client owns
        one and closes it in :meth:`aclose`.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        *,
        calendar_id: str = DEFAULT_CALENDAR_ID,
        scopes: tuple[str, ...] = DEFAULT_SCOPES,
        page_size: int = DEFAULT_PAGE_SIZE,
        full_sync_past_years: int = DEFAULT_FULL_SYNC_PAST_YEARS,
        full_sync_future_years: int = DEFAULT_FULL_SYNC_FUTURE_YEARS,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self.calendar_id = calendar_id
        self._scopes = scopes
        self._page_size = page_size
        self._full_sync_past_years = full_sync_past_years
        self._full_sync_future_years = full_sync_future_years
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)
        self._clock = clock or (lambda: datetime.now(UTC))

    @classmethod
    def from_config(
        cls,
        google: GoogleOAuthConfig,
        sync: SyncSettings,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> GoogleCalendarClient:
        return cls(
            google.client_id,
            google.client_secret,
            calendar_id=google.calendar_id,
            scopes=google.scopes,
            page_size=sync.page_size,
            full_sync_past_years=sync.full_sync_past_years,
            full_sync_future_years=sync.full_sync_future_years,
            http_client=http_client,
            timeout=sync.http_timeout_seconds,
        )

    def __repr__(self) -> str:
        return (
            f"GoogleCalendarClient(client_id={self._client_id!r}, client_secret=<REDACTED>, "
            f"calendar_id={self.calendar_id!r})"
        )

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    def build_authorization_url(self, *, redirect_uri: str, state: str) -> str:
        params = {
            "client_id": self._client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": " ".join(self._scopes),
            "access_type": "offline",
            "prompt": "consent",
            "state": state,
        }
        return f"{GOOGLE_AUTHORIZE_URL}?{urlencode(params)}"

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenGrant:
        """Exchange an authorization code for an access/refresh token pair.

        Raises
        ------
        ExternalApiError
            The token endpoint rejected the code or could not be reached.
        """
        try:
            response = await self._http_client.post(
                GOOGLE_OAUTH_TOKEN_URL,
                data={
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "code": code,
                    "grant_type": "authorization_code",
                    "redirect_uri": redirect_uri,
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            logger.warning("Google token exchange request failed: %s", type(exc).__name__)
            raise ExternalApiError(400, "Failed to exchange authorization code") from exc

        if not _is_success(response):
            logger.warning(
                "Google token exchange failed (status=%d): %s",
                response.status_code,
                _safe_google_error_message(response),
            )
            raise ExternalApiError(response.status_code, "Failed to exchange authorization code")

        payload = _json_object(response)
        access_token = _non_empty_str(payload, "access_token") if payload else None
        if payload is None or access_token is None:
            raise ExternalApiError(
                response.status_code, "Google token response is missing an access_token"
            )

        expires_in = _coerce_expires_in_seconds(payload.get("expires_in"))
        return TokenGrant(
            access_token=access_token,
            refresh_token=_non_empty_str(payload, "refresh_token"),
            expires_at=self._clock() + timedelta(seconds=expires_in),
            scope=_non_empty_str(payload, "scope"),
        )

    async def get_account_info(self, access_token: str) -> AccountInfo:
        try:
            response = await self._http_client.get(
                GOOGLE_USERINFO_URL,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as exc:
            logger.warning("Google userinfo request failed: %s", type(exc).__name__)
            raise ExternalApiError(400, "Failed to get user info from Google") from exc

        if not _is_success(response):
            logger.warning(
                "Google userinfo failed (status=%d): %s",
                response.status_code,
                _safe_google_error_message(response),
            )
            raise ExternalApiError(response.status_code, "Failed to get user info from Google")

        payload = _json_object(response)
        try:
            return AccountInfo.model_validate(payload)
        except ValidationError as exc:
            raise ExternalApiError(
                response.status_code, "Google userinfo response is missing an email"
            ) from exc

    async def refresh(self, refresh_token: str) -> RefreshedToken:
        """Run the refresh-token grant. Every failure mode becomes ``TokenRefreshError``."""
        try:
            response = await self._http_client.post(
                GOOGLE_OAUTH_TOKEN_URL,
                data={
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            logger.warning("Google token refresh request failed: %s", type(exc).__name__)
            raise TokenRefreshError() from exc

        if not _is_success(response):
            message = _safe_google_error_message(response)
            logger.warning(
                "Google token refresh failed (status=%d): %s", response.status_code, message
            )
            raise TokenRefreshError(f"status {response.status_code}")

        payload = _json_object(response)
        access_token = _non_empty_str(payload, "access_token") if payload else None
        if payload is None or access_token is None:
            raise TokenRefreshError("token response is missing a non-empty access_token")

        expires_in = _coerce_expires_in_seconds(payload.get("expires_in"))
        return RefreshedToken(
            access_token=access_token,
            expires_at=self._clock() + timedelta(seconds=expires_in),
        )

    async def revoke(self, access_token: str) -> None:
        """Revoke *access_token* at Google.

        Raises ``ExternalApiError`` on failure; disconnect treats that as
        non-fatal.
        """
        try:
            response = await self._http_client.post(
                GOOGLE_OAUTH_REVOKE_URL,
                params={"token": access_token},
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.HTTPError as exc:
            raise ExternalApiError(503, "Failed to revoke token at Google") from exc

        if not _is_success(response):
            raise ExternalApiError(response.status_code, "Failed to revoke token at Google")

    # ------------------------------------------------------------------
    # Calendar events
    # ------------------------------------------------------------------

    def default_time_window(self) -> TimeWindow:
        return full_sync_window(
            self._clock(),
            past_years=self._full_sync_past_years,
            future_years=self._full_sync_future_years,
        )

    async def list_events(
        self,
        access_token: str,
        *,
        cursor_token: str | None = None,
        time_window: TimeWindow | None = None,
    ) -> FetchOutcome:
        """Fetch every page of events, incrementally or over a full window.

        With ``cursor_token`` only ``syncToken`` is sent (Google rejects window
        parameters on cursor requests). Without it the window defaults to
        :meth:`default_time_window` and recurring series come back as masters
        (``singleEvents=false``).

        Returns
        -------
        FetchedEvents
            All events across pages plus the last page's ``nextSyncToken``.
        CursorInvalid
            Google answered 410 Gone for the supplied cursor.

        Raises
        ------
        ExternalApiError
            Any other non-2xx answer, transport failure, or unreadable payload.
        """
        params: dict[str, Any] = {"maxResults": self._page_size}
        if cursor_token is not None:
            params["syncToken"] = cursor_token
        else:
            window = time_window or self.default_time_window()
            params["timeMin"] = _google_rfc3339(window.start)
            params["timeMax"] = _google_rfc3339(window.end)
            params["singleEvents"] = "false"

        path = f"/calendars/{quote(self.calendar_id, safe='')}/events"
        events: list[ExternalEvent] = []
        next_page_token: str | None = None
        next_cursor_token: str | None = None
        page_count = 0

        while True:
            if next_page_token is not None:
                params["pageToken"] = next_page_token
            else:
                params.pop("pageToken", None)

            response = await self._request_with_bearer(
                "GET", path, access_token=access_token, params=params
            )
            page_count += 1

            if response.status_code == CURSOR_INVALID_STATUS_CODE and cursor_token is not None:
                logger.info("Google rejected sync cursor for calendar '%s'", self.calendar_id)
                return CursorInvalid(cursor_token=cursor_token)

            if not _is_success(response):
                logger.warning(
                    "Google Calendar list failed (status=%d): %s",
                    response.status_code,
                    _safe_google_error_message(response),
                )
                raise ExternalApiError(response.status_code)

            payload = _json_object(response)
            if payload is None:
                raise ExternalApiError(
                    response.status_code, "Google Calendar API returned an unexpected payload"
                )

            events.extend(self._parse_items(payload.get("items")))

            next_page_token = _non_empty_str(payload, "nextPageToken")
            candidate_cursor = _non_empty_str(payload, "nextSyncToken")
            if candidate_cursor is not None:
                next_cursor_token = candidate_cursor

            if next_page_token is None:
                break

        if next_cursor_token is None:
            logger.warning(
                "Google Calendar response for '%s' did not include nextSyncToken; "
                "the next import will run a full fetch",
                self.calendar_id,
            )

        logger.debug(
            "Fetched %d events from calendar '%s' in %d page(s) (incremental=%s)",
            len(events),
            self.calendar_id,
            page_count,
            cursor_token is not None,
        )
        return FetchedEvents(events=events, next_cursor_token=next_cursor_token)

    def _parse_items(self, items: Any) -> list[ExternalEvent]:
        if not isinstance(items, list):
            return []
        parsed: list[ExternalEvent] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            try:
                parsed.append(ExternalEvent.model_validate(item))
            except ValidationError as exc:
                logger.warning(
                    "Skipping malformed Google event id=%r: %d validation error(s)",
                    item.get("id"),
                    exc.error_count(),
                )
        return parsed

    async def _request_with_bearer(
        self,
        method: str,
        path: str,
        *,
        access_token: str,
        params: dict[str, Any] | None = None,
    ) -> httpx.Response:
        normalized_path = path if path.startswith("/") else f"/{path}"
        url = f"{GOOGLE_CALENDAR_API_BASE_URL}{normalized_path}"

        response = await self._request_once(method, url, access_token=access_token, params=params)

        # Honour Retry-After on 429, exponential backoff otherwise.
        retry = 0
        while (
            response.status_code in RATE_LIMIT_RETRY_STATUS_CODES and retry < RATE_LIMIT_MAX_RETRIES
        ):
            backoff = RATE_LIMIT_BASE_BACKOFF_SECONDS * (2**retry)
            if response.status_code == 429:
                retry_after_header = response.headers.get("Retry-After")
                if retry_after_header is not None:
                    try:
                        backoff = float(retry_after_header)
                    except ValueError:
                        pass
            backoff = min(max(backoff, 0.0), RATE_LIMIT_MAX_BACKOFF_SECONDS)
            logger.warning(
                "Calendar API rate-limited (status=%d), retrying in %.1fs (attempt %d/%d)",
                response.status_code,
                backoff,
                retry + 1,
                RATE_LIMIT_MAX_RETRIES,
            )
            await asyncio.sleep(backoff)
            response = await self._request_once(
                method, url, access_token=access_token, params=params
            )
            retry += 1

        return response

    async def _request_once(
        self,
        method: str,
        url: str,
        *,
        access_token: str,
        params: dict[str, Any] | None,
    ) -> httpx.Response:
        try:
            return await self._http_client.request(
                method,
                url,
                params=params,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as exc:
            logger.warning("Google Calendar request failed: %s", type(exc).__name__)
            raise ExternalApiError(
                500, f"Google Calendar request failed: {type(exc).__name__}"
            ) from exc

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()
