"""User-facing operations on a Google Calendar connection.

:class:`CalendarConnectionService` is the single entry point the REST router
and the CLI call into: build an authorization URL, complete the OAuth
callback, disconnect, report status, and trigger an import.
"""

from __future__ import annotations

import base64
import binascii
import logging
import secrets
from collections.abc import Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from calsync.config import DEFAULT_REDIRECT_URI
from calsync.errors import ExternalApiError, InvalidStateError, NotConnectedError
from calsync.google_client import GoogleCalendarClient
from calsync.models import (
    AuthorizationRequest,
    ConnectionStatus,
    ConnectResult,
    DisconnectResult,
    ImportResult,
    OAuthCredential,
)
from calsync.orchestrator import ImportOrchestrator

if TYPE_CHECKING:
    from calsync.storage.base import UserMetaStore

logger = logging.getLogger(__name__)

_STATE_NONCE_BYTES = 16


def encode_state(user_id: str, nonce: str | None = None) -> str:
    """Encode ``"<user_id>:<random hex>"`` as unpadded base64url."""
    nonce = nonce or secrets.token_hex(_STATE_NONCE_BYTES)
    raw = f"{user_id}:{nonce}".encode()
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_state(state: str) -> str:
    """Return the user id carried by an OAuth ``state`` value.

    Raises
    ------
    InvalidStateError
        The value is not base64url, or lacks a user id or nonce.
    """
    if not state or not state.strip():
        raise InvalidStateError()
    padded = state.strip() + "=" * (-len(state.strip()) % 4)
    try:
        decoded = base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")
    except (binascii.Error, UnicodeError, ValueError) as exc:
        raise InvalidStateError() from exc

    user_id, sep, nonce = decoded.rpartition(":")
    if not sep or not user_id or not nonce:
        raise InvalidStateError()
    return user_id


class CalendarConnectionService:
    """Connect, disconnect, inspect and import for a user's Google Calendar."""

    def __init__(
        self,
        user_meta_store: UserMetaStore,
        client: GoogleCalendarClient,
        orchestrator: ImportOrchestrator,
        *,
        redirect_uri: str = DEFAULT_REDIRECT_URI,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._user_meta_store = user_meta_store
        self._client = client
        self._orchestrator = orchestrator
        self._redirect_uri = redirect_uri
        self._clock = clock or (lambda: datetime.now(UTC))

    @property
    def redirect_uri(self) -> str:
        return self._redirect_uri

    def authorization_url(self, user_id: str) -> AuthorizationRequest:
        if not user_id or not user_id.strip():
            raise ValueError("user_id must be a non-empty string")
        state = encode_state(user_id.strip())
        url = self._client.build_authorization_url(redirect_uri=self._redirect_uri, state=state)
        return AuthorizationRequest(authorization_url=url, state=state)

    async def connect(
        self, code: str, state: str, redirect_uri: str | None = None
    ) -> ConnectResult:
        """Complete the OAuth callback and store the user's credential.

        Raises
        ------
        InvalidStateError
            ``state`` cannot be decoded.
        ExternalApiError
            The code exchange or the userinfo call failed.
        """
        user_id = decode_state(state)
        grant = await self._client.exchange_code(code, redirect_uri or self._redirect_uri)

        if grant.refresh_token is None:
            logger.warning(
                "No refresh token received for user %s; the connection will need to be "
                "re-authorized when the access token expires",
                user_id,
            )

        account = await self._client.get_account_info(grant.access_token)
        connected_at = self._clock()

        await self._user_meta_store.save_credential(
            user_id,
            OAuthCredential(
                access_token=grant.access_token,
                refresh_token=grant.refresh_token,
                expires_at=grant.expires_at,
                account_email=account.email,
                connected_at=connected_at,
            ),
        )
        logger.info("Connected Google Calendar for user %s (%s)", user_id, account.email)
        return ConnectResult(email=account.email, connected_at=connected_at)

    async def disconnect(self, user_id: str) -> DisconnectResult:
        meta = await self._user_meta_store.find_user_meta(user_id)
        if meta is None or meta.credential is None:
            raise NotConnectedError()

        try:
            await self._client.revoke(meta.credential.access_token)
        except ExternalApiError as exc:
            # The user may already have revoked access from their Google account.
            logger.warning(
                "Failed to revoke Google token for user %s (status=%s); removing locally anyway",
                user_id,
                exc.remote_status,
            )

        await self._user_meta_store.remove_credential(user_id)
        logger.info("Disconnected Google Calendar for user %s", user_id)
        return DisconnectResult()

    async def import_now(self, user_id: str, *, timeout: float | None = None) -> ImportResult:
        return await self._orchestrator.run(user_id, timeout=timeout)

    async def status(self, user_id: str) -> ConnectionStatus:
        meta = await self._user_meta_store.find_user_meta(user_id)
        if meta is None or meta.credential is None:
            return ConnectionStatus(connected=False)
        return ConnectionStatus(
            connected=True,
            email=meta.credential.account_email,
            connected_at=meta.credential.connected_at,
            last_sync_at=meta.cursor.last_sync_at if meta.cursor else None,
        )
