"""Access-token validity checks and proactive refresh."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Protocol

from calsync.errors import TokenExpiredNoRefreshError
from calsync.models import OAuthCredential, RefreshedToken, ensure_utc

if TYPE_CHECKING:
    from calsync.storage.base import UserMetaStore

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_BUFFER = timedelta(minutes=5)


class TokenRefresher(Protocol):
    async def refresh(self, refresh_token: str) -> RefreshedToken: ...


def _utc_now() -> datetime:
    return datetime.now(UTC)


class TokenManager:
    """Hands out an access token that is good for at least ``refresh_buffer``.

    A token is unusable once ``now >= expires_at - refresh_buffer``; the
    boundary itself counts as unusable. Refresh failures surface unchanged
    from the refresher (``TokenRefreshError``) and are never retried here.
    """

    def __init__(
        self,
        store: UserMetaStore,
        refresher: TokenRefresher,
        *,
        refresh_buffer: timedelta = DEFAULT_REFRESH_BUFFER,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._refresher = refresher
        self._refresh_buffer = refresh_buffer
        self._clock = clock or _utc_now

    def is_usable(self, credential: OAuthCredential) -> bool:
        now = ensure_utc(self._clock())
        return now < ensure_utc(credential.expires_at) - self._refresh_buffer

    async def get_usable_access_token(self, user_id: str, credential: OAuthCredential) -> str:
        """Return a usable access token for *user_id*, refreshing if needed.

        Raises
        ------
        TokenExpiredNoRefreshError
            The token is unusable and no refresh token is stored.
        TokenRefreshError
            The refresh grant failed.
        """
        if self.is_usable(credential):
            return credential.access_token

        if credential.refresh_token is None:
            logger.info("Access token for user %s expired and no refresh token is stored", user_id)
            raise TokenExpiredNoRefreshError()

        logger.debug("Refreshing access token for user %s", user_id)
        refreshed = await self._refresher.refresh(credential.refresh_token)
        await self._store.update_access_token(
            user_id, refreshed.access_token, ensure_utc(refreshed.expires_at)
        )
        logger.info(
            "Refreshed access token for user %s (expires_at=%s)",
            user_id,
            refreshed.expires_at.isoformat(),
        )
        return refreshed.access_token
