"""OAuth token refresh with compare-and-swap write-back."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import TYPE_CHECKING

import httpx

from edunav.connectors.config import (
    TOKEN_REFRESH_SKEW_SECONDS,
    Connector,
    OAuthCredentials,
)
from edunav.connectors.exceptions import OAuthRefreshError

if TYPE_CHECKING:
    from edunav.connectors.storage.base import SyncStorage

logger = logging.getLogger(__name__)

# HTTP timeout for token endpoint calls (in seconds)
TOKEN_TIMEOUT = httpx.Timeout(10.0, connect=5.0)

# Lifetime assumed when the token endpoint omits expires_in
DEFAULT_TOKEN_LIFETIME_SECONDS = 3600


class CredentialStore:
    """Keeps a connector's OAuth access token fresh.

    Refreshes for one connector are serialized by a per-connector lock.
    Inside the lock the stored token set is re-read, so a refresh that
    another task already persisted is adopted without a network call. The
    new token set is written back only if the stored generation still
    matches the one the refresh was based on; a lost swap adopts the
    winner's tokens instead.

    Example:
        >>> store = CredentialStore(storage, client)
        >>> oauth = await store.ensure_fresh(connector)
        >>> headers = {"Authorization": f"Bearer {oauth.access_token}"}
    """

    def __init__(
        self,
        storage: SyncStorage,
        client: httpx.AsyncClient,
        clock: Callable[[], float] = time.time,
        skew: float = TOKEN_REFRESH_SKEW_SECONDS,
    ):
        self.storage = storage
        self.client = client
        self.clock = clock
        self.skew = skew
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, connector_id: str) -> asyncio.Lock:
        lock = self._locks.get(connector_id)
        if lock is None:
            lock = self._locks[connector_id] = asyncio.Lock()
        return lock

    async def ensure_fresh(self, connector: Connector) -> OAuthCredentials | None:
        """Refresh the connector's OAuth token if it is about to expire.

        Updates ``connector.config.oauth`` in place with the effective token
        set.

        Args:
            connector: Connector whose OAuth credentials should be checked.

        Returns:
            The effective OAuth credentials, or None if the connector does
            not authenticate with OAuth.

        Raises:
            OAuthRefreshError: If the token endpoint rejects the refresh.
        """
        oauth = connector.config.oauth
        if not connector.config.uses_oauth or oauth is None:
            return None
        if not oauth.needs_refresh(self.clock(), self.skew):
            return oauth

        observed_generation = oauth.generation
        async with self._lock_for(connector.id):
            stored = await self._load_stored(connector.id) or oauth
            if stored.generation != observed_generation and not stored.needs_refresh(
                self.clock(), self.skew
            ):
                logger.info(
                    f"OAuth token for connector {connector.id} already refreshed "
                    f"(generation {stored.generation}), reusing it"
                )
                connector.config.oauth = stored
                return stored

            refreshed = await self.refresh(connector.id, stored)
            if await self.storage.swap_oauth_credentials(
                connector.id, stored.generation, refreshed
            ):
                logger.info(
                    f"OAuth token refreshed for connector {connector.id} "
                    f"(generation {refreshed.generation})"
                )
                connector.config.oauth = refreshed
                return refreshed

            winner = await self._load_stored(connector.id)
            if winner is None:
                raise OAuthRefreshError(
                    f"Connector {connector.id} lost its OAuth credentials during refresh"
                )
            logger.warning(
                f"Concurrent OAuth refresh for connector {connector.id}; "
                f"adopting stored generation {winner.generation}"
            )
            connector.config.oauth = winner
            return winner

    async def _load_stored(self, connector_id: str) -> OAuthCredentials | None:
        current = await self.storage.get_connector(connector_id)
        if current is None:
            return None
        return current.config.oauth

    async def refresh(self, connector_id: str, oauth: OAuthCredentials) -> OAuthCredentials:
        """Exchange the refresh token for a new access token.

        Returns:
            The next generation of ``oauth``. Not persisted.

        Raises:
            OAuthRefreshError: If configuration is incomplete or the token
                endpoint does not return a usable access token.
        """
        if not oauth.refresh_token or not oauth.token_endpoint:
            raise OAuthRefreshError(
                f"Connector {connector_id} has no refresh token or token endpoint configured"
            )

        data = {"grant_type": "refresh_token", "refresh_token": oauth.refresh_token}
        if oauth.client_id:
            data["client_id"] = oauth.client_id
        if oauth.client_secret:
            data["client_secret"] = oauth.client_secret

        try:
            response = await self.client.post(
                oauth.token_endpoint,
                data=data,
                headers={"Accept": "application/json"},
                timeout=TOKEN_TIMEOUT,
            )
        except httpx.HTTPError as e:
            raise OAuthRefreshError(
                f"OAuth token refresh request failed for connector {connector_id}: {e}"
            ) from e

        if not response.is_success:
            raise OAuthRefreshError(
                f"OAuth token refresh failed ({response.status_code}): {response.text[:500]}"
            )

        try:
            body = response.json()
        except ValueError as e:
            raise OAuthRefreshError(
                f"OAuth token endpoint returned invalid JSON: {response.text[:200]}"
            ) from e

        access_token = body.get("access_token") if isinstance(body, dict) else None
        if not access_token:
            raise OAuthRefreshError("OAuth token endpoint response missing access_token")

        expires_in = body.get("expires_in") or DEFAULT_TOKEN_LIFETIME_SECONDS
        return oauth.rotated(
            access_token=access_token,
            refresh_token=body.get("refresh_token"),
            expires_at=self.clock() + float(expires_in),
        )
