"""
Zoho access token cache.

Hands out a usable access token, refreshing it through the OAuth token endpoint
when it is within REFRESH_MARGIN of expiry. Refreshes are serialized per
process; a coroutine that waited on the lock re-reads the row and reuses the
token the winner stored.

Known gap: the lock is per process. Several server workers can still refresh
concurrently; Zoho tolerates this because the refresh token is not rotated.
"""

import asyncio
import logging
from datetime import datetime, timezone, timedelta
from typing import Callable, Optional

from token_store import OAuthToken, TokenStore
from zoho_crm import ZohoCRM, ZOHO_CLIENT_ID, ZOHO_CLIENT_SECRET
from zoho_errors import ZohoAPIError, NotConnected, RefreshFailed

logger = logging.getLogger(__name__)

REFRESH_MARGIN = timedelta(seconds=60)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class ZohoTokenCache:

    def __init__(self, store: TokenStore, client_id: str = None, client_secret: str = None,
                 datacenter: str = None, transport=None, now: Callable[[], datetime] = _utc_now):
        self.store = store
        self.client_id = client_id if client_id is not None else ZOHO_CLIENT_ID
        self.client_secret = client_secret if client_secret is not None else ZOHO_CLIENT_SECRET
        self.datacenter = datacenter
        self.transport = transport
        self._now = now
        self._refresh_lock = asyncio.Lock()

    def _is_fresh(self, token: OAuthToken) -> bool:
        return bool(token.access_token) and _aware(token.expires_at) - self._now() > REFRESH_MARGIN

    async def _load(self) -> OAuthToken:
        token = await self.store.get()
        if token is None or not token.refresh_token:
            raise NotConnected("Zoho is not connected")
        return token

    async def get_access_token(self) -> str:
        """Return a valid access token. Raises NotConnected or RefreshFailed."""
        token = await self._load()
        if self._is_fresh(token):
            return token.access_token

        async with self._refresh_lock:
            # Another request may have refreshed while this one waited
            token = await self._load()
            if self._is_fresh(token):
                return token.access_token
            return await self._refresh(token)

    async def _refresh(self, token: OAuthToken) -> str:
        if not self.client_id or not self.client_secret:
            raise RefreshFailed("ZOHO_CLIENT_ID / ZOHO_CLIENT_SECRET are not configured")

        try:
            data = await ZohoCRM.refresh_access_token(
                token.refresh_token, self.client_id, self.client_secret,
                datacenter=self.datacenter, transport=self.transport,
            )
        except ZohoAPIError as e:
            logger.error(f"Zoho token refresh failed: {e}")
            raise RefreshFailed(f"Token refresh failed: {e}")

        expires_at = self._now() + timedelta(seconds=data["expires_in"])
        await self.store.save_access_token(data["access_token"], expires_at)
        logger.info(f"Refreshed Zoho access token, valid until {expires_at.isoformat()}")
        return data["access_token"]
