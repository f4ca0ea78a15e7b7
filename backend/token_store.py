"""
Zoho OAuth token repository.

The zoho_tokens table holds at most one row. Writers never insert a second
row: upsert() updates the existing row when there is one.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from crypto_utils import encrypt_value, decrypt_value
from database import run_db

logger = logging.getLogger(__name__)

TOKENS_TABLE = "zoho_tokens"


class OAuthToken(BaseModel):
    refresh_token: str
    access_token: str
    expires_at: datetime


class TokenStore(ABC):
    """Singleton-row storage for the Zoho token pair."""

    @abstractmethod
    async def get(self) -> Optional[OAuthToken]:
        """Return the stored token, or None when Zoho was never connected."""

    @abstractmethod
    async def upsert(self, token: OAuthToken) -> None:
        """Replace the whole token pair (after an authorization-code exchange)."""

    @abstractmethod
    async def save_access_token(self, access_token: str, expires_at: datetime) -> None:
        """Overwrite only the access token and its expiry. The refresh token is untouched."""


class SupabaseTokenStore(TokenStore):
    """TokenStore on the zoho_tokens table, tokens encrypted at rest."""

    def __init__(self, supabase):
        self.supabase = supabase

    async def _first_row(self, columns: str) -> Optional[dict]:
        result = await run_db(
            lambda: self.supabase.table(TOKENS_TABLE).select(columns).limit(1).execute()
        )
        return result.data[0] if result.data else None

    async def get(self) -> Optional[OAuthToken]:
        row = await self._first_row("id, refresh_token, access_token, expires_at")
        if not row or not row.get("refresh_token"):
            return None
        return OAuthToken(
            refresh_token=decrypt_value(row["refresh_token"]),
            access_token=decrypt_value(row.get("access_token") or ""),
            expires_at=row["expires_at"],
        )

    async def upsert(self, token: OAuthToken) -> None:
        payload = {
            "refresh_token": encrypt_value(token.refresh_token),
            "access_token": encrypt_value(token.access_token),
            "expires_at": token.expires_at.isoformat(),
        }
        existing = await self._first_row("id")
        if existing:
            await run_db(
                lambda: self.supabase.table(TOKENS_TABLE).update(payload).eq("id", existing["id"]).execute()
            )
            logger.info("Replaced stored Zoho token pair")
        else:
            await run_db(lambda: self.supabase.table(TOKENS_TABLE).insert(payload).execute())
            logger.info("Stored new Zoho token pair")

    async def save_access_token(self, access_token: str, expires_at: datetime) -> None:
        existing = await self._first_row("id")
        if not existing:
            logger.warning("Refreshed Zoho access token but no token row exists to update")
            return
        await run_db(
            lambda: self.supabase.table(TOKENS_TABLE).update({
                "access_token": encrypt_value(access_token),
                "expires_at": expires_at.isoformat(),
            }).eq("id", existing["id"]).execute()
        )
