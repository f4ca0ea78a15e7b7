"""Shared fixtures: backend modules on sys.path, an in-memory token store, no rate limiting."""

import os
import sys
from datetime import datetime
from typing import Optional

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import zoho_crm
from token_store import OAuthToken, TokenStore


class FakeTokenStore(TokenStore):
    """In-memory singleton token row that records every write."""

    def __init__(self, token: Optional[OAuthToken] = None):
        self.token = token
        self.writes = []

    async def get(self) -> Optional[OAuthToken]:
        return self.token

    async def upsert(self, token: OAuthToken) -> None:
        self.writes.append(("upsert", token))
        self.token = token

    async def save_access_token(self, access_token: str, expires_at: datetime) -> None:
        self.writes.append(("save_access_token", access_token, expires_at))
        self.token = self.token.model_copy(update={"access_token": access_token, "expires_at": expires_at})


@pytest.fixture(autouse=True)
def no_rate_limit(monkeypatch):
    """Tests make bursts of mocked calls; do not let the Zoho limiter sleep."""
    monkeypatch.setattr(zoho_crm, "_zoho_rate_limiter", zoho_crm.ZohoRateLimiter(max_requests=10_000))
