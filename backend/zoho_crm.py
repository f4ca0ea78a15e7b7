"""
Zoho CRM Integration Module.
OAuth 2.0 token endpoints plus the Contacts/Deals calls used by claim sync.
"""

import httpx
import logging
import asyncio
import time
import os
from pathlib import Path
from typing import Optional, Dict, Any, List
from collections import defaultdict
from dotenv import load_dotenv

from zoho_errors import ZohoAPIError, TransportError

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

ZOHO_TIMEOUT = 30.0
ZOHO_MAX_REQUESTS_PER_SECOND = 5
ZOHO_RATE_LIMIT_WINDOW = 1.0
ZOHO_API_VERSION = "v2"

ZOHO_CLIENT_ID = os.environ.get("ZOHO_CLIENT_ID", "")
ZOHO_CLIENT_SECRET = os.environ.get("ZOHO_CLIENT_SECRET", "")
ZOHO_REDIRECT_URI = os.environ.get("ZOHO_REDIRECT_URI", "")
ZOHO_DATACENTER = os.environ.get("ZOHO_DATACENTER", "au")
ZOHO_SCOPES = "ZohoCRM.modules.deals.ALL,ZohoCRM.modules.contacts.READ"

# Datacenter mappings
ZOHO_DATACENTERS = {
    "us": {"accounts": "https://accounts.zoho.com", "api": "https://www.zohoapis.com"},
    "eu": {"accounts": "https://accounts.zoho.eu", "api": "https://www.zohoapis.eu"},
    "in": {"accounts": "https://accounts.zoho.in", "api": "https://www.zohoapis.in"},
    "au": {"accounts": "https://accounts.zoho.com.au", "api": "https://www.zohoapis.com.au"},
    "jp": {"accounts": "https://accounts.zoho.jp", "api": "https://www.zohoapis.jp"},
}

DEFAULT_TOKEN_EXPIRES_IN = 3600


def _datacenter(datacenter: Optional[str]) -> Dict[str, str]:
    return ZOHO_DATACENTERS.get(datacenter or ZOHO_DATACENTER, ZOHO_DATACENTERS["au"])


class ZohoRateLimiter:
    """Sliding-window rate limiter shared by every Zoho API call in the process."""

    def __init__(self, max_requests: int = ZOHO_MAX_REQUESTS_PER_SECOND, window: float = ZOHO_RATE_LIMIT_WINDOW):
        self.max_requests = max_requests
        self.window = window
        self._requests = defaultdict(list)
        self._lock = asyncio.Lock()

    def _prune(self, key: str, now: float):
        self._requests[key] = [t for t in self._requests[key] if now - t < self.window]

    async def acquire(self, key: str = "default"):
        async with self._lock:
            now = time.time()
            self._prune(key, now)
            if len(self._requests[key]) >= self.max_requests:
                wait_time = self.window - (now - min(self._requests[key]))
                if wait_time > 0:
                    await asyncio.sleep(wait_time)
                    now = time.time()
                    self._prune(key, now)
            self._requests[key].append(now)


_zoho_rate_limiter = ZohoRateLimiter()


def _error_message(response: httpx.Response) -> str:
    """Pull the human-readable message out of a Zoho error body."""
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or f"HTTP {response.status_code}"

    if isinstance(body, dict):
        records = body.get("data")
        if isinstance(records, list) and records and isinstance(records[0], dict):
            if records[0].get("message"):
                return str(records[0]["message"])
        if body.get("message"):
            return str(body["message"])
        if body.get("error"):
            return str(body["error"])
    return f"HTTP {response.status_code}"


def _escape_criteria(value: str) -> str:
    """Backslash-escape the characters Zoho's criteria syntax reserves inside values."""
    for char in ("\\", "(", ")", ","):
        value = value.replace(char, f"\\{char}")
    return value


def _expires_in(value) -> int:
    if value is None:
        return DEFAULT_TOKEN_EXPIRES_IN
    try:
        seconds = int(value)
    except (TypeError, ValueError):
        logger.warning(f"Zoho returned a non-numeric expires_in '{value}', using {DEFAULT_TOKEN_EXPIRES_IN}")
        return DEFAULT_TOKEN_EXPIRES_IN
    return seconds if seconds > 0 else DEFAULT_TOKEN_EXPIRES_IN


def _parse_json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        logger.error(f"Zoho returned a non-JSON body ({response.status_code}): {response.text[:200]}")
        raise TransportError(f"Malformed response from Zoho (HTTP {response.status_code})")


async def _post_token_form(token_url: str, form: Dict[str, str], transport=None) -> Dict[str, Any]:
    """POST to the accounts token endpoint and return the parsed JSON body."""
    try:
        async with httpx.AsyncClient(timeout=ZOHO_TIMEOUT, transport=transport) as client:
            response = await client.post(token_url, data=form)
    except httpx.TimeoutException:
        raise TransportError("Connection timeout while contacting Zoho accounts")
    except httpx.RequestError as e:
        raise TransportError(f"Connection error: {str(e)}")

    if response.status_code >= 400:
        logger.error(f"Zoho token endpoint error {response.status_code}: {response.text[:500]}")
        raise ZohoAPIError(f"Token endpoint returned {response.status_code}: {_error_message(response)}")

    data = _parse_json(response)
    if not isinstance(data, dict):
        raise TransportError("Unexpected token response shape from Zoho")
    if "error" in data:
        raise ZohoAPIError(f"Zoho auth error: {data['error']}")
    return data


class ZohoCRM:
    """Client for the Zoho CRM REST API, authenticated with an OAuth access token."""

    def __init__(self, access_token: str, datacenter: str = None, api_domain: str = None, transport=None):
        self.access_token = access_token
        dc_config = _datacenter(datacenter)
        self.api_base = api_domain or dc_config["api"]
        # httpx transport override, used by tests (httpx.MockTransport)
        self.transport = transport

    async def _call(self, method: str, path: str, data: dict = None, params: dict = None) -> dict:
        """
        Make an authenticated API call to Zoho CRM.

        Returns the parsed body, or {} for 204 No Content (Zoho's "no records").
        Raises TransportError for network/parse failures and ZohoAPIError for
        non-2xx responses.
        """
        await _zoho_rate_limiter.acquire()

        url = f"{self.api_base}/crm/{ZOHO_API_VERSION}{path}"
        headers = {
            "Authorization": f"Zoho-oauthtoken {self.access_token}",
            "Content-Type": "application/json",
        }

        try:
            async with httpx.AsyncClient(timeout=ZOHO_TIMEOUT, transport=self.transport) as client:
                if method.upper() == "GET":
                    response = await client.get(url, headers=headers, params=params)
                elif method.upper() == "PUT":
                    response = await client.put(url, headers=headers, json=data)
                else:
                    raise ZohoAPIError(f"Unsupported method: {method}")
        except httpx.TimeoutException:
            raise TransportError("Connection timeout. Please check your Zoho connection")
        except httpx.RequestError as e:
            raise TransportError(f"Connection error: {str(e)}")

        if response.status_code == 401:
            raise ZohoAPIError("Authentication failed. Token may be expired")
        if response.status_code == 429:
            raise ZohoAPIError("Rate limit exceeded")
        if response.status_code >= 400:
            logger.error(f"Zoho API error {response.status_code} on {method} {path}: {response.text[:500]}")
            raise ZohoAPIError(_error_message(response))

        if response.status_code == 204 or not response.content:
            return {}
        body = _parse_json(response)
        if not isinstance(body, dict):
            raise TransportError(f"Unexpected response shape from Zoho for {path}")
        return body

    # ==================== OAuth ====================

    @staticmethod
    def get_auth_url(redirect_uri: str, client_id: str = None, datacenter: str = None) -> str:
        """Generate the Zoho OAuth authorization URL (offline access for a refresh token)."""
        accounts_url = _datacenter(datacenter)["accounts"]
        query = httpx.QueryParams({
            "scope": ZOHO_SCOPES,
            "client_id": client_id or ZOHO_CLIENT_ID,
            "response_type": "code",
            "redirect_uri": redirect_uri,
            "access_type": "offline",
        })
        return f"{accounts_url}/oauth/v2/auth?{query}"

    @staticmethod
    async def exchange_code(code: str, redirect_uri: str, client_id: str = None,
                            client_secret: str = None, datacenter: str = None,
                            transport=None) -> Dict[str, Any]:
        """Exchange an authorization code for a refresh/access token pair."""
        token_url = f"{_datacenter(datacenter)['accounts']}/oauth/v2/token"
        data = await _post_token_form(token_url, {
            "grant_type": "authorization_code",
            "client_id": client_id or ZOHO_CLIENT_ID,
            "client_secret": client_secret or ZOHO_CLIENT_SECRET,
            "redirect_uri": redirect_uri,
            "code": code,
        }, transport=transport)

        if not data.get("access_token") or not data.get("refresh_token"):
            logger.error(f"Zoho code exchange returned no token pair: {list(data.keys())}")
            raise ZohoAPIError("Token exchange did not return an access and refresh token")

        return {
            "access_token": data["access_token"],
            "refresh_token": data["refresh_token"],
            "expires_in": _expires_in(data.get("expires_in")),
        }

    @staticmethod
    async def refresh_access_token(refresh_token: str, client_id: str, client_secret: str,
                                   datacenter: str = None, transport=None) -> Dict[str, Any]:
        """Trade a refresh token for a new access token. The refresh token itself is kept."""
        token_url = f"{_datacenter(datacenter)['accounts']}/oauth/v2/token"
        data = await _post_token_form(token_url, {
            "grant_type": "refresh_token",
            "client_id": client_id,
            "client_secret": client_secret,
            "refresh_token": refresh_token,
        }, transport=transport)

        if not data.get("access_token"):
            raise ZohoAPIError("Token refresh response had no access_token")

        return {
            "access_token": data["access_token"],
            "expires_in": _expires_in(data.get("expires_in")),
        }

    # ==================== Contacts ====================

    async def search_contacts_by_name(self, full_name: str) -> List[Dict]:
        """Exact-match search on Full_Name. Zoho has no fuzzy operator here."""
        result = await self._call("GET", "/Contacts/search", params={
            "criteria": f"(Full_Name:equals:{_escape_criteria(full_name)})",
        })
        records = result.get("data") or []
        return [r for r in records if isinstance(r, dict) and r.get("id")]

    # ==================== Deals ====================

    async def get_contact_deals(self, contact_id: str, fields: List[str]) -> List[Dict]:
        """Deals related to one contact, limited to the requested fields."""
        result = await self._call("GET", f"/Contacts/{contact_id}/Deals", params={
            "fields": ",".join(fields),
        })
        records = result.get("data") or []
        return [r for r in records if isinstance(r, dict)]

    async def update_deal_stage(self, deal_id: str, stage: str) -> Dict:
        """
        Set a deal's Stage. Zoho answers 200 even when the record update failed,
        so the per-record status is checked too.
        """
        result = await self._call("PUT", f"/Deals/{deal_id}", data={
            "data": [{"Stage": stage}],
        })
        records = result.get("data") or []
        record = records[0] if records and isinstance(records[0], dict) else {}
        if record.get("status") == "error":
            raise ZohoAPIError(record.get("message") or record.get("code") or "Record update rejected")
        logger.info(f"Updated Zoho deal {deal_id} stage to '{stage}'")
        return record
