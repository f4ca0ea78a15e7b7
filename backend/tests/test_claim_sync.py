"""
Claim Synchronizer Tests
========================
End to end through the real token cache, resolver, matcher and CRM client,
with Zoho replaced by httpx.MockTransport. Verifies that:
1. The nearest-dated matching deal is moved to "Completed with Commission".
2. Failures before the PUT leave Zoho untouched and come back as results.
3. The camelCase payload omits absent fields.
"""

import json
import httpx
import pytest
from datetime import datetime, timezone, timedelta
from unittest.mock import AsyncMock

from claim_sync import COMMISSION_STAGE, ClaimSyncResult, ClaimSynchronizer
from conftest import FakeTokenStore
from token_cache import ZohoTokenCache
from token_store import OAuthToken
from zoho_crm import ZohoCRM
from zoho_errors import NotConnected

CONTACT = {"id": "C1", "Full_Name": "Li Wei", "First_Name": "Li", "Last_Name": "Wei"}
DEAL_NEAR = {
    "id": "D1", "Deal_Name": "Li Wei - AIT 2024", "Stage": "Negotiation",
    "Account_Name": {"name": "Auckland Institute of Technology", "id": "A1"},
    "Course_Start_Date": "2024-03-04",
}
DEAL_FAR = {
    "id": "D2", "Deal_Name": "Li Wei - AI", "Stage": "Proposal",
    "Account_Name": {"name": "Auckland Institute", "id": "A2"},
    "Created_Time": "2024-01-01T09:00:00+13:00",
}


class TestClaimSyncEndToEnd:

    @pytest.mark.asyncio
    async def test_nearest_deal_is_moved_to_commission_stage(self):
        zoho = FakeZoho(contacts={"Li Wei": [CONTACT]}, deals={"C1": [DEAL_FAR, DEAL_NEAR]})

        result = await _synchronizer(zoho).sync_claim("Li Wei", "Auckland Institute", "2024-03-01")

        assert result.success is True
        assert result.deal_id == "D1"
        assert result.deal_name == "Li Wei - AIT 2024"
        assert result.previous_stage == "Negotiation"
        assert zoho.puts == [("D1", {"data": [{"Stage": COMMISSION_STAGE}]})]

    @pytest.mark.asyncio
    async def test_reversed_name_is_found_by_variant(self):
        zoho = FakeZoho(contacts={"Wei Li": [CONTACT]}, deals={"C1": [DEAL_NEAR]})

        result = await _synchronizer(zoho).sync_claim("Li Wei", "Auckland Institute", "2024-03-01")

        assert result.success is True
        assert zoho.searches[:2] == ["Li Wei", "Wei Li"]

    @pytest.mark.asyncio
    async def test_no_contact_means_no_deal_or_update_calls(self):
        zoho = FakeZoho(contacts={}, deals={})

        result = await _synchronizer(zoho).sync_claim("Nobody Known", "Auckland Institute")

        assert result.success is False
        assert result.error_code == "no_contact_found"
        assert "Nobody Known" in result.error
        assert "tried variants" in result.error
        assert zoho.deal_fetches == []
        assert zoho.puts == []

    @pytest.mark.asyncio
    async def test_no_matching_deal(self):
        other = dict(DEAL_NEAR, Account_Name={"name": "Massey University"}, Deal_Name="Li Wei - Massey")
        zoho = FakeZoho(contacts={"Li Wei": [CONTACT]}, deals={"C1": [other]})

        result = await _synchronizer(zoho).sync_claim("Li Wei", "Auckland Institute", "2024-03-01")

        assert result.success is False
        assert result.error_code == "no_matching_deal"
        assert "school=Auckland Institute" in result.error
        assert zoho.puts == []

    @pytest.mark.asyncio
    async def test_rejected_update_is_reported(self):
        zoho = FakeZoho(contacts={"Li Wei": [CONTACT]}, deals={"C1": [DEAL_NEAR]}, put_status=400)

        result = await _synchronizer(zoho).sync_claim("Li Wei", "Auckland Institute", "2024-03-01")

        assert result.success is False
        assert result.error_code == "remote_update_failed"
        assert result.error.startswith("Update failed:")

    @pytest.mark.asyncio
    async def test_refresh_failure_stops_before_any_crm_call(self):
        store = FakeTokenStore(_token(expires_in=timedelta(seconds=5)))
        zoho = FakeZoho(contacts={"Li Wei": [CONTACT]}, deals={"C1": [DEAL_NEAR]}, refresh_status=400)

        result = await _synchronizer(zoho, store).sync_claim("Li Wei", "Auckland Institute")

        assert result.success is False
        assert result.error_code == "refresh_failed"
        assert "access token" in result.error
        assert zoho.searches == []
        assert zoho.puts == []
        assert store.writes == []

    @pytest.mark.asyncio
    async def test_not_connected(self):
        zoho = FakeZoho(contacts={}, deals={})

        result = await _synchronizer(zoho, FakeTokenStore(None)).sync_claim("Li Wei", "Auckland Institute")

        assert result.success is False
        assert result.error_code == "not_connected"
        assert "No access token available" in result.error

    @pytest.mark.asyncio
    async def test_expired_token_refreshed_then_used(self):
        store = FakeTokenStore(_token(expires_in=timedelta(seconds=-30)))
        zoho = FakeZoho(contacts={"Li Wei": [CONTACT]}, deals={"C1": [DEAL_NEAR]})

        result = await _synchronizer(zoho, store).sync_claim("Li Wei", "Auckland Institute")

        assert result.success is True
        assert zoho.auth_headers and set(zoho.auth_headers) == {"Zoho-oauthtoken refreshed-access"}


class TestZohoOutages:
    """A failing Zoho must not be reported as missing contacts or deals."""

    @pytest.mark.asyncio
    async def test_search_server_error_is_not_no_contact(self):
        zoho = FakeZoho(contacts={"Li Wei": [CONTACT]}, deals={"C1": [DEAL_NEAR]}, search_status=500)

        result = await _synchronizer(zoho).sync_claim("Li Wei", "Auckland Institute", "2024-03-01")

        assert result.success is False
        assert result.error_code == "zoho_api_error"
        assert "Internal Server Error" in result.error
        assert zoho.searches == ["Li Wei"]
        assert zoho.deal_fetches == []
        assert zoho.puts == []

    @pytest.mark.asyncio
    async def test_rejected_token_on_deals_is_not_no_matching_deal(self):
        zoho = FakeZoho(contacts={"Li Wei": [CONTACT]}, deals={"C1": [DEAL_NEAR]}, deals_status=401)

        result = await _synchronizer(zoho).sync_claim("Li Wei", "Auckland Institute", "2024-03-01")

        assert result.success is False
        assert result.error_code == "zoho_api_error"
        assert "Authentication failed" in result.error
        assert zoho.puts == []

    @pytest.mark.asyncio
    async def test_unreachable_crm_is_a_transport_error(self):
        zoho = FakeZoho(contacts={"Li Wei": [CONTACT]}, deals={"C1": [DEAL_NEAR]}, crm_unreachable=True)

        result = await _synchronizer(zoho).sync_claim("Li Wei", "Auckland Institute")

        assert result.success is False
        assert result.error_code == "transport_error"
        assert "Connection error" in result.error
        assert zoho.puts == []


class TestUnexpectedErrors:

    @pytest.mark.asyncio
    async def test_unexpected_exception_becomes_a_result(self):
        cache = AsyncMock()
        cache.get_access_token = AsyncMock(return_value="tok")

        def broken_factory(token):
            raise KeyError("boom")

        result = await ClaimSynchronizer(cache, crm_factory=broken_factory).sync_claim("Li Wei", "AIT")

        assert result.success is False
        assert result.error_code == "unexpected"

    @pytest.mark.asyncio
    async def test_token_errors_keep_their_type(self):
        cache = AsyncMock()
        cache.get_access_token = AsyncMock(side_effect=NotConnected("Zoho is not connected"))

        result = await ClaimSynchronizer(cache).sync_claim("Li Wei", "AIT")

        assert result.error_code == "not_connected"
        assert result.error == "No access token available: Zoho is not connected"


class TestClaimSyncResult:

    def test_success_payload_is_camel_case(self):
        result = ClaimSyncResult(success=True, deal_name="Deal", deal_id="D1", previous_stage="Negotiation")
        assert result.to_response() == {
            "success": True, "dealName": "Deal", "dealId": "D1", "previousStage": "Negotiation",
        }

    def test_failure_payload_omits_deal_fields(self):
        result = ClaimSyncResult(success=False, error="Update failed: x", error_code="remote_update_failed")
        assert result.to_response() == {
            "success": False, "error": "Update failed: x", "errorCode": "remote_update_failed",
        }


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeZoho:
    """Routes accounts and CRM requests the way Zoho answers them."""

    def __init__(self, contacts: dict, deals: dict, put_status: int = 200, refresh_status: int = 200,
                 search_status: int = 200, deals_status: int = 200, crm_unreachable: bool = False):
        self.contacts = contacts
        self.deals = deals
        self.search_status = search_status
        self.deals_status = deals_status
        self.crm_unreachable = crm_unreachable
        self.put_status = put_status
        self.refresh_status = refresh_status
        self.searches = []
        self.deal_fetches = []
        self.puts = []
        self.auth_headers = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/oauth/v2/token":
            if self.refresh_status != 200:
                return httpx.Response(self.refresh_status, json={"error": "invalid_code"})
            return httpx.Response(200, json={"access_token": "refreshed-access", "expires_in": 3600})

        self.auth_headers.append(request.headers["Authorization"])
        if self.crm_unreachable:
            raise httpx.ConnectError("connection refused", request=request)

        if path == "/crm/v2/Contacts/search":
            criteria = request.url.params["criteria"]
            name = criteria[len("(Full_Name:equals:"):-1]
            self.searches.append(name)
            if self.search_status != 200:
                return httpx.Response(self.search_status, json={"code": "INTERNAL_ERROR", "message": "Internal Server Error"})
            found = self.contacts.get(name, [])
            return httpx.Response(200, json={"data": found}) if found else httpx.Response(204)

        if path.startswith("/crm/v2/Contacts/") and path.endswith("/Deals"):
            contact_id = path.split("/")[4]
            self.deal_fetches.append(contact_id)
            if self.deals_status == 401:
                return httpx.Response(401, json={"code": "INVALID_TOKEN", "message": "invalid oauth token"})
            found = self.deals.get(contact_id, [])
            return httpx.Response(200, json={"data": found}) if found else httpx.Response(204)

        if request.method == "PUT" and path.startswith("/crm/v2/Deals/"):
            deal_id = path.rsplit("/", 1)[-1]
            self.puts.append((deal_id, json.loads(request.content)))
            if self.put_status != 200:
                return httpx.Response(self.put_status, json={
                    "data": [{"code": "INVALID_DATA", "status": "error", "message": "invalid stage"}]})
            return httpx.Response(200, json={"data": [{"code": "SUCCESS", "status": "success",
                                                       "details": {"id": deal_id}}]})

        return httpx.Response(404, json={"code": "INVALID_URL_PATTERN"})


def _token(expires_in: timedelta) -> OAuthToken:
    return OAuthToken(refresh_token="the-refresh", access_token="cached-access", expires_at=NOW + expires_in)


def _synchronizer(zoho: FakeZoho, store: FakeTokenStore = None) -> ClaimSynchronizer:
    transport = httpx.MockTransport(zoho.handler)
    store = store or FakeTokenStore(_token(expires_in=timedelta(hours=1)))
    cache = ZohoTokenCache(store, client_id="cid", client_secret="secret", datacenter="au",
                           transport=transport, now=lambda: NOW)
    return ClaimSynchronizer(cache, crm_factory=lambda token: ZohoCRM(token, datacenter="au", transport=transport))


if __name__ == "__main__":
    pytest.main([__file__, "-v", "--tb=short"])
