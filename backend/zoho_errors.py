"""
Zoho claim sync error taxonomy.

Every failure in the claim pipeline is a ZohoAPIError subclass carrying a short
`code`. ClaimSynchronizer catches the whole hierarchy and reports it as a
ClaimSyncResult, so none of these ever reach the claim action caller.
"""


class ZohoAPIError(Exception):
    """Custom exception for Zoho API errors."""
    code = "zoho_api_error"


class TransportError(ZohoAPIError):
    """Network failure, timeout, or a response body that is not valid JSON."""
    code = "transport_error"


class NotConnected(ZohoAPIError):
    """No Zoho token row stored (OAuth connect never completed)."""
    code = "not_connected"


class RefreshFailed(ZohoAPIError):
    """Access token refresh was rejected or could not be performed."""
    code = "refresh_failed"


class NoContactFound(ZohoAPIError):
    code = "no_contact_found"


class NoMatchingDeal(ZohoAPIError):
    code = "no_matching_deal"


class RemoteUpdateFailed(ZohoAPIError):
    code = "remote_update_failed"
