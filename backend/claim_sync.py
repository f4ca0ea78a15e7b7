"""
Claim Synchronizer.

Moves the Zoho deal behind a commission claim to "Completed with Commission":
token -> contacts -> deal -> one stage PUT. Steps before the PUT are read-only,
so a failed run leaves Zoho untouched and a repeated run converges on the same
stage. Every outcome comes back as a ClaimSyncResult; nothing is raised.
"""

import logging
from typing import Callable, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from contact_resolver import ContactResolver, build_name_variants
from deal_matcher import DealMatcher
from token_cache import ZohoTokenCache
from zoho_crm import ZohoCRM
from zoho_errors import (
    ZohoAPIError, NotConnected, RefreshFailed, NoContactFound,
    NoMatchingDeal, RemoteUpdateFailed,
)

logger = logging.getLogger(__name__)

COMMISSION_STAGE = "Completed with Commission"


class ClaimSyncResult(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    success: bool
    deal_name: Optional[str] = None
    deal_id: Optional[str] = None
    previous_stage: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @classmethod
    def failure(cls, error: ZohoAPIError) -> "ClaimSyncResult":
        return cls(success=False, error=str(error), error_code=error.code)

    def to_response(self) -> dict:
        """camelCase payload for the claim action, absent fields omitted."""
        return self.model_dump(by_alias=True, exclude_none=True)


class ClaimSynchronizer:
    """
    Args:
        token_cache: source of a valid Zoho access token.
        crm_factory: builds a CRM client from an access token (ZohoCRM by default).
    """

    def __init__(self, token_cache: ZohoTokenCache, crm_factory: Callable[[str], ZohoCRM] = ZohoCRM):
        self.token_cache = token_cache
        self.crm_factory = crm_factory

    async def sync_claim(self, student_name: str, school_name: str,
                         enrollment_date: Optional[str] = None) -> ClaimSyncResult:
        try:
            return await self._sync(student_name, school_name, enrollment_date)
        except ZohoAPIError as e:
            logger.warning(f"Zoho claim sync failed for student='{student_name}': {e}")
            return ClaimSyncResult.failure(e)
        except Exception as e:
            logger.exception(f"Unexpected error in Zoho claim sync for student='{student_name}'")
            return ClaimSyncResult(success=False, error=f"Unexpected error: {e}", error_code="unexpected")

    async def _sync(self, student_name: str, school_name: str,
                    enrollment_date: Optional[str]) -> ClaimSyncResult:
        try:
            access_token = await self.token_cache.get_access_token()
        except (NotConnected, RefreshFailed) as e:
            error = type(e)(f"No access token available: {e}")
            raise error from e

        crm = self.crm_factory(access_token)

        contacts = await ContactResolver(crm).resolve_contacts(student_name)
        if not contacts:
            variants = ", ".join(build_name_variants(student_name)) or "none"
            raise NoContactFound(f"No contact found for student={student_name} (tried variants: {variants})")

        deal = await DealMatcher(crm).match_deal(contacts, school_name, enrollment_date)
        if deal is None:
            raise NoMatchingDeal(
                f"No matching deal for student={student_name}, school={school_name}, "
                f"enrollment={enrollment_date or 'n/a'}"
            )

        deal_id = str(deal["id"])
        previous_stage = deal.get("Stage")
        try:
            await crm.update_deal_stage(deal_id, COMMISSION_STAGE)
        except ZohoAPIError as e:
            raise RemoteUpdateFailed(f"Update failed: {e}") from e

        logger.info(f"Deal {deal_id} moved from '{previous_stage}' to '{COMMISSION_STAGE}'")
        return ClaimSyncResult(
            success=True,
            deal_name=deal.get("Deal_Name"),
            deal_id=deal_id,
            previous_stage=previous_stage,
        )
