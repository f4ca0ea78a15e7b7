"""
Deal Matcher.

Picks the one Zoho deal a commission claim refers to. School names in Zoho are
abbreviated or expanded inconsistently relative to the agency's school list, so
matching is substring containment in either direction. Short abbreviations can
over-match; when several deals match, the one dated closest to the enrollment
date wins.
"""

import logging
import re
from datetime import date, datetime
from typing import Dict, Iterable, List, Optional, Union

logger = logging.getLogger(__name__)

# Checked in this order before falling back to scanning every field
DATE_FIELDS = ["Course_Start_Date", "Start_Date", "Enrollment_Date", "Closing_Date", "Created_Time"]

DEAL_FIELDS = ["Deal_Name", "Stage", "Account_Name"] + DATE_FIELDS

_ISO_DATE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})")
_WHITESPACE = re.compile(r"\s+")


def _normalize(value: str) -> str:
    return _WHITESPACE.sub(" ", (value or "").strip().lower())


def fuzzy_match(a: str, b: str) -> bool:
    """Case/whitespace-insensitive containment either way. Empty never matches."""
    left, right = _normalize(a), _normalize(b)
    if not left or not right:
        return False
    return left in right or right in left


def parse_date(value) -> Optional[date]:
    """Date part of an ISO-looking value ('2024-03-04', '2024-03-04T10:00:00+13:00')."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        return None
    match = _ISO_DATE.match(value.strip())
    if not match:
        return None
    try:
        return date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
    except ValueError:
        return None


def deal_date(deal: Dict) -> Optional[date]:
    for field in DATE_FIELDS:
        parsed = parse_date(deal.get(field))
        if parsed:
            return parsed
    for value in deal.values():
        parsed = parse_date(value)
        if parsed:
            return parsed
    return None


def account_name(deal: Dict) -> str:
    account = deal.get("Account_Name")
    if isinstance(account, dict):
        return str(account.get("name") or "")
    return str(account or "")


def is_school_match(deal: Dict, school_name: str) -> bool:
    return (fuzzy_match(school_name, str(deal.get("Deal_Name") or ""))
            or fuzzy_match(school_name, account_name(deal)))


def pick_closest(candidates: Iterable[Dict], target: Optional[date]) -> Optional[Dict]:
    """
    Nearest-date tie-break. Undated deals only hold the slot until a dated one
    shows up; on equal distance the earlier candidate stays.
    """
    best = None
    best_distance = None
    for deal in candidates:
        if target is None:
            return deal
        parsed = deal_date(deal)
        if parsed is None:
            if best is None:
                best = deal
            continue
        distance = abs((parsed - target).days)
        if best_distance is None or distance < best_distance:
            best, best_distance = deal, distance
    return best


class DealMatcher:

    def __init__(self, crm):
        self.crm = crm

    async def _deals_for(self, contact: Dict) -> List[Dict]:
        # A contact without deals is [] (HTTP 204); a failed fetch raises ZohoAPIError
        return await self.crm.get_contact_deals(str(contact["id"]), DEAL_FIELDS)

    async def match_deal(self, contacts: List[Dict], school_name: str,
                         target_date: Union[str, date, None] = None) -> Optional[Dict]:
        """Best deal across all contacts, or None when no deal names the school."""
        target = parse_date(target_date) if target_date else None
        if target_date and target is None:
            logger.warning(f"Ignoring unparseable enrollment date '{target_date}'")

        candidates = []
        seen_ids = set()
        for contact in contacts:
            for deal in await self._deals_for(contact):
                deal_id = str(deal.get("id") or "")
                if not deal_id or deal_id in seen_ids:
                    continue
                seen_ids.add(deal_id)
                if is_school_match(deal, school_name):
                    candidates.append(deal)

        if not candidates:
            return None
        chosen = pick_closest(candidates, target)
        logger.info(
            f"Matched deal {chosen.get('id')} ('{chosen.get('Deal_Name')}') "
            f"from {len(candidates)} candidates for school '{school_name}'"
        )
        return chosen
