"""
Contact Resolver.

Finds the Zoho contacts for a free-text student name. Zoho's search only
supports exact Full_Name matching, and names are entered inconsistently
(order, casing, middle names), so several spellings are probed before falling
back to a per-token intersection.
"""

import logging
from typing import Dict, List

logger = logging.getLogger(__name__)


def _dedupe(values: List[str]) -> List[str]:
    seen = set()
    unique = []
    for value in values:
        if value not in seen:
            seen.add(value)
            unique.append(value)
    return unique


def split_name(student_name: str) -> List[str]:
    return (student_name or "").split()


def build_name_variants(student_name: str) -> List[str]:
    """
    Spellings of a name to try against the exact-match search, in probe order.

    >>> build_name_variants("john smith")
    ['john smith', 'smith john', 'JOHN smith', 'smith JOHN']
    """
    parts = split_name(student_name)
    if not parts:
        return []
    if len(parts) == 1:
        return [parts[0]]
    if len(parts) == 2:
        first, second = parts
        return _dedupe([
            f"{first} {second}",
            f"{second} {first}",
            f"{first.upper()} {second}",
            f"{second} {first.upper()}",
        ])
    return _dedupe([
        " ".join(parts),
        " ".join(reversed(parts)),
        " ".join([parts[0].upper()] + parts[1:]),
        " ".join(parts[:-1] + [parts[-1].upper()]),
    ])


def _full_name(contact: Dict) -> str:
    name = contact.get("Full_Name")
    if not name:
        name = " ".join(p for p in (contact.get("First_Name"), contact.get("Last_Name")) if p)
    return str(name or "")


class ContactResolver:
    """Resolves a student name to Zoho contact records. Search failures raise ZohoAPIError."""

    def __init__(self, crm):
        self.crm = crm

    async def _search(self, full_name: str) -> List[Dict]:
        # "No contacts" is already [] (HTTP 204); failures propagate as ZohoAPIError
        return await self.crm.search_contacts_by_name(full_name)

    async def resolve_contacts(self, student_name: str) -> List[Dict]:
        parts = split_name(student_name)
        if not parts:
            return []

        for variant in build_name_variants(student_name):
            contacts = await self._search(variant)
            if contacts:
                logger.info(f"Resolved '{student_name}' via variant '{variant}' ({len(contacts)} contacts)")
                return contacts

        if len(parts) > 1:
            contacts = await self._intersect_tokens(parts)
            if contacts:
                logger.info(f"Resolved '{student_name}' via token intersection ({len(contacts)} contacts)")
            return contacts

        # Last resort for single-token names
        return await self._search(parts[0])

    async def _intersect_tokens(self, parts: List[str]) -> List[Dict]:
        """Contacts returned for every token whose full name contains every token."""
        ordered: List[Dict] = []
        common_ids = None
        for token in parts:
            found = await self._search(token)
            ids = {str(c["id"]) for c in found}
            if common_ids is None:
                common_ids = ids
                ordered = found
            else:
                common_ids &= ids
            if not common_ids:
                return []

        lowered = [p.lower() for p in parts]
        matches = []
        seen = set()
        for contact in ordered:
            contact_id = str(contact["id"])
            if contact_id not in common_ids or contact_id in seen:
                continue
            name = _full_name(contact).lower()
            if all(token in name for token in lowered):
                seen.add(contact_id)
                matches.append(contact)
        return matches
