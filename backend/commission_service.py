"""
Commission claim workflow.

A claim marks the commission and its student as claimed, records the action
in activity_logs, pushes the claim to Zoho, and emails the responsible sales
user. Only the local status updates can fail the claim. The Zoho sync and the
email are reported in the result and logged.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from activity_log import log_activity
from claim_sync import ClaimSynchronizer, COMMISSION_STAGE
from database import run_db
from email_service import send_commission_claimed_email, EmailNotConfigured, EmailSendError
from record_status import CommissionStatus, StudentStatus

logger = logging.getLogger(__name__)


class CommissionNotFound(Exception):
    pass


class CommissionStatusConflict(Exception):
    """The commission is already in the status the action would set."""


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CommissionService:

    def __init__(self, supabase, synchronizer: ClaimSynchronizer,
                 notifier: Callable = send_commission_claimed_email,
                 now: Callable[[], datetime] = _utc_now):
        self.supabase = supabase
        self.synchronizer = synchronizer
        self.notifier = notifier
        self._now = now

    # ==================== Lookups ====================

    async def _get_one(self, table: str, columns: str, row_id: str) -> Optional[dict]:
        result = await run_db(
            lambda: self.supabase.table(table).select(columns).eq("id", row_id).limit(1).execute()
        )
        return result.data[0] if result.data else None

    async def _get_commission(self, commission_id: str) -> dict:
        commission = await self._get_one(
            "commissions", "id, student_id, year, amount, enrollment_date, status", commission_id
        )
        if not commission:
            raise CommissionNotFound(f"Commission {commission_id} not found")
        return commission

    async def _update(self, table: str, row_id: str, values: dict):
        await run_db(lambda: self.supabase.table(table).update(values).eq("id", row_id).execute())

    # ==================== Claim ====================

    async def claim_commission(self, commission_id: str, user_id: str) -> dict:
        commission = await self._get_commission(commission_id)
        if commission.get("status") == CommissionStatus.CLAIMED:
            raise CommissionStatusConflict(f"Commission {commission_id} is already claimed")
        student_id = commission["student_id"]
        now = self._now()
        claim_date = now.date().isoformat()

        await self._update("commissions", commission_id, {
            "status": CommissionStatus.CLAIMED,
            "claimed_by": user_id,
            "claimed_at": now.isoformat(),
            "claim_date": claim_date,
        })
        await self._update("students", student_id, {"status": StudentStatus.CLAIMED})
        await log_activity(self.supabase, user_id, "claimed_commission", "commission", student_id, {
            "commission_id": commission_id,
            "year": commission.get("year"),
            "amount": commission.get("amount"),
        })

        student = await self._get_one(
            "students", "id, full_name, school_id, assigned_sales_id, created_by", student_id
        )
        if not student:
            logger.warning(f"Commission {commission_id} claimed but student {student_id} is missing")
            return {"success": True, "message": "Commission claimed.", "zoho": None, "emailSent": False}

        school_name = ""
        if student.get("school_id"):
            school = await self._get_one("schools", "id, name", student["school_id"])
            school_name = (school or {}).get("name") or ""

        zoho = await self.synchronizer.sync_claim(
            student.get("full_name") or "", school_name, commission.get("enrollment_date"),
        )
        email_sent = await self._notify_sales(student, commission, claim_date)

        return {
            "success": True,
            "message": self._claim_message(zoho),
            "zoho": zoho.to_response(),
            "emailSent": email_sent,
        }

    @staticmethod
    def _claim_message(zoho) -> str:
        if zoho.success and zoho.deal_name:
            previous = zoho.previous_stage or "unknown"
            return (f"Commission claimed! Zoho Deal '{zoho.deal_name}' updated from "
                    f"'{previous}' to '{COMMISSION_STAGE}'")
        if zoho.success:
            return "Commission claimed! Zoho Deal updated."
        return f"Commission claimed. Zoho Deal update failed: {zoho.error or 'Unknown error'}"

    async def _notify_sales(self, student: dict, commission: dict, claim_date: str) -> bool:
        sales_user_id = student.get("assigned_sales_id") or student.get("created_by")
        if not sales_user_id:
            return False
        try:
            profile = await self._get_one("profiles", "id, email, full_name", sales_user_id)
            if not profile or not profile.get("email"):
                logger.info(f"Sales user {sales_user_id} has no email, skipping claim notification")
                return False
            await self.notifier(
                to_email=profile["email"],
                sales_name=profile.get("full_name") or "there",
                student_name=student.get("full_name") or "",
                student_id=student["id"],
                commission_year=commission.get("year"),
                amount=commission.get("amount"),
                claimed_date=claim_date,
            )
            return True
        except (EmailNotConfigured, EmailSendError) as e:
            logger.error(f"[Claim] Email notification failed: {e}")
        except Exception as e:
            logger.error(f"[Claim] Email notification error: {e}")
        return False

    # ==================== Unclaim ====================

    async def unclaim_commission(self, commission_id: str, user_id: str) -> dict:
        """Undo a claim locally. The Zoho deal stage is left as it is."""
        commission = await self._get_commission(commission_id)
        if commission.get("status") != CommissionStatus.CLAIMED:
            raise CommissionStatusConflict(f"Commission {commission_id} is not claimed")
        student_id = commission["student_id"]

        await self._update("commissions", commission_id, {
            "status": CommissionStatus.PENDING,
            "claimed_by": None,
            "claimed_at": None,
            "claim_date": None,
        })
        await self._update("students", student_id, {"status": StudentStatus.PENDING})
        await log_activity(self.supabase, user_id, "unclaimed_commission", "commission", student_id, {
            "commission_id": commission_id,
            "year": commission.get("year"),
        })
        return {"success": True, "message": "Commission claim undone."}
