"""Commission email notifications via the Resend HTTP API."""
import os
import logging
import httpx
from datetime import datetime, timezone
from html import escape
from typing import Optional
from pathlib import Path
from dotenv import load_dotenv

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"
RESEND_API_KEY = os.environ.get("RESEND_API_KEY", "")
EMAIL_FROM = os.environ.get("EMAIL_FROM", "onboarding@resend.dev")
APP_BASE_URL = os.environ.get("APP_BASE_URL", "https://pjcommission.com").rstrip("/")
EMAIL_TIMEOUT = 15.0


class EmailNotConfigured(Exception):
    pass


class EmailSendError(Exception):
    pass


def render_commission_claimed(sales_name: str, student_name: str, student_id: str,
                              commission_year, amount, claimed_date: str) -> str:
    link = f"{APP_BASE_URL}/students/{escape(str(student_id))}"
    return f"""
<p>Hi {escape(sales_name or "there")},</p>

<p>The Year {escape(str(commission_year or 1))} commission for student {escape(student_name)} has been claimed.</p>

<p><strong>Amount:</strong> ${escape(str(amount if amount is not None else 0))} NZD<br>
<strong>Claimed Date:</strong> {escape(claimed_date)}</p>

<p>You can view the details in the PJ Commission Management System:<br>
<a href="{link}">{link}</a></p>

<p>Regards,<br>
PJ Commission System</p>
"""


async def send_commission_claimed_email(to_email: str, sales_name: str, student_name: str,
                                        student_id: str, commission_year=None, amount=None,
                                        claimed_date: Optional[str] = None,
                                        api_key: Optional[str] = None, transport=None) -> Optional[str]:
    """Tell a sales user their student's commission was claimed. Returns the Resend message id."""
    api_key = api_key or RESEND_API_KEY
    if not api_key:
        raise EmailNotConfigured("RESEND_API_KEY is not configured")

    claimed_date = claimed_date or datetime.now(timezone.utc).date().isoformat()
    payload = {
        "from": EMAIL_FROM,
        "to": to_email,
        "subject": f"Commission Claimed - {student_name}",
        "html": render_commission_claimed(
            sales_name, student_name, student_id, commission_year, amount, claimed_date,
        ),
    }

    try:
        async with httpx.AsyncClient(timeout=EMAIL_TIMEOUT, transport=transport) as client:
            response = await client.post(
                RESEND_API_URL,
                headers={"Authorization": f"Bearer {api_key}"},
                json=payload,
            )
    except httpx.RequestError as e:
        logger.error(f"Failed to reach Resend: {str(e)}")
        raise EmailSendError(f"Email service unreachable: {e}")

    if response.status_code >= 400:
        logger.error(f"Resend rejected email to {to_email}: {response.status_code} {response.text[:300]}")
        try:
            message = response.json().get("message")
        except ValueError:
            message = None
        raise EmailSendError(message or f"Email send failed: {response.status_code}")

    try:
        message_id = response.json().get("id")
    except ValueError:
        message_id = None
    logger.info(f"Commission claimed email sent to {to_email} (id={message_id})")
    return message_id
