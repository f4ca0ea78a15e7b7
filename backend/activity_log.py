"""Activity log writer. Best effort: a failed insert is logged, never raised."""

import logging
from typing import Optional

from database import run_db

logger = logging.getLogger(__name__)


async def log_activity(supabase, user_id: str, action: str, entity_type: str,
                       entity_id: Optional[str] = None, details: Optional[dict] = None) -> bool:
    """Append one row to activity_logs. Returns False if the insert failed."""
    row = {
        "user_id": user_id,
        "action": action,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "details": details,
    }
    try:
        await run_db(lambda: supabase.table("activity_logs").insert(row).execute())
        return True
    except Exception as e:
        logger.error(f"Activity log insert failed for action={action} entity={entity_type}/{entity_id}: {e}")
        return False
