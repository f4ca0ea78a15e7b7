"""
Supabase access for the commission backend.

The supabase-py client is synchronous. Async code must wrap every .execute()
chain in `run_db(fn)` so it runs in a worker thread instead of blocking the
event loop.
"""

import asyncio
import logging
import os
from pathlib import Path
from dotenv import load_dotenv

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

SUPABASE_URL = (os.environ.get('SUPABASE_URL') or '').strip()
SUPABASE_KEY = (os.environ.get('SUPABASE_SERVICE_KEY') or '').strip()

_supabase_client = None


def get_supabase():
    """Lazy-initialize the service-role Supabase client."""
    global _supabase_client
    if _supabase_client is None:
        if not SUPABASE_URL or not SUPABASE_KEY:
            raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_KEY must be set")
        from supabase import create_client
        _supabase_client = create_client(SUPABASE_URL, SUPABASE_KEY)
        logger.info("Supabase client initialized")
    return _supabase_client


async def run_db(fn):
    """Run a synchronous Supabase call in a thread pool."""
    return await asyncio.to_thread(fn)
