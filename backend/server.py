"""PJ Commission Management System - Zoho claim sync API"""
from fastapi import FastAPI, APIRouter, HTTPException, Depends, Request
from fastapi.responses import RedirectResponse
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
import os
import logging
from pathlib import Path
from pydantic import BaseModel, ConfigDict, EmailStr
from pydantic.alias_generators import to_camel
from typing import Optional
from datetime import datetime, timezone, timedelta

from database import get_supabase, run_db
from token_store import OAuthToken, SupabaseTokenStore, TokenStore
from token_cache import ZohoTokenCache
from claim_sync import ClaimSynchronizer
from commission_service import CommissionService, CommissionNotFound, CommissionStatusConflict
from email_service import send_commission_claimed_email, EmailNotConfigured, EmailSendError
from zoho_crm import ZohoCRM, ZOHO_CLIENT_ID, ZOHO_CLIENT_SECRET, ZOHO_REDIRECT_URI
from zoho_errors import ZohoAPIError

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

FRONTEND_URL = (os.environ.get('FRONTEND_URL') or '').rstrip('/')

app = FastAPI(title="PJ Commission Management System")
api_router = APIRouter(prefix="/api")


# ============ Pydantic Models ============

class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class UpdateDealRequest(CamelModel):
    student_name: Optional[str] = None
    school_name: Optional[str] = None
    enrollment_date: Optional[str] = None


class CommissionActionRequest(CamelModel):
    user_id: str


class SendEmailRequest(CamelModel):
    to_email: EmailStr
    sales_name: Optional[str] = None
    student_name: str
    student_id: str
    commission_year: Optional[int] = None
    amount: Optional[float] = None
    claimed_date: Optional[str] = None


# ============ Dependencies ============

def get_db():
    return get_supabase()


def get_token_store(supabase=Depends(get_db)) -> TokenStore:
    return SupabaseTokenStore(supabase)


# One cache per process so its refresh lock is shared by all requests
_token_cache: Optional[ZohoTokenCache] = None


def get_token_cache(store: TokenStore = Depends(get_token_store)) -> ZohoTokenCache:
    global _token_cache
    if _token_cache is None:
        _token_cache = ZohoTokenCache(store)
    return _token_cache


def get_synchronizer(token_cache: ZohoTokenCache = Depends(get_token_cache)) -> ClaimSynchronizer:
    return ClaimSynchronizer(token_cache)


def get_commission_service(
    supabase=Depends(get_db),
    synchronizer: ClaimSynchronizer = Depends(get_synchronizer),
) -> CommissionService:
    return CommissionService(supabase, synchronizer)


def _dashboard_redirect(request: Request, zoho_state: str) -> RedirectResponse:
    base = FRONTEND_URL or str(request.base_url).rstrip('/')
    return RedirectResponse(f"{base}/dashboard?zoho={zoho_state}", status_code=307)


# ============ Zoho OAuth ============

@api_router.get("/zoho/connect")
async def zoho_connect(request: Request):
    """Send the admin to Zoho's consent screen."""
    if not ZOHO_CLIENT_ID or not ZOHO_REDIRECT_URI:
        logger.error("[Zoho connect] ZOHO_CLIENT_ID or ZOHO_REDIRECT_URI not set")
        return _dashboard_redirect(request, "error")
    return RedirectResponse(ZohoCRM.get_auth_url(ZOHO_REDIRECT_URI), status_code=307)


@api_router.get("/zoho/callback")
async def zoho_callback(request: Request, code: Optional[str] = None,
                        store: TokenStore = Depends(get_token_store)):
    """Exchange the authorization code and store the token pair."""
    if not code:
        return _dashboard_redirect(request, "error")
    if not ZOHO_CLIENT_ID or not ZOHO_CLIENT_SECRET or not ZOHO_REDIRECT_URI:
        logger.error("[Zoho callback] Missing ZOHO_CLIENT_ID, ZOHO_CLIENT_SECRET, or ZOHO_REDIRECT_URI")
        return _dashboard_redirect(request, "error")

    try:
        tokens = await ZohoCRM.exchange_code(code, ZOHO_REDIRECT_URI)
    except ZohoAPIError as e:
        logger.error(f"[Zoho callback] Token exchange failed: {e}")
        return _dashboard_redirect(request, "error")

    expires_at = datetime.now(timezone.utc) + timedelta(seconds=int(tokens["expires_in"]))
    try:
        await store.upsert(OAuthToken(
            refresh_token=tokens["refresh_token"],
            access_token=tokens["access_token"],
            expires_at=expires_at,
        ))
    except Exception as e:
        logger.error(f"[Zoho callback] Storing tokens failed: {e}")
        return _dashboard_redirect(request, "error")

    return _dashboard_redirect(request, "connected")


@api_router.get("/zoho/status")
async def zoho_status(supabase=Depends(get_db)):
    try:
        result = await run_db(lambda: supabase.table("zoho_tokens").select("id").limit(1).execute())
    except Exception as e:
        logger.warning(f"[Zoho status] Token lookup failed: {e}")
        return {"connected": False}
    return {"connected": bool(result.data)}


@api_router.post("/zoho/update-deal")
async def zoho_update_deal(body: UpdateDealRequest,
                           synchronizer: ClaimSynchronizer = Depends(get_synchronizer)):
    """Move the student's Zoho deal to 'Completed with Commission'."""
    student_name = (body.student_name or "").strip()
    if not student_name:
        raise HTTPException(status_code=400, detail="studentName required")

    result = await synchronizer.sync_claim(
        student_name,
        (body.school_name or "").strip(),
        (body.enrollment_date or "").strip() or None,
    )
    return result.to_response()


# ============ Commissions ============

@api_router.post("/commissions/{commission_id}/claim")
async def claim_commission(commission_id: str, body: CommissionActionRequest,
                           service: CommissionService = Depends(get_commission_service)):
    try:
        return await service.claim_commission(commission_id, body.user_id)
    except CommissionNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except CommissionStatusConflict as e:
        raise HTTPException(status_code=409, detail=str(e))


@api_router.post("/commissions/{commission_id}/unclaim")
async def unclaim_commission(commission_id: str, body: CommissionActionRequest,
                             service: CommissionService = Depends(get_commission_service)):
    try:
        return await service.unclaim_commission(commission_id, body.user_id)
    except CommissionNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except CommissionStatusConflict as e:
        raise HTTPException(status_code=409, detail=str(e))


# ============ Email ============

@api_router.post("/send-email")
async def send_email(body: SendEmailRequest):
    try:
        message_id = await send_commission_claimed_email(
            to_email=body.to_email,
            sales_name=body.sales_name or "there",
            student_name=body.student_name,
            student_id=body.student_id,
            commission_year=body.commission_year,
            amount=body.amount,
            claimed_date=body.claimed_date,
        )
    except (EmailNotConfigured, EmailSendError) as e:
        raise HTTPException(status_code=500, detail=str(e))
    return {"success": True, "id": message_id}


# ============ Health Check ============

@api_router.get("/")
async def root():
    return {"message": "PJ Commission Management System API"}


@api_router.get("/health")
async def health_check():
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}


# Include router and add middleware
app.include_router(api_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)
