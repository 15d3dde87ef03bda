"""Authentication routes - email OTP login flow and Supabase login/signup proxy"""
import logging
from typing import Optional, Union

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from services.email_service import EmailService
from services.errors import RelayError
from services.otp_service import OTPService, OTPStore
from services.supabase_service import SupabaseService

logger = logging.getLogger(__name__)

router = APIRouter()


class SendOtpRequest(BaseModel):
    email: Optional[str] = None


class ResendOtpRequest(BaseModel):
    email: Optional[str] = None
    otpToken: Optional[str] = None


class VerifyOtpRequest(BaseModel):
    otpToken: Optional[str] = None
    code: Optional[Union[str, int]] = None


class CredentialsRequest(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None


supabase_service = SupabaseService()
otp_store = OTPStore()
_otp_service = OTPService(otp_store, EmailService(), supabase_service=supabase_service)


def get_otp_service() -> OTPService:
    return _otp_service


def get_supabase_service() -> SupabaseService:
    return supabase_service


@router.post("/send-otp")
def send_otp(body: SendOtpRequest, otp_service: OTPService = Depends(get_otp_service)):
    try:
        token = otp_service.send_otp(body.email)
        return {"otpRequired": True, "otpToken": token}
    except RelayError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    except Exception as e:
        logger.error(f"send-otp error: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("/resend-otp")
def resend_otp(body: ResendOtpRequest, otp_service: OTPService = Depends(get_otp_service)):
    try:
        otp_service.resend_otp(body.email, body.otpToken)
        return {"message": "OTP resent"}
    except RelayError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    except Exception as e:
        logger.error(f"resend-otp error: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("/verify-otp")
def verify_otp(body: VerifyOtpRequest, background: BackgroundTasks,
               otp_service: OTPService = Depends(get_otp_service)):
    try:
        email = otp_service.verify_otp(body.otpToken, body.code)
    except RelayError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    except Exception as e:
        logger.error(f"verify-otp error: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")
    background.add_task(otp_service.ensure_identity, email)
    return {"success": True, "message": "OTP verified"}


def _proxy(call, body: CredentialsRequest, label: str):
    if not body.email or not body.password:
        raise HTTPException(status_code=400, detail="Email and password required")
    try:
        status, payload = call(body.email, body.password)
    except RelayError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    except Exception as e:
        logger.error(f"{label} proxy error: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")
    return JSONResponse(status_code=status, content=payload)


@router.post("/login")
def login(body: CredentialsRequest, supabase: SupabaseService = Depends(get_supabase_service)):
    """Password grant against Supabase; status and body are relayed as-is."""
    return _proxy(supabase.password_login, body, "login")


@router.post("/signup")
def signup(body: CredentialsRequest, supabase: SupabaseService = Depends(get_supabase_service)):
    return _proxy(supabase.signup, body, "signup")
