"""
Complaint Routes - relay citizen complaints to departments and acknowledge the reporter
"""
import logging
from typing import Optional, Union

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from services.complaint_service import ComplaintService
from services.email_service import EmailService
from services.errors import RelayError
from services.supabase_service import SupabaseService
from utils.rate_limit import COMPLAINTS, limiter

logger = logging.getLogger(__name__)

router = APIRouter()


# Every field is optional here so missing ones surface as our own 400
class ComplaintRequest(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    imageUrl: Optional[str] = None


class AnonymousComplaintRequest(BaseModel):
    reference_id: Optional[str] = None
    title: Optional[str] = None
    reporter_name: Optional[str] = None
    reporter_email: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    location_lat: Optional[Union[float, str]] = None
    location_lng: Optional[Union[float, str]] = None
    photo_url: Optional[str] = None
    department_email: Optional[str] = None


_complaint_service = ComplaintService(EmailService(), SupabaseService())


def get_complaint_service() -> ComplaintService:
    return _complaint_service


@router.post("/send-complaint")
@limiter.limit(COMPLAINTS)
def send_complaint(request: Request, body: ComplaintRequest,
                   service: ComplaintService = Depends(get_complaint_service)):
    """Email the department for the complaint category and acknowledge the submitter."""
    try:
        result = service.submit(body.model_dump())
        return JSONResponse(status_code=200, content=result)
    except RelayError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error sending complaint email: {e}")
        raise HTTPException(status_code=500, detail="Failed to send complaint email")


@router.post("/complaints/anonymous")
@limiter.limit(COMPLAINTS)
def anonymous_complaint(request: Request, body: AnonymousComplaintRequest,
                        service: ComplaintService = Depends(get_complaint_service)):
    """Record an anonymous complaint with the service role, then notify best-effort."""
    try:
        result = service.submit_anonymous(body.model_dump())
        return JSONResponse(status_code=200, content=result)
    except RelayError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Anonymous complaint error: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")
