"""Complaint relay - validation, department routing, notification bodies and the audit log.

Failure policy for outbound mail is the same on both submission paths: a failed
department notification never blocks the citizen acknowledgement.
"""
import json
import logging
import os
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional
from urllib.parse import quote

from services.errors import DeliveryError, ValidationError
from utils.validators import escape, is_valid_email, looks_like_email, mask_email

logger = logging.getLogger(__name__)

DEPARTMENT_EMAILS = {
    "Roads": "xenr1mccchd@nic.in",
    "Electricity": "elop1-chd@nic.in",
    "Water": "smartcity.chd@nic.in",
    "Health": "dhs_ut@yahoo.co.in",
    "Environment": "cf-chd@chd.nic.in",
    "Emergency": "erss112chd-police@chd.nic.in",
}
ALLOWED_CATEGORIES = list(DEPARTMENT_EMAILS) + ["Other"]
DEFAULT_DEPARTMENT_EMAIL = "comm-mcc-chd@nic.in"
DEFAULT_AUDIT_DIR = "server-logs"


def fallback_mailbox() -> str:
    return os.getenv("CC_EMAIL") or DEFAULT_DEPARTMENT_EMAIL


def department_for(category: str) -> str:
    return DEPARTMENT_EMAILS.get(category) or fallback_mailbox()


def maps_link(lat=None, lng=None, location: Optional[str] = None) -> Optional[str]:
    if lat not in (None, "") and lng not in (None, ""):
        return f"https://www.google.com/maps?q={lat},{lng}"
    if location:
        return f"https://www.google.com/maps/search/?api=1&query={quote(str(location))}"
    return None


def build_department_html(category: str, description: Optional[str], location: Optional[str],
                          reporter_name: Optional[str], reporter_email: str,
                          photo_url: Optional[str] = None, footer: str = "Smart Civic Issue Reporter") -> str:
    photo = (
        f'<p><b>Photo:</b> <a href="{escape(photo_url)}" target="_blank">View Image</a></p>' if photo_url else ""
    )
    return (
        '<div style="font-family: Arial, sans-serif; line-height:1.4;">'
        "<h3>New Complaint Received</h3>"
        f"<p><b>Category:</b> {escape(category)}</p>"
        f"<p><b>Description:</b> {escape(description)}</p>"
        f"<p><b>Location:</b> {escape(location)}</p>"
        f"<p><b>Reported By:</b> {escape(reporter_name) or 'Anonymous'} ({escape(reporter_email)})</p>"
        f"{photo}"
        "<hr/>"
        f"<p>This complaint was auto-forwarded via {escape(footer)}.</p>"
        "</div>"
    )


def department_subject(category: str) -> str:
    return f"\U0001F6A8 New Civic Complaint: {category}"


class AuditLog:
    """Append-only daily log of completed submissions, emails masked."""

    def __init__(self, directory: Optional[str] = None):
        self.directory = directory or os.getenv("AUDIT_LOG_DIR", DEFAULT_AUDIT_DIR)

    def path_for(self, day: datetime) -> str:
        return os.path.join(self.directory, f"{day.strftime('%Y-%m-%d')}.log")

    def write(self, entry: Dict[str, Any]):
        masked = {k: (mask_email(v) if k.endswith("email") else v) for k, v in entry.items()}
        try:
            os.makedirs(self.directory, exist_ok=True)
            with open(self.path_for(datetime.now(timezone.utc)), "a", encoding="utf-8") as f:
                f.write(json.dumps(masked) + "\n")
        except OSError as e:
            logger.error(f"Failed to write audit log: {e}")


class ComplaintService:
    def __init__(self, email_service, supabase_service, audit_log: Optional[AuditLog] = None,
                 clock: Callable[[], float] = time.time):
        self.email_service = email_service
        self.supabase_service = supabase_service
        self.audit_log = audit_log or AuditLog()
        self._clock = clock

    def make_tracking_id(self) -> str:
        return f"CE-{int(self._clock() * 1000)}"

    def _notify(self, to: str, email: str, reference_id: str, category: str, name: Optional[str],
                department_html: str, location_link: Optional[str]) -> Dict[str, bool]:
        result = {"department": False, "acknowledgement": False}
        try:
            self.email_service.send_complaint_email(
                to=to, cc=os.getenv("CC_EMAIL") or to, subject=department_subject(category), html=department_html
            )
            result["department"] = True
        except Exception as e:
            logger.error(f"Failed to email department {to} for {reference_id}: {e}")
        try:
            self.email_service.send_user_ack(email, name, reference_id, category, location_link)
            result["acknowledgement"] = True
        except Exception as e:
            logger.error(f"Failed to send acknowledgement for {reference_id}: {e}")
        return result

    # --- named submission ---
    def validate(self, payload: Dict[str, Any]):
        required = ("name", "email", "category", "description", "location")
        if any(not payload.get(k) for k in required):
            raise ValidationError("Missing required fields")
        if not is_valid_email(payload["email"]):
            raise ValidationError("Invalid email")
        if payload["category"] not in ALLOWED_CATEGORIES:
            raise ValidationError("Invalid category")

    def submit(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        self.validate(payload)
        category = payload["category"]
        department_email = department_for(category)
        tracking_id = self.make_tracking_id()
        html = build_department_html(
            category, payload["description"], payload["location"], payload["name"], payload["email"],
            photo_url=payload.get("imageUrl"),
        )
        sent = self._notify(department_email, payload["email"], tracking_id, category, payload["name"], html,
                            maps_link(location=payload["location"]))
        if not any(sent.values()):
            raise DeliveryError("Failed to send complaint email")

        self.audit_log.write({
            "name": payload["name"],
            "email": payload["email"],
            "category": category,
            "location": payload["location"],
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "trackingId": tracking_id,
        })
        if all(sent.values()):
            message = "Complaint emailed and acknowledgement sent"
        elif sent["department"]:
            message = "Complaint emailed; acknowledgement could not be delivered"
        else:
            message = "Acknowledgement sent; department notification is pending"
        return {
            "message": message,
            "trackingId": tracking_id,
            "departmentNotified": sent["department"],
            "acknowledgementSent": sent["acknowledgement"],
        }

    # --- anonymous submission ---
    def build_anonymous_record(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        reference_id = payload["reference_id"]
        category = payload["category"]
        lat, lng = payload.get("location_lat"), payload.get("location_lng")
        department = (payload.get("department_email") or "").strip()
        return {
            "reference_id": reference_id,
            "complaint_id": reference_id,
            "title": payload.get("title") or f"Complaint - {category}",
            "user_id": None,
            "user_name": payload.get("reporter_name") or None,
            "user_email": payload.get("reporter_email"),
            "user_mobile": None,
            "category": category,
            "ai_suggested_category": None,
            "photo_url": payload.get("photo_url") or None,
            "location_lat": lat if lat not in ("", None) else None,
            "location_lng": lng if lng not in ("", None) else None,
            "location": payload.get("location") or None,
            "google_maps_link": maps_link(lat, lng) if lat not in ("", None) and lng not in ("", None) else None,
            "department_email": department if looks_like_email(department) else fallback_mailbox(),
            "description": payload.get("description") or None,
            "status": "Submitted",
            "created_date": datetime.now(timezone.utc).isoformat(),
            "created_by": "anonymous",
        }

    def submit_anonymous(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not payload.get("reference_id") or not payload.get("category"):
            raise ValidationError("Missing required fields")
        if not looks_like_email(payload.get("reporter_email")):
            raise ValidationError("Valid reporter_email is required for anonymous submissions")

        record = self.build_anonymous_record(payload)
        inserted = self.supabase_service.insert_complaint(record)

        html = build_department_html(
            record["category"], record["description"], record["location"], record["user_name"],
            record["user_email"], photo_url=record["photo_url"], footer="CivicEye",
        )
        link = record["google_maps_link"] or maps_link(location=record["location"])
        self._notify(record["department_email"], record["user_email"], record["reference_id"],
                     record["category"], record["user_name"], html, link)

        self.audit_log.write({
            "reporter_name": record["user_name"],
            "reporter_email": record["user_email"],
            "category": record["category"],
            "location": record["location"],
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "reference_id": record["reference_id"],
        })
        return {
            "message": "Anonymous complaint recorded",
            "reference_id": record["reference_id"],
            "inserted": inserted[0] if isinstance(inserted, list) and inserted else None,
        }
