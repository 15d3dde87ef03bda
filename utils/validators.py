"""Input validation and formatting helpers for the relay endpoints."""
import html
import re
from typing import Optional

from email_validator import validate_email, EmailNotValidError

# Loose shape check used by the OTP and anonymous flows
EMAIL_SHAPE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def looks_like_email(value: Optional[str]) -> bool:
    return bool(value) and bool(EMAIL_SHAPE.match(value))


def is_valid_email(value: Optional[str]) -> bool:
    """Strict syntax check (no DNS lookup)."""
    if not value:
        return False
    try:
        validate_email(value, check_deliverability=False)
        return True
    except EmailNotValidError:
        return False


def escape(value) -> str:
    if value is None:
        return ""
    return html.escape(str(value), quote=True)


def mask_email(email: Optional[str]) -> Optional[str]:
    """Keep the first two characters of the local part: 'alice@x.org' -> 'al*@x.org'."""
    if not email:
        return email
    return re.sub(r"^(.{2}).+@", r"\1*@", email, count=1)
