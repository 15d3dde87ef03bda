"""Per-IP rate limiting (slowapi), keyed on the client address."""
from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address)

COMPLAINTS = "20/minute"  # complaint relay endpoints
