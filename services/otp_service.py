"""OTP Service - email one-time passcodes for the login flow.

OTPStore keeps entries in memory, keyed by an opaque token, with a secondary
email index (one live entry per email) and a heap of reclaim deadlines so
stale entries are dropped instead of accumulating until restart.
"""
import heapq
import hmac
import logging
import secrets
import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Dict, List, Optional, Tuple

from services.errors import (
    DeliveryError,
    Expired,
    InvalidCode,
    NotFound,
    RateLimited,
    TooManyAttempts,
    ValidationError,
)
from utils.validators import looks_like_email

logger = logging.getLogger(__name__)

OTP_TTL_SECONDS = 300  # 5 minutes
OTP_MAX_ATTEMPTS = 5
OTP_MAX_SENDS_PER_WINDOW = 5
OTP_SEND_WINDOW_SECONDS = 3600


@dataclass
class OtpEntry:
    token: str
    email: str
    code: str
    expires_at: float
    attempts: int = 0
    sent_count: int = 1
    window_started_at: float = 0.0

    @property
    def reclaim_at(self) -> float:
        # Kept past code expiry so the send cap survives for the whole window
        return max(self.expires_at, self.window_started_at + OTP_SEND_WINDOW_SECONDS)

    def roll_window(self, now: float):
        """Start a new send window once the current one has run its hour."""
        if now >= self.window_started_at + OTP_SEND_WINDOW_SECONDS:
            self.sent_count = 0
            self.window_started_at = now


def generate_otp_code() -> str:
    return f"{secrets.randbelow(900000) + 100000}"


def make_otp_token() -> str:
    return secrets.token_hex(12)


class OTPStore:
    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lock = Lock()
        self._entries: Dict[str, OtpEntry] = {}
        self._by_email: Dict[str, str] = {}
        self._deadlines: List[Tuple[float, str]] = []

    def __len__(self):
        with self._lock:
            return len(self._entries)

    def get(self, token: str) -> Optional[OtpEntry]:
        with self._lock:
            self._purge_locked()
            return self._entries.get(token)

    def find_by_email(self, email: str) -> Optional[OtpEntry]:
        with self._lock:
            self._purge_locked()
            token = self._by_email.get(email)
            return self._entries.get(token) if token else None

    def put(self, entry: OtpEntry):
        """Insert or replace; an older token for the same email is dropped."""
        with self._lock:
            previous = self._by_email.get(entry.email)
            if previous and previous != entry.token:
                self._entries.pop(previous, None)
            self._entries[entry.token] = entry
            self._by_email[entry.email] = entry.token
            heapq.heappush(self._deadlines, (entry.reclaim_at, entry.token))
            self._purge_locked()

    def delete(self, token: str) -> Optional[OtpEntry]:
        with self._lock:
            return self._delete_locked(token)

    def purge_expired(self) -> int:
        with self._lock:
            return self._purge_locked()

    def _delete_locked(self, token: str) -> Optional[OtpEntry]:
        entry = self._entries.pop(token, None)
        if entry and self._by_email.get(entry.email) == token:
            del self._by_email[entry.email]
        return entry

    def _purge_locked(self) -> int:
        now = self._clock()
        removed = 0
        while self._deadlines and self._deadlines[0][0] <= now:
            _, token = heapq.heappop(self._deadlines)
            entry = self._entries.get(token)
            # Every put pushes a fresh deadline, so a later one is still queued
            if entry is None or entry.reclaim_at > now:
                continue
            self._delete_locked(token)
            removed += 1
        if removed:
            logger.info(f"Reclaimed {removed} stale OTP entries")
        return removed


class OTPService:
    def __init__(self, store: OTPStore, email_service, supabase_service=None,
                 clock: Callable[[], float] = time.time):
        self.store = store
        self.email_service = email_service
        self.supabase_service = supabase_service
        self._clock = clock
        # Serializes read-modify-write on entries; never held across a mail send
        self._lock = Lock()

    def send_otp(self, email: str) -> str:
        """Issue a fresh code for `email` and mail it. Returns the token."""
        email = (email or "").strip()
        if not email:
            raise ValidationError("Email is required")
        if not looks_like_email(email):
            raise ValidationError("Invalid email")

        with self._lock:
            now = self._clock()
            found = self.store.find_by_email(email)
            if found:
                found.roll_window(now)
            if found and found.sent_count >= OTP_MAX_SENDS_PER_WINDOW:
                raise RateLimited("Too many OTP requests for this email. Try later.")
            entry = OtpEntry(
                token=make_otp_token(),
                email=email,
                code=generate_otp_code(),
                expires_at=now + OTP_TTL_SECONDS,
                sent_count=found.sent_count + 1 if found else 1,
                window_started_at=found.window_started_at if found else now,
            )
            self.store.put(entry)

        try:
            self.email_service.send_otp_email(email, entry.code)
        except Exception as e:
            logger.error(f"Failed to send OTP email to {email}: {e}")
            self.store.delete(entry.token)
            raise DeliveryError("Failed to send OTP email")
        return entry.token

    def resend_otp(self, email: str, otp_token: Optional[str] = None):
        email = (email or "").strip()
        if not email:
            raise ValidationError("Email is required")

        with self._lock:
            entry = self.store.get(otp_token) if otp_token else self.store.find_by_email(email)
            if entry is None or entry.email != email:
                raise NotFound("No outstanding OTP for this email")
            now = self._clock()
            entry.roll_window(now)
            if entry.sent_count >= OTP_MAX_SENDS_PER_WINDOW:
                raise RateLimited("Too many OTP requests for this email. Try later.")
            entry.code = generate_otp_code()
            entry.expires_at = now + OTP_TTL_SECONDS
            entry.sent_count += 1
            self.store.put(entry)
            code = entry.code

        try:
            self.email_service.send_otp_email(email, code, resend=True)
        except Exception as e:
            logger.error(f"Failed to resend OTP email to {email}: {e}")
            raise DeliveryError("Failed to resend OTP email")

    def verify_otp(self, otp_token: str, code) -> str:
        """Check `code` against the entry for `otp_token`. Returns the verified email."""
        if not otp_token or code is None or str(code).strip() == "":
            raise ValidationError("otpToken and code required")

        with self._lock:
            entry = self.store.get(otp_token)
            if entry is None:
                raise NotFound("Invalid or expired OTP")
            if self._clock() > entry.expires_at:
                self.store.delete(otp_token)
                raise Expired("OTP expired")
            if entry.attempts >= OTP_MAX_ATTEMPTS:
                self.store.delete(otp_token)
                raise TooManyAttempts("Too many attempts")

            entry.attempts += 1
            if not hmac.compare_digest(entry.code.encode(), str(code).strip().encode()):
                raise InvalidCode("Invalid OTP code")
            self.store.delete(otp_token)

        return entry.email

    def ensure_identity(self, email: str):
        """Best-effort user upsert at the identity provider.

        Run after a successful verify as a background task; errors are logged only.
        """
        if self.supabase_service is None or not self.supabase_service.has_service_role:
            return
        try:
            self.supabase_service.ensure_user(email)
        except Exception as e:
            logger.warning(f"Failed to upsert user via admin API: {e}")
