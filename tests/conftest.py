import os
import sys

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from fastapi.testclient import TestClient  # noqa: E402

from main import app  # noqa: E402
from routes.auth_routes import get_otp_service, get_supabase_service  # noqa: E402
from routes.complaint_routes import get_complaint_service  # noqa: E402
from services.complaint_service import AuditLog, ComplaintService  # noqa: E402
from services.errors import DeliveryError  # noqa: E402
from services.otp_service import OTPService, OTPStore  # noqa: E402
from utils.rate_limit import limiter  # noqa: E402

# Keep real credentials from a local .env out of the test run
for var in ("EMAIL_USER", "EMAIL_PASS", "SENDGRID_USER", "SENDGRID_PASS", "CC_EMAIL",
            "SUPABASE_SERVICE_ROLE", "VITE_SUPABASE_URL", "SUPABASE_URL",
            "VITE_SUPABASE_PUBLISHABLE_KEY", "SUPABASE_ANON_KEY", "EMAIL_FROM_NAME"):
    os.environ.pop(var, None)


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeEmailService:
    """Records what would have been sent; recipients in `failing` raise DeliveryError."""

    def __init__(self):
        self.sent = []
        self.acks = []
        self.otps = []
        self.failing = set()

    def _check(self, to):
        if to in self.failing or "*" in self.failing:
            raise DeliveryError(f"Failed to send email after 3 attempts. Last error: refused {to}")

    def send_complaint_email(self, to, subject, html, cc=None, from_name=None, max_attempts=3):
        self._check(to)
        self.sent.append({"to": to, "cc": cc, "subject": subject, "html": html})
        return {"message_id": f"<{len(self.sent)}@test>"}

    def send_user_ack(self, user_email, user_name, reference_id, category, location_link=None):
        self._check(user_email)
        self.acks.append({"to": user_email, "name": user_name, "reference_id": reference_id,
                          "category": category, "location_link": location_link})
        return {"message_id": "<ack@test>"}

    def send_otp_email(self, to_email, code, resend=False):
        self._check(to_email)
        self.otps.append({"to": to_email, "code": code, "resend": resend})
        return {"message_id": "<otp@test>"}

    @property
    def last_code(self):
        return self.otps[-1]["code"]


class FakeSupabaseService:
    def __init__(self):
        self.configured = True
        self.inserted = []
        self.insert_error = None
        self.ensured = []
        self.ensure_error = None
        self.auth_response = (200, {"access_token": "abc", "token_type": "bearer"})
        self.auth_calls = []

    @property
    def has_service_role(self):
        return self.configured

    def insert_complaint(self, record):
        if self.insert_error:
            raise self.insert_error
        self.inserted.append(record)
        return [dict(record, id=len(self.inserted))]

    def ensure_user(self, email):
        if self.ensure_error:
            raise self.ensure_error
        self.ensured.append(email)

    def password_login(self, email, password):
        self.auth_calls.append(("login", email, password))
        return self.auth_response

    def signup(self, email, password):
        self.auth_calls.append(("signup", email, password))
        return self.auth_response


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def email_service():
    return FakeEmailService()


@pytest.fixture
def supabase_service():
    return FakeSupabaseService()


@pytest.fixture
def audit_dir(tmp_path):
    return str(tmp_path / "server-logs")


@pytest.fixture
def otp_service(clock, email_service, supabase_service):
    return OTPService(OTPStore(clock=clock), email_service, supabase_service=supabase_service, clock=clock)


@pytest.fixture
def complaint_service(email_service, supabase_service, audit_dir, clock):
    return ComplaintService(email_service, supabase_service, audit_log=AuditLog(audit_dir), clock=clock)


@pytest.fixture
def client(otp_service, complaint_service, supabase_service):
    limiter.reset()
    app.dependency_overrides[get_otp_service] = lambda: otp_service
    app.dependency_overrides[get_complaint_service] = lambda: complaint_service
    app.dependency_overrides[get_supabase_service] = lambda: supabase_service
    yield TestClient(app)
    app.dependency_overrides.clear()
