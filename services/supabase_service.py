"""Supabase client - REST insert with the service role and auth proxying.

Env vars:
  VITE_SUPABASE_URL / SUPABASE_URL
  VITE_SUPABASE_PUBLISHABLE_KEY / SUPABASE_ANON_KEY
  SUPABASE_SERVICE_ROLE
"""
import logging
import os
from typing import Any, Dict, List, Optional, Tuple

import requests

from services.errors import ConfigurationError, UpstreamError

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 15


class SupabaseService:
    def __init__(self, session: Optional[requests.Session] = None):
        self.session = session or requests.Session()

    @property
    def url(self) -> Optional[str]:
        raw = os.getenv("VITE_SUPABASE_URL") or os.getenv("SUPABASE_URL")
        return raw.rstrip("/") if raw else None

    @property
    def anon_key(self) -> Optional[str]:
        return os.getenv("VITE_SUPABASE_PUBLISHABLE_KEY") or os.getenv("SUPABASE_ANON_KEY")

    @property
    def service_role(self) -> Optional[str]:
        return os.getenv("SUPABASE_SERVICE_ROLE")

    @property
    def has_service_role(self) -> bool:
        return bool(self.service_role and self.url)

    def _service_headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "apikey": self.service_role,
            "Authorization": f"Bearer {self.service_role}",
        }

    # --- database ---
    def insert_complaint(self, record: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Insert one row into `complaints` and return the representation."""
        if not self.has_service_role:
            raise ConfigurationError(
                "Server not configured to accept anonymous submissions. Missing service role or supabase url."
            )
        headers = self._service_headers()
        headers["Prefer"] = "return=representation"
        try:
            r = self.session.post(f"{self.url}/rest/v1/complaints", json=[record], headers=headers,
                                  timeout=REQUEST_TIMEOUT)
        except requests.RequestException as e:
            logger.error(f"Supabase insert request failed: {e}")
            raise UpstreamError("Failed to insert complaint")
        if not r.ok:
            logger.error(f"Supabase insert failed {r.status_code} {r.text}")
            raise UpstreamError("Failed to insert complaint")
        try:
            return r.json()
        except ValueError:
            return []

    # --- identity ---
    def ensure_user(self, email: str):
        """Create a confirmed user for `email` via the admin API."""
        if not self.has_service_role:
            raise ConfigurationError("Supabase service role not configured")
        r = self.session.post(
            f"{self.url}/auth/v1/admin/users",
            json={"email": email, "email_confirm": True},
            headers=self._service_headers(),
            timeout=REQUEST_TIMEOUT,
        )
        # 422 means the user already exists
        if not r.ok and r.status_code != 422:
            raise UpstreamError(f"Admin user upsert failed with status {r.status_code}", r.status_code)

    def _auth_post(self, path: str, payload: Dict[str, Any]) -> Tuple[int, Any]:
        if not self.url or not self.anon_key:
            raise ConfigurationError("Supabase not configured")
        r = self.session.post(
            f"{self.url}{path}",
            json=payload,
            headers={"Content-Type": "application/json", "apikey": self.anon_key},
            timeout=REQUEST_TIMEOUT,
        )
        try:
            body = r.json()
        except ValueError:
            body = {}
        return r.status_code, body

    def password_login(self, email: str, password: str) -> Tuple[int, Any]:
        return self._auth_post(
            "/auth/v1/token?grant_type=password",
            {"grant_type": "password", "email": email, "password": password},
        )

    def signup(self, email: str, password: str) -> Tuple[int, Any]:
        return self._auth_post("/auth/v1/signup", {"email": email, "password": password})
